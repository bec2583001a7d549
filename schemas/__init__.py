from .attributes import (
    AttributeInput,
    AttributeScalar,
    DefinitionPatch,
    ResolvedAttribute,
)

__all__ = [
    "AttributeInput", "AttributeScalar", "DefinitionPatch", "ResolvedAttribute",
]
