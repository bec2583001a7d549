"""Custom-attribute payload schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


AttributeScalar = Union[str, Decimal, datetime, bool]


class AttributeInput(BaseModel):
    """One {definition_id, value} pair sent by an entity service on save."""

    definition_id: int
    value: Any = None


class DefinitionPatch(BaseModel):
    """Fields an administrator may change on an existing definition."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=100)
    value_type: Optional[str] = None
    options: Optional[List[str]] = None
    is_required: Optional[bool] = None
    sort_order: Optional[int] = None


class ResolvedAttribute(BaseModel):
    """Definition merged with the stored value for one entity instance."""

    model_config = ConfigDict(from_attributes=True)

    definition_id: int
    name: str
    value_type: str
    options: Optional[List[str]] = None
    is_required: bool = False
    sort_order: int = 0
    value: Optional[AttributeScalar] = None
    value_row_id: Optional[int] = None
