"""Attribute definition registry: field metadata, visibility and ordering."""
import logging
from typing import Any, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, delete as sa_delete, exists, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from attributes import types as attribute_types
from db.errors import ConflictError, NotFoundError, ValidationError, storage_errors
from db.models import ENTITY_TYPES, SELECT_TYPE, AttributeDefinition, AttributeValue
from schemas import DefinitionPatch

logger = logging.getLogger(__name__)

_NAME_MAX_LENGTH = 100
_UNIQUE_VIOLATION = "23505"
_NOT_NULL_PATCH_KEYS = ("name", "value_type", "is_required", "sort_order")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def check_entity_type(entity_type: str) -> None:
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(
            f"Invalid entity type: {entity_type!r}. "
            f"Valid types: {', '.join(ENTITY_TYPES)}"
        )


def _clean_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Definition name is required")
    name = name.strip()
    if len(name) > _NAME_MAX_LENGTH:
        raise ValidationError(f"Definition name is longer than {_NAME_MAX_LENGTH} characters")
    return name


def _is_unique_violation(exc: IntegrityError) -> bool:
    code = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if code is not None:
        return code == _UNIQUE_VIOLATION
    return "uq_definition_" in str(exc)


def _parse_patch(patch: Union[DefinitionPatch, dict]) -> dict:
    if isinstance(patch, DefinitionPatch):
        model = patch
    else:
        try:
            model = DefinitionPatch.model_validate(patch)
        except PydanticValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            raise ValidationError(f"Invalid definition patch: {fields}") from exc

    changes = model.model_dump(exclude_unset=True)
    for key in _NOT_NULL_PATCH_KEYS:
        if key in changes and changes[key] is None:
            raise ValidationError(f"{key} cannot be null")
    return changes


def _visible_to(tenant_id: Optional[int]):
    """Tenant-owned definitions plus globals not shadowed by a same-named tenant one."""
    shadow = aliased(AttributeDefinition)
    shadowed = exists().where(
        shadow.tenant_id == tenant_id,
        shadow.entity_type == AttributeDefinition.entity_type,
        shadow.name == AttributeDefinition.name,
    )
    return or_(
        AttributeDefinition.tenant_id == tenant_id,
        and_(AttributeDefinition.tenant_id.is_(None), ~shadowed),
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@storage_errors("definition lookup")
async def get_by_id(
    session: AsyncSession, definition_id: int, *, lock: bool = False
) -> Optional[AttributeDefinition]:
    """Return the definition with this id regardless of tenant, or None.

    lock=True takes a FOR SHARE row lock so a concurrent type change or
    delete waits for the caller's transaction.
    """
    stmt = select(AttributeDefinition).where(AttributeDefinition.id == definition_id)
    if lock:
        stmt = stmt.with_for_update(read=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


@storage_errors("definition lookup")
async def get_visible(
    session: AsyncSession,
    definition_id: int,
    tenant_id: Optional[int],
    *,
    for_update: bool = False,
) -> AttributeDefinition:
    """Return a definition owned by the tenant or global. NotFoundError otherwise."""
    stmt = select(AttributeDefinition).where(
        AttributeDefinition.id == definition_id,
        or_(
            AttributeDefinition.tenant_id == tenant_id,
            AttributeDefinition.tenant_id.is_(None),
        ),
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    definition = result.scalar_one_or_none()
    if definition is None:
        raise NotFoundError(f"Attribute definition {definition_id} not found")
    return definition


@storage_errors("definition listing")
async def list_for_entity(
    session: AsyncSession, tenant_id: Optional[int], entity_type: str
) -> list[AttributeDefinition]:
    """Return the definitions a tenant sees for one entity type.

    Includes globals (tenant_id NULL). When the tenant owns a definition with
    the same name as a global one, the tenant's definition wins and the
    global one is left out. Ordered by sort_order, then name.
    """
    check_entity_type(entity_type)
    result = await session.execute(
        select(AttributeDefinition)
        .where(AttributeDefinition.entity_type == entity_type)
        .where(_visible_to(tenant_id))
        .order_by(
            AttributeDefinition.sort_order,
            AttributeDefinition.name,
            AttributeDefinition.id,
        )
    )
    return list(result.scalars().all())


@storage_errors("definition listing")
async def list_all(session: AsyncSession, tenant_id: int) -> list[AttributeDefinition]:
    """Return every definition the tenant owns, across entity types (admin view)."""
    result = await session.execute(
        select(AttributeDefinition)
        .where(AttributeDefinition.tenant_id == tenant_id)
        .order_by(
            AttributeDefinition.entity_type,
            AttributeDefinition.sort_order,
            AttributeDefinition.name,
        )
    )
    return list(result.scalars().all())


@storage_errors("value count")
async def count_values(session: AsyncSession, definition_id: int) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(AttributeValue)
        .where(AttributeValue.definition_id == definition_id)
    )
    return result.scalar_one()


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


@storage_errors("definition create")
async def create(
    session: AsyncSession,
    tenant_id: Optional[int],
    entity_type: str,
    name: str,
    value_type: str,
    options: Optional[Sequence[str]] = None,
    is_required: bool = False,
    sort_order: int = 0,
) -> AttributeDefinition:
    """Create a definition. tenant_id=None creates a global one.

    Raises ValidationError for bad labels or a broken options invariant and
    ConflictError when the name is taken for (tenant, entity_type).
    """
    check_entity_type(entity_type)
    name = _clean_name(name)
    options = attribute_types.validate_options(value_type, options)

    definition = AttributeDefinition(
        tenant_id=tenant_id,
        entity_type=entity_type,
        name=name,
        value_type=value_type,
        options=options,
        is_required=bool(is_required),
        sort_order=int(sort_order),
    )
    try:
        async with session.begin_nested():
            session.add(definition)
            await session.flush()
    except IntegrityError as exc:
        if _is_unique_violation(exc):
            raise ConflictError(
                f"A field named {name!r} already exists for {entity_type}"
            ) from exc
        raise

    logger.info(
        "Created attribute definition %s (%s.%s, tenant=%s)",
        definition.id, entity_type, name, tenant_id,
    )
    return definition


async def _apply_patch(
    session: AsyncSession, definition: AttributeDefinition, changes: dict
) -> AttributeDefinition:
    if not changes:
        return definition

    value_type = changes.get("value_type", definition.value_type)
    attribute_types.get_kind(value_type)

    if "options" in changes:
        options = changes["options"]
    elif value_type == SELECT_TYPE:
        options = definition.options
    else:
        options = None
    options = attribute_types.validate_options(value_type, options)

    if value_type != definition.value_type:
        stored = await count_values(session, definition.id)
        if stored:
            raise ValidationError(
                f"Cannot change the type of {definition.name!r}: "
                f"{stored} stored value(s) use the current type"
            )

    name = _clean_name(changes["name"]) if "name" in changes else definition.name

    try:
        async with session.begin_nested():
            definition.name = name
            definition.value_type = value_type
            definition.options = options
            if "is_required" in changes:
                definition.is_required = changes["is_required"]
            if "sort_order" in changes:
                definition.sort_order = changes["sort_order"]
            await session.flush()
    except IntegrityError as exc:
        if _is_unique_violation(exc):
            raise ConflictError(
                f"A field named {name!r} already exists for {definition.entity_type}"
            ) from exc
        raise

    await session.refresh(definition)
    return definition


@storage_errors("definition update")
async def update(
    session: AsyncSession,
    definition_id: int,
    tenant_id: Optional[int],
    patch: Union[DefinitionPatch, dict],
) -> AttributeDefinition:
    """Apply a patch to a tenant-owned definition.

    patch keys: name, value_type, options, is_required, sort_order.
    Global definitions are read-only here (ValidationError); use
    update_global from the platform-operator path instead.
    """
    changes = _parse_patch(patch)
    definition = await get_visible(session, definition_id, tenant_id, for_update=True)
    if definition.tenant_id is None:
        raise ValidationError("Global definitions cannot be edited by a tenant")
    return await _apply_patch(session, definition, changes)


@storage_errors("definition update")
async def update_global(
    session: AsyncSession,
    definition_id: int,
    patch: Union[DefinitionPatch, dict],
) -> AttributeDefinition:
    """Platform-operator edit of a global definition."""
    changes = _parse_patch(patch)
    definition = await get_visible(session, definition_id, None, for_update=True)
    return await _apply_patch(session, definition, changes)


async def _delete_definition(session: AsyncSession, definition: AttributeDefinition) -> int:
    async with session.begin_nested():
        result = await session.execute(
            sa_delete(AttributeValue).where(AttributeValue.definition_id == definition.id)
        )
        await session.delete(definition)
        await session.flush()
    removed = result.rowcount or 0
    logger.info(
        "Deleted attribute definition %s (%s.%s) and %d value(s)",
        definition.id, definition.entity_type, definition.name, removed,
    )
    return removed


@storage_errors("definition delete")
async def delete(session: AsyncSession, definition_id: int, tenant_id: Optional[int]) -> int:
    """Delete a tenant-owned definition and all of its values atomically.

    Returns the number of values removed. Global definitions cannot be
    deleted by a tenant (ValidationError).
    """
    definition = await get_visible(session, definition_id, tenant_id, for_update=True)
    if definition.tenant_id is None:
        raise ValidationError("Global definitions cannot be deleted by a tenant")
    return await _delete_definition(session, definition)


@storage_errors("definition delete")
async def delete_global(session: AsyncSession, definition_id: int) -> int:
    """Platform-operator delete of a global definition and its values."""
    definition = await get_visible(session, definition_id, None, for_update=True)
    return await _delete_definition(session, definition)


@storage_errors("definition reorder")
async def reorder(
    session: AsyncSession,
    tenant_id: Optional[int],
    entity_type: str,
    ordered_ids: Sequence[int],
) -> list[AttributeDefinition]:
    """Set sort_order to each id's position in ordered_ids, all or nothing.

    Every id must be a definition of entity_type owned by the tenant.
    """
    check_entity_type(entity_type)
    ids = list(ordered_ids)
    if not ids:
        raise ValidationError("ordered_ids must not be empty")
    if len(set(ids)) != len(ids):
        raise ValidationError("ordered_ids contains duplicates")

    result = await session.execute(
        select(AttributeDefinition)
        .where(AttributeDefinition.id.in_(ids))
        .where(AttributeDefinition.tenant_id == tenant_id)
        .where(AttributeDefinition.entity_type == entity_type)
        .with_for_update()
    )
    found = {definition.id: definition for definition in result.scalars().all()}
    foreign = [definition_id for definition_id in ids if definition_id not in found]
    if foreign:
        raise ValidationError(
            f"Definitions {foreign} do not belong to this tenant for {entity_type}"
        )

    async with session.begin_nested():
        for position, definition_id in enumerate(ids):
            found[definition_id].sort_order = position
        await session.flush()

    return [found[definition_id] for definition_id in ids]
