"""Attribute value store: sparse typed values keyed by (definition, instance)."""
import logging
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete as sa_delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from attributes import types as attribute_types
from attributes.types import TypedValue
from db.errors import ValidationError, storage_errors
from db.models import AttributeDefinition, AttributeValue
from db.repositories import definitions as definitions_repo
from schemas import AttributeInput

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@storage_errors("value lookup")
async def get_all(session: AsyncSession, entity_instance_id: int) -> list[AttributeValue]:
    """Return every stored value for an instance id, across all definitions.

    No tenant or entity-type filtering: the caller must already have scoped
    the id. The resolution layer only reads the rows of visible definitions.
    """
    result = await session.execute(
        select(AttributeValue).where(AttributeValue.entity_instance_id == entity_instance_id)
    )
    return list(result.scalars().all())


@storage_errors("value lookup")
async def get_one(
    session: AsyncSession, definition_id: int, entity_instance_id: int
) -> Optional[AttributeValue]:
    result = await session.execute(
        select(AttributeValue)
        .where(AttributeValue.definition_id == definition_id)
        .where(AttributeValue.entity_instance_id == entity_instance_id)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def _write(
    session: AsyncSession, definition_id: int, entity_instance_id: int, typed: TypedValue
) -> AttributeValue:
    """Insert or update by (definition_id, entity_instance_id).

    ON CONFLICT makes concurrent writers for the same key land on one row.
    The three slots the type does not use are written as NULL.
    """
    slots = typed.slots()
    stmt = (
        pg_insert(AttributeValue)
        .values(definition_id=definition_id, entity_instance_id=entity_instance_id, **slots)
        .on_conflict_do_update(
            index_elements=["definition_id", "entity_instance_id"],
            set_={**slots, "updated_at": func.now()},
        )
        .returning(AttributeValue)
    )
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    await session.flush()
    return result.scalar_one()


async def _delete(session: AsyncSession, definition_id: int, entity_instance_id: int) -> int:
    result = await session.execute(
        sa_delete(AttributeValue)
        .where(AttributeValue.definition_id == definition_id)
        .where(AttributeValue.entity_instance_id == entity_instance_id)
    )
    return result.rowcount or 0


@storage_errors("value upsert")
async def upsert(
    session: AsyncSession, definition_id: int, entity_instance_id: int, value: Any
) -> AttributeValue:
    """Store one value, coerced to the definition's current type.

    Raises ValidationError if the definition does not exist or the value
    cannot be coerced.
    """
    definition = await definitions_repo.get_by_id(session, definition_id, lock=True)
    if definition is None:
        raise ValidationError(f"Attribute definition {definition_id} does not exist")

    typed = attribute_types.coerce(
        definition.value_type, value, field_name=definition.name, options=definition.options
    )
    return await _write(session, definition.id, entity_instance_id, typed)


def _as_input(pair: Union[AttributeInput, Mapping[str, Any]]) -> AttributeInput:
    if isinstance(pair, AttributeInput):
        return pair
    try:
        return AttributeInput.model_validate(pair)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid attribute input: {pair!r}") from exc


@storage_errors("value batch upsert")
async def upsert_many(
    session: AsyncSession,
    entity_instance_id: int,
    entity_type: str,
    pairs: Iterable[Union[AttributeInput, Mapping[str, Any]]],
    *,
    tenant_id: Optional[int] = None,
) -> list[AttributeValue]:
    """Save the custom fields of one entity instance in one transaction.

    For each {definition_id, value} pair:
      - unknown definition, or one for another entity type: warn and skip
      - empty value (None, blank string): delete the stored value
      - otherwise: coerce to the definition's type and upsert

    Every value is coerced before the first write, so a coercion error
    aborts the whole call with nothing written. When tenant_id is given, a
    definition owned by another tenant is rejected with ValidationError.
    Returns the rows written.
    """
    definitions_repo.check_entity_type(entity_type)

    # definition id -> (definition, coerced value or None for delete)
    planned: dict[int, tuple[AttributeDefinition, Optional[TypedValue]]] = {}
    for pair in pairs:
        item = _as_input(pair)
        definition = await definitions_repo.get_by_id(session, item.definition_id, lock=True)
        if definition is None:
            logger.warning(
                "Attribute definition %s not found, skipping for %s %s",
                item.definition_id, entity_type, entity_instance_id,
            )
            continue
        if definition.entity_type != entity_type:
            logger.warning(
                "Attribute definition %s belongs to %s, not %s, skipping",
                definition.id, definition.entity_type, entity_type,
            )
            continue
        if (
            tenant_id is not None
            and definition.tenant_id is not None
            and definition.tenant_id != tenant_id
        ):
            raise ValidationError(
                f"Attribute definition {definition.id} is not visible to tenant {tenant_id}"
            )

        if attribute_types.is_empty(item.value):
            planned[definition.id] = (definition, None)
        else:
            planned[definition.id] = (
                definition,
                attribute_types.coerce(
                    definition.value_type,
                    item.value,
                    field_name=definition.name,
                    options=definition.options,
                ),
            )

    written = []
    async with session.begin_nested():
        for definition, typed in planned.values():
            if typed is None:
                await _delete(session, definition.id, entity_instance_id)
            else:
                written.append(await _write(session, definition.id, entity_instance_id, typed))
    return written


@storage_errors("value delete")
async def delete_one(session: AsyncSession, definition_id: int, entity_instance_id: int) -> int:
    """Delete one stored value. Missing rows are a no-op; returns rows removed."""
    return await _delete(session, definition_id, entity_instance_id)


def _scope_to_entity_type(stmt, entity_type: Optional[str]):
    if entity_type is None:
        logger.warning(
            "Attribute value delete without entity_type: values of every entity kind "
            "sharing these instance ids are removed"
        )
        return stmt
    definitions_repo.check_entity_type(entity_type)
    return stmt.where(
        AttributeValue.definition_id.in_(
            select(AttributeDefinition.id).where(AttributeDefinition.entity_type == entity_type)
        )
    )


@storage_errors("entity value cleanup")
async def delete_all_for_entity(
    session: AsyncSession, entity_instance_id: int, entity_type: Optional[str] = None
) -> int:
    """Delete every value stored for an entity instance. Returns the count.

    Entity services call this before destroying the instance. Pass
    entity_type: instance ids repeat across entity kinds, and without it a
    contact #5 cleanup also removes the values of product #5.
    """
    stmt = sa_delete(AttributeValue).where(
        AttributeValue.entity_instance_id == entity_instance_id
    )
    result = await session.execute(_scope_to_entity_type(stmt, entity_type))
    removed = result.rowcount or 0
    logger.info(
        "Deleted %d attribute value(s) for %s %s",
        removed, entity_type or "entity", entity_instance_id,
    )
    return removed


@storage_errors("entity value cleanup")
async def delete_all_for_entities(
    session: AsyncSession,
    entity_instance_ids: Sequence[int],
    entity_type: Optional[str] = None,
) -> int:
    """Batch variant of delete_all_for_entity for mass deletes and offboarding."""
    ids = list(dict.fromkeys(entity_instance_ids))
    if not ids:
        return 0
    stmt = sa_delete(AttributeValue).where(AttributeValue.entity_instance_id.in_(ids))
    result = await session.execute(_scope_to_entity_type(stmt, entity_type))
    removed = result.rowcount or 0
    logger.info(
        "Deleted %d attribute value(s) for %d %s instance(s)",
        removed, len(ids), entity_type or "entity",
    )
    return removed


@storage_errors("definition listing")
async def map_named_values(
    session: AsyncSession,
    tenant_id: Optional[int],
    entity_type: str,
    named_values: Mapping[str, Any],
) -> list[AttributeInput]:
    """Turn a {field name: value} payload into definition-id pairs.

    Names resolve against the definitions visible to the tenant. Names with
    no definition are logged and ignored.
    """
    if not named_values:
        return []
    visible = await definitions_repo.list_for_entity(session, tenant_id, entity_type)
    by_name = {definition.name: definition for definition in visible}

    pairs = []
    for name, value in named_values.items():
        definition = by_name.get(name)
        if definition is None:
            logger.warning("No %s field named %r for tenant %s, ignoring", entity_type, name, tenant_id)
            continue
        pairs.append(AttributeInput(definition_id=definition.id, value=value))
    return pairs
