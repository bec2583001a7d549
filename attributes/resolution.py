"""Resolution layer: one ordered {definition, value} view per entity instance.

Every entity read path exposes custom attributes in this shape:

    async with get_db() as db:
        attrs = await get_entity_attributes(db, ticket_id, tenant_id, "ticket")
        payload = {**ticket_fields, "custom_fields": serialize_attributes(attrs)}
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from attributes import types as attribute_types
from db.repositories import definitions as definitions_repo
from db.repositories import values as values_repo
from schemas import ResolvedAttribute

logger = logging.getLogger(__name__)


async def get_entity_attributes(
    session: AsyncSession,
    entity_instance_id: int,
    tenant_id: Optional[int],
    entity_type: str,
) -> list[ResolvedAttribute]:
    """Merge visible definitions with the instance's stored values.

    Returns exactly one record per visible definition, in definition order.
    Definitions with no stored value come back with value=None and
    value_row_id=None.
    """
    definitions = await definitions_repo.list_for_entity(session, tenant_id, entity_type)
    rows = await values_repo.get_all(session, entity_instance_id)
    by_definition = {row.definition_id: row for row in rows}

    resolved = []
    for definition in definitions:
        row = by_definition.get(definition.id)
        resolved.append(
            ResolvedAttribute(
                definition_id=definition.id,
                name=definition.name,
                value_type=definition.value_type,
                options=definition.options,
                is_required=definition.is_required,
                sort_order=definition.sort_order,
                value=attribute_types.extract(definition.value_type, row),
                value_row_id=row.id if row is not None else None,
            )
        )
    return resolved


def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def serialize_attributes(records: Sequence[ResolvedAttribute]) -> list[dict]:
    """JSON-ready dicts for a response payload (decimals as floats, ISO dates)."""
    out = []
    for record in records:
        data = record.model_dump()
        data["value"] = _json_value(record.value)
        out.append(data)
    return out


def missing_required(records: Sequence[ResolvedAttribute]) -> list[str]:
    """Names of required attributes that have no stored value."""
    return [record.name for record in records if record.is_required and record.value is None]
