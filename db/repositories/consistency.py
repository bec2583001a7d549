"""Entity deletion with attribute cleanup, and the orphan-reconciliation sweep."""
import logging
from typing import Iterable, Optional

from sqlalchemy import and_, delete as sa_delete, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.errors import storage_errors
from db.models import ENTITY_MODELS, ENTITY_TYPES, AttributeDefinition, AttributeValue
from db.repositories import definitions as definitions_repo
from db.repositories import values as values_repo

logger = logging.getLogger(__name__)


@storage_errors("entity delete")
async def destroy_entity(
    session: AsyncSession,
    entity_type: str,
    entity_instance_id: int,
    *,
    tenant_id: Optional[int] = None,
) -> tuple[int, bool]:
    """Reference delete path for an attribute-bearing entity.

    Removes the instance's attribute values, then the entity row, in one
    transaction. The database trigger would clear the values anyway; doing
    it here is what lets the application log the cleanup.

    Returns (values removed, whether the entity row existed).
    """
    definitions_repo.check_entity_type(entity_type)
    model = ENTITY_MODELS[entity_type]

    stmt = select(model.id).where(model.id == entity_instance_id).with_for_update()
    if tenant_id is not None:
        stmt = stmt.where(model.tenant_id == tenant_id)
    if (await session.execute(stmt)).scalar_one_or_none() is None:
        return 0, False

    async with session.begin_nested():
        removed = await values_repo.delete_all_for_entity(
            session, entity_instance_id, entity_type
        )
        await session.execute(
            sa_delete(model).where(model.id == entity_instance_id),
            execution_options={"synchronize_session": False},
        )
    logger.info("Destroyed %s %s (%d attribute value(s))", entity_type, entity_instance_id, removed)
    return removed, True


def _orphaned(entity_type: str):
    """Values of entity_type definitions whose instance row no longer exists."""
    model = ENTITY_MODELS[entity_type]
    return and_(
        AttributeValue.definition_id.in_(
            select(AttributeDefinition.id).where(AttributeDefinition.entity_type == entity_type)
        ),
        ~exists().where(model.id == AttributeValue.entity_instance_id),
    )


def _resolve_types(entity_types: Optional[Iterable[str]]) -> list[str]:
    if entity_types is None:
        return list(ENTITY_TYPES)
    resolved = list(entity_types)
    for entity_type in resolved:
        definitions_repo.check_entity_type(entity_type)
    return resolved


@storage_errors("orphan scan")
async def find_orphans(
    session: AsyncSession, entity_types: Optional[Iterable[str]] = None
) -> dict[str, int]:
    """Count orphaned values per entity type. Read-only."""
    counts = {}
    for entity_type in _resolve_types(entity_types):
        result = await session.execute(
            select(func.count()).select_from(AttributeValue).where(_orphaned(entity_type))
        )
        counts[entity_type] = result.scalar_one()
    return counts


@storage_errors("orphan reconciliation")
async def reconcile_orphans(
    session: AsyncSession,
    entity_types: Optional[Iterable[str]] = None,
    *,
    dry_run: bool = False,
) -> dict[str, int]:
    """Delete values whose entity instance no longer exists.

    A repair pass for rows left behind before the triggers existed or while
    they were disabled; not part of the normal write path. With dry_run the
    counts are reported and nothing is deleted.
    """
    types = _resolve_types(entity_types)
    if dry_run:
        return await find_orphans(session, types)

    removed = {}
    for entity_type in types:
        result = await session.execute(
            sa_delete(AttributeValue)
            .where(_orphaned(entity_type))
            .execution_options(synchronize_session=False)
        )
        removed[entity_type] = result.rowcount or 0
        if removed[entity_type]:
            logger.warning(
                "Removed %d orphaned attribute value(s) for %s",
                removed[entity_type], entity_type,
            )
    return removed
