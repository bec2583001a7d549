"""Storage-level cleanup of attribute values when an entity row is deleted.

attribute_values.entity_instance_id cannot carry a foreign key (its parent
is one of several unrelated tables), so each entity table gets an AFTER
DELETE trigger calling one shared PL/pgSQL function. The trigger passes the
table's entity-type label; the function only removes values whose
definition has that entity type, since a product #5 and a contact #5 share
an id.

The statements here are used by the Alembic migration and by test setup.
"""
import logging
from typing import Iterable, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from db.models import ATTRIBUTES_SCHEMA, CRM_SCHEMA, ENTITY_TABLES

logger = logging.getLogger(__name__)

CLEANUP_FUNCTION = f"{ATTRIBUTES_SCHEMA}.cleanup_attribute_values"

_VALUES_TABLE = f"{ATTRIBUTES_SCHEMA}.attribute_values"
_DEFINITIONS_TABLE = f"{ATTRIBUTES_SCHEMA}.attribute_definitions"


def cleanup_function_sql() -> str:
    return f"""
        CREATE OR REPLACE FUNCTION {CLEANUP_FUNCTION}()
        RETURNS TRIGGER
        LANGUAGE plpgsql
        AS $$
        DECLARE
            deleted_count INTEGER;
        BEGIN
            DELETE FROM {_VALUES_TABLE} v
            USING {_DEFINITIONS_TABLE} d
            WHERE v.definition_id = d.id
              AND v.entity_instance_id = OLD.id
              AND d.entity_type = TG_ARGV[0];

            GET DIAGNOSTICS deleted_count = ROW_COUNT;
            IF deleted_count > 0 THEN
                RAISE NOTICE 'Removed % attribute value(s) for % id=%',
                    deleted_count, TG_ARGV[0], OLD.id;
            END IF;

            RETURN OLD;
        END;
        $$;
    """


def trigger_name(entity_type: str) -> str:
    return f"trg_{ENTITY_TABLES[entity_type]}_cleanup_attribute_values"


def drop_trigger_sql(entity_type: str) -> str:
    table = ENTITY_TABLES[entity_type]
    return f"DROP TRIGGER IF EXISTS {trigger_name(entity_type)} ON {CRM_SCHEMA}.{table}"


def create_trigger_sql(entity_type: str) -> str:
    table = ENTITY_TABLES[entity_type]
    return (
        f"CREATE TRIGGER {trigger_name(entity_type)} "
        f"AFTER DELETE ON {CRM_SCHEMA}.{table} "
        f"FOR EACH ROW EXECUTE FUNCTION {CLEANUP_FUNCTION}('{entity_type}')"
    )


def orphan_cleanup_sql(entity_type: str) -> str:
    """One-time removal of values whose instance row is already gone."""
    table = ENTITY_TABLES[entity_type]
    return f"""
        DELETE FROM {_VALUES_TABLE} v
        USING {_DEFINITIONS_TABLE} d
        WHERE v.definition_id = d.id
          AND d.entity_type = '{entity_type}'
          AND NOT EXISTS (
              SELECT 1 FROM {CRM_SCHEMA}.{table} e WHERE e.id = v.entity_instance_id
          )
    """


def install_statements(entity_types: Optional[Iterable[str]] = None) -> list[str]:
    """Function first, then drop-and-create one trigger per entity table."""
    statements = [cleanup_function_sql()]
    for entity_type in entity_types or ENTITY_TABLES:
        statements.append(drop_trigger_sql(entity_type))
        statements.append(create_trigger_sql(entity_type))
    return statements


def uninstall_statements(entity_types: Optional[Iterable[str]] = None) -> list[str]:
    statements = [drop_trigger_sql(entity_type) for entity_type in entity_types or ENTITY_TABLES]
    statements.append(f"DROP FUNCTION IF EXISTS {CLEANUP_FUNCTION}()")
    return statements


async def install_safety_net(connection: AsyncConnection) -> None:
    """Create (or replace) the cleanup function and every entity trigger."""
    for statement in install_statements():
        await connection.execute(text(statement))
    logger.info("Installed attribute cleanup triggers on %d tables", len(ENTITY_TABLES))
