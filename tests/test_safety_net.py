"""Unit tests for the cleanup-trigger DDL."""
from unittest.mock import AsyncMock

import pytest

from db import safety_net
from db.models import ENTITY_TABLES, ENTITY_TYPES


class TestTriggerSql:
    def test_function_scopes_delete_by_entity_type(self):
        sql = safety_net.cleanup_function_sql()
        assert "CREATE OR REPLACE FUNCTION attributes.cleanup_attribute_values()" in sql
        assert "v.entity_instance_id = OLD.id" in sql
        assert "d.entity_type = TG_ARGV[0]" in sql
        assert "RETURN OLD" in sql

    def test_trigger_passes_label(self):
        sql = safety_net.create_trigger_sql("financial_transaction")
        assert "AFTER DELETE ON crm.financial_transactions" in sql
        assert "FOR EACH ROW" in sql
        assert sql.endswith("cleanup_attribute_values('financial_transaction')")

    def test_trigger_names_are_distinct(self):
        names = {safety_net.trigger_name(entity_type) for entity_type in ENTITY_TYPES}
        assert len(names) == len(ENTITY_TYPES)

    def test_install_covers_every_entity_table(self):
        statements = safety_net.install_statements()
        assert statements[0] == safety_net.cleanup_function_sql()
        creates = [s for s in statements if s.startswith("CREATE TRIGGER")]
        assert len(creates) == len(ENTITY_TABLES)
        for table in ENTITY_TABLES.values():
            assert any(f"ON crm.{table} " in s for s in creates)

    def test_uninstall_drops_function_last(self):
        statements = safety_net.uninstall_statements(["contact"])
        assert statements == [
            "DROP TRIGGER IF EXISTS trg_contacts_cleanup_attribute_values ON crm.contacts",
            "DROP FUNCTION IF EXISTS attributes.cleanup_attribute_values()",
        ]

    def test_orphan_cleanup_targets_one_table(self):
        sql = safety_net.orphan_cleanup_sql("sale")
        assert "d.entity_type = 'sale'" in sql
        assert "FROM crm.sales e" in sql

    @pytest.mark.asyncio
    async def test_install_executes_every_statement(self):
        conn = AsyncMock()
        await safety_net.install_safety_net(conn)
        assert conn.execute.await_count == 1 + 2 * len(ENTITY_TABLES)
