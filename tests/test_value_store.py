"""Unit tests for the value store and definition registry with a mocked session."""
import logging
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from db.errors import StorageError, ValidationError
from db.models import AttributeDefinition
from db.repositories import definitions as definitions_repo
from db.repositories import values as values_repo
from schemas import AttributeInput


VALUES_MODULE = "db.repositories.values"


def _session() -> AsyncMock:
    session = AsyncMock()
    # begin_nested() is used as `async with`, not awaited
    session.begin_nested = MagicMock()
    session.begin_nested.return_value.__aexit__.return_value = False
    return session


def _definition(id, value_type="numeric", entity_type="contact", tenant_id=7, options=None, name=None):
    return AttributeDefinition(
        id=id,
        tenant_id=tenant_id,
        entity_type=entity_type,
        name=name or f"field-{id}",
        value_type=value_type,
        options=options,
        is_required=False,
        sort_order=0,
    )


def _lookup(*definitions):
    by_id = {d.id: d for d in definitions}

    async def get_by_id(session, definition_id, lock=False):
        return by_id.get(definition_id)

    return AsyncMock(side_effect=get_by_id)


class TestUpsertMany:
    @pytest.mark.asyncio
    async def test_skips_unknown_and_mismatched_definitions(self):
        session = _session()
        lookup = _lookup(_definition(1), _definition(2, entity_type="product"))
        with patch(f"{VALUES_MODULE}.definitions_repo.get_by_id", lookup), \
                patch(f"{VALUES_MODULE}._write", new_callable=AsyncMock) as mock_write:
            mock_write.return_value = MagicMock()
            written = await values_repo.upsert_many(
                session, 5, "contact",
                [
                    {"definition_id": 1, "value": "42"},
                    {"definition_id": 2, "value": "3"},
                    {"definition_id": 99, "value": "x"},
                ],
            )

        assert len(written) == 1
        mock_write.assert_awaited_once()
        args = mock_write.call_args.args
        assert args[1:3] == (1, 5)
        assert args[3].value == Decimal("42")

    @pytest.mark.asyncio
    async def test_coercion_failure_writes_nothing(self):
        session = _session()
        lookup = _lookup(_definition(1, value_type="short-text"), _definition(2))
        with patch(f"{VALUES_MODULE}.definitions_repo.get_by_id", lookup), \
                patch(f"{VALUES_MODULE}._write", new_callable=AsyncMock) as mock_write, \
                patch(f"{VALUES_MODULE}._delete", new_callable=AsyncMock) as mock_delete:
            with pytest.raises(ValidationError, match="field-2"):
                await values_repo.upsert_many(
                    session, 5, "contact",
                    [
                        AttributeInput(definition_id=1, value="fine"),
                        AttributeInput(definition_id=2, value="heavy"),
                    ],
                )

        mock_write.assert_not_awaited()
        mock_delete.assert_not_awaited()
        session.begin_nested.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_value_deletes(self):
        session = _session()
        lookup = _lookup(_definition(1, value_type="long-text"))
        with patch(f"{VALUES_MODULE}.definitions_repo.get_by_id", lookup), \
                patch(f"{VALUES_MODULE}._write", new_callable=AsyncMock) as mock_write, \
                patch(f"{VALUES_MODULE}._delete", new_callable=AsyncMock) as mock_delete:
            written = await values_repo.upsert_many(
                session, 5, "contact", [{"definition_id": 1, "value": "  "}]
            )

        assert written == []
        mock_write.assert_not_awaited()
        mock_delete.assert_awaited_once_with(session, 1, 5)

    @pytest.mark.asyncio
    async def test_foreign_tenant_definition_rejected(self):
        session = _session()
        lookup = _lookup(_definition(1, tenant_id=8))
        with patch(f"{VALUES_MODULE}.definitions_repo.get_by_id", lookup):
            with pytest.raises(ValidationError, match="not visible"):
                await values_repo.upsert_many(
                    session, 5, "contact", [{"definition_id": 1, "value": "1"}], tenant_id=7
                )

    @pytest.mark.asyncio
    async def test_global_definition_allowed_for_any_tenant(self):
        session = _session()
        lookup = _lookup(_definition(1, tenant_id=None, value_type="boolean"))
        with patch(f"{VALUES_MODULE}.definitions_repo.get_by_id", lookup), \
                patch(f"{VALUES_MODULE}._write", new_callable=AsyncMock) as mock_write:
            await values_repo.upsert_many(
                session, 5, "contact", [{"definition_id": 1, "value": "yes"}], tenant_id=7
            )
        assert mock_write.call_args.args[3].value is True

    @pytest.mark.asyncio
    async def test_duplicate_pairs_collapse_to_last(self):
        session = _session()
        lookup = _lookup(_definition(1))
        with patch(f"{VALUES_MODULE}.definitions_repo.get_by_id", lookup), \
                patch(f"{VALUES_MODULE}._write", new_callable=AsyncMock) as mock_write:
            await values_repo.upsert_many(
                session, 5, "contact",
                [{"definition_id": 1, "value": "1"}, {"definition_id": 1, "value": "2"}],
            )
        mock_write.assert_awaited_once()
        assert mock_write.call_args.args[3].value == Decimal("2")

    @pytest.mark.asyncio
    async def test_malformed_pair_rejected(self):
        with pytest.raises(ValidationError, match="Invalid attribute input"):
            await values_repo.upsert_many(_session(), 5, "contact", [{"value": "x"}])

    @pytest.mark.asyncio
    async def test_unknown_entity_type_rejected(self):
        with pytest.raises(ValidationError, match="Invalid entity type"):
            await values_repo.upsert_many(_session(), 5, "invoice", [])


class TestUpsert:
    @pytest.mark.asyncio
    async def test_missing_definition(self):
        with patch(f"{VALUES_MODULE}.definitions_repo.get_by_id", _lookup()):
            with pytest.raises(ValidationError, match="does not exist"):
                await values_repo.upsert(_session(), 404, 1, "x")

    @pytest.mark.asyncio
    async def test_coerces_to_current_type(self):
        lookup = _lookup(_definition(1, value_type="date"))
        with patch(f"{VALUES_MODULE}.definitions_repo.get_by_id", lookup), \
                patch(f"{VALUES_MODULE}._write", new_callable=AsyncMock) as mock_write:
            await values_repo.upsert(_session(), 1, 3, "2024-01-31")
        typed = mock_write.call_args.args[3]
        assert typed.slot == "date_value"
        assert typed.value.year == 2024

    @pytest.mark.asyncio
    async def test_storage_failure_is_wrapped(self):
        session = _session()
        session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("gone"))
        with pytest.raises(StorageError, match="definition lookup") as exc_info:
            await values_repo.upsert(session, 1, 3, "x")
        assert isinstance(exc_info.value.__cause__, OperationalError)


class TestBulkDelete:
    @pytest.mark.asyncio
    async def test_empty_id_list_is_a_no_op(self):
        session = _session()
        assert await values_repo.delete_all_for_entities(session, []) == 0
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_returns_rowcount(self):
        session = _session()
        session.execute.return_value = MagicMock(rowcount=3)
        removed = await values_repo.delete_all_for_entities(session, [4, 4, 5], "sale")
        assert removed == 3
        session.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unscoped_delete_warns(self, caplog):
        session = _session()
        session.execute.return_value = MagicMock(rowcount=2)
        with caplog.at_level(logging.WARNING, logger=VALUES_MODULE):
            removed = await values_repo.delete_all_for_entity(session, 9)
        assert removed == 2
        assert "without entity_type" in caplog.text

    @pytest.mark.asyncio
    async def test_scoped_delete_does_not_warn(self, caplog):
        session = _session()
        session.execute.return_value = MagicMock(rowcount=1)
        with caplog.at_level(logging.WARNING, logger=VALUES_MODULE):
            await values_repo.delete_all_for_entity(session, 9, "contact")
        assert "without entity_type" not in caplog.text


class TestMapNamedValues:
    @pytest.mark.asyncio
    async def test_resolves_names_and_ignores_unknown(self):
        visible = [_definition(1, name="Budget"), _definition(2, name="Region", value_type="short-text")]
        with patch(
            f"{VALUES_MODULE}.definitions_repo.list_for_entity",
            AsyncMock(return_value=visible),
        ):
            pairs = await values_repo.map_named_values(
                _session(), 7, "contact", {"Budget": "10", "Shoe size": 44}
            )
        assert pairs == [AttributeInput(definition_id=1, value="10")]


class TestDefinitionValidation:
    @pytest.mark.asyncio
    async def test_create_select_without_options(self):
        session = _session()
        with pytest.raises(ValidationError):
            await definitions_repo.create(session, 7, "ticket", "Priority", "single-select-options", [])
        session.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_numeric_with_options(self):
        with pytest.raises(ValidationError):
            await definitions_repo.create(_session(), 7, "ticket", "Score", "numeric", ["1"])

    @pytest.mark.asyncio
    async def test_create_unknown_entity_type(self):
        with pytest.raises(ValidationError, match="Invalid entity type"):
            await definitions_repo.create(_session(), 7, "lead", "Score", "numeric")

    @pytest.mark.asyncio
    async def test_create_blank_name(self):
        with pytest.raises(ValidationError, match="name is required"):
            await definitions_repo.create(_session(), 7, "ticket", "  ", "numeric")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ids", [[], [1, 2, 1]])
    async def test_reorder_rejects_bad_id_lists(self, ids):
        session = _session()
        with pytest.raises(ValidationError):
            await definitions_repo.reorder(session, 7, "contact", ids)
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_patch_keys(self):
        session = _session()
        with pytest.raises(ValidationError, match="entity_type"):
            await definitions_repo.update(session, 1, 7, {"entity_type": "sale"})
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_rejects_null_name(self):
        with pytest.raises(ValidationError, match="name cannot be null"):
            await definitions_repo.update(_session(), 1, 7, {"name": None})
