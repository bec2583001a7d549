"""Unit tests for the per-entity resolution view."""
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from attributes.resolution import get_entity_attributes, missing_required, serialize_attributes
from db.models import AttributeDefinition, AttributeValue


RESOLUTION_MODULE = "attributes.resolution"


def _definitions():
    return [
        AttributeDefinition(
            id=10, tenant_id=None, entity_type="ticket", name="Priority",
            value_type="single-select-options", options=["low", "medium", "high"],
            is_required=True, sort_order=0,
        ),
        AttributeDefinition(
            id=11, tenant_id=1, entity_type="ticket", name="Due",
            value_type="date", options=None, is_required=False, sort_order=1,
        ),
        AttributeDefinition(
            id=12, tenant_id=1, entity_type="ticket", name="Estimate",
            value_type="numeric", options=None, is_required=True, sort_order=2,
        ),
    ]


async def _resolve(rows):
    with patch(
        f"{RESOLUTION_MODULE}.definitions_repo.list_for_entity",
        AsyncMock(return_value=_definitions()),
    ), patch(
        f"{RESOLUTION_MODULE}.values_repo.get_all",
        AsyncMock(return_value=rows),
    ):
        return await get_entity_attributes(AsyncMock(), 7, 1, "ticket")


class TestGetEntityAttributes:
    @pytest.mark.asyncio
    async def test_one_record_per_definition_in_order(self):
        rows = [AttributeValue(id=500, definition_id=10, entity_instance_id=7, text_value="medium")]
        records = await _resolve(rows)

        assert [r.definition_id for r in records] == [10, 11, 12]
        assert records[0].value == "medium"
        assert records[0].value_row_id == 500
        assert records[0].options == ["low", "medium", "high"]
        assert records[1].value is None and records[1].value_row_id is None
        assert records[2].value is None

    @pytest.mark.asyncio
    async def test_rows_of_invisible_definitions_are_ignored(self):
        rows = [
            AttributeValue(id=1, definition_id=12, entity_instance_id=7, numeric_value=Decimal("2.50")),
            # a product definition's value for product #7
            AttributeValue(id=2, definition_id=99, entity_instance_id=7, text_value="steel"),
        ]
        records = await _resolve(rows)
        assert len(records) == 3
        assert records[2].value == Decimal("2.50")
        assert all(r.value != "steel" for r in records)

    @pytest.mark.asyncio
    async def test_no_definitions(self):
        with patch(
            f"{RESOLUTION_MODULE}.definitions_repo.list_for_entity",
            AsyncMock(return_value=[]),
        ), patch(f"{RESOLUTION_MODULE}.values_repo.get_all", AsyncMock(return_value=[])):
            assert await get_entity_attributes(AsyncMock(), 7, 1, "ticket") == []


class TestHelpers:
    @pytest.mark.asyncio
    async def test_missing_required(self):
        rows = [AttributeValue(id=1, definition_id=10, entity_instance_id=7, text_value="low")]
        records = await _resolve(rows)
        assert missing_required(records) == ["Estimate"]

    @pytest.mark.asyncio
    async def test_serialize_attributes(self):
        due = datetime(2024, 5, 1, tzinfo=timezone.utc)
        rows = [
            AttributeValue(id=1, definition_id=11, entity_instance_id=7, date_value=due),
            AttributeValue(id=2, definition_id=12, entity_instance_id=7, numeric_value=Decimal("12.50")),
        ]
        payload = serialize_attributes(await _resolve(rows))

        assert payload[1]["name"] == "Due"
        assert payload[1]["value"] == "2024-05-01T00:00:00+00:00"
        assert payload[2]["value"] == 12.5
        assert payload[0]["value"] is None
        assert set(payload[0]) == {
            "definition_id", "name", "value_type", "options",
            "is_required", "sort_order", "value", "value_row_id",
        }
