"""Shared fixtures.

Tests marked `integration` run against the PostgreSQL database named by
DATABASE_URL and are skipped when it is not set. Example:

    export DATABASE_URL="postgresql+asyncpg://crm:<password>@localhost:5432/crm_test"
"""
import os
import uuid

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from sqlalchemy import text

load_dotenv()


def pytest_collection_modifyitems(config, items):
    if os.environ.get("DATABASE_URL"):
        return
    skip = pytest.mark.skip(reason="DATABASE_URL not set")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest_asyncio.fixture
async def attribute_schema():
    """Create schemas, tables and cleanup triggers; dispose the pool afterwards.

    The engine is rebuilt per test because each test runs on its own event loop.
    """
    from db.connection import dispose_engine, get_engine
    from db.models import ATTRIBUTES_SCHEMA, CRM_SCHEMA, Base
    from db.safety_net import install_safety_net

    async with get_engine().begin() as conn:
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {ATTRIBUTES_SCHEMA}"))
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {CRM_SCHEMA}"))
        await conn.run_sync(Base.metadata.create_all)
        await install_safety_net(conn)
    yield
    await dispose_engine()


@pytest.fixture
def tenant_id() -> int:
    """A tenant id no other test run uses."""
    return uuid.uuid4().int >> 80


@pytest.fixture
def instance_id():
    """Factory for entity ids far above anything the identity sequences hand out."""

    def _next() -> int:
        return 10**12 + (uuid.uuid4().int >> 90)

    return _next
