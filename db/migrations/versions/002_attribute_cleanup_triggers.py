"""Safety-net triggers: remove attribute values when an entity row is deleted.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from alembic import op

from db.models import ENTITY_TYPES
from db.safety_net import install_statements, orphan_cleanup_sql, uninstall_statements

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    for statement in install_statements():
        op.execute(statement)

    # Values orphaned before the triggers existed.
    for entity_type in ENTITY_TYPES:
        op.execute(orphan_cleanup_sql(entity_type))


def downgrade() -> None:
    for statement in uninstall_statements():
        op.execute(statement)
