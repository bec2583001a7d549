"""Attribute schema: definitions, values and the crm entity anchors.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None

_ENTITY_TABLES = (
    "contacts",
    "products",
    "sales",
    "tickets",
    "events",
    "suppliers",
    "financial_transactions",
)

_ENTITY_TYPES = (
    "contact",
    "product",
    "sale",
    "ticket",
    "event",
    "supplier",
    "financial_transaction",
)

_VALUE_TYPES = (
    "short-text",
    "long-text",
    "numeric",
    "url",
    "single-select-options",
    "date",
    "boolean",
)


def _labels(values) -> str:
    return ", ".join(f"'{v}'" for v in values)


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS crm")
    op.execute("CREATE SCHEMA IF NOT EXISTS attributes")

    # ─── CRM entity anchors ──────────────────────────────────────────────────

    for table in _ENTITY_TABLES:
        op.create_table(
            table,
            sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
            sa.Column("tenant_id", sa.BigInteger, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
            schema="crm",
        )
        op.create_index(f"ix_{table}_tenant_id", table, ["tenant_id"], schema="crm")

    # ─── Attributes schema ───────────────────────────────────────────────────

    op.create_table(
        "attribute_definitions",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("tenant_id", sa.BigInteger, nullable=True),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("value_type", sa.String(50), nullable=False),
        sa.Column("options", postgresql.JSONB, nullable=True),
        sa.Column("is_required", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("sort_order", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            f"entity_type IN ({_labels(_ENTITY_TYPES)})",
            name="ck_definition_entity_type",
        ),
        sa.CheckConstraint(
            f"value_type IN ({_labels(_VALUE_TYPES)})",
            name="ck_definition_value_type",
        ),
        sa.CheckConstraint(
            "(value_type = 'single-select-options' AND options IS NOT NULL "
            "AND jsonb_array_length(options) > 0) "
            "OR (value_type <> 'single-select-options' AND options IS NULL)",
            name="ck_definition_options",
        ),
        schema="attributes",
    )
    op.create_index(
        "uq_definition_tenant_name",
        "attribute_definitions",
        ["tenant_id", "entity_type", "name"],
        unique=True,
        schema="attributes",
        postgresql_where=sa.text("tenant_id IS NOT NULL"),
    )
    op.create_index(
        "uq_definition_global_name",
        "attribute_definitions",
        ["entity_type", "name"],
        unique=True,
        schema="attributes",
        postgresql_where=sa.text("tenant_id IS NULL"),
    )
    op.create_index(
        "ix_definition_tenant_entity",
        "attribute_definitions",
        ["tenant_id", "entity_type"],
        schema="attributes",
    )

    op.create_table(
        "attribute_values",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("definition_id", sa.BigInteger, nullable=False),
        # Polymorphic: points into the crm table of the definition's entity_type.
        sa.Column("entity_instance_id", sa.BigInteger, nullable=False),
        sa.Column("text_value", sa.Text, nullable=True),
        sa.Column("numeric_value", sa.Numeric(15, 2), nullable=True),
        sa.Column("date_value", sa.DateTime(timezone=True), nullable=True),
        sa.Column("boolean_value", sa.Boolean, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(
            ["definition_id"],
            ["attributes.attribute_definitions.id"],
            name="fk_value_definition",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("definition_id", "entity_instance_id", name="uq_value_definition_instance"),
        sa.CheckConstraint(
            "num_nonnulls(text_value, numeric_value, date_value, boolean_value) = 1",
            name="ck_value_single_slot",
        ),
        schema="attributes",
    )
    op.create_index("ix_value_entity_instance", "attribute_values", ["entity_instance_id"], schema="attributes")
    op.create_index("ix_value_definition", "attribute_values", ["definition_id"], schema="attributes")


def downgrade() -> None:
    op.drop_index("ix_value_definition", table_name="attribute_values", schema="attributes")
    op.drop_index("ix_value_entity_instance", table_name="attribute_values", schema="attributes")
    op.drop_table("attribute_values", schema="attributes")

    op.drop_index("ix_definition_tenant_entity", table_name="attribute_definitions", schema="attributes")
    op.drop_index("uq_definition_global_name", table_name="attribute_definitions", schema="attributes")
    op.drop_index("uq_definition_tenant_name", table_name="attribute_definitions", schema="attributes")
    op.drop_table("attribute_definitions", schema="attributes")

    for table in reversed(_ENTITY_TABLES):
        op.drop_index(f"ix_{table}_tenant_id", table_name=table, schema="crm")
        op.drop_table(table, schema="crm")
