"""SQLAlchemy 2.0 ORM models for the custom-attribute engine.

Covers 2 schemas:
  - attributes: attribute_definitions, attribute_values
  - crm: contacts, products, sales, tickets, events, suppliers,
         financial_transactions (anchor rows only; the owning services
         hold the rest of each entity's columns)
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    declared_attr,
    mapped_column,
    relationship,
)
from sqlalchemy.sql import func


ATTRIBUTES_SCHEMA = "attributes"
CRM_SCHEMA = "crm"


# ---------------------------------------------------------------------------
# Shared base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Label sets used in the CHECK constraints
# ---------------------------------------------------------------------------

VALUE_TYPES = (
    "short-text",
    "long-text",
    "numeric",
    "url",
    "single-select-options",
    "date",
    "boolean",
)

SELECT_TYPE = "single-select-options"


def _in_check(column: str, labels) -> str:
    return f"{column} IN (" + ", ".join(f"'{label}'" for label in labels) + ")"


# ===========================================================================
# Schema: crm, attribute-bearing entity anchors
# ===========================================================================


class _EntityAnchor:
    """Columns every attribute-bearing entity table shares with this engine."""

    @declared_attr.directive
    def __table_args__(cls):
        return (
            Index(f"ix_{cls.__tablename__}_tenant_id", "tenant_id"),
            {"schema": CRM_SCHEMA},
        )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    tenant_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Contact(_EntityAnchor, Base):
    """crm.contacts"""

    __tablename__ = "contacts"


class Product(_EntityAnchor, Base):
    """crm.products"""

    __tablename__ = "products"


class Sale(_EntityAnchor, Base):
    """crm.sales"""

    __tablename__ = "sales"


class Ticket(_EntityAnchor, Base):
    """crm.tickets"""

    __tablename__ = "tickets"


class Event(_EntityAnchor, Base):
    """crm.events"""

    __tablename__ = "events"


class Supplier(_EntityAnchor, Base):
    """crm.suppliers"""

    __tablename__ = "suppliers"


class FinancialTransaction(_EntityAnchor, Base):
    """crm.financial_transactions"""

    __tablename__ = "financial_transactions"


# Entity-type label -> model. Order is the order triggers are installed in.
ENTITY_MODELS = {
    "contact": Contact,
    "product": Product,
    "sale": Sale,
    "ticket": Ticket,
    "event": Event,
    "supplier": Supplier,
    "financial_transaction": FinancialTransaction,
}

ENTITY_TYPES = tuple(ENTITY_MODELS)

ENTITY_TABLES = {label: model.__tablename__ for label, model in ENTITY_MODELS.items()}


# ===========================================================================
# Schema: attributes
# ===========================================================================


class AttributeDefinition(Base):
    """attributes.attribute_definitions: metadata for one custom field.

    tenant_id NULL marks a global definition visible to every tenant.
    """

    __tablename__ = "attribute_definitions"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        CheckConstraint(
            _in_check("entity_type", ENTITY_TYPES),
            name="ck_definition_entity_type",
        ),
        CheckConstraint(
            _in_check("value_type", VALUE_TYPES),
            name="ck_definition_value_type",
        ),
        CheckConstraint(
            f"(value_type = '{SELECT_TYPE}' AND options IS NOT NULL "
            f"AND jsonb_array_length(options) > 0) "
            f"OR (value_type <> '{SELECT_TYPE}' AND options IS NULL)",
            name="ck_definition_options",
        ),
        # NULL tenant_ids never collide in a plain UNIQUE, so tenant and
        # global names get one partial index each.
        Index(
            "uq_definition_tenant_name",
            "tenant_id",
            "entity_type",
            "name",
            unique=True,
            postgresql_where=text("tenant_id IS NOT NULL"),
        ),
        Index(
            "uq_definition_global_name",
            "entity_type",
            "name",
            unique=True,
            postgresql_where=text("tenant_id IS NULL"),
        ),
        Index("ix_definition_tenant_entity", "tenant_id", "entity_type"),
        {"schema": ATTRIBUTES_SCHEMA},
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    tenant_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    value_type: Mapped[str] = mapped_column(String(50), nullable=False)
    options: Mapped[Optional[list[str]]] = mapped_column(
        JSONB(none_as_null=True), nullable=True
    )
    is_required: Mapped[bool] = mapped_column(
        Boolean, server_default="false", nullable=False
    )
    sort_order: Mapped[int] = mapped_column(Integer, server_default="0", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Values go with their definition; the FK cascade does the work.
    values: Mapped[list["AttributeValue"]] = relationship(
        "AttributeValue",
        back_populates="definition",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        scope = "global" if self.tenant_id is None else f"tenant={self.tenant_id}"
        return f"<AttributeDefinition {self.id} {self.entity_type}.{self.name!r} {scope}>"


class AttributeValue(Base):
    """attributes.attribute_values: one typed value for one entity instance.

    entity_instance_id is polymorphic: its parent table is the one mapped to
    the owning definition's entity_type, so there is no FK on it.
    """

    __tablename__ = "attribute_values"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        UniqueConstraint(
            "definition_id", "entity_instance_id", name="uq_value_definition_instance"
        ),
        CheckConstraint(
            "num_nonnulls(text_value, numeric_value, date_value, boolean_value) = 1",
            name="ck_value_single_slot",
        ),
        Index("ix_value_entity_instance", "entity_instance_id"),
        Index("ix_value_definition", "definition_id"),
        {"schema": ATTRIBUTES_SCHEMA},
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    definition_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            f"{ATTRIBUTES_SCHEMA}.attribute_definitions.id",
            ondelete="CASCADE",
            name="fk_value_definition",
        ),
        nullable=False,
    )
    entity_instance_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    text_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    numeric_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    date_value: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    boolean_value: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    definition: Mapped["AttributeDefinition"] = relationship(
        "AttributeDefinition", back_populates="values"
    )

    def __repr__(self) -> str:
        return (
            f"<AttributeValue def={self.definition_id} "
            f"instance={self.entity_instance_id}>"
        )
