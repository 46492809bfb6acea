"""initial order schema

Revision ID: 3a1f0c9d2b7e
Revises:
Create Date: 2026-09-28
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3a1f0c9d2b7e"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy stocke le NOM des membres d'enum
ENUMS = {
    "role": ("admin", "dealer"),
    "order_status": (
        "pending",
        "approved",
        "rejected",
        "shipped",
        "completed",
        "cancelled",
        "edited_pending_approval",
    ),
    "discount_type": ("percentage", "fixed_amount"),
    "movement_type": ("order_reserved", "order_cancelled_return"),
}


def _enum(name: str) -> sa.Enum:
    # type PG créé une seule fois dans upgrade(), jamais par create_table
    return sa.Enum(*ENUMS[name], name=name).with_variant(
        postgresql.ENUM(*ENUMS[name], name=name, create_type=False), "postgresql"
    )


def _pk() -> sa.Column:
    return sa.Column("id", sa.BigInteger().with_variant(sa.Integer, "sqlite"), primary_key=True)


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name, values in ENUMS.items():
            postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "dealers",
        _pk(),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "products",
        _pk(),
        sa.Column("code", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("stock_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("minimum_order_quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("maximum_order_quantity", sa.Integer()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint("minimum_order_quantity >= 1", name="ck_product_min_order_pos"),
    )

    op.create_table(
        "product_prices",
        _pk(),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="TRY"),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("valid_from", sa.DateTime()),
        sa.Column("valid_until", sa.DateTime()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint("amount >= 0", name="ck_product_price_amount_nonneg"),
    )
    op.create_index("ix_product_prices_product_id", "product_prices", ["product_id"])

    op.create_table(
        "users",
        _pk(),
        sa.Column("dealer_id", sa.BigInteger(), sa.ForeignKey("dealers.id", ondelete="RESTRICT")),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("role", _enum("role"), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "discounts",
        _pk(),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("discount_type", _enum("discount_type"), nullable=False),
        sa.Column("discount_value", sa.Numeric(14, 2), nullable=False),
        sa.Column("start_date", sa.DateTime(), nullable=False),
        sa.Column("end_date", sa.DateTime(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("minimum_order_amount", sa.Numeric(14, 2)),
        sa.Column("maximum_discount_amount", sa.Numeric(14, 2)),
        sa.Column("usage_limit", sa.Integer()),
        sa.Column("usage_limit_per_customer", sa.Integer()),
        sa.Column("description", sa.String(500)),
        sa.CheckConstraint("discount_value >= 0", name="ck_discount_value_nonneg"),
        sa.CheckConstraint("end_date >= start_date", name="ck_discount_date_range"),
    )
    op.create_index("ix_discounts_active_window", "discounts", ["is_active", "start_date", "end_date"])

    op.create_table(
        "discount_products",
        sa.Column("discount_id", sa.BigInteger(), sa.ForeignKey("discounts.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="CASCADE"), primary_key=True),
    )
    op.create_table(
        "discount_dealers",
        sa.Column("discount_id", sa.BigInteger(), sa.ForeignKey("discounts.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("dealer_id", sa.BigInteger(), sa.ForeignKey("dealers.id", ondelete="CASCADE"), primary_key=True),
    )

    op.create_table(
        "orders",
        _pk(),
        sa.Column("order_number", sa.String(64), nullable=False, unique=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("dealer_id", sa.BigInteger(), sa.ForeignKey("dealers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("status", _enum("order_status"), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("discount_id", sa.BigInteger(), sa.ForeignKey("discounts.id", ondelete="SET NULL")),
        sa.Column("discount_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("order_date", sa.DateTime(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("admin_notes", sa.Text()),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("discount_amount >= 0", name="ck_order_discount_nonneg"),
    )
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_index("ix_orders_dealer_id", "orders", ["dealer_id"])
    op.create_index("ix_orders_status_updated", "orders", ["status", "updated_at"])

    op.create_table(
        "order_items",
        _pk(),
        sa.Column("order_id", sa.BigInteger(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "product_price_id",
            sa.BigInteger(),
            sa.ForeignKey("product_prices.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("total_price", sa.Numeric(14, 2), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_order_item_qty_pos"),
        sa.CheckConstraint("unit_price >= 0", name="ck_order_item_unit_price_nonneg"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "discount_usages",
        _pk(),
        sa.Column("discount_id", sa.BigInteger(), sa.ForeignKey("discounts.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("dealer_id", sa.BigInteger(), sa.ForeignKey("dealers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "order_id",
            sa.BigInteger(),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("usage_date", sa.DateTime(), nullable=False),
        sa.Column("discount_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("order_total", sa.Numeric(14, 2), nullable=False),
        sa.Column("order_status", _enum("order_status"), nullable=False),
    )
    op.create_index("ix_discount_usages_discount_id", "discount_usages", ["discount_id"])
    op.create_index("ix_discount_usages_discount_user", "discount_usages", ["discount_id", "user_id"])
    op.create_index("ix_discount_usages_discount_dealer", "discount_usages", ["discount_id", "dealer_id"])

    op.create_table(
        "stock_movements",
        _pk(),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("movement_type", _enum("movement_type"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("stock_after", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.BigInteger(), sa.ForeignKey("orders.id", ondelete="SET NULL")),
        sa.Column("reason", sa.String(255)),
        sa.Column("happened_at", sa.DateTime(), nullable=False),
        sa.Column("created_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.CheckConstraint("quantity > 0", name="ck_stock_movement_qty_pos"),
    )
    op.create_index("ix_stock_movements_product_id", "stock_movements", ["product_id"])
    op.create_index("ix_stock_movements_order_id", "stock_movements", ["order_id"])
    op.create_index("ix_stock_movements_product_time", "stock_movements", ["product_id", "happened_at"])


def downgrade() -> None:
    op.drop_table("stock_movements")
    op.drop_table("discount_usages")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_table("discount_dealers")
    op.drop_table("discount_products")
    op.drop_table("discounts")
    op.drop_table("users")
    op.drop_table("product_prices")
    op.drop_table("products")
    op.drop_table("dealers")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name, values in reversed(list(ENUMS.items())):
            postgresql.ENUM(*values, name=name).drop(bind, checkfirst=True)
