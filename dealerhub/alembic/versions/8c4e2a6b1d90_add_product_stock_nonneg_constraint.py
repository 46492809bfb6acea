"""add product stock nonneg constraint

Revision ID: 8c4e2a6b1d90
Revises: 3a1f0c9d2b7e
Create Date: 2026-10-02
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8c4e2a6b1d90"
down_revision: Union[str, Sequence[str], None] = "3a1f0c9d2b7e"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TABLE_NAME = "products"

CK_STOCK = "ck_product_stock_nonneg"


def _add_check_if_missing(constraint_name: str, check_sql: str) -> None:
    # Idempotent Postgres
    op.execute(
        f"""
        DO $$
        BEGIN
            IF NOT EXISTS (
                SELECT 1
                FROM pg_constraint c
                JOIN pg_class t ON t.oid = c.conrelid
                WHERE t.relname = '{TABLE_NAME}'
                  AND c.conname = '{constraint_name}'
            ) THEN
                ALTER TABLE {TABLE_NAME}
                ADD CONSTRAINT {constraint_name}
                CHECK ({check_sql});
            END IF;
        END $$;
        """
    )


def upgrade() -> None:
    # --- SAFETY FIX : un stock négatif hérité ferait échouer la contrainte
    op.execute(
        f"""
        UPDATE {TABLE_NAME}
        SET stock_quantity = 0
        WHERE stock_quantity < 0;
        """
    )

    if op.get_bind().dialect.name == "postgresql":
        _add_check_if_missing(CK_STOCK, "stock_quantity >= 0")
    else:
        with op.batch_alter_table(TABLE_NAME) as batch:
            batch.create_check_constraint(CK_STOCK, "stock_quantity >= 0")


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        op.execute(f"ALTER TABLE {TABLE_NAME} DROP CONSTRAINT IF EXISTS {CK_STOCK};")
    else:
        with op.batch_alter_table(TABLE_NAME) as batch:
            batch.drop_constraint(CK_STOCK, type_="check")
