"""Attribute sales to the branch user who rang them up.

Some branch databases already received ``sales.user_id`` from a hand-applied
patch, so the column is only added when it is missing.

Revision ID: 20251210_0002
Revises: 20251202_0001
Create Date: 2025-12-10
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op

from headoffice.tenancy.schema import add_column_if_missing, column_exists

# revision identifiers, used by Alembic.
revision: str = "20251210_0002"
down_revision: Union[str, None] = "20251202_0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    add_column_if_missing(
        bind,
        bind.dialect.name,
        table="sales",
        column="user_id",
        ddl_type="VARCHAR(36)",
        index_name="ix_sales_user_id",
    )


def downgrade() -> None:
    bind = op.get_bind()
    if not column_exists(bind, bind.dialect.name, "sales", "user_id"):
        return
    with op.batch_alter_table("sales") as batch_op:
        batch_op.drop_index("ix_sales_user_id")
        batch_op.drop_column("user_id")
