"""Head office branch registry and migration state.

Revision ID: 20251201_0001
Revises:
Create Date: 2025-12-01
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20251201_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "branches",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("code", sa.String(length=20), nullable=False),
        sa.Column("name_en", sa.String(length=200), nullable=False),
        sa.Column("name_ar", sa.String(length=200), nullable=False),
        sa.Column("database_provider", sa.String(length=20), nullable=False),
        sa.Column("db_server", sa.String(length=255), nullable=False),
        sa.Column("db_port", sa.Integer(), nullable=False),
        sa.Column("db_name", sa.String(length=100), nullable=False),
        sa.Column("db_username", sa.String(length=100), nullable=True),
        sa.Column("db_password", sa.String(length=255), nullable=True),
        sa.Column("db_additional_params", sa.String(length=500), nullable=True),
        sa.Column("trust_server_certificate", sa.Boolean(), nullable=False),
        sa.Column("ssl_mode", sa.String(length=20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_branches_code", "branches", ["code"], unique=True)
    op.create_index("ix_branches_is_active", "branches", ["is_active"], unique=False)

    op.create_table(
        "branch_migration_states",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("branch_id", sa.String(length=36), nullable=False),
        sa.Column("last_migration_applied", sa.String(length=150), nullable=False),
        sa.Column("status", sa.String(length=40), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("error_details", sa.Text(), nullable=True),
        sa.Column("lock_owner_id", sa.String(length=36), nullable=True),
        sa.Column("lock_expires_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_branch_migration_states_branch_id", "branch_migration_states", ["branch_id"], unique=True
    )
    op.create_index(
        "ix_branch_migration_states_status", "branch_migration_states", ["status"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_branch_migration_states_status", table_name="branch_migration_states")
    op.drop_index("ix_branch_migration_states_branch_id", table_name="branch_migration_states")
    op.drop_table("branch_migration_states")
    op.drop_index("ix_branches_is_active", table_name="branches")
    op.drop_index("ix_branches_code", table_name="branches")
    op.drop_table("branches")
