"""Add activity_logs table

Revision ID: 8e3b5d1f6a27
Revises: 4c2e7a9b1f03
Create Date: 2026-10-17 15:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8e3b5d1f6a27"
down_revision: str | Sequence[str] | None = "4c2e7a9b1f03"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the login / role-change audit trail."""
    op.create_table(
        "activity_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("actor_type", sa.String(20), nullable=False, server_default="user"),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(100), nullable=True),
        sa.Column("details", JSONB(), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=True,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_activity_logs_actor_time", "activity_logs", ["actor_id", "created_at"],
    )
    op.create_index(
        "ix_activity_logs_entity", "activity_logs",
        ["entity_type", "entity_id", "created_at"],
    )
    op.create_index(
        "ix_activity_logs_action_time", "activity_logs", ["action_type", "created_at"],
    )


def downgrade() -> None:
    """Drop the audit trail."""
    op.drop_index("ix_activity_logs_action_time", table_name="activity_logs")
    op.drop_index("ix_activity_logs_entity", table_name="activity_logs")
    op.drop_index("ix_activity_logs_actor_time", table_name="activity_logs")
    op.drop_table("activity_logs")
