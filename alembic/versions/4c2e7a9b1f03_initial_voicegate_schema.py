"""Initial Voicegate schema

Revision ID: 4c2e7a9b1f03
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4c2e7a9b1f03"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str, **kw) -> sa.Column:
    return sa.Column(
        name, sa.DateTime(timezone=True), server_default=sa.func.now(), **kw
    )


def upgrade() -> None:
    """Create users, tags, events and the access-tracking tables."""

    # --- users / discord_profiles ---
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(100), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("avatar_url", sa.String(500), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="newbie"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "discord_profiles",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False, unique=True,
        ),
        sa.Column("discord_id", sa.BigInteger, nullable=False, unique=True),
        sa.Column("discord_username", sa.String(100), nullable=False),
        sa.Column("discord_avatar", sa.String(100), nullable=True),
        sa.Column("access_token", sa.Text, nullable=True),
        sa.Column("refresh_token", sa.Text, nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("guild_joined", sa.Boolean, server_default=sa.false()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )

    # --- tags / user_tags ---
    op.create_table(
        "tags",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(50), nullable=False, unique=True),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("category", sa.String(20), nullable=False, server_default="skill"),
        sa.Column("color", sa.String(7), nullable=False, server_default="#6B7280"),
        sa.Column("icon", sa.String(50), nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("is_assignable", sa.Boolean, server_default=sa.true()),
        sa.Column("is_earnable", sa.Boolean, server_default=sa.false()),
        _timestamp("created_at"),
    )
    op.create_index("ix_tags_category_active", "tags", ["category", "is_active"])

    op.create_table(
        "user_tags",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "tag_id", sa.Integer,
            sa.ForeignKey("tags.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "assigned_by", sa.Integer,
            sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        ),
        _timestamp("assigned_at"),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("is_primary", sa.Boolean, server_default=sa.false()),
        sa.Column("notes", sa.Text, nullable=True),
        sa.UniqueConstraint("user_id", "tag_id", name="uq_user_tags_user_tag"),
    )
    op.create_index(
        "ix_user_tags_one_primary", "user_tags", ["user_id"],
        unique=True,
        postgresql_where=sa.text("is_primary AND is_active"),
    )
    op.create_index("ix_user_tags_user_active", "user_tags", ["user_id", "is_active"])

    # --- events / event_required_tags ---
    op.create_table(
        "events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("event_type", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voice_channel_id", sa.BigInteger, nullable=False),
        sa.Column("max_participants", sa.Integer, nullable=True),
        sa.Column(
            "created_by", sa.Integer,
            sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_events_status_start", "events", ["status", "start_time"])

    op.create_table(
        "event_required_tags",
        sa.Column(
            "event_id", sa.Integer,
            sa.ForeignKey("events.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "tag_id", sa.Integer,
            sa.ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True,
        ),
    )

    # --- event_participants / event_voice_access ---
    op.create_table(
        "event_participants",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "event_id", sa.Integer,
            sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "user_id", sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="requested"),
        _timestamp("requested_at"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "processed_by", sa.Integer,
            sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("notes", sa.Text, nullable=True),
    )
    # At most one open (requested/granted) row per (event, user)
    op.create_index(
        "ix_event_participants_one_active", "event_participants",
        ["event_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('requested', 'granted')"),
    )
    op.create_index(
        "ix_event_participants_event_status", "event_participants",
        ["event_id", "status"],
    )

    op.create_table(
        "event_voice_access",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "event_id", sa.Integer,
            sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "user_id", sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("discord_user_id", sa.BigInteger, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        _timestamp("granted_at"),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("granted_by_system", sa.Boolean, server_default=sa.true()),
        sa.Column("revoke_reason", sa.String(50), nullable=True),
    )
    op.create_index(
        "ix_event_voice_access_one_active", "event_voice_access",
        ["event_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index(
        "ix_event_voice_access_event_status", "event_voice_access",
        ["event_id", "status"],
    )

    # --- durable auth / throttle state ---
    op.create_table(
        "access_rate_limit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        _timestamp("timestamp", nullable=False),
    )
    op.create_index(
        "ix_access_rate_limit_user_ts", "access_rate_limit_events",
        ["user_id", sa.text("timestamp DESC")],
    )
    op.create_index("ix_access_rate_limit_ts", "access_rate_limit_events", ["timestamp"])

    op.create_table(
        "oauth_states",
        sa.Column("state", sa.String(128), primary_key=True),
        _timestamp("created_at", nullable=False),
    )
    op.create_index("ix_oauth_states_created_at", "oauth_states", ["created_at"])


def downgrade() -> None:
    """Drop every Voicegate table, dependents first."""
    op.drop_table("oauth_states")
    op.drop_table("access_rate_limit_events")
    op.drop_table("event_voice_access")
    op.drop_table("event_participants")
    op.drop_table("event_required_tags")
    op.drop_table("events")
    op.drop_table("user_tags")
    op.drop_table("tags")
    op.drop_table("discord_profiles")
    op.drop_table("users")
