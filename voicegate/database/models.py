"""
voicegate.database.models — SQLAlchemy 2.0 Data Models
=======================================================

Tables:
- users                    — Platform members and their role
- discord_profiles         — Linked Discord identity (one per user)
- tags                     — Skill / achievement / special labels
- user_tags                — User ↔ tag assignments (history reused on reactivation)
- events                   — Scheduled voice-channel sessions
- event_required_tags      — Tags a user must hold (ALL of them) to join
- event_participants       — One row per access-request lifecycle
- event_voice_access       — External (Discord) grant records
- access_rate_limit_events — Sliding-window access request throttle
- oauth_states             — One-time CSRF tokens for the OAuth callback
- activity_logs            — Audit trail of logins and role changes

The two access tables carry partial unique indexes so that at most one
``requested``/``granted`` participant row and at most one ``active``
voice-access row exist per (event, user).  The database is the
serialization point for concurrent requests on the same pair.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Voicegate ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class UserRole(enum.StrEnum):
    """Platform roles, lowest to highest privilege."""
    NEWBIE = "newbie"
    MEMBER = "member"
    CONTRIBUTOR = "contributor"
    MODERATOR = "moderator"
    ADMIN = "admin"


class TagCategory(enum.StrEnum):
    SKILL = "skill"
    ACHIEVEMENT = "achievement"
    SPECIAL = "special"


class EventType(enum.StrEnum):
    SESSION = "session"
    CONTEST = "contest"
    WORKSHOP = "workshop"
    STUDY_GROUP = "study_group"
    MOCK_INTERVIEW = "mock_interview"
    CODE_REVIEW = "code_review"
    DISCUSSION = "discussion"


class EventStatus(enum.StrEnum):
    """Forward-only: draft → active → {completed, cancelled}."""
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ParticipantStatus(enum.StrEnum):
    REQUESTED = "requested"
    GRANTED = "granted"
    DENIED = "denied"
    REVOKED = "revoked"


class VoiceAccessStatus(enum.StrEnum):
    ACTIVE = "active"
    REVOKED = "revoked"


# ---------------------------------------------------------------------------
# Users — platform members
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), default=None)
    avatar_url: Mapped[str | None] = mapped_column(String(500), default=None)
    role: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UserRole.NEWBIE.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    discord_profile: Mapped[DiscordProfile | None] = relationship(
        back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    tags: Mapped[list[UserTag]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        foreign_keys="UserTag.user_id",
    )

    __table_args__ = (
        Index("ix_users_role", "role"),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.username!r} role={self.role}>"


# ---------------------------------------------------------------------------
# DiscordProfile — linked Discord identity
# ---------------------------------------------------------------------------
class DiscordProfile(Base):
    __tablename__ = "discord_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    discord_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    discord_username: Mapped[str] = mapped_column(String(100), nullable=False)
    discord_avatar: Mapped[str | None] = mapped_column(String(100), default=None)
    access_token: Mapped[str | None] = mapped_column(Text, default=None)
    refresh_token: Mapped[str | None] = mapped_column(Text, default=None)
    token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    guild_joined: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped[User] = relationship(back_populates="discord_profile")

    def __repr__(self) -> str:
        return f"<DiscordProfile user={self.user_id} discord={self.discord_id}>"


# ---------------------------------------------------------------------------
# Tags — soft-deleted only, assignments keep referring to them
# ---------------------------------------------------------------------------
class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    category: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TagCategory.SKILL.value
    )
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#6B7280")
    icon: Mapped[str | None] = mapped_column(String(50), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_assignable: Mapped[bool] = mapped_column(Boolean, default=True)
    is_earnable: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_tags_category_active", "category", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<Tag id={self.id} name={self.name!r} active={self.is_active}>"


# ---------------------------------------------------------------------------
# UserTag — assignment history; (user, tag) is reused when reactivated
# ---------------------------------------------------------------------------
class UserTag(Base):
    __tablename__ = "user_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    tag_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tags.id", ondelete="CASCADE"), nullable=False
    )
    # NULL means self-earned
    assigned_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), default=None
    )
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[str | None] = mapped_column(Text, default=None)

    user: Mapped[User] = relationship(back_populates="tags", foreign_keys=[user_id])
    tag: Mapped[Tag] = relationship()

    __table_args__ = (
        UniqueConstraint("user_id", "tag_id", name="uq_user_tags_user_tag"),
        Index(
            "ix_user_tags_one_primary",
            "user_id",
            unique=True,
            postgresql_where=text("is_primary AND is_active"),
            sqlite_where=text("is_primary = 1 AND is_active = 1"),
        ),
        Index("ix_user_tags_user_active", "user_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserTag user={self.user_id} tag={self.tag_id}"
            f" active={self.is_active} primary={self.is_primary}>"
        )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EventStatus.DRAFT.value
    )
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    voice_channel_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    max_participants: Mapped[int | None] = mapped_column(Integer, default=None)
    created_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    required_tags: Mapped[list[EventRequiredTag]] = relationship(
        back_populates="event", cascade="all, delete-orphan"
    )
    participants: Mapped[list[EventParticipant]] = relationship(
        back_populates="event", cascade="all, delete-orphan"
    )
    voice_access: Mapped[list[EventVoiceAccess]] = relationship(
        back_populates="event", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_events_status_start", "status", "start_time"),
    )

    def __repr__(self) -> str:
        return f"<Event id={self.id} title={self.title!r} status={self.status}>"


class EventRequiredTag(Base):
    __tablename__ = "event_required_tags"

    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), primary_key=True
    )
    tag_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True
    )

    event: Mapped[Event] = relationship(back_populates="required_tags")
    tag: Mapped[Tag] = relationship()

    def __repr__(self) -> str:
        return f"<EventRequiredTag event={self.event_id} tag={self.tag_id}>"


# ---------------------------------------------------------------------------
# EventParticipant — one row per access-request lifecycle
# ---------------------------------------------------------------------------
class EventParticipant(Base):
    __tablename__ = "event_participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ParticipantStatus.REQUESTED.value
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    processed_by: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), default=None
    )
    notes: Mapped[str | None] = mapped_column(Text, default=None)

    event: Mapped[Event] = relationship(back_populates="participants")

    __table_args__ = (
        Index(
            "ix_event_participants_one_active",
            "event_id",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('requested', 'granted')"),
            sqlite_where=text("status IN ('requested', 'granted')"),
        ),
        Index("ix_event_participants_event_status", "event_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<EventParticipant id={self.id} event={self.event_id}"
            f" user={self.user_id} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# EventVoiceAccess — the Discord-facing side of a grant
# ---------------------------------------------------------------------------
class EventVoiceAccess(Base):
    __tablename__ = "event_voice_access"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    discord_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=VoiceAccessStatus.ACTIVE.value
    )
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    granted_by_system: Mapped[bool] = mapped_column(Boolean, default=True)
    revoke_reason: Mapped[str | None] = mapped_column(String(50), default=None)

    event: Mapped[Event] = relationship(back_populates="voice_access")

    __table_args__ = (
        Index(
            "ix_event_voice_access_one_active",
            "event_id",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_event_voice_access_event_status", "event_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<EventVoiceAccess id={self.id} event={self.event_id}"
            f" user={self.user_id} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# AccessRateLimitEvent — durable request events for access throttling
# ---------------------------------------------------------------------------
class AccessRateLimitEvent(Base):
    __tablename__ = "access_rate_limit_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_access_rate_limit_user_ts", "user_id", timestamp.desc()),
        Index("ix_access_rate_limit_ts", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AccessRateLimitEvent user={self.user_id!r} ts={self.timestamp}>"


# ---------------------------------------------------------------------------
# OAuthState — one-time CSRF tokens for OAuth callback validation
# ---------------------------------------------------------------------------
class OAuthState(Base):
    __tablename__ = "oauth_states"

    state: Mapped[str] = mapped_column(String(128), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_oauth_states_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<OAuthState state={self.state[:8]!r}...>"


# ---------------------------------------------------------------------------
# ActivityLog — who did what (logins, role changes)
# ---------------------------------------------------------------------------
class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    actor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False, default="user")
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_activity_logs_actor_time", "actor_id", "created_at"),
        Index("ix_activity_logs_entity", "entity_type", "entity_id", "created_at"),
        Index("ix_activity_logs_action_time", "action_type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ActivityLog id={self.id} actor={self.actor_id} action={self.action_type}>"
