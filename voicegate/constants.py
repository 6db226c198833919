"""
voicegate.constants — Shared Constants & Helpers
=================================================

Single source of truth for the Discord roles Voicegate manages and the
reasons recorded when voice access is revoked.  Import from here instead
of duplicating names or colours in cogs, services, and routes.
"""

from __future__ import annotations

from voicegate.database.models import UserRole

# ---------------------------------------------------------------------------
# Managed Discord roles, one per platform role.
# Every UserRole must appear in both tables (tests/test_role_sync.py).
# ---------------------------------------------------------------------------
MANAGED_ROLE_NAMES: dict[UserRole, str] = {
    UserRole.NEWBIE: "\U0001f331 Newbie",         # 🌱
    UserRole.MEMBER: "\U0001f499 Member",         # 💙
    UserRole.CONTRIBUTOR: "\U0001f49c Contributor",  # 💜
    UserRole.MODERATOR: "\u26a1 Moderator",      # ⚡
    UserRole.ADMIN: "\U0001f451 Admin",           # 👑
}

MANAGED_ROLE_COLORS: dict[UserRole, int] = {
    UserRole.NEWBIE: 0x00FF00,
    UserRole.MEMBER: 0x0099FF,
    UserRole.CONTRIBUTOR: 0x9900FF,
    UserRole.MODERATOR: 0xFFFF00,
    UserRole.ADMIN: 0xFF0000,
}

# Roles allowed to create events and manage access for others.
STAFF_ROLES: frozenset[UserRole] = frozenset({UserRole.MODERATOR, UserRole.ADMIN})


def managed_role_name(role: UserRole | str) -> str:
    """Discord role name for a platform role.

    Raises ``ValueError`` for values outside :class:`UserRole`.
    """
    return MANAGED_ROLE_NAMES[UserRole(role)]


def managed_role_color(role: UserRole | str) -> int:
    return MANAGED_ROLE_COLORS[UserRole(role)]


def is_managed_role_name(name: str) -> bool:
    """True if *name* belongs to the set of roles Voicegate owns in the guild."""
    return name in MANAGED_ROLE_NAMES.values()


# ---------------------------------------------------------------------------
# Revoke reasons stored on event_voice_access.revoke_reason
# ---------------------------------------------------------------------------
REVOKE_USER_REQUESTED = "user_requested"
REVOKE_ADMIN = "admin_revoked"
REVOKE_EVENT_ENDED = "event_ended"
REVOKE_EVENT_DELETED = "event_deleted"

# Reasons that also kick the member out of the voice channel.
DISCONNECT_REASONS: frozenset[str] = frozenset({
    REVOKE_ADMIN,
    REVOKE_EVENT_ENDED,
    REVOKE_EVENT_DELETED,
})
