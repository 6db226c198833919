"""
voicegate.services.user_service — Users & Linked Discord Profiles
==================================================================

Plain persistence for members: lookups, the OAuth login upsert, the
``guild_joined`` flag and role updates.  Role *propagation* to Discord
lives in :mod:`voicegate.services.role_sync_service`.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, select

from voicegate.database.engine import get_session
from voicegate.database.models import DiscordProfile, User, UserRole

logger = logging.getLogger(__name__)


def get_user(engine: Engine, user_id: int) -> User | None:
    with get_session(engine) as session:
        return session.get(User, user_id)


def get_discord_profile(engine: Engine, user_id: int) -> DiscordProfile | None:
    """Linked Discord identity for *user_id*, or ``None`` if never linked."""
    with get_session(engine) as session:
        return session.scalar(
            select(DiscordProfile).where(DiscordProfile.user_id == user_id)
        )


def get_user_by_discord_id(engine: Engine, discord_id: int) -> User | None:
    with get_session(engine) as session:
        return session.scalar(
            select(User)
            .join(DiscordProfile, DiscordProfile.user_id == User.id)
            .where(DiscordProfile.discord_id == discord_id)
        )


def upsert_discord_login(
    engine: Engine,
    *,
    discord_id: int,
    discord_username: str,
    discord_avatar: str | None = None,
    email: str | None = None,
    access_token: str | None = None,
    refresh_token: str | None = None,
    expires_in: int | None = None,
) -> tuple[User, DiscordProfile, bool]:
    """Create or refresh the user behind a Discord OAuth login.

    Returns ``(user, profile, created)``.
    """
    expires_at = (
        datetime.now(UTC) + timedelta(seconds=expires_in) if expires_in else None
    )
    with get_session(engine) as session:
        profile = session.scalar(
            select(DiscordProfile).where(DiscordProfile.discord_id == discord_id)
        )
        created = profile is None
        if created:
            user = User(
                username=discord_username,
                email=email,
                role=UserRole.NEWBIE.value,
            )
            session.add(user)
            session.flush()
            profile = DiscordProfile(user_id=user.id, discord_id=discord_id,
                                     discord_username=discord_username)
            session.add(profile)
        else:
            user = session.get(User, profile.user_id)
            if email and not user.email:
                user.email = email

        profile.discord_username = discord_username
        profile.discord_avatar = discord_avatar
        profile.access_token = access_token
        profile.refresh_token = refresh_token
        profile.token_expires_at = expires_at
        if discord_avatar:
            user.avatar_url = (
                f"https://cdn.discordapp.com/avatars/{discord_id}/{discord_avatar}.png"
            )
        session.flush()
        session.refresh(user)
        session.refresh(profile)

    if created:
        logger.info("New member %s linked to Discord %s", user.id, discord_id)
    return user, profile, created


def mark_guild_joined(engine: Engine, user_id: int, joined: bool = True) -> None:
    with get_session(engine) as session:
        profile = session.scalar(
            select(DiscordProfile).where(DiscordProfile.user_id == user_id)
        )
        if profile is not None:
            profile.guild_joined = joined


def set_user_role(engine: Engine, user_id: int, role: UserRole | str) -> User | None:
    """Persist a new role.  Returns the updated user, or ``None`` if unknown.

    Raises ``ValueError`` for a role outside :class:`UserRole`.
    """
    role = UserRole(role)
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            return None
        user.role = role.value
        session.flush()
        session.refresh(user)
        return user


def user_to_dict(user: User, profile: DiscordProfile | None = None) -> dict:
    data = {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "avatar_url": user.avatar_url,
        "role": user.role,
        "discord": None,
    }
    if profile is not None:
        data["discord"] = {
            "discord_id": str(profile.discord_id),
            "username": profile.discord_username,
            "guild_joined": profile.guild_joined,
        }
    return data
