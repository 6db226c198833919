"""
voicegate.services.role_sync_service — Local Role → Discord Role
=================================================================

The database is the source of truth for a member's role; Discord only
mirrors it.  :func:`sync_user_role` repairs the mirror: strip every
managed role the member holds, then grant the one matching their local
role.  Roles outside the managed set (booster, bots, hand-made roles) are
never touched.

Used after a role change, after the OAuth guild join, and as a manual
repair action (``POST /api/admin/users/{id}/sync-role``, ``/sync-role``).
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine

from voicegate.constants import managed_role_color, managed_role_name
from voicegate.database.engine import run_db
from voicegate.database.models import User, UserRole
from voicegate.services.activity_service import ActivityAction, ActorType, log_activity
from voicegate.services.directory import DirectoryError, ExternalDirectory
from voicegate.services.user_service import get_discord_profile, get_user, set_user_role

logger = logging.getLogger(__name__)


async def sync_user_role(engine: Engine, directory: ExternalDirectory, user_id: int) -> bool:
    """Make the member's Discord roles match their local role.

    Returns ``False`` without raising when the user is unknown, has no
    linked Discord identity, or the final role assignment fails.  Failed
    individual removals are logged and do not stop the loop.
    """
    user = await run_db(get_user, engine, user_id)
    if user is None:
        return False
    profile = await run_db(get_discord_profile, engine, user_id)
    if profile is None:
        logger.info("Role sync skipped for user %s: no Discord profile", user_id)
        return False

    target = managed_role_name(user.role)
    try:
        removal = await directory.remove_all_managed_roles(profile.discord_id)
    except DirectoryError as exc:
        logger.warning("Could not read managed roles of user %s: %s", user_id, exc)
    else:
        if removal.failed:
            logger.warning(
                "Role sync for user %s left %d managed role(s) in place: %s",
                user_id, len(removal.failed), ", ".join(removal.failed),
            )

    try:
        await directory.assign_role(profile.discord_id, target)
    except DirectoryError as exc:
        logger.error(
            "Role sync failed for user %s (discord=%s, role=%s): %s",
            user_id, profile.discord_id, user.role, exc,
        )
        return False

    logger.info("Synced user %s to Discord role %r", user_id, target)
    return True


async def update_user_role(
    engine: Engine,
    directory: ExternalDirectory,
    user_id: int,
    role: UserRole | str,
    *,
    changed_by: int | None = None,
) -> tuple[User | None, bool]:
    """Persist a new role, then mirror it if the member is in the guild.

    Returns ``(user, synced)``; ``user`` is ``None`` if the id is unknown.
    The local change stands even when the Discord sync fails.  Every
    change is written to the activity log, attributed to *changed_by*.
    """
    before = await run_db(get_user, engine, user_id)
    user = await run_db(set_user_role, engine, user_id, role)
    if user is None:
        return None, False

    profile = await run_db(get_discord_profile, engine, user_id)
    synced = False
    if profile is not None and profile.guild_joined:
        synced = await sync_user_role(engine, directory, user_id)
    logger.info("User %s role → %s (discord synced=%s)", user_id, user.role, synced)

    await run_db(
        log_activity,
        engine,
        action_type=ActivityAction.ROLE_CHANGED,
        entity_type="user",
        entity_id=user_id,
        actor_id=changed_by,
        actor_type=ActorType.USER if changed_by is not None else ActorType.SYSTEM,
        details={
            "old_role": before.role if before else None,
            "new_role": user.role,
            "discord_synced": synced,
        },
    )
    return user, synced


async def setup_managed_roles(directory: ExternalDirectory) -> dict[str, list[str]]:
    """Create any managed role the guild is missing.

    Returns ``{"created": [...], "existing": [...], "failed": [...]}``.
    """
    result: dict[str, list[str]] = {"created": [], "existing": [], "failed": []}
    for role in UserRole:
        name = managed_role_name(role)
        try:
            created = await directory.ensure_role(name, managed_role_color(role))
        except DirectoryError as exc:
            logger.warning("Could not create managed role %r: %s", name, exc)
            result["failed"].append(name)
            continue
        result["created" if created else "existing"].append(name)
    return result
