"""
voicegate.services.activity_service — Activity Audit Trail
===========================================================

Append-only record of who did what: successful logins and staff role
changes.  Writing an entry never fails the action being audited; a
database error is logged and :func:`log_activity` returns ``False``.
"""

from __future__ import annotations

import enum
import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.exc import SQLAlchemyError

from voicegate.database.engine import get_session
from voicegate.database.models import ActivityLog

logger = logging.getLogger(__name__)


class ActorType(enum.StrEnum):
    USER = "user"
    SYSTEM = "system"


class ActivityAction(enum.StrEnum):
    LOGIN_SUCCESS = "login_success"
    ROLE_CHANGED = "role_changed"


def log_activity(
    engine: Engine,
    *,
    action_type: ActivityAction | str,
    entity_type: str,
    entity_id: int | str | None = None,
    actor_id: int | None = None,
    actor_type: ActorType | str = ActorType.USER,
    details: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> bool:
    """Insert one activity row.  Returns ``False`` if the write failed."""
    try:
        with get_session(engine) as session:
            session.add(ActivityLog(
                actor_id=actor_id,
                actor_type=str(actor_type),
                action_type=str(action_type),
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent[:500] if user_agent else None,
            ))
    except SQLAlchemyError:
        logger.exception(
            "Failed to log activity %s on %s %s (actor=%s)",
            action_type, entity_type, entity_id, actor_id,
        )
        return False

    logger.info(
        "Activity logged: %s on %s %s (actor=%s)",
        action_type, entity_type, entity_id, actor_id,
    )
    return True


def list_activity(
    engine: Engine,
    *,
    actor_id: int | None = None,
    action_type: str | None = None,
    entity_type: str | None = None,
    since: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[ActivityLog]:
    """Newest entries first, optionally filtered."""
    filters = []
    if actor_id is not None:
        filters.append(ActivityLog.actor_id == actor_id)
    if action_type:
        filters.append(ActivityLog.action_type == action_type)
    if entity_type:
        filters.append(ActivityLog.entity_type == entity_type)
    if since is not None:
        filters.append(ActivityLog.created_at >= since)

    with get_session(engine) as session:
        return list(session.scalars(
            select(ActivityLog)
            .where(*filters)
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .offset(max(0, offset))
            .limit(limit)
        ).all())


def activity_to_dict(row: ActivityLog) -> dict:
    created = row.created_at
    if created is not None and created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    return {
        "id": row.id,
        "actor_id": row.actor_id,
        "actor_type": row.actor_type,
        "action_type": row.action_type,
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "details": row.details,
        "ip_address": row.ip_address,
        "user_agent": row.user_agent,
        "created_at": created.isoformat() if created else None,
    }
