"""
voicegate.services.event_service — Events, Participants & Voice Access
=======================================================================

**Why this file exists:**
This is the persistence side of the access workflow.  It owns event
definitions (with their required tag set) and the two per-user records:

- ``event_participants`` — the logical request (requested → granted /
  denied / revoked).  Partial unique index: one requested-or-granted row
  per (event, user).
- ``event_voice_access`` — the Discord-facing grant (active → revoked).
  Partial unique index: one active row per (event, user).

Nothing here talks to Discord.  The access coordinator
(:mod:`voicegate.services.access_service`) sequences these writes around
the Discord calls; every function is synchronous and meant to be called
through :func:`~voicegate.database.engine.run_db`.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from voicegate.database.engine import get_session
from voicegate.database.models import (
    Event,
    EventParticipant,
    EventRequiredTag,
    EventStatus,
    EventType,
    EventVoiceAccess,
    ParticipantStatus,
    Tag,
    User,
    VoiceAccessStatus,
)
from voicegate.engine.errors import EventValidationError

logger = logging.getLogger(__name__)

# Forward-only lifecycle; completed and cancelled are terminal.
ALLOWED_TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    EventStatus.DRAFT: frozenset({EventStatus.ACTIVE, EventStatus.CANCELLED}),
    EventStatus.ACTIVE: frozenset({EventStatus.COMPLETED, EventStatus.CANCELLED}),
    EventStatus.COMPLETED: frozenset(),
    EventStatus.CANCELLED: frozenset(),
}

_ACTIVE_PARTICIPANT = (ParticipantStatus.REQUESTED.value, ParticipantStatus.GRANTED.value)

_UPDATABLE_FIELDS = frozenset({
    "title", "description", "event_type", "status", "start_time",
    "end_time", "voice_channel_id", "max_participants",
})


class GrantOutcome(enum.StrEnum):
    GRANTED = "granted"
    FULL = "full"      # seat taken by a concurrent grant
    STALE = "stale"    # request no longer pending (revoked/denied meanwhile)


def _now() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return EventStatus(target) in ALLOWED_TRANSITIONS[EventStatus(current)]


def validate_event_fields(data: dict[str, Any], *, partial: bool = False) -> dict[str, str]:
    """Field-level checks that need no database.  Returns field → message."""
    errors: dict[str, str] = {}

    if not partial or "title" in data:
        title = (data.get("title") or "").strip()
        if len(title) < 3:
            errors["title"] = "Title must be at least 3 characters"
        elif len(title) > 255:
            errors["title"] = "Title must be at most 255 characters"

    if not partial or "event_type" in data:
        if data.get("event_type") not in {t.value for t in EventType}:
            errors["event_type"] = (
                "Event type must be one of: " + ", ".join(t.value for t in EventType)
            )

    if "status" in data and data["status"] not in {s.value for s in EventStatus}:
        errors["status"] = "Unknown event status"

    if not partial or "start_time" in data:
        if not isinstance(data.get("start_time"), datetime):
            errors["start_time"] = "Start time is required"

    start, end = data.get("start_time"), data.get("end_time")
    if isinstance(start, datetime) and isinstance(end, datetime):
        if _as_utc(end) <= _as_utc(start):
            errors["end_time"] = "End time must be after start time"

    if not partial or "voice_channel_id" in data:
        if not data.get("voice_channel_id"):
            errors["voice_channel_id"] = "Voice channel is required"

    max_p = data.get("max_participants")
    if max_p is not None and (not isinstance(max_p, int) or max_p < 1):
        errors["max_participants"] = "Max participants must be a positive number"

    return errors


def _check_required_tags(session: Session, tag_ids: Iterable[int]) -> list[int]:
    ids = list(dict.fromkeys(tag_ids))
    if not ids:
        return []
    found = set(session.scalars(
        select(Tag.id).where(Tag.id.in_(ids), Tag.is_active.is_(True))
    ).all())
    unknown = [i for i in ids if i not in found]
    if unknown:
        raise EventValidationError({
            "required_tag_ids": f"Unknown or inactive tags: {', '.join(map(str, unknown))}",
        })
    return ids


# ---------------------------------------------------------------------------
# Event definitions
# ---------------------------------------------------------------------------
def create_event(
    engine: Engine,
    *,
    title: str,
    event_type: str,
    start_time: datetime,
    voice_channel_id: int,
    description: str | None = None,
    end_time: datetime | None = None,
    max_participants: int | None = None,
    required_tag_ids: Iterable[int] = (),
    status: str = EventStatus.DRAFT.value,
    created_by: int | None = None,
) -> Event:
    """Create an event with its required tag set.

    Only ``draft`` or ``active`` are accepted as an initial status.

    Raises
    ------
    EventValidationError
        Field errors, or required tags that don't exist / are inactive.
    """
    data = {
        "title": title, "event_type": event_type, "start_time": start_time,
        "end_time": end_time, "voice_channel_id": voice_channel_id,
        "max_participants": max_participants, "status": status,
    }
    errors = validate_event_fields(data)
    if status not in (EventStatus.DRAFT, EventStatus.ACTIVE):
        errors.setdefault("status", "New events start as draft or active")
    if errors:
        raise EventValidationError(errors)

    with get_session(engine) as session:
        tag_ids = _check_required_tags(session, required_tag_ids)
        event = Event(
            title=title.strip(),
            description=description,
            event_type=event_type,
            status=status,
            start_time=start_time,
            end_time=end_time,
            voice_channel_id=voice_channel_id,
            max_participants=max_participants,
            created_by=created_by,
        )
        session.add(event)
        session.flush()
        for tag_id in tag_ids:
            session.add(EventRequiredTag(event_id=event.id, tag_id=tag_id))
        session.flush()
        session.refresh(event)

    logger.info("Created event %s %r (%s)", event.id, event.title, event.status)
    return event


def get_event(engine: Engine, event_id: int) -> Event | None:
    with get_session(engine) as session:
        return session.get(Event, event_id)


def list_events(
    engine: Engine,
    *,
    status: str | None = None,
    event_type: str | None = None,
    search: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Event], int]:
    """One page of events (soonest first) and the total matching count."""
    filters = []
    if status:
        filters.append(Event.status == status)
    if event_type:
        filters.append(Event.event_type == event_type)
    if search:
        pattern = f"%{search.lower()}%"
        filters.append(or_(
            func.lower(Event.title).like(pattern),
            func.lower(Event.description).like(pattern),
        ))

    with get_session(engine) as session:
        total = session.scalar(select(func.count(Event.id)).where(*filters)) or 0
        rows = session.scalars(
            select(Event)
            .where(*filters)
            .order_by(Event.start_time.asc(), Event.id.asc())
            .offset(max(0, page - 1) * page_size)
            .limit(page_size)
        ).all()
        return list(rows), total


def update_event(
    engine: Engine,
    event_id: int,
    fields: dict[str, Any],
    *,
    required_tag_ids: Iterable[int] | None = None,
) -> Event | None:
    """Apply a partial update.  ``required_tag_ids`` replaces the whole set.

    Status changes must follow :data:`ALLOWED_TRANSITIONS`; ending an
    active event should go through the access coordinator so grants are
    revoked first.

    Returns ``None`` if the event doesn't exist.
    """
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise EventValidationError({k: "Field cannot be updated" for k in sorted(unknown)})
    errors = validate_event_fields(fields, partial=True)
    if errors:
        raise EventValidationError(errors)

    with get_session(engine) as session:
        event = session.get(Event, event_id)
        if event is None:
            return None

        if "status" in fields and not can_transition(event.status, fields["status"]):
            raise EventValidationError({
                "status": f"Cannot move event from {event.status} to {fields['status']}",
            })
        start = fields.get("start_time", event.start_time)
        end = fields.get("end_time", event.end_time)
        if end is not None and _as_utc(end) <= _as_utc(start):
            raise EventValidationError({"end_time": "End time must be after start time"})

        for key, value in fields.items():
            setattr(event, key, value.strip() if key == "title" else value)

        if required_tag_ids is not None:
            tag_ids = _check_required_tags(session, required_tag_ids)
            session.execute(
                delete(EventRequiredTag).where(EventRequiredTag.event_id == event_id)
            )
            for tag_id in tag_ids:
                session.add(EventRequiredTag(event_id=event_id, tag_id=tag_id))

        session.flush()
        session.refresh(event)

    logger.info("Updated event %s: %s", event_id, sorted(fields))
    return event


def finish_event(
    engine: Engine, event_id: int, status: EventStatus = EventStatus.COMPLETED,
) -> bool:
    """Move the event into a terminal *status* if its current one allows it.

    Conditional update, so concurrent or repeated calls are harmless.
    Returns True only for the call that made the change.
    """
    sources = [s.value for s, targets in ALLOWED_TRANSITIONS.items() if status in targets]
    with get_session(engine) as session:
        result = session.execute(
            update(Event)
            .where(Event.id == event_id, Event.status.in_(sources))
            .values(status=status.value)
        )
        return result.rowcount > 0


def delete_event(engine: Engine, event_id: int) -> bool:
    """Delete the event and (by cascade) its tags, participants and grants."""
    with get_session(engine) as session:
        event = session.get(Event, event_id)
        if event is None:
            return False
        session.delete(event)
    logger.info("Deleted event %s", event_id)
    return True


def required_tag_ids(engine: Engine, event_id: int) -> list[int]:
    with get_session(engine) as session:
        return list(session.scalars(
            select(EventRequiredTag.tag_id).where(EventRequiredTag.event_id == event_id)
        ).all())


def expired_active_events(engine: Engine, now: datetime | None = None) -> list[int]:
    """Ids of active events whose ``end_time`` has passed."""
    now = now or _now()
    with get_session(engine) as session:
        return list(session.scalars(
            select(Event.id).where(
                Event.status == EventStatus.ACTIVE.value,
                Event.end_time.is_not(None),
                Event.end_time < now,
            ).order_by(Event.end_time)
        ).all())


# ---------------------------------------------------------------------------
# Participation reads
# ---------------------------------------------------------------------------
def _granted_count(session: Session, event_id: int) -> int:
    return session.scalar(
        select(func.count(EventParticipant.id)).where(
            EventParticipant.event_id == event_id,
            EventParticipant.status == ParticipantStatus.GRANTED.value,
        )
    ) or 0


def granted_count(engine: Engine, event_id: int) -> int:
    with get_session(engine) as session:
        return _granted_count(session, event_id)


def _active_participant(session: Session, event_id: int, user_id: int) -> EventParticipant | None:
    return session.scalar(
        select(EventParticipant).where(
            EventParticipant.event_id == event_id,
            EventParticipant.user_id == user_id,
            EventParticipant.status.in_(_ACTIVE_PARTICIPANT),
        )
    )


def _active_voice_access(session: Session, event_id: int, user_id: int) -> EventVoiceAccess | None:
    return session.scalar(
        select(EventVoiceAccess).where(
            EventVoiceAccess.event_id == event_id,
            EventVoiceAccess.user_id == user_id,
            EventVoiceAccess.status == VoiceAccessStatus.ACTIVE.value,
        )
    )


def get_active_participant(engine: Engine, event_id: int, user_id: int) -> EventParticipant | None:
    """The requested-or-granted row for the pair, if any."""
    with get_session(engine) as session:
        return _active_participant(session, event_id, user_id)


def get_active_voice_access(engine: Engine, event_id: int, user_id: int) -> EventVoiceAccess | None:
    with get_session(engine) as session:
        return _active_voice_access(session, event_id, user_id)


def latest_participant(engine: Engine, event_id: int, user_id: int) -> EventParticipant | None:
    """Most recent request row for the pair, whatever its status."""
    with get_session(engine) as session:
        return session.scalar(
            select(EventParticipant)
            .where(EventParticipant.event_id == event_id, EventParticipant.user_id == user_id)
            .order_by(EventParticipant.id.desc())
            .limit(1)
        )


def active_voice_grants(engine: Engine, event_id: int) -> list[EventVoiceAccess]:
    with get_session(engine) as session:
        return list(session.scalars(
            select(EventVoiceAccess).where(
                EventVoiceAccess.event_id == event_id,
                EventVoiceAccess.status == VoiceAccessStatus.ACTIVE.value,
            ).order_by(EventVoiceAccess.id)
        ).all())


def list_participants(
    engine: Engine, event_id: int, *, status: str | None = None,
) -> list[tuple[EventParticipant, User]]:
    with get_session(engine) as session:
        stmt = (
            select(EventParticipant, User)
            .join(User, User.id == EventParticipant.user_id)
            .where(EventParticipant.event_id == event_id)
            .order_by(EventParticipant.requested_at.desc(), EventParticipant.id.desc())
        )
        if status:
            stmt = stmt.where(EventParticipant.status == status)
        return [(p, u) for p, u in session.execute(stmt).all()]


# ---------------------------------------------------------------------------
# Participation writes (sequenced by the access coordinator)
# ---------------------------------------------------------------------------
def open_request(
    engine: Engine, event_id: int, user_id: int,
) -> tuple[EventParticipant | None, bool]:
    """Return the pair's active request, inserting a ``requested`` row if none.

    Returns ``(participant, created)``, or ``(None, False)`` once the event
    is gone or no longer active.  A concurrent insert for the same pair
    trips the partial unique index; the winner's row is returned.
    """
    try:
        with get_session(engine) as session:
            event = session.get(Event, event_id, with_for_update=True)
            if event is None or event.status != EventStatus.ACTIVE:
                return None, False
            existing = _active_participant(session, event_id, user_id)
            if existing is not None:
                return existing, False
            row = EventParticipant(
                event_id=event_id,
                user_id=user_id,
                status=ParticipantStatus.REQUESTED.value,
                requested_at=_now(),
            )
            session.add(row)
            session.flush()
            return row, True
    except IntegrityError:
        logger.info("Concurrent access request for event=%s user=%s", event_id, user_id)
        with get_session(engine) as session:
            existing = _active_participant(session, event_id, user_id)
        if existing is None:
            raise
        return existing, False


def record_grant(
    engine: Engine,
    participant_id: int,
    *,
    discord_user_id: int,
    granted_by_system: bool = True,
    processed_by: int | None = None,
) -> GrantOutcome:
    """Mark a pending request granted and upsert its active voice-access row.

    Status and capacity are re-checked under a row lock on the event.  A
    request whose event ended meanwhile is revoked (``STALE``); if the last
    seat went to someone else the request is denied (``FULL``).
    """
    with get_session(engine) as session:
        participant = session.get(EventParticipant, participant_id)
        if participant is None:
            return GrantOutcome.STALE
        event = session.get(Event, participant.event_id, with_for_update=True)
        session.refresh(participant)
        if participant.status == ParticipantStatus.GRANTED:
            return GrantOutcome.GRANTED
        if participant.status != ParticipantStatus.REQUESTED:
            return GrantOutcome.STALE

        now = _now()
        if event is None or event.status != EventStatus.ACTIVE:
            participant.status = ParticipantStatus.REVOKED.value
            participant.processed_at = now
            participant.processed_by = processed_by
            participant.notes = "Event is no longer active"
            return GrantOutcome.STALE

        if (
            event.max_participants is not None
            and _granted_count(session, event.id) >= event.max_participants
        ):
            participant.status = ParticipantStatus.DENIED.value
            participant.processed_at = now
            participant.processed_by = processed_by
            participant.notes = "Event reached capacity"
            return GrantOutcome.FULL

        participant.status = ParticipantStatus.GRANTED.value
        participant.processed_at = now
        participant.processed_by = processed_by

        access = _active_voice_access(session, event.id, participant.user_id)
        if access is None:
            access = EventVoiceAccess(
                event_id=event.id,
                user_id=participant.user_id,
                status=VoiceAccessStatus.ACTIVE.value,
            )
            session.add(access)
        access.discord_user_id = discord_user_id
        access.granted_at = now
        access.granted_by_system = granted_by_system
        return GrantOutcome.GRANTED


def record_revoke(
    engine: Engine,
    event_id: int,
    user_id: int,
    *,
    reason: str,
    processed_by: int | None = None,
) -> dict[str, int]:
    """Move the pair's active grant and active request to ``revoked``.

    Conditional updates, so a second call changes nothing.
    """
    now = _now()
    with get_session(engine) as session:
        voice = session.execute(
            update(EventVoiceAccess)
            .where(
                EventVoiceAccess.event_id == event_id,
                EventVoiceAccess.user_id == user_id,
                EventVoiceAccess.status == VoiceAccessStatus.ACTIVE.value,
            )
            .values(
                status=VoiceAccessStatus.REVOKED.value,
                revoked_at=now,
                revoke_reason=reason,
            )
        ).rowcount
        participants = session.execute(
            update(EventParticipant)
            .where(
                EventParticipant.event_id == event_id,
                EventParticipant.user_id == user_id,
                EventParticipant.status.in_(_ACTIVE_PARTICIPANT),
            )
            .values(
                status=ParticipantStatus.REVOKED.value,
                processed_at=now,
                processed_by=processed_by,
            )
        ).rowcount
    return {"voice_access": voice, "participants": participants}


def deny_request(
    engine: Engine,
    event_id: int,
    user_id: int,
    *,
    processed_by: int | None = None,
    notes: str | None = None,
) -> bool:
    """``requested → denied``.  Granted rows are untouched (revoke those)."""
    with get_session(engine) as session:
        result = session.execute(
            update(EventParticipant)
            .where(
                EventParticipant.event_id == event_id,
                EventParticipant.user_id == user_id,
                EventParticipant.status == ParticipantStatus.REQUESTED.value,
            )
            .values(
                status=ParticipantStatus.DENIED.value,
                processed_at=_now(),
                processed_by=processed_by,
                notes=notes,
            )
        )
        return result.rowcount > 0


def close_pending_requests(
    engine: Engine, event_id: int, *, reason: str, processed_by: int | None = None,
) -> int:
    """Revoke every still-``requested`` row of an ending event."""
    with get_session(engine) as session:
        return session.execute(
            update(EventParticipant)
            .where(
                EventParticipant.event_id == event_id,
                EventParticipant.status == ParticipantStatus.REQUESTED.value,
            )
            .values(
                status=ParticipantStatus.REVOKED.value,
                processed_at=_now(),
                processed_by=processed_by,
                notes=reason,
            )
        ).rowcount


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------
def _iso(value: datetime | None) -> str | None:
    return _as_utc(value).isoformat() if value else None


def event_to_dict(event: Event, *, required_tags: list[dict] | None = None,
                  granted: int | None = None) -> dict:
    data = {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "event_type": event.event_type,
        "status": event.status,
        "start_time": _iso(event.start_time),
        "end_time": _iso(event.end_time),
        "voice_channel_id": str(event.voice_channel_id),
        "max_participants": event.max_participants,
        "created_by": event.created_by,
    }
    if required_tags is not None:
        data["required_tags"] = required_tags
    if granted is not None:
        data["participant_count"] = granted
    return data


def participant_to_dict(row: EventParticipant) -> dict:
    return {
        "id": row.id,
        "event_id": row.event_id,
        "user_id": row.user_id,
        "status": row.status,
        "requested_at": _iso(row.requested_at),
        "processed_at": _iso(row.processed_at),
        "processed_by": row.processed_by,
        "notes": row.notes,
    }


def voice_access_to_dict(row: EventVoiceAccess) -> dict:
    return {
        "id": row.id,
        "event_id": row.event_id,
        "user_id": row.user_id,
        "discord_user_id": str(row.discord_user_id),
        "status": row.status,
        "granted_at": _iso(row.granted_at),
        "revoked_at": _iso(row.revoked_at),
        "granted_by_system": row.granted_by_system,
        "revoke_reason": row.revoke_reason,
    }
