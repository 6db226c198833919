"""
voicegate.api.routes.events — Events & event access endpoints
==============================================================

Members request / revoke their own seat and read their status and
eligibility.  Moderators and admins create, edit, end and delete events
and manage other members' access.  Every access decision is delegated to
:class:`~voicegate.services.access_service.EventAccessCoordinator`.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from voicegate.api.deps import (
    current_user_id,
    get_coordinator,
    get_current_user,
    get_directory,
    get_engine,
    require_staff,
)
from voicegate.api.envelope import ok, result_response
from voicegate.database.engine import run_db
from voicegate.database.models import EventStatus
from voicegate.engine.errors import AccessError, AccessErrorCode, EventValidationError
from voicegate.services import event_service, tag_service
from voicegate.services.access_service import EventAccessCoordinator
from voicegate.services.directory import DirectoryError, ExternalDirectory
from voicegate.services.user_service import user_to_dict

router = APIRouter(prefix="/events", tags=["events"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class EventCreate(BaseModel):
    title: str
    description: str | None = None
    event_type: str
    start_time: datetime
    end_time: datetime | None = None
    voice_channel_id: int
    max_participants: int | None = None
    required_tag_ids: list[int] = Field(default_factory=list)
    status: str = EventStatus.DRAFT.value


class EventUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    event_type: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    voice_channel_id: int | None = None
    max_participants: int | None = None
    required_tag_ids: list[int] | None = None
    status: str | None = None


class DenyRequest(BaseModel):
    notes: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
async def _validate_voice_channel(directory: ExternalDirectory, channel_id: int) -> None:
    try:
        channels = await directory.list_voice_channels()
    except DirectoryError as exc:
        raise AccessError(
            AccessErrorCode.DISCORD_ACCESS_FAILED,
            "Could not verify the voice channel with Discord",
            {"reason": str(exc)},
        ) from exc
    if channel_id not in {c.id for c in channels}:
        raise EventValidationError({"voice_channel_id": "Voice channel not found in the server"})


async def _event_payload(engine: Engine, event) -> dict:
    required = await run_db(tag_service.required_tags_for_event, engine, event.id)
    granted = await run_db(event_service.granted_count, engine, event.id)
    return event_service.event_to_dict(
        event, required_tags=[t.to_dict() for t in required], granted=granted,
    )


async def _load_event(engine: Engine, event_id: int):
    event = await run_db(event_service.get_event, engine, event_id)
    if event is None:
        raise AccessError(AccessErrorCode.EVENT_NOT_FOUND, "Event not found")
    return event


# ---------------------------------------------------------------------------
# Event definitions
# ---------------------------------------------------------------------------
@router.get("")
async def list_events(
    status: str | None = None,
    event_type: str | None = None,
    search: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    _user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    rows, total = await run_db(
        event_service.list_events, engine,
        status=status, event_type=event_type, search=search,
        page=page, page_size=page_size,
    )
    return ok("Events retrieved", {
        "events": [event_service.event_to_dict(e) for e in rows],
        "pagination": {
            "page": page,
            "page_size": page_size,
            "total": total,
            "pages": (total + page_size - 1) // page_size,
        },
    })


@router.post("", status_code=201)
async def create_event(
    body: EventCreate,
    staff: dict = Depends(require_staff),
    engine: Engine = Depends(get_engine),
    directory: ExternalDirectory = Depends(get_directory),
):
    await _validate_voice_channel(directory, body.voice_channel_id)
    event = await run_db(
        event_service.create_event,
        engine,
        title=body.title,
        description=body.description,
        event_type=body.event_type,
        start_time=body.start_time,
        end_time=body.end_time,
        voice_channel_id=body.voice_channel_id,
        max_participants=body.max_participants,
        required_tag_ids=body.required_tag_ids,
        status=body.status,
        created_by=current_user_id(staff),
    )
    return ok("Event created", await _event_payload(engine, event))


@router.get("/{event_id}")
async def get_event(
    event_id: int,
    _user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    event = await _load_event(engine, event_id)
    return ok("Event retrieved", await _event_payload(engine, event))


@router.put("/{event_id}")
async def update_event(
    event_id: int,
    body: EventUpdate,
    staff: dict = Depends(require_staff),
    engine: Engine = Depends(get_engine),
    directory: ExternalDirectory = Depends(get_directory),
    coordinator: EventAccessCoordinator = Depends(get_coordinator),
):
    """Edit an event.  Moving it to completed/cancelled revokes all grants."""
    event = await _load_event(engine, event_id)
    fields = body.model_dump(exclude_unset=True)
    required_tag_ids = fields.pop("required_tag_ids", None)
    target = fields.pop("status", None)

    if "voice_channel_id" in fields and fields["voice_channel_id"] != event.voice_channel_id:
        await _validate_voice_channel(directory, fields["voice_channel_id"])

    if target is not None and target not in {s.value for s in EventStatus}:
        raise EventValidationError({"status": "Unknown event status"})
    if target is not None and target != event.status:
        if not event_service.can_transition(event.status, target):
            raise EventValidationError({
                "status": f"Cannot move event from {event.status} to {target}",
            })
        if target not in (EventStatus.COMPLETED, EventStatus.CANCELLED):
            fields["status"] = target

    if fields or required_tag_ids is not None:
        event = await run_db(
            event_service.update_event, engine, event_id, fields,
            required_tag_ids=required_tag_ids,
        )
        if event is None:
            raise AccessError(AccessErrorCode.EVENT_NOT_FOUND, "Event not found")

    cleanup = None
    if target == EventStatus.COMPLETED:
        cleanup = await coordinator.end_event(event_id, processed_by=current_user_id(staff))
    elif target == EventStatus.CANCELLED:
        cleanup = await coordinator.cancel_event(event_id, processed_by=current_user_id(staff))
    if cleanup is not None:
        event = await _load_event(engine, event_id)

    data = await _event_payload(engine, event)
    if cleanup is not None:
        data["cleanup"] = cleanup.to_dict()
    return ok("Event updated", data)


@router.delete("/{event_id}")
async def delete_event(
    event_id: int,
    staff: dict = Depends(require_staff),
    coordinator: EventAccessCoordinator = Depends(get_coordinator),
):
    """Revoke every grant, then delete the event."""
    stats = await coordinator.delete_event(event_id, processed_by=current_user_id(staff))
    return ok("Event deleted", stats.to_dict())


@router.post("/{event_id}/end")
async def end_event(
    event_id: int,
    staff: dict = Depends(require_staff),
    coordinator: EventAccessCoordinator = Depends(get_coordinator),
):
    """Revoke every grant and mark the event completed.  Safe to repeat."""
    stats = await coordinator.end_event(event_id, processed_by=current_user_id(staff))
    return ok("Event ended", stats.to_dict())


# ---------------------------------------------------------------------------
# Member access
# ---------------------------------------------------------------------------
@router.post("/{event_id}/request-access")
async def request_access(
    event_id: int,
    user: dict = Depends(get_current_user),
    coordinator: EventAccessCoordinator = Depends(get_coordinator),
):
    result = await coordinator.request_access(event_id, current_user_id(user))
    return result_response(result)


@router.delete("/{event_id}/revoke-access")
async def revoke_access(
    event_id: int,
    user: dict = Depends(get_current_user),
    coordinator: EventAccessCoordinator = Depends(get_coordinator),
):
    result = await coordinator.revoke_access(event_id, current_user_id(user))
    return result_response(result)


@router.get("/{event_id}/access-status")
async def access_status(
    event_id: int,
    user: dict = Depends(get_current_user),
    coordinator: EventAccessCoordinator = Depends(get_coordinator),
):
    status = await coordinator.get_user_access_status(event_id, current_user_id(user))
    return ok("Access status retrieved", status)


@router.get("/{event_id}/eligibility")
async def eligibility(
    event_id: int,
    user: dict = Depends(get_current_user),
    coordinator: EventAccessCoordinator = Depends(get_coordinator),
):
    result = await coordinator.check_event_eligibility(event_id, current_user_id(user))
    return ok("Eligibility checked", result.to_dict())


# ---------------------------------------------------------------------------
# Staff access management
# ---------------------------------------------------------------------------
@router.get("/{event_id}/participants")
async def list_participants(
    event_id: int,
    status: str | None = None,
    _staff: dict = Depends(require_staff),
    engine: Engine = Depends(get_engine),
):
    await _load_event(engine, event_id)
    rows = await run_db(event_service.list_participants, engine, event_id, status=status)
    return ok("Participants retrieved", {
        "participants": [
            {**event_service.participant_to_dict(p), "user": user_to_dict(u)}
            for p, u in rows
        ],
    })


@router.post("/{event_id}/participants/{user_id}/grant")
async def grant_participant(
    event_id: int,
    user_id: int,
    staff: dict = Depends(require_staff),
    coordinator: EventAccessCoordinator = Depends(get_coordinator),
):
    result = await coordinator.admin_grant_access(
        event_id, user_id, processed_by=current_user_id(staff),
    )
    return result_response(result)


@router.post("/{event_id}/participants/{user_id}/deny")
async def deny_participant(
    event_id: int,
    user_id: int,
    body: DenyRequest | None = None,
    staff: dict = Depends(require_staff),
    coordinator: EventAccessCoordinator = Depends(get_coordinator),
):
    result = await coordinator.deny_request(
        event_id, user_id,
        processed_by=current_user_id(staff),
        notes=body.notes if body else None,
    )
    return result_response(result)


@router.delete("/{event_id}/participants/{user_id}")
async def revoke_participant(
    event_id: int,
    user_id: int,
    staff: dict = Depends(require_staff),
    coordinator: EventAccessCoordinator = Depends(get_coordinator),
):
    result = await coordinator.admin_revoke_access(
        event_id, user_id, processed_by=current_user_id(staff),
    )
    return result_response(result)
