"""
voicegate.api.routes.admin — Staff endpoints for tags, roles & Discord
=======================================================================

Tag management and assignment are open to moderators and admins; role
changes and the activity log are admin-only.  Discord helpers let the dashboard pick a voice
channel and (re)create the managed roles.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from voicegate.api.deps import (
    current_user_id,
    get_directory,
    get_engine,
    require_admin,
    require_staff,
)
from voicegate.api.envelope import ok
from voicegate.database.engine import run_db
from voicegate.database.models import UserRole
from voicegate.engine.errors import AccessError, AccessErrorCode
from voicegate.services import activity_service, role_sync_service, tag_service
from voicegate.services.directory import DirectoryError, ExternalDirectory
from voicegate.services.tag_service import TagAssignmentError
from voicegate.services.user_service import get_discord_profile, user_to_dict

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class TagCreate(BaseModel):
    name: str
    display_name: str
    category: str = "skill"
    color: str = "#6B7280"
    icon: str | None = None
    description: str | None = None
    is_assignable: bool = True
    is_earnable: bool = False


class TagAssign(BaseModel):
    tag_id: int
    is_primary: bool = False
    notes: str | None = None


class BulkAssign(BaseModel):
    user_ids: list[int] = Field(min_length=1)


class RoleUpdate(BaseModel):
    role: UserRole


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------
@router.post("/tags", status_code=201)
async def create_tag(
    body: TagCreate,
    _staff: dict = Depends(require_staff),
    engine: Engine = Depends(get_engine),
):
    try:
        tag = await run_db(tag_service.create_tag, engine, **body.model_dump())
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return ok("Tag created", tag_service.tag_to_dict(tag))


@router.delete("/tags/{tag_id}")
async def deactivate_tag(
    tag_id: int,
    _staff: dict = Depends(require_staff),
    engine: Engine = Depends(get_engine),
):
    if not await run_db(tag_service.deactivate_tag, engine, tag_id):
        raise HTTPException(404, "Tag not found")
    return ok("Tag deactivated")


@router.post("/tags/{tag_id}/bulk-assign")
async def bulk_assign(
    tag_id: int,
    body: BulkAssign,
    staff: dict = Depends(require_staff),
    engine: Engine = Depends(get_engine),
):
    result = await run_db(
        tag_service.bulk_assign_tag, engine, body.user_ids, tag_id,
        assigned_by=current_user_id(staff),
    )
    return ok("Bulk assignment finished", result.to_dict())


@router.post("/users/{user_id}/tags", status_code=201)
async def assign_tag(
    user_id: int,
    body: TagAssign,
    staff: dict = Depends(require_staff),
    engine: Engine = Depends(get_engine),
):
    try:
        await run_db(
            tag_service.assign_tag, engine, user_id, body.tag_id,
            assigned_by=current_user_id(staff),
            is_primary=body.is_primary,
            notes=body.notes,
        )
    except TagAssignmentError as exc:
        raise HTTPException(400, str(exc))
    held = await run_db(tag_service.active_tags_for_user, engine, user_id)
    return ok("Tag assigned", {"tags": [t.to_dict() for t in held]})


@router.delete("/users/{user_id}/tags/{tag_id}")
async def remove_tag(
    user_id: int,
    tag_id: int,
    _staff: dict = Depends(require_staff),
    engine: Engine = Depends(get_engine),
):
    if not await run_db(tag_service.remove_tag, engine, user_id, tag_id):
        raise HTTPException(404, "User does not hold this tag")
    return ok("Tag removed")


@router.put("/users/{user_id}/tags/{tag_id}/primary")
async def set_primary_tag(
    user_id: int,
    tag_id: int,
    _staff: dict = Depends(require_staff),
    engine: Engine = Depends(get_engine),
):
    if not await run_db(tag_service.set_primary_tag, engine, user_id, tag_id):
        raise HTTPException(404, "User does not hold this tag")
    return ok("Primary tag updated")


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------
@router.put("/users/{user_id}/role")
async def update_role(
    user_id: int,
    body: RoleUpdate,
    admin: dict = Depends(require_admin),
    engine: Engine = Depends(get_engine),
    directory: ExternalDirectory = Depends(get_directory),
):
    if user_id == current_user_id(admin):
        raise HTTPException(400, "You cannot change your own role")
    user, synced = await role_sync_service.update_user_role(
        engine, directory, user_id, body.role, changed_by=current_user_id(admin),
    )
    if user is None:
        raise AccessError(AccessErrorCode.USER_NOT_FOUND, "User not found")
    profile = await run_db(get_discord_profile, engine, user_id)
    return ok("Role updated", {"user": user_to_dict(user, profile), "discord_synced": synced})


@router.post("/users/{user_id}/sync-role")
async def sync_role(
    user_id: int,
    _staff: dict = Depends(require_staff),
    engine: Engine = Depends(get_engine),
    directory: ExternalDirectory = Depends(get_directory),
):
    """Manual repair: re-mirror the member's local role onto Discord."""
    synced = await role_sync_service.sync_user_role(engine, directory, user_id)
    return ok("Role sync finished", {"synced": synced})


# ---------------------------------------------------------------------------
# Activity log
# ---------------------------------------------------------------------------
@router.get("/activity")
async def list_activity(
    actor_id: int | None = None,
    action_type: str | None = None,
    entity_type: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _admin: dict = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    """Newest audit entries first (logins, role changes)."""
    rows = await run_db(
        activity_service.list_activity, engine,
        actor_id=actor_id, action_type=action_type, entity_type=entity_type,
        limit=limit, offset=offset,
    )
    return ok("Activity retrieved", {
        "activity": [activity_service.activity_to_dict(r) for r in rows],
    })


# ---------------------------------------------------------------------------
# Discord helpers
# ---------------------------------------------------------------------------
@router.get("/discord/voice-channels")
async def voice_channels(
    _staff: dict = Depends(require_staff),
    directory: ExternalDirectory = Depends(get_directory),
):
    try:
        channels = await directory.list_voice_channels()
    except DirectoryError as exc:
        raise AccessError(
            AccessErrorCode.DISCORD_ACCESS_FAILED,
            "Could not load voice channels from Discord",
            {"reason": str(exc)},
        ) from exc
    return ok("Voice channels retrieved", {"channels": [c.to_dict() for c in channels]})


@router.post("/discord/setup-roles")
async def setup_roles(
    _admin: dict = Depends(require_admin),
    directory: ExternalDirectory = Depends(get_directory),
):
    result = await role_sync_service.setup_managed_roles(directory)
    return ok("Managed roles checked", result)
