"""
voicegate.api.routes.public — Member-facing read endpoints
===========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import Engine

from voicegate.api.deps import current_user_id, get_current_user, get_engine
from voicegate.api.envelope import ok
from voicegate.database.engine import run_db
from voicegate.services import tag_service
from voicegate.services.user_service import get_discord_profile, get_user, user_to_dict

router = APIRouter(tags=["public"])


@router.get("/tags")
async def list_tags(
    category: str | None = None,
    engine: Engine = Depends(get_engine),
):
    """Active tag catalogue, grouped order: category then display name."""
    tags = await run_db(tag_service.list_tags, engine, category=category)
    return ok("Tags retrieved", {"tags": [tag_service.tag_to_dict(t) for t in tags]})


@router.get("/users/me/tags")
async def my_tags(
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    held = await run_db(tag_service.active_tags_for_user, engine, current_user_id(user))
    return ok("Tags retrieved", {"tags": [t.to_dict() for t in held]})


@router.get("/users/me")
async def me(
    user: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    """The caller's profile with their Discord link and active tags."""
    user_id = current_user_id(user)
    row = await run_db(get_user, engine, user_id)
    if row is None:
        raise HTTPException(404, "User not found")
    profile = await run_db(get_discord_profile, engine, user_id)
    held = await run_db(tag_service.active_tags_for_user, engine, user_id)
    return ok("Current user", {**user_to_dict(row, profile), "tags": [t.to_dict() for t in held]})
