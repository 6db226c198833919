"""
voicegate.api.auth — Discord OAuth2 login, guild join + JWT issuance
=====================================================================

``/auth/login`` sends the member to Discord's consent screen;
``/auth/callback`` exchanges the code, links (or creates) the local user,
joins them to the guild with the ``guilds.join`` scope, mirrors their role
onto Discord, and redirects to the frontend with a signed JWT.

A failed guild join or role sync does not block login; the member can be
repaired later with the sync-role action.
"""

from __future__ import annotations

import logging
import os
import secrets
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

import httpx
import jwt
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from sqlalchemy import Engine, delete

from voicegate.api.deps import (
    JWT_ALGORITHM,
    JWT_SECRET,
    current_user_id,
    get_config,
    get_current_user,
    get_directory,
    get_engine,
)
from voicegate.api.envelope import ok
from voicegate.config import VoicegateConfig
from voicegate.database.engine import get_session, run_db
from voicegate.database.models import OAuthState, User
from voicegate.services.activity_service import ActivityAction, log_activity
from voicegate.services.directory import DISCORD_API, DirectoryError, ExternalDirectory
from voicegate.services.role_sync_service import sync_user_role
from voicegate.services.user_service import (
    get_discord_profile,
    get_user,
    mark_guild_joined,
    upsert_discord_login,
    user_to_dict,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])

OAUTH_SCOPES = "identify email guilds.join"
OAUTH_STATE_TTL_SECONDS = 600
TOKEN_TTL_HOURS = 12


def _oauth_env() -> tuple[str, str, str, str]:
    """Return required OAuth env vars or raise a clear 500."""
    client_id = os.getenv("DISCORD_CLIENT_ID", "").strip()
    client_secret = os.getenv("DISCORD_CLIENT_SECRET", "").strip()
    redirect_uri = os.getenv("DISCORD_REDIRECT_URI", "").strip()
    frontend_url = os.getenv("FRONTEND_URL", "").strip()

    missing = [
        name for name, value in (
            ("DISCORD_CLIENT_ID", client_id),
            ("DISCORD_CLIENT_SECRET", client_secret),
            ("DISCORD_REDIRECT_URI", redirect_uri),
            ("FRONTEND_URL", frontend_url),
        ) if not value
    ]
    if missing:
        raise HTTPException(
            status_code=500,
            detail="Discord OAuth is not configured: missing " + ", ".join(missing),
        )

    return client_id, client_secret, redirect_uri, frontend_url.rstrip("/")


def _store_oauth_state(engine: Engine, state: str) -> None:
    """Persist an OAuth state token and prune stale entries."""
    cutoff = datetime.now(UTC) - timedelta(seconds=OAUTH_STATE_TTL_SECONDS)
    with get_session(engine) as session:
        session.execute(delete(OAuthState).where(OAuthState.created_at < cutoff))
        session.add(OAuthState(state=state, created_at=datetime.now(UTC)))


def _consume_oauth_state(engine: Engine, state: str) -> bool:
    """Consume a one-time OAuth state token if valid and unexpired."""
    cutoff = datetime.now(UTC) - timedelta(seconds=OAUTH_STATE_TTL_SECONDS)
    with get_session(engine) as session:
        session.execute(delete(OAuthState).where(OAuthState.created_at < cutoff))
        row = session.get(OAuthState, state)
        if row is None:
            return False
        session.delete(row)
        return True


def issue_token(user: User) -> str:
    payload = {
        "sub": str(user.id),
        "username": user.username,
        "role": user.role,
        "exp": datetime.now(UTC) + timedelta(hours=TOKEN_TTL_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


@router.get("/login")
async def login(engine: Engine = Depends(get_engine)):
    """Redirect to Discord OAuth2 consent screen."""
    client_id, _, redirect_uri, _ = _oauth_env()

    state = secrets.token_urlsafe(32)
    await run_db(_store_oauth_state, engine, state)

    query = urlencode(
        {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": OAUTH_SCOPES,
            "state": state,
        }
    )
    return RedirectResponse(f"https://discord.com/oauth2/authorize?{query}")


@router.get("/callback")
async def callback(
    code: str,
    state: str,
    request: Request,
    cfg: VoicegateConfig = Depends(get_config),
    engine: Engine = Depends(get_engine),
    directory: ExternalDirectory = Depends(get_directory),
):
    """Exchange the OAuth code, link the member, and hand back a JWT."""
    client_id, client_secret, redirect_uri, frontend_url = _oauth_env()

    if not await run_db(_consume_oauth_state, engine, state):
        raise HTTPException(400, "Invalid or expired OAuth state")

    transport = httpx.AsyncHTTPTransport(retries=1)
    async with httpx.AsyncClient(timeout=cfg.discord_timeout_seconds, transport=transport) as client:
        token_resp = await client.post(
            f"{DISCORD_API}/oauth2/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": client_id,
                "client_secret": client_secret,
            },
        )
        if token_resp.status_code != 200:
            raise HTTPException(400, "OAuth token exchange failed")

        grant = token_resp.json()
        access_token = grant.get("access_token")
        if not access_token:
            raise HTTPException(400, "No access token returned")

        user_resp = await client.get(
            f"{DISCORD_API}/users/@me",
            headers={"Authorization": f"Bearer {access_token}"},
        )

    if user_resp.status_code != 200:
        raise HTTPException(400, "Failed to fetch Discord user")
    info = user_resp.json()
    discord_id = int(info["id"])

    user, profile, created = await run_db(
        upsert_discord_login,
        engine,
        discord_id=discord_id,
        discord_username=info.get("username", "Unknown"),
        discord_avatar=info.get("avatar"),
        email=info.get("email"),
        access_token=access_token,
        refresh_token=grant.get("refresh_token"),
        expires_in=grant.get("expires_in"),
    )

    try:
        await directory.add_member_to_guild(access_token, discord_id)
    except DirectoryError as exc:
        logger.warning("Guild join failed for user %s (discord=%s): %s", user.id, discord_id, exc)
    else:
        await run_db(mark_guild_joined, engine, user.id)
        await sync_user_role(engine, directory, user.id)

    if created:
        logger.info("First login for %s (user %s)", profile.discord_username, user.id)
    await run_db(
        log_activity,
        engine,
        action_type=ActivityAction.LOGIN_SUCCESS,
        entity_type="user",
        entity_id=user.id,
        actor_id=user.id,
        details={
            "provider": "discord",
            "is_new_user": created,
            "discord_id": str(discord_id),
            "discord_username": profile.discord_username,
        },
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return RedirectResponse(f"{frontend_url}/auth/callback?token={issue_token(user)}")


@router.get("/me")
async def me(
    current: dict = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    """Return the authenticated member with their Discord link."""
    user_id = current_user_id(current)
    user = await run_db(get_user, engine, user_id)
    if user is None:
        raise HTTPException(404, "User not found")
    profile = await run_db(get_discord_profile, engine, user_id)
    return ok("Current user", user_to_dict(user, profile))
