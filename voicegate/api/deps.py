"""
voicegate.api.deps — FastAPI dependency injection
==================================================

Process-wide collaborators (engine, config, Discord adapter) are built
once here and handed to routes through ``Depends``; the access
coordinator is assembled per request from them.  Tests swap any of them
with ``app.dependency_overrides``.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from voicegate.api.rate_limit import AccessRateLimiter
from voicegate.config import VoicegateConfig, load_config
from voicegate.constants import STAFF_ROLES
from voicegate.database.engine import create_db_engine
from voicegate.database.models import UserRole
from voicegate.services.access_service import EventAccessCoordinator
from voicegate.services.directory import DiscordDirectory, ExternalDirectory

_WEAK_SECRETS = frozenset({
    "voicegate-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> VoicegateConfig:
    return load_config()


@lru_cache(maxsize=1)
def _discord_directory(token: str, guild_id: int, timeout: float) -> DiscordDirectory:
    return DiscordDirectory(token, guild_id, timeout=timeout)


def get_directory(cfg: VoicegateConfig = Depends(get_config)) -> ExternalDirectory:
    token = os.getenv("DISCORD_BOT_TOKEN", "").strip()
    if not token:
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Discord integration is not configured: missing DISCORD_BOT_TOKEN",
        )
    return _discord_directory(token, cfg.guild_id, cfg.discord_timeout_seconds)


def get_coordinator(
    engine: Engine = Depends(get_engine),
    directory: ExternalDirectory = Depends(get_directory),
    cfg: VoicegateConfig = Depends(get_config),
) -> EventAccessCoordinator:
    limiter = AccessRateLimiter(
        cfg.access_request_limit,
        cfg.access_request_window_seconds,
        engine=engine,
    )
    return EventAccessCoordinator(engine, directory, rate_limiter=limiter)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------
def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate the Bearer JWT and return its payload. Raises 401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not str(payload.get("sub", "")).isdigit():
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token subject")
    return payload


def current_user_id(user: dict) -> int:
    return int(user["sub"])


def require_staff(user: dict = Depends(get_current_user)) -> dict:
    """Moderators and admins.  Raises 403 otherwise."""
    if user.get("role") not in STAFF_ROLES:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Moderator or admin role required")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != UserRole.ADMIN:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Admin role required")
    return user
