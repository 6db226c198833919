"""
voicegate.api.rate_limit — Per-User Access Request Throttle
============================================================

At most 10 access requests per user in any 5-minute window (both
configurable in ``config.yaml``).  Protects Discord from retry storms when
a member hammers "Join" while the grant keeps failing.

Sliding-window counter keyed by the user id, stored in the
``access_rate_limit_events`` table so the limit holds across API workers
and restarts.  The limiter is handed to the access coordinator, which
calls :meth:`AccessRateLimiter.acquire` (count and check in one step)
before doing anything else; the API turns the resulting
``RATE_LIMITED`` error into HTTP 429 with a ``Retry-After`` header.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import Engine, delete, select
from sqlalchemy.orm import Session

from voicegate.database.models import AccessRateLimitEvent

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT = 10
DEFAULT_WINDOW_SECONDS = 300


class AccessRateLimiter:
    """Sliding-window rate limiter keyed by user id (DB-backed)."""

    def __init__(
        self,
        max_requests: int = DEFAULT_RATE_LIMIT,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        *,
        engine: Engine,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.engine = engine

    def _normalize_dt(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def _prune(self, session: Session, key: str, cutoff: datetime) -> None:
        session.execute(
            delete(AccessRateLimitEvent).where(
                AccessRateLimitEvent.user_id == key,
                AccessRateLimitEvent.timestamp < cutoff,
            )
        )

    def _window(self, key: str, now: datetime) -> list[datetime]:
        """Prune expired rows for *key* and return the rest, oldest first."""
        cutoff = now - timedelta(seconds=self.window_seconds)
        with Session(self.engine) as session:
            self._prune(session, key, cutoff)
            timestamps = session.scalars(
                select(AccessRateLimitEvent.timestamp)
                .where(AccessRateLimitEvent.user_id == key)
                .order_by(AccessRateLimitEvent.timestamp.asc())
            ).all()
            session.commit()
        return list(timestamps)

    def _insert(self, key: str, now: datetime) -> int:
        with Session(self.engine) as session:
            row = AccessRateLimitEvent(user_id=key, timestamp=now)
            session.add(row)
            session.commit()
            return row.id

    def _info(self, timestamps: list[datetime], now: datetime) -> tuple[bool, dict[str, Any]]:
        count = len(timestamps)
        if count >= self.max_requests:
            oldest = self._normalize_dt(timestamps[0])
            reset = (oldest + timedelta(seconds=self.window_seconds) - now).total_seconds()
            return False, {
                "remaining": 0,
                "reset": max(1, int(reset) + 1),
                "limit": self.max_requests,
            }
        return True, {
            "remaining": self.max_requests - count,
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def check(self, key: str) -> tuple[bool, dict[str, Any]]:
        """Check whether *key* may make another request, without counting one.

        Returns (allowed, info) where info contains:
          - remaining: requests remaining in the window
          - reset: seconds until the oldest request expires
          - limit: the max requests per window
        """
        now = datetime.now(UTC)
        return self._info(self._window(key, now), now)

    def record(self, key: str) -> dict[str, Any]:
        """Record a request unconditionally and return the updated window info."""
        now = datetime.now(UTC)
        self._insert(key, now)
        count = len(self._window(key, now))
        return {
            "remaining": max(0, self.max_requests - count),
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def acquire(self, key: str) -> tuple[bool, dict[str, Any]]:
        """Count a request against *key* if the window has room.

        The row is committed first and the window counted afterwards, so of
        any set of concurrent callers the last to commit sees all the others
        and the limit cannot be overshot.  A refused request removes its
        own row again and is not counted.
        """
        now = datetime.now(UTC)
        row_id = self._insert(key, now)
        timestamps = self._window(key, now)
        if len(timestamps) <= self.max_requests:
            return True, {
                "remaining": self.max_requests - len(timestamps),
                "reset": self.window_seconds,
                "limit": self.max_requests,
            }

        with Session(self.engine) as session:
            session.execute(delete(AccessRateLimitEvent).where(AccessRateLimitEvent.id == row_id))
            session.commit()
        logger.debug("Rate limit reached for %s (%d in window)", key, len(timestamps) - 1)
        _, info = self._info(timestamps, now)
        return False, info

    def reset(self, key: str | None = None) -> None:
        """Clear throttle state. If key is None, clear all."""
        with Session(self.engine) as session:
            stmt = delete(AccessRateLimitEvent)
            if key is not None:
                stmt = stmt.where(AccessRateLimitEvent.user_id == key)
            session.execute(stmt)
            session.commit()
