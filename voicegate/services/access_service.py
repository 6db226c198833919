"""
voicegate.services.access_service — Event Access Coordinator
=============================================================

**Why this file exists:**
Every change to a member's participation in an event goes through
:class:`EventAccessCoordinator`.  It is the only code that writes
``event_participants`` / ``event_voice_access`` rows and the only code
that opens or closes a voice channel for a member on Discord.

Per (event, user) the state moves::

    none ──request──▶ requested ──grant ok──▶ granted ──revoke──▶ revoked
                          │                                     ▲
                          ├──deny──▶ denied                     │
                          └──────────────revoke / event ends────┘

Two asymmetric failure rules at the Discord boundary:

- **Grant** — if Discord refuses or times out, the request stays
  ``requested`` (durable intent) and the caller gets a retryable error.
  Calling ``request_access`` again re-attempts the grant on that row.
- **Revoke** — if Discord refuses, local rows are still revoked and the
  failure is logged with enough context to clean up by hand.  A local
  record never stays "active" because Discord was down.

Precondition failures (unknown event, event not open, throttled) raise
:class:`~voicegate.engine.errors.AccessError`; business outcomes (missing
tags, full, not linked, Discord failure) come back as an
:class:`AccessResult`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import Engine

from voicegate.constants import (
    DISCONNECT_REASONS,
    REVOKE_ADMIN,
    REVOKE_EVENT_DELETED,
    REVOKE_EVENT_ENDED,
    REVOKE_USER_REQUESTED,
)
from voicegate.database.engine import run_db
from voicegate.database.models import Event, EventStatus, ParticipantStatus
from voicegate.engine.eligibility import (
    EligibilityResult,
    evaluate_eligibility,
    event_state_error,
    has_free_seat,
)
from voicegate.engine.errors import AccessError, AccessErrorCode
from voicegate.services import event_service, tag_service
from voicegate.services.directory import DirectoryError, ExternalDirectory
from voicegate.services.event_service import GrantOutcome
from voicegate.services.user_service import get_discord_profile, get_user

logger = logging.getLogger(__name__)


class RequestThrottle(Protocol):
    """Sliding-window limiter (see :class:`voicegate.api.rate_limit.AccessRateLimiter`)."""

    def acquire(self, key: str) -> tuple[bool, dict[str, Any]]: ...


@dataclass(slots=True)
class AccessResult:
    success: bool
    message: str
    code: AccessErrorCode | None = None
    data: dict[str, Any] | None = None
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False


@dataclass(slots=True)
class CleanupStats:
    """Outcome of closing an event.  The user-id lists are disjoint.

    ``revoked`` were closed locally and on Discord, ``external_failed``
    locally only (overwrite still in place), ``failed`` not at all.
    """

    event_id: int
    revoked: list[int] = field(default_factory=list)
    external_failed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    pending_closed: int = 0
    status_changed: bool = False
    deleted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "revoked": len(self.revoked),
            "external_failed": len(self.external_failed),
            "failed": len(self.failed),
            "revoked_user_ids": self.revoked,
            "external_failed_user_ids": self.external_failed,
            "failed_user_ids": self.failed,
            "pending_closed": self.pending_closed,
            "status_changed": self.status_changed,
            "deleted": self.deleted,
        }


class EventAccessCoordinator:
    """Orchestrates request / revoke / cleanup for event voice access.

    Parameters
    ----------
    engine:
        Database engine; all reads and writes go through ``run_db``.
    directory:
        Discord adapter (or a fake in tests).
    rate_limiter:
        Optional per-user throttle applied to :meth:`request_access`.
    """

    def __init__(
        self,
        engine: Engine,
        directory: ExternalDirectory,
        *,
        rate_limiter: RequestThrottle | None = None,
    ) -> None:
        self.engine = engine
        self.directory = directory
        self.rate_limiter = rate_limiter

    # -------------------------------------------------------------------
    # Preconditions
    # -------------------------------------------------------------------
    async def _throttle(self, user_id: int) -> None:
        if self.rate_limiter is None:
            return
        allowed, info = await run_db(self.rate_limiter.acquire, str(user_id))
        if not allowed:
            logger.warning("Access request throttled for user %s", user_id)
            raise AccessError(
                AccessErrorCode.RATE_LIMITED,
                f"Too many access requests. Try again in {info['reset']} seconds.",
                {"retry_after": info["reset"], "limit": info["limit"]},
            )

    async def _require_event(self, event_id: int) -> Event:
        event = await run_db(event_service.get_event, self.engine, event_id)
        if event is None:
            raise AccessError(AccessErrorCode.EVENT_NOT_FOUND, "Event not found")
        return event

    @staticmethod
    def _require_open(event: Event) -> None:
        code = event_state_error(event.status)
        if code is AccessErrorCode.EVENT_TOO_EARLY:
            raise AccessError(code, "This event has not opened yet", {"status": event.status})
        if code is not None:
            raise AccessError(code, f"This event is {event.status}", {"status": event.status})

    async def _eligibility(self, event: Event, user_id: int) -> EligibilityResult:
        required = await run_db(tag_service.required_tags_for_event, self.engine, event.id)
        held = await run_db(tag_service.active_tags_for_user, self.engine, user_id)
        granted = await run_db(event_service.granted_count, self.engine, event.id)
        return evaluate_eligibility(
            event_status=event.status,
            max_participants=event.max_participants,
            granted_count=granted,
            required=required,
            held=held,
        )

    # -------------------------------------------------------------------
    # Request / grant
    # -------------------------------------------------------------------
    async def request_access(self, event_id: int, user_id: int) -> AccessResult:
        """A member asks for a seat in an event's voice channel."""
        await self._throttle(user_id)
        event = await self._require_event(event_id)
        self._require_open(event)
        return await self._grant(event, user_id, check_tags=True, processed_by=None)

    async def admin_grant_access(
        self, event_id: int, user_id: int, *, processed_by: int,
    ) -> AccessResult:
        """Staff grant: skips the tag requirement, still honours capacity."""
        event = await self._require_event(event_id)
        self._require_open(event)
        if await run_db(get_user, self.engine, user_id) is None:
            raise AccessError(AccessErrorCode.USER_NOT_FOUND, "User not found")
        return await self._grant(event, user_id, check_tags=False, processed_by=processed_by)

    async def _grant(
        self,
        event: Event,
        user_id: int,
        *,
        check_tags: bool,
        processed_by: int | None,
    ) -> AccessResult:
        existing = await run_db(
            event_service.get_active_participant, self.engine, event.id, user_id,
        )
        if existing is not None and existing.status == ParticipantStatus.GRANTED:
            return self._already_granted(event, existing.id)

        if check_tags:
            eligibility = await self._eligibility(event, user_id)
            if not eligibility.has_all_required_tags:
                missing = [t.to_dict() for t in eligibility.missing_required_tags]
                return AccessResult(
                    False,
                    "You don't have the required tags for this event",
                    code=AccessErrorCode.MISSING_REQUIRED_TAGS,
                    details={"missing_tags": missing},
                )

        profile = await run_db(get_discord_profile, self.engine, user_id)
        if profile is None:
            return AccessResult(
                False,
                "Link your Discord account to join voice events",
                code=AccessErrorCode.DISCORD_NOT_LINKED,
            )

        granted = await run_db(event_service.granted_count, self.engine, event.id)
        if not has_free_seat(event.max_participants, granted):
            return self._full(event)

        participant, created = await run_db(
            event_service.open_request, self.engine, event.id, user_id,
        )
        if participant is None:
            # Ended or deleted since _require_open.
            raise AccessError(
                AccessErrorCode.EVENT_NOT_ACTIVE, "This event is no longer active",
            )
        if participant.status == ParticipantStatus.GRANTED:
            return self._already_granted(event, participant.id)
        if not created:
            logger.info(
                "Retrying Discord grant for pending request %s (event=%s user=%s)",
                participant.id, event.id, user_id,
            )

        context = {
            "event_id": event.id,
            "user_id": user_id,
            "participant_id": participant.id,
            "discord_user_id": profile.discord_id,
            "channel_id": event.voice_channel_id,
        }
        try:
            await self.directory.grant_channel_access(profile.discord_id, event.voice_channel_id)
        except DirectoryError as exc:
            logger.error(
                "Discord grant failed for event %s user %s, request left pending: %s",
                event.id, user_id, exc, extra=context,
            )
            return AccessResult(
                False,
                "Could not grant Discord voice access. Please try again.",
                code=AccessErrorCode.DISCORD_ACCESS_FAILED,
                details={"participant_id": participant.id, "status": participant.status},
                retryable=True,
            )

        outcome = await run_db(
            event_service.record_grant,
            self.engine,
            participant.id,
            discord_user_id=profile.discord_id,
            granted_by_system=processed_by is None,
            processed_by=processed_by,
        )
        if outcome is not GrantOutcome.GRANTED:
            # Undo the overwrite we just placed; the local row says no.
            await self._remove_overwrite(profile.discord_id, event, context)
            if outcome is GrantOutcome.FULL:
                return self._full(event)
            return AccessResult(
                False,
                "Your request was closed before access could be granted",
                code=AccessErrorCode.EVENT_NOT_ACTIVE,
            )

        logger.info("Granted event %s voice access to user %s", event.id, user_id)
        return AccessResult(
            True,
            "Access granted! You can now join the voice channel.",
            data={
                "hasAccess": True,
                "status": ParticipantStatus.GRANTED.value,
                "participant_id": participant.id,
                "voice_channel_id": str(event.voice_channel_id),
            },
        )

    @staticmethod
    def _already_granted(event: Event, participant_id: int) -> AccessResult:
        return AccessResult(
            True,
            "You already have access to this event",
            data={
                "hasAccess": True,
                "status": ParticipantStatus.GRANTED.value,
                "participant_id": participant_id,
                "voice_channel_id": str(event.voice_channel_id),
            },
        )

    @staticmethod
    def _full(event: Event) -> AccessResult:
        return AccessResult(
            False,
            "This event is full",
            code=AccessErrorCode.EVENT_FULL,
            details={"max_participants": event.max_participants},
        )

    async def _remove_overwrite(self, discord_user_id: int, event: Event, context: dict) -> bool:
        try:
            await self.directory.revoke_channel_access(discord_user_id, event.voice_channel_id)
            return True
        except DirectoryError as exc:
            logger.warning(
                "Discord revoke failed for event %s member %s, manual cleanup needed: %s",
                event.id, discord_user_id, exc, extra=context,
            )
            return False

    # -------------------------------------------------------------------
    # Deny / revoke
    # -------------------------------------------------------------------
    async def deny_request(
        self, event_id: int, user_id: int, *, processed_by: int, notes: str | None = None,
    ) -> AccessResult:
        """Staff rejects a pending request.  No Discord call is involved."""
        await self._require_event(event_id)
        denied = await run_db(
            event_service.deny_request, self.engine, event_id, user_id,
            processed_by=processed_by, notes=notes,
        )
        if not denied:
            return AccessResult(True, "No pending request to deny", data={"changed": False})
        logger.info("Denied access request: event=%s user=%s by=%s", event_id, user_id, processed_by)
        return AccessResult(
            True, "Request denied",
            data={"changed": True, "status": ParticipantStatus.DENIED.value},
        )

    async def revoke_access(
        self,
        event_id: int,
        user_id: int,
        reason: str = REVOKE_USER_REQUESTED,
        *,
        processed_by: int | None = None,
    ) -> AccessResult:
        """Take a member's seat away.  Revoking nothing is a successful no-op."""
        event = await self._require_event(event_id)
        return await self._revoke(event, user_id, reason, processed_by)

    async def admin_revoke_access(
        self, event_id: int, user_id: int, *, processed_by: int,
    ) -> AccessResult:
        return await self.revoke_access(
            event_id, user_id, REVOKE_ADMIN, processed_by=processed_by,
        )

    async def _revoke(
        self, event: Event, user_id: int, reason: str, processed_by: int | None,
    ) -> AccessResult:
        access = await run_db(
            event_service.get_active_voice_access, self.engine, event.id, user_id,
        )
        participant = await run_db(
            event_service.get_active_participant, self.engine, event.id, user_id,
        )
        if access is None and participant is None:
            return AccessResult(
                True,
                "No active access to revoke",
                data={"hasAccess": False, "changed": False},
            )

        external_revoked = True
        if access is not None:
            context = {
                "event_id": event.id,
                "user_id": user_id,
                "discord_user_id": access.discord_user_id,
                "channel_id": event.voice_channel_id,
                "reason": reason,
            }
            external_revoked = await self._remove_overwrite(
                access.discord_user_id, event, context,
            )
            if reason in DISCONNECT_REASONS:
                try:
                    await self.directory.disconnect_member(access.discord_user_id)
                except DirectoryError as exc:
                    logger.warning(
                        "Could not disconnect member %s from voice: %s",
                        access.discord_user_id, exc, extra=context,
                    )

        await run_db(
            event_service.record_revoke, self.engine, event.id, user_id,
            reason=reason, processed_by=processed_by,
        )
        logger.info(
            "Revoked event %s access for user %s (reason=%s, discord=%s)",
            event.id, user_id, reason, "ok" if external_revoked else "failed",
        )
        return AccessResult(
            True,
            "Access revoked",
            data={"hasAccess": False, "changed": True, "external_revoked": external_revoked},
        )

    # -------------------------------------------------------------------
    # Event end / deletion
    # -------------------------------------------------------------------
    async def cleanup_event(
        self,
        event_id: int,
        reason: str = REVOKE_EVENT_ENDED,
        *,
        final_status: EventStatus = EventStatus.COMPLETED,
        delete: bool = False,
        processed_by: int | None = None,
    ) -> CleanupStats:
        """Close the event, revoke every active grant, then delete if asked.

        The status changes first so no request can be granted while the
        grants are being torn down (a deleted event passes through
        ``cancelled``).  Each grant is revoked independently; one failure
        doesn't stop the rest.  Users whose local rows were revoked but whose
        Discord overwrite could not be removed land in ``external_failed``.
        Running it again finds nothing active and reports zeros.
        """
        event = await self._require_event(event_id)
        stats = CleanupStats(event_id=event_id)

        if delete:
            await run_db(
                event_service.finish_event, self.engine, event_id, EventStatus.CANCELLED,
            )
        else:
            stats.status_changed = await run_db(
                event_service.finish_event, self.engine, event_id, final_status,
            )

        grants = await run_db(event_service.active_voice_grants, self.engine, event_id)
        for access in grants:
            try:
                result = await self._revoke(event, access.user_id, reason, processed_by)
                if result.data.get("external_revoked", True):
                    stats.revoked.append(access.user_id)
                else:
                    stats.external_failed.append(access.user_id)
            except Exception:
                logger.exception(
                    "Cleanup could not revoke user %s from event %s",
                    access.user_id, event_id,
                )
                stats.failed.append(access.user_id)

        stats.pending_closed = await run_db(
            event_service.close_pending_requests, self.engine, event_id,
            reason=reason, processed_by=processed_by,
        )

        if delete:
            stats.deleted = await run_db(event_service.delete_event, self.engine, event_id)

        logger.info(
            "Cleaned up event %s (%s): revoked=%d external_failed=%d failed=%d pending_closed=%d",
            event_id, reason, len(stats.revoked), len(stats.external_failed),
            len(stats.failed), stats.pending_closed,
        )
        if stats.external_failed:
            logger.warning(
                "Event %s: Discord overwrites left in channel %s for users %s",
                event_id, event.voice_channel_id, stats.external_failed,
            )
        return stats

    async def end_event(self, event_id: int, *, processed_by: int | None = None) -> CleanupStats:
        return await self.cleanup_event(event_id, REVOKE_EVENT_ENDED, processed_by=processed_by)

    async def cancel_event(self, event_id: int, *, processed_by: int | None = None) -> CleanupStats:
        return await self.cleanup_event(
            event_id, REVOKE_EVENT_ENDED,
            final_status=EventStatus.CANCELLED, processed_by=processed_by,
        )

    async def delete_event(self, event_id: int, *, processed_by: int | None = None) -> CleanupStats:
        return await self.cleanup_event(
            event_id, REVOKE_EVENT_DELETED, delete=True, processed_by=processed_by,
        )

    async def sweep_expired_events(self, now: datetime | None = None) -> dict[str, int]:
        """End every active event whose ``end_time`` has passed."""
        totals = {"events": 0, "revoked": 0, "external_failed": 0, "failed": 0}
        event_ids = await run_db(event_service.expired_active_events, self.engine, now)
        for event_id in event_ids:
            try:
                stats = await self.end_event(event_id)
            except AccessError:
                # Deleted between the query and the cleanup.
                continue
            totals["events"] += 1
            totals["revoked"] += len(stats.revoked)
            totals["external_failed"] += len(stats.external_failed)
            totals["failed"] += len(stats.failed)
        return totals

    # -------------------------------------------------------------------
    # Read-only projections
    # -------------------------------------------------------------------
    async def check_event_eligibility(self, event_id: int, user_id: int) -> EligibilityResult:
        event = await self._require_event(event_id)
        return await self._eligibility(event, user_id)

    async def get_user_access_status(self, event_id: int, user_id: int) -> dict[str, Any]:
        """``{hasAccess, status, participant, voice_access}`` for the pair."""
        await self._require_event(event_id)
        participant = await run_db(
            event_service.latest_participant, self.engine, event_id, user_id,
        )
        access = await run_db(
            event_service.get_active_voice_access, self.engine, event_id, user_id,
        )
        return {
            "hasAccess": access is not None,
            "status": participant.status if participant else "none",
            "participant": event_service.participant_to_dict(participant) if participant else None,
            "voice_access": event_service.voice_access_to_dict(access) if access else None,
        }
