"""
voicegate.engine.eligibility — Event Eligibility Evaluation
============================================================

Decides whether a user may take a seat at an event.  Pure: callers load the
snapshots (required tags, held tags, granted count) and this module only
compares them, so it is safe to call repeatedly and concurrently.

Rules:

- every active tag the event requires must be held (logical AND);
- the event must be ``active``.  ``start_time`` is not a gate: a started
  event still accepts requests until it is completed or cancelled;
- a capped event must have a free seat.

Business conditions never raise; the result says why a user is ineligible.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass, field

from voicegate.database.models import EventStatus
from voicegate.engine.errors import AccessErrorCode

__all__ = [
    "TagRef",
    "EligibilityResult",
    "evaluate_eligibility",
    "event_state_error",
    "has_free_seat",
]


@dataclass(frozen=True, slots=True)
class TagRef:
    """Read-only view of a tag, as required by an event or held by a user."""

    id: int
    name: str
    display_name: str
    category: str | None = None
    color: str | None = None
    icon: str | None = None
    is_primary: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class EligibilityResult:
    is_eligible: bool
    has_all_required_tags: bool
    missing_required_tags: list[TagRef] = field(default_factory=list)
    user_tags: list[TagRef] = field(default_factory=list)
    # First blocking reason, ``None`` when eligible.
    reason: AccessErrorCode | None = None

    def to_dict(self) -> dict:
        return {
            "is_eligible": self.is_eligible,
            "has_all_required_tags": self.has_all_required_tags,
            "missing_required_tags": [t.to_dict() for t in self.missing_required_tags],
            "user_tags": [t.to_dict() for t in self.user_tags],
            "reason": self.reason.value if self.reason else None,
        }


def event_state_error(status: str) -> AccessErrorCode | None:
    """Error code for an event that cannot accept requests, else ``None``."""
    if status == EventStatus.ACTIVE:
        return None
    if status == EventStatus.DRAFT:
        return AccessErrorCode.EVENT_TOO_EARLY
    return AccessErrorCode.EVENT_NOT_ACTIVE


def has_free_seat(max_participants: int | None, granted_count: int) -> bool:
    return max_participants is None or granted_count < max_participants


def evaluate_eligibility(
    *,
    event_status: str,
    max_participants: int | None,
    granted_count: int,
    required: Sequence[TagRef],
    held: Sequence[TagRef],
) -> EligibilityResult:
    """Compare an event's requirements against what a user holds.

    ``missing`` keeps the order of *required* so the UI can render
    "you need X, Y" consistently.
    """
    held_ids = {t.id for t in held}
    missing = [t for t in required if t.id not in held_ids]
    has_all = not missing

    reason = event_state_error(event_status)
    if reason is None and not has_all:
        reason = AccessErrorCode.MISSING_REQUIRED_TAGS
    if reason is None and not has_free_seat(max_participants, granted_count):
        reason = AccessErrorCode.EVENT_FULL

    return EligibilityResult(
        is_eligible=reason is None,
        has_all_required_tags=has_all,
        missing_required_tags=missing,
        user_tags=list(held),
        reason=reason,
    )
