"""
voicegate.engine.errors — Domain Errors
========================================

Stable machine-readable codes for the access workflow.  Nothing here knows
about HTTP; the API layer owns the code → status mapping
(:data:`voicegate.api.envelope.STATUS_BY_CODE`).
"""

from __future__ import annotations

import enum
from typing import Any


class AccessErrorCode(enum.StrEnum):
    # Not found
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"

    # User-correctable / business rules
    EVENT_TOO_EARLY = "EVENT_TOO_EARLY"
    EVENT_NOT_ACTIVE = "EVENT_NOT_ACTIVE"
    MISSING_REQUIRED_TAGS = "MISSING_REQUIRED_TAGS"
    DISCORD_NOT_LINKED = "DISCORD_NOT_LINKED"
    EVENT_FULL = "EVENT_FULL"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Throttling
    RATE_LIMITED = "RATE_LIMITED"

    # Retryable
    DISCORD_ACCESS_FAILED = "DISCORD_ACCESS_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AccessError(Exception):
    """A precondition of an access operation failed (not found, wrong state,
    throttled).  Business ineligibility is *not* raised; it comes back as a
    normal result.
    """

    def __init__(
        self,
        code: AccessErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"<AccessError code={self.code} message={self.message!r}>"


class EventValidationError(Exception):
    """Event input failed validation.  ``errors`` maps field → message."""

    def __init__(self, errors: dict[str, str]) -> None:
        super().__init__("; ".join(f"{k}: {v}" for k, v in errors.items()))
        self.errors = errors
