"""
tests/test_eligibility.py — Eligibility Engine
===============================================
Pure evaluation: no database, no Discord.
"""

from __future__ import annotations

import pytest

from voicegate.database.models import EventStatus
from voicegate.engine.eligibility import (
    TagRef,
    evaluate_eligibility,
    event_state_error,
    has_free_seat,
)
from voicegate.engine.errors import AccessErrorCode

PYTHON = TagRef(id=1, name="python", display_name="Python")
SQL = TagRef(id=2, name="sql", display_name="SQL")
MENTOR = TagRef(id=3, name="mentor", display_name="Mentor")


def _evaluate(**overrides):
    kwargs = {
        "event_status": EventStatus.ACTIVE.value,
        "max_participants": None,
        "granted_count": 0,
        "required": [],
        "held": [],
    }
    kwargs.update(overrides)
    return evaluate_eligibility(**kwargs)


class TestRequiredTags:

    def test_no_requirements_is_eligible(self):
        result = _evaluate()
        assert result.is_eligible
        assert result.has_all_required_tags
        assert result.reason is None

    def test_all_tags_must_be_held(self):
        result = _evaluate(required=[PYTHON, SQL], held=[PYTHON])
        assert not result.is_eligible
        assert result.missing_required_tags == [SQL]
        assert result.reason is AccessErrorCode.MISSING_REQUIRED_TAGS

    def test_extra_held_tags_do_not_matter(self):
        result = _evaluate(required=[PYTHON], held=[MENTOR, PYTHON])
        assert result.is_eligible
        assert result.user_tags == [MENTOR, PYTHON]

    def test_missing_keeps_required_order(self):
        result = _evaluate(required=[SQL, MENTOR, PYTHON], held=[])
        assert [t.name for t in result.missing_required_tags] == ["sql", "mentor", "python"]

    def test_matches_on_id_not_name(self):
        renamed = TagRef(id=1, name="python3", display_name="Python 3")
        assert _evaluate(required=[PYTHON], held=[renamed]).is_eligible


class TestEventState:

    @pytest.mark.parametrize("status,code", [
        (EventStatus.ACTIVE, None),
        (EventStatus.DRAFT, AccessErrorCode.EVENT_TOO_EARLY),
        (EventStatus.COMPLETED, AccessErrorCode.EVENT_NOT_ACTIVE),
        (EventStatus.CANCELLED, AccessErrorCode.EVENT_NOT_ACTIVE),
    ])
    def test_state_error(self, status, code):
        assert event_state_error(status.value) is code

    def test_state_reason_comes_first(self):
        result = _evaluate(event_status="completed", required=[PYTHON], held=[])
        assert result.reason is AccessErrorCode.EVENT_NOT_ACTIVE
        assert not result.has_all_required_tags


class TestCapacity:

    @pytest.mark.parametrize("max_p,granted,expected", [
        (None, 500, True),
        (3, 2, True),
        (3, 3, False),
        (1, 0, True),
    ])
    def test_has_free_seat(self, max_p, granted, expected):
        assert has_free_seat(max_p, granted) is expected

    def test_full_event(self):
        result = _evaluate(max_participants=2, granted_count=2)
        assert result.reason is AccessErrorCode.EVENT_FULL
        assert result.has_all_required_tags

    def test_missing_tags_reported_before_full(self):
        result = _evaluate(max_participants=1, granted_count=1, required=[SQL])
        assert result.reason is AccessErrorCode.MISSING_REQUIRED_TAGS


class TestSerialization:

    def test_to_dict(self):
        data = _evaluate(required=[PYTHON], held=[]).to_dict()
        assert data["is_eligible"] is False
        assert data["reason"] == "MISSING_REQUIRED_TAGS"
        assert data["missing_required_tags"][0]["name"] == "python"
