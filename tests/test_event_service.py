"""
tests/test_event_service.py — Event Store & Participation Records
==================================================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from conftest import VOICE_CHANNEL_ID, make_event, make_tag, make_user
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from voicegate.database.models import EventParticipant, EventStatus, ParticipantStatus
from voicegate.engine.errors import EventValidationError
from voicegate.services import event_service
from voicegate.services.event_service import GrantOutcome

NOW = datetime.now(UTC)


def _valid(**overrides) -> dict:
    data = {
        "title": "Graph Study Group",
        "event_type": "study_group",
        "start_time": NOW,
        "end_time": NOW + timedelta(hours=1),
        "voice_channel_id": VOICE_CHANNEL_ID,
        "max_participants": 10,
    }
    data.update(overrides)
    return data


class TestValidation:

    def test_valid_event_has_no_errors(self):
        assert event_service.validate_event_fields(_valid()) == {}

    @pytest.mark.parametrize("overrides,field", [
        ({"title": "ab"}, "title"),
        ({"title": "x" * 256}, "title"),
        ({"event_type": "party"}, "event_type"),
        ({"start_time": None}, "start_time"),
        ({"end_time": NOW - timedelta(minutes=1)}, "end_time"),
        ({"end_time": NOW}, "end_time"),
        ({"voice_channel_id": None}, "voice_channel_id"),
        ({"max_participants": 0}, "max_participants"),
        ({"status": "archived"}, "status"),
    ])
    def test_field_errors(self, overrides, field):
        assert field in event_service.validate_event_fields(_valid(**overrides))

    def test_partial_only_checks_given_fields(self):
        assert event_service.validate_event_fields({"title": "New title"}, partial=True) == {}

    @pytest.mark.parametrize("current,target,allowed", [
        ("draft", "active", True),
        ("draft", "cancelled", True),
        ("draft", "completed", False),
        ("active", "completed", True),
        ("active", "draft", False),
        ("completed", "active", False),
        ("cancelled", "active", False),
        ("active", "active", True),
    ])
    def test_transitions(self, current, target, allowed):
        assert event_service.can_transition(current, target) is allowed


class TestEventCrud:

    def test_create_with_required_tags(self, db_engine):
        tag = make_tag(db_engine, "python")
        eid = make_event(db_engine, required_tag_ids=[tag, tag])
        assert event_service.required_tag_ids(db_engine, eid) == [tag]

    def test_create_rejects_inactive_tag(self, db_engine):
        with pytest.raises(EventValidationError) as excinfo:
            make_event(db_engine, required_tag_ids=[404])
        assert "required_tag_ids" in excinfo.value.errors

    def test_create_rejects_terminal_status(self, db_engine):
        with pytest.raises(EventValidationError):
            make_event(db_engine, status=EventStatus.COMPLETED.value)

    def test_update_replaces_tag_set(self, db_engine):
        a = make_tag(db_engine, "tag_a")
        b = make_tag(db_engine, "tag_b")
        eid = make_event(db_engine, required_tag_ids=[a])

        event = event_service.update_event(
            db_engine, eid, {"title": "  Renamed  "}, required_tag_ids=[b],
        )

        assert event.title == "Renamed"
        assert event_service.required_tag_ids(db_engine, eid) == [b]

    def test_update_rejects_backwards_transition(self, db_engine):
        eid = make_event(db_engine)
        with pytest.raises(EventValidationError):
            event_service.update_event(db_engine, eid, {"status": "draft"})

    def test_update_checks_end_against_stored_start(self, db_engine):
        eid = make_event(db_engine, start_time=NOW)
        with pytest.raises(EventValidationError):
            event_service.update_event(db_engine, eid, {"end_time": NOW - timedelta(hours=1)})

    def test_update_unknown_event(self, db_engine):
        assert event_service.update_event(db_engine, 404, {"title": "Whatever"}) is None

    def test_finish_event_only_once(self, db_engine):
        eid = make_event(db_engine)
        assert event_service.finish_event(db_engine, eid)
        assert not event_service.finish_event(db_engine, eid)
        assert not event_service.finish_event(db_engine, eid, EventStatus.CANCELLED)

    def test_list_events_filters_and_pages(self, db_engine):
        for i in range(5):
            make_event(db_engine, title=f"Mock Interview {i}", start_time=NOW + timedelta(hours=i))
        make_event(db_engine, title="Contest Night", status=EventStatus.DRAFT.value)

        rows, total = event_service.list_events(db_engine, search="interview", page=2, page_size=2)
        assert total == 5
        assert [e.title for e in rows] == ["Mock Interview 2", "Mock Interview 3"]

        drafts, total = event_service.list_events(db_engine, status="draft")
        assert total == 1
        assert drafts[0].title == "Contest Night"

    def test_delete_cascades(self, db_engine):
        uid = make_user(db_engine, discord_id=1001)
        eid = make_event(db_engine)
        event_service.open_request(db_engine, eid, uid)

        assert event_service.delete_event(db_engine, eid)
        assert event_service.get_event(db_engine, eid) is None
        assert event_service.list_participants(db_engine, eid) == []

    def test_expired_active_events(self, db_engine):
        expired = make_event(
            db_engine, start_time=NOW - timedelta(hours=2), end_time=NOW - timedelta(hours=1),
        )
        make_event(db_engine, start_time=NOW - timedelta(hours=2))  # open-ended
        make_event(db_engine, start_time=NOW, end_time=NOW + timedelta(hours=2))
        assert event_service.expired_active_events(db_engine) == [expired]


class TestParticipationRecords:

    def test_open_request_is_idempotent(self, db_engine):
        uid = make_user(db_engine, discord_id=1001)
        eid = make_event(db_engine)

        first, created = event_service.open_request(db_engine, eid, uid)
        second, created_again = event_service.open_request(db_engine, eid, uid)

        assert created and not created_again
        assert first.id == second.id
        assert first.status == ParticipantStatus.REQUESTED

    def test_index_allows_one_open_row_per_pair(self, db_engine):
        uid = make_user(db_engine)
        eid = make_event(db_engine)
        with Session(db_engine) as session:
            session.add_all([
                EventParticipant(event_id=eid, user_id=uid, status="requested"),
                EventParticipant(event_id=eid, user_id=uid, status="granted"),
            ])
            with pytest.raises(IntegrityError):
                session.commit()

    def test_index_allows_closed_history(self, db_engine):
        uid = make_user(db_engine)
        eid = make_event(db_engine)
        with Session(db_engine) as session:
            session.add_all([
                EventParticipant(event_id=eid, user_id=uid, status="revoked"),
                EventParticipant(event_id=eid, user_id=uid, status="denied"),
                EventParticipant(event_id=eid, user_id=uid, status="requested"),
            ])
            session.commit()

    def test_record_grant_rechecks_capacity(self, db_engine):
        u1 = make_user(db_engine, username="u1", discord_id=1001)
        u2 = make_user(db_engine, username="u2", discord_id=1002)
        eid = make_event(db_engine, max_participants=1)
        p1, _ = event_service.open_request(db_engine, eid, u1)
        p2, _ = event_service.open_request(db_engine, eid, u2)

        assert event_service.record_grant(db_engine, p1.id, discord_user_id=1001) is GrantOutcome.GRANTED
        assert event_service.record_grant(db_engine, p2.id, discord_user_id=1002) is GrantOutcome.FULL
        assert event_service.latest_participant(db_engine, eid, u2).status == ParticipantStatus.DENIED
        assert event_service.get_active_voice_access(db_engine, eid, u2) is None

    def test_record_grant_on_closed_request_is_stale(self, db_engine):
        uid = make_user(db_engine, discord_id=1001)
        eid = make_event(db_engine)
        participant, _ = event_service.open_request(db_engine, eid, uid)
        event_service.deny_request(db_engine, eid, uid)

        outcome = event_service.record_grant(db_engine, participant.id, discord_user_id=1001)

        assert outcome is GrantOutcome.STALE
        assert event_service.get_active_voice_access(db_engine, eid, uid) is None

    def test_record_grant_after_event_finished_is_stale(self, db_engine):
        uid = make_user(db_engine, discord_id=1001)
        eid = make_event(db_engine)
        participant, _ = event_service.open_request(db_engine, eid, uid)
        assert event_service.finish_event(db_engine, eid, EventStatus.COMPLETED)

        outcome = event_service.record_grant(db_engine, participant.id, discord_user_id=1001)

        assert outcome is GrantOutcome.STALE
        assert event_service.get_active_voice_access(db_engine, eid, uid) is None
        row = event_service.latest_participant(db_engine, eid, uid)
        assert row.status == ParticipantStatus.REVOKED
        assert row.notes == "Event is no longer active"

    @pytest.mark.parametrize("status", [EventStatus.COMPLETED, EventStatus.CANCELLED])
    def test_open_request_refuses_finished_event(self, db_engine, status):
        uid = make_user(db_engine, discord_id=1001)
        eid = make_event(db_engine)
        event_service.finish_event(db_engine, eid, status)

        assert event_service.open_request(db_engine, eid, uid) == (None, False)
        assert event_service.list_participants(db_engine, eid) == []

    def test_open_request_refuses_draft_event(self, db_engine):
        uid = make_user(db_engine, discord_id=1001)
        eid = make_event(db_engine, status=EventStatus.DRAFT.value)

        assert event_service.open_request(db_engine, eid, uid) == (None, False)
        assert event_service.list_participants(db_engine, eid) == []

    def test_open_request_unknown_event(self, db_engine):
        uid = make_user(db_engine, discord_id=1001)
        assert event_service.open_request(db_engine, 4242, uid) == (None, False)

    def test_record_revoke_is_conditional(self, db_engine):
        uid = make_user(db_engine, discord_id=1001)
        eid = make_event(db_engine)
        participant, _ = event_service.open_request(db_engine, eid, uid)
        event_service.record_grant(db_engine, participant.id, discord_user_id=1001)

        first = event_service.record_revoke(db_engine, eid, uid, reason="admin_revoked")
        second = event_service.record_revoke(db_engine, eid, uid, reason="admin_revoked")

        assert first == {"voice_access": 1, "participants": 1}
        assert second == {"voice_access": 0, "participants": 0}

    def test_close_pending_requests(self, db_engine):
        u1 = make_user(db_engine, username="u1", discord_id=1001)
        u2 = make_user(db_engine, username="u2", discord_id=1002)
        eid = make_event(db_engine)
        event_service.open_request(db_engine, eid, u1)
        p2, _ = event_service.open_request(db_engine, eid, u2)
        event_service.record_grant(db_engine, p2.id, discord_user_id=1002)

        assert event_service.close_pending_requests(db_engine, eid, reason="event_ended") == 1
        assert event_service.latest_participant(db_engine, eid, u1).status == ParticipantStatus.REVOKED
        assert event_service.latest_participant(db_engine, eid, u2).status == ParticipantStatus.GRANTED

    def test_serializers_stringify_snowflakes(self, db_engine):
        eid = make_event(db_engine)
        data = event_service.event_to_dict(event_service.get_event(db_engine, eid), granted=0)
        assert data["voice_channel_id"] == str(VOICE_CHANNEL_ID)
        assert data["participant_count"] == 0
        assert data["start_time"].endswith("+00:00")
