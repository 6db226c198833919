"""
tests/test_rate_limit.py — Access Request Throttle
===================================================
The per-user sliding window in front of ``request_access``, on its own
and through the API (429 with ``Retry-After``).
"""

from __future__ import annotations

import pytest
from conftest import auth, make_event, make_token, make_user
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from voicegate.api.rate_limit import AccessRateLimiter
from voicegate.database.models import AccessRateLimitEvent


class TestAccessRateLimiter:

    @pytest.fixture(autouse=True)
    def _limiter(self, db_engine):
        self.engine = db_engine
        self.limiter = AccessRateLimiter(max_requests=5, window_seconds=60, engine=db_engine)

    def test_allows_requests_within_limit(self):
        for _ in range(5):
            allowed, _ = self.limiter.check("1")
            assert allowed
            self.limiter.record("1")

    def test_blocks_after_limit_exceeded(self):
        limiter = AccessRateLimiter(max_requests=3, window_seconds=60, engine=self.engine)
        for _ in range(3):
            limiter.record("1")

        allowed, info = limiter.check("1")
        assert not allowed
        assert info["remaining"] == 0
        assert 0 < info["reset"] <= 61
        assert info["limit"] == 3

    def test_separate_users_have_separate_limits(self):
        limiter = AccessRateLimiter(max_requests=2, window_seconds=60, engine=self.engine)
        limiter.record("1")
        limiter.record("1")

        assert not limiter.check("1")[0]
        assert limiter.check("2")[0]

    def test_remaining_count_decreases(self):
        _, info = self.limiter.check("1")
        assert info["remaining"] == 5

        self.limiter.record("1")
        self.limiter.record("1")
        _, info = self.limiter.check("1")
        assert info["remaining"] == 3

    def test_record_reports_remaining(self):
        info = self.limiter.record("1")
        assert info["remaining"] == 4

    def test_reset_clears_specific_user(self):
        limiter = AccessRateLimiter(max_requests=2, window_seconds=60, engine=self.engine)
        limiter.record("1")
        limiter.record("1")
        limiter.record("2")

        limiter.reset("1")

        assert limiter.check("1")[0]
        _, info = limiter.check("2")
        assert info["remaining"] == 1

    def test_reset_all(self):
        limiter = AccessRateLimiter(max_requests=1, window_seconds=60, engine=self.engine)
        limiter.record("1")
        limiter.record("2")

        limiter.reset()

        assert limiter.check("1")[0]
        assert limiter.check("2")[0]


class TestAcquire:

    @pytest.fixture(autouse=True)
    def _engine(self, db_engine):
        self.engine = db_engine

    def _count(self, key):
        with Session(self.engine) as session:
            return session.scalar(
                select(func.count(AccessRateLimitEvent.id))
                .where(AccessRateLimitEvent.user_id == key)
            )

    def test_counts_only_allowed_requests(self):
        limiter = AccessRateLimiter(max_requests=2, window_seconds=60, engine=self.engine)

        outcomes = [limiter.acquire("1")[0] for _ in range(4)]

        assert outcomes == [True, True, False, False]
        assert self._count("1") == 2

    def test_reports_remaining_and_reset(self):
        limiter = AccessRateLimiter(max_requests=2, window_seconds=60, engine=self.engine)

        _, first = limiter.acquire("1")
        limiter.acquire("1")
        allowed, refused = limiter.acquire("1")

        assert first["remaining"] == 1
        assert not allowed
        assert refused["remaining"] == 0
        assert 0 < refused["reset"] <= 61
        assert refused["limit"] == 2

    def test_concurrent_request_between_insert_and_count(self):
        # Another worker slips its row in after ours is committed but
        # before we count the window; only one of them may be allowed.
        engine = self.engine

        class InterleavedLimiter(AccessRateLimiter):
            def _insert(self, key, now):
                row_id = super()._insert(key, now)
                if key == "1" and not getattr(self, "_raced", False):
                    self._raced = True
                    other = AccessRateLimiter(max_requests=1, window_seconds=60, engine=engine)
                    other.record(key)
                return row_id

        limiter = InterleavedLimiter(max_requests=1, window_seconds=60, engine=engine)

        allowed, _ = limiter.acquire("1")

        assert not allowed
        assert self._count("1") == 1


class TestThrottledEndpoint:

    def test_eleventh_request_is_rejected(self, client, db_engine):
        uid = make_user(db_engine, discord_id=1001)
        eid = make_event(db_engine)
        headers = auth(make_token(uid))

        for _ in range(10):
            resp = client.post(f"/api/events/{eid}/request-access", headers=headers)
            assert resp.status_code == 200

        resp = client.post(f"/api/events/{eid}/request-access", headers=headers)

        assert resp.status_code == 429
        assert "Retry-After" in resp.headers
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "RATE_LIMITED"
        assert body["error"]["details"]["limit"] == 10

    def test_limit_is_per_user(self, client, db_engine):
        busy = make_user(db_engine, username="busy", discord_id=1001)
        calm = make_user(db_engine, username="calm", discord_id=1002)
        eid = make_event(db_engine)
        limiter = AccessRateLimiter(engine=db_engine)
        for _ in range(10):
            limiter.record(str(busy))

        blocked = client.post(f"/api/events/{eid}/request-access", headers=auth(make_token(busy)))
        allowed = client.post(f"/api/events/{eid}/request-access", headers=auth(make_token(calm)))

        assert blocked.status_code == 429
        assert allowed.status_code == 200
