"""
tests/test_activity.py — Activity Audit Trail
==============================================
Logins and role changes leave an entry; a broken log never breaks the
action being audited.
"""

from __future__ import annotations

import os
from unittest.mock import patch

import httpx
from conftest import auth, make_token, make_user, run_async

from voicegate.api.auth import _store_oauth_state
from voicegate.database.models import ActivityLog, UserRole
from voicegate.services import activity_service
from voicegate.services.activity_service import ActivityAction
from voicegate.services.role_sync_service import update_user_role
from voicegate.services.user_service import get_user

OAUTH_ENV = {
    "DISCORD_CLIENT_ID": "client-id",
    "DISCORD_CLIENT_SECRET": "client-secret",
    "DISCORD_REDIRECT_URI": "http://localhost/api/auth/callback",
    "FRONTEND_URL": "http://localhost:3000",
}


def _discord_oauth(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/oauth2/token"):
        return httpx.Response(200, json={
            "access_token": "member-access-token",
            "refresh_token": "member-refresh-token",
            "expires_in": 604800,
        })
    if request.url.path.endswith("/users/@me"):
        return httpx.Response(200, json={
            "id": "424242", "username": "ada", "avatar": None, "email": "ada@example.com",
        })
    return httpx.Response(404)


class TestLogActivity:

    def test_writes_entry(self, db_engine):
        ok = activity_service.log_activity(
            db_engine,
            action_type=ActivityAction.ROLE_CHANGED,
            entity_type="user",
            entity_id=7,
            actor_id=1,
            details={"old_role": "member", "new_role": "moderator"},
        )

        assert ok
        [row] = activity_service.list_activity(db_engine)
        assert row.action_type == "role_changed"
        assert row.entity_id == "7"
        assert row.actor_type == "user"
        assert row.details == {"old_role": "member", "new_role": "moderator"}

    def test_failure_returns_false(self, db_engine):
        ActivityLog.__table__.drop(db_engine)

        assert activity_service.log_activity(
            db_engine, action_type=ActivityAction.LOGIN_SUCCESS, entity_type="user",
        ) is False

    def test_list_filters_and_orders_newest_first(self, db_engine):
        for entity_id in (1, 2, 3):
            activity_service.log_activity(
                db_engine, action_type=ActivityAction.LOGIN_SUCCESS,
                entity_type="user", entity_id=entity_id, actor_id=entity_id,
            )
        activity_service.log_activity(
            db_engine, action_type=ActivityAction.ROLE_CHANGED,
            entity_type="user", entity_id=2, actor_id=9,
        )

        logins = activity_service.list_activity(db_engine, action_type="login_success")
        by_admin = activity_service.list_activity(db_engine, actor_id=9)

        assert [r.entity_id for r in logins] == ["3", "2", "1"]
        assert [r.action_type for r in by_admin] == ["role_changed"]
        assert len(activity_service.list_activity(db_engine, limit=2)) == 2


class TestRoleChangeAudit:

    def test_role_change_is_logged(self, db_engine, directory):
        admin = make_user(db_engine, username="boss", role=UserRole.ADMIN)
        uid = make_user(db_engine, role=UserRole.NEWBIE, discord_id=1001)

        run_async(update_user_role(db_engine, directory, uid, "contributor", changed_by=admin))

        [row] = activity_service.list_activity(db_engine, action_type="role_changed")
        assert row.actor_id == admin
        assert row.entity_id == str(uid)
        assert row.details == {
            "old_role": "newbie", "new_role": "contributor", "discord_synced": True,
        }

    def test_unknown_user_is_not_logged(self, db_engine, directory):
        run_async(update_user_role(db_engine, directory, 404, "member", changed_by=1))
        assert activity_service.list_activity(db_engine) == []

    def test_role_change_survives_broken_log(self, db_engine, directory):
        uid = make_user(db_engine, role=UserRole.NEWBIE, discord_id=1001)
        ActivityLog.__table__.drop(db_engine)

        user, synced = run_async(update_user_role(db_engine, directory, uid, "member"))

        assert user.role == "member"
        assert synced
        assert get_user(db_engine, uid).role == "member"


class TestLoginAudit:

    def test_oauth_callback_logs_login(self, client, db_engine):
        _store_oauth_state(db_engine, "state-123")
        mock_transport = httpx.MockTransport(_discord_oauth)

        with patch.dict(os.environ, OAUTH_ENV), patch(
            "voicegate.api.auth.httpx.AsyncHTTPTransport", lambda retries: mock_transport,
        ):
            resp = client.get(
                "/api/auth/callback?code=abc&state=state-123",
                headers={"User-Agent": "pytest-browser"},
                follow_redirects=False,
            )

        assert resp.status_code in (302, 307)
        assert resp.headers["location"].startswith("http://localhost:3000/auth/callback?token=")
        [row] = activity_service.list_activity(db_engine, action_type="login_success")
        assert row.actor_id is not None
        assert row.entity_id == str(row.actor_id)
        assert row.details["is_new_user"] is True
        assert row.details["discord_id"] == "424242"
        assert row.user_agent == "pytest-browser"

    def test_rejected_state_is_not_logged(self, client, db_engine):
        with patch.dict(os.environ, OAUTH_ENV):
            resp = client.get("/api/auth/callback?code=abc&state=forged", follow_redirects=False)

        assert resp.status_code == 400
        assert activity_service.list_activity(db_engine) == []


class TestActivityRoute:

    def test_admin_reads_role_changes(self, client, db_engine):
        admin = make_user(db_engine, username="boss", role=UserRole.ADMIN)
        uid = make_user(db_engine, discord_id=1001)
        headers = auth(make_token(admin, role="admin"))
        client.put(f"/api/admin/users/{uid}/role", json={"role": "moderator"}, headers=headers)

        resp = client.get("/api/admin/activity?action_type=role_changed", headers=headers)

        assert resp.status_code == 200
        [entry] = resp.json()["data"]["activity"]
        assert entry["actor_id"] == admin
        assert entry["details"]["new_role"] == "moderator"

    def test_moderators_cannot_read(self, client, db_engine):
        mod = make_user(db_engine, username="mod", role=UserRole.MODERATOR)
        resp = client.get("/api/admin/activity", headers=auth(make_token(mod, role="moderator")))
        assert resp.status_code == 403
