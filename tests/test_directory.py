"""
tests/test_directory.py — Discord REST Adapter
===============================================
Drives :class:`DiscordDirectory` through ``httpx.MockTransport`` so no
request leaves the process.
"""

from __future__ import annotations

import json

import httpx
import pytest
from conftest import run_async

from voicegate.constants import MANAGED_ROLE_NAMES
from voicegate.database.models import UserRole
from voicegate.services.directory import (
    VOICE_ACCESS_PERMISSIONS,
    DirectoryError,
    DiscordDirectory,
)

GUILD = 111
API = "/api/v10"

NEWBIE = MANAGED_ROLE_NAMES[UserRole.NEWBIE]
ADMIN = MANAGED_ROLE_NAMES[UserRole.ADMIN]


def _directory(handler) -> tuple[DiscordDirectory, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    return DiscordDirectory("bot-token", GUILD, transport=httpx.MockTransport(_record)), seen


class TestChannelPermissions:

    def test_grant_puts_member_overwrite(self):
        directory, seen = _directory(lambda req: httpx.Response(204))

        run_async(directory.grant_channel_access(42, 9000))

        request = seen[0]
        assert request.method == "PUT"
        assert request.url.path == f"{API}/channels/9000/permissions/42"
        assert request.headers["Authorization"] == "Bot bot-token"
        body = json.loads(request.content)
        assert body == {"type": 1, "allow": str(VOICE_ACCESS_PERMISSIONS), "deny": "0"}

    def test_permission_bits(self):
        assert VOICE_ACCESS_PERMISSIONS == (1 << 10) | (1 << 20) | (1 << 21)

    def test_grant_refused(self):
        directory, _ = _directory(lambda req: httpx.Response(403, json={"message": "Missing Permissions"}))
        with pytest.raises(DirectoryError) as excinfo:
            run_async(directory.grant_channel_access(42, 9000))
        assert excinfo.value.status_code == 403

    def test_revoke_of_missing_overwrite_is_success(self):
        directory, seen = _directory(lambda req: httpx.Response(404))
        run_async(directory.revoke_channel_access(42, 9000))
        assert seen[0].method == "DELETE"

    def test_rate_limited(self):
        directory, _ = _directory(lambda req: httpx.Response(429, json={"retry_after": 2.5}))
        with pytest.raises(DirectoryError) as excinfo:
            run_async(directory.grant_channel_access(42, 9000))
        assert excinfo.value.status_code == 429
        assert excinfo.value.retry_after == 2.5

    def test_timeout_becomes_directory_error(self):
        def _timeout(request):
            raise httpx.ReadTimeout("too slow", request=request)

        directory, _ = _directory(_timeout)
        with pytest.raises(DirectoryError, match="timed out"):
            run_async(directory.grant_channel_access(42, 9000))

    def test_disconnect_clears_voice_channel(self):
        directory, seen = _directory(lambda req: httpx.Response(200, json={}))
        run_async(directory.disconnect_member(42))
        assert seen[0].method == "PATCH"
        assert json.loads(seen[0].content) == {"channel_id": None}


class TestRoles:

    GUILD_ROLES = [
        {"id": "1", "name": NEWBIE},
        {"id": "2", "name": "Server Booster"},
        {"id": "3", "name": ADMIN},
    ]

    def test_remove_only_managed_roles(self):
        def handler(request):
            path = request.url.path
            if request.method == "GET" and path.endswith("/members/42"):
                return httpx.Response(200, json={"roles": ["1", "2", "3"]})
            if request.method == "GET" and path.endswith("/roles"):
                return httpx.Response(200, json=self.GUILD_ROLES)
            if request.method == "DELETE" and path.endswith("/roles/3"):
                return httpx.Response(500)
            return httpx.Response(204)

        directory, seen = _directory(handler)
        result = run_async(directory.remove_all_managed_roles(42))

        assert result.succeeded == [NEWBIE]
        assert result.failed == [ADMIN]
        assert not result.ok
        deleted = [r.url.path for r in seen if r.method == "DELETE"]
        assert not any(p.endswith("/roles/2") for p in deleted)

    def test_remove_for_non_member(self):
        directory, seen = _directory(lambda req: httpx.Response(404))
        result = run_async(directory.remove_all_managed_roles(42))
        assert result.ok
        assert len(seen) == 1

    def test_assign_role_by_name(self):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json=self.GUILD_ROLES)
            return httpx.Response(204)

        directory, seen = _directory(handler)
        run_async(directory.assign_role(42, ADMIN))
        assert seen[-1].method == "PUT"
        assert seen[-1].url.path == f"{API}/guilds/{GUILD}/members/42/roles/3"

    def test_assign_missing_role(self):
        directory, _ = _directory(lambda req: httpx.Response(200, json=[]))
        with pytest.raises(DirectoryError, match="does not exist"):
            run_async(directory.assign_role(42, ADMIN))

    def test_ensure_role_creates_once(self):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json=self.GUILD_ROLES)
            return httpx.Response(200, json={"id": "9"})

        directory, seen = _directory(handler)
        assert not run_async(directory.ensure_role(ADMIN, 0xFF0000))
        assert run_async(directory.ensure_role("\U0001f499 Member", 0x0099FF))
        post = [r for r in seen if r.method == "POST"]
        assert len(post) == 1
        assert json.loads(post[0].content)["color"] == 0x0099FF


class TestGuild:

    def test_voice_channels_filtered_and_sorted(self):
        channels = [
            {"id": "10", "name": "general", "type": 0, "position": 0},
            {"id": "11", "name": "Stage", "type": 13, "position": 2},
            {"id": "12", "name": "Lounge", "type": 2, "position": 1, "parent_id": "5"},
        ]
        directory, _ = _directory(lambda req: httpx.Response(200, json=channels))

        result = run_async(directory.list_voice_channels())

        assert [c.name for c in result] == ["Lounge", "Stage"]
        assert result[0].to_dict() == {
            "id": "12", "name": "Lounge", "type": "voice", "position": 1, "parent_id": "5",
        }
        assert result[1].type == "stage"

    @pytest.mark.parametrize("status,added", [(201, True), (204, False)])
    def test_add_member_to_guild(self, status, added):
        directory, seen = _directory(lambda req: httpx.Response(status))
        assert run_async(directory.add_member_to_guild("oauth-token", 42)) is added
        assert json.loads(seen[0].content) == {"access_token": "oauth-token"}
