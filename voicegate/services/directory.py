"""
voicegate.services.directory — External Directory Adapter (Discord REST)
=========================================================================

**Why this file exists:**
Discord holds the authoritative voice-channel permissions and role
assignments.  Every call Voicegate makes to it goes through one
uniform interface, :class:`ExternalDirectory`, so the access
coordinator and role sync can be exercised against an in-memory fake.

:class:`DiscordDirectory` implements it over the Discord REST API with
httpx.  Every call has a bounded timeout and a single transport retry;
timeouts, transport errors and non-2xx responses all surface as
:class:`DirectoryError`.  Callers decide what a failure means (a failed
grant blocks the user, a failed revoke is logged and swallowed).
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import httpx

from voicegate.constants import is_managed_role_name

logger = logging.getLogger(__name__)

DISCORD_API = "https://discord.com/api/v10"

# Permission bits granted on the event's voice channel
VIEW_CHANNEL = 1 << 10
CONNECT = 1 << 20
SPEAK = 1 << 21
VOICE_ACCESS_PERMISSIONS = VIEW_CHANNEL | CONNECT | SPEAK

_MEMBER_OVERWRITE = 1

# Discord channel type → label (GUILD_VOICE, GUILD_STAGE_VOICE)
VOICE_CHANNEL_TYPES: dict[int, str] = {2: "voice", 13: "stage"}


class DirectoryError(Exception):
    """A Discord call failed, timed out, or was rejected."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


@dataclass(frozen=True, slots=True)
class VoiceChannel:
    id: int
    name: str
    type: str
    position: int = 0
    parent_id: int | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        # Snowflakes exceed JS number precision
        data["id"] = str(self.id)
        data["parent_id"] = str(self.parent_id) if self.parent_id else None
        return data


@dataclass(slots=True)
class RoleRemovalResult:
    """Outcome of a best-effort removal loop, one entry per role name."""

    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------
class ExternalDirectory(Protocol):
    async def grant_channel_access(self, discord_user_id: int, channel_id: int) -> None: ...

    async def revoke_channel_access(self, discord_user_id: int, channel_id: int) -> None: ...

    async def disconnect_member(self, discord_user_id: int) -> None: ...

    async def assign_role(self, discord_user_id: int, role_name: str) -> None: ...

    async def remove_all_managed_roles(self, discord_user_id: int) -> RoleRemovalResult: ...

    async def list_voice_channels(self) -> list[VoiceChannel]: ...

    async def add_member_to_guild(self, access_token: str, discord_user_id: int) -> bool: ...

    async def ensure_role(self, name: str, color: int) -> bool: ...


# ---------------------------------------------------------------------------
# Discord REST implementation
# ---------------------------------------------------------------------------
class DiscordDirectory:
    """:class:`ExternalDirectory` backed by the Discord REST API.

    Parameters
    ----------
    bot_token:
        Bot token with Manage Roles, Manage Channels, Move Members and
        Create Instant Invite (guild join) permissions.
    guild_id:
        The guild whose roles and channels are managed.
    timeout:
        Seconds before any single call is abandoned.
    transport:
        Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        bot_token: str,
        guild_id: int,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.guild_id = guild_id
        self.timeout = timeout
        self._headers = {"Authorization": f"Bot {bot_token}"}
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        transport = self._transport or httpx.AsyncHTTPTransport(retries=1)
        return httpx.AsyncClient(
            base_url=DISCORD_API,
            timeout=self.timeout,
            transport=transport,
            headers=self._headers,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        allow_missing: bool = False,
    ) -> httpx.Response:
        """Send one request.  ``allow_missing`` treats 404 as success."""
        try:
            async with self._client() as client:
                resp = await client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            raise DirectoryError(f"{method} {path} timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise DirectoryError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code == 404 and allow_missing:
            return resp
        if resp.status_code == 429:
            retry_after = None
            try:
                retry_after = float(resp.json().get("retry_after", 0)) or None
            except ValueError:
                pass
            raise DirectoryError(
                f"{method} {path} rate limited by Discord",
                status_code=429,
                retry_after=retry_after,
            )
        if resp.status_code >= 400:
            raise DirectoryError(
                f"{method} {path} returned {resp.status_code}",
                status_code=resp.status_code,
            )
        return resp

    async def _guild_roles(self) -> list[dict]:
        resp = await self._request("GET", f"/guilds/{self.guild_id}/roles")
        return resp.json()

    async def _role_id(self, role_name: str) -> str:
        for role in await self._guild_roles():
            if role.get("name") == role_name:
                return role["id"]
        raise DirectoryError(f"Role {role_name!r} does not exist in guild {self.guild_id}")

    # -- channel permissions -------------------------------------------------
    async def grant_channel_access(self, discord_user_id: int, channel_id: int) -> None:
        await self._request(
            "PUT",
            f"/channels/{channel_id}/permissions/{discord_user_id}",
            json={
                "type": _MEMBER_OVERWRITE,
                "allow": str(VOICE_ACCESS_PERMISSIONS),
                "deny": "0",
            },
        )
        logger.info("Granted voice access: member=%s channel=%s", discord_user_id, channel_id)

    async def revoke_channel_access(self, discord_user_id: int, channel_id: int) -> None:
        await self._request(
            "DELETE",
            f"/channels/{channel_id}/permissions/{discord_user_id}",
            allow_missing=True,
        )
        logger.info("Revoked voice access: member=%s channel=%s", discord_user_id, channel_id)

    async def disconnect_member(self, discord_user_id: int) -> None:
        await self._request(
            "PATCH",
            f"/guilds/{self.guild_id}/members/{discord_user_id}",
            json={"channel_id": None},
            allow_missing=True,
        )

    # -- roles ---------------------------------------------------------------
    async def assign_role(self, discord_user_id: int, role_name: str) -> None:
        role_id = await self._role_id(role_name)
        await self._request(
            "PUT", f"/guilds/{self.guild_id}/members/{discord_user_id}/roles/{role_id}",
        )
        logger.info("Assigned role %r to member %s", role_name, discord_user_id)

    async def remove_all_managed_roles(self, discord_user_id: int) -> RoleRemovalResult:
        """Strip every Voicegate-managed role the member currently holds.

        Roles outside the managed set are left alone.  Each removal is
        attempted independently; failures are collected, not raised.
        """
        result = RoleRemovalResult()
        member = await self._request(
            "GET",
            f"/guilds/{self.guild_id}/members/{discord_user_id}",
            allow_missing=True,
        )
        if member.status_code == 404:
            return result

        held = set(member.json().get("roles", []))
        for role in await self._guild_roles():
            name = role.get("name", "")
            if role["id"] not in held or not is_managed_role_name(name):
                continue
            try:
                await self._request(
                    "DELETE",
                    f"/guilds/{self.guild_id}/members/{discord_user_id}/roles/{role['id']}",
                    allow_missing=True,
                )
                result.succeeded.append(name)
            except DirectoryError as exc:
                logger.warning(
                    "Failed to remove role %r from member %s: %s",
                    name, discord_user_id, exc,
                )
                result.failed.append(name)
        return result

    async def ensure_role(self, name: str, color: int) -> bool:
        """Create the role if the guild lacks it.  Returns True when created."""
        if any(r.get("name") == name for r in await self._guild_roles()):
            return False
        await self._request(
            "POST",
            f"/guilds/{self.guild_id}/roles",
            json={"name": name, "color": color, "hoist": True, "mentionable": False},
        )
        logger.info("Created managed role %r", name)
        return True

    # -- guild ---------------------------------------------------------------
    async def list_voice_channels(self) -> list[VoiceChannel]:
        resp = await self._request("GET", f"/guilds/{self.guild_id}/channels")
        channels = [
            VoiceChannel(
                id=int(ch["id"]),
                name=ch.get("name", ""),
                type=VOICE_CHANNEL_TYPES[ch["type"]],
                position=ch.get("position", 0),
                parent_id=int(ch["parent_id"]) if ch.get("parent_id") else None,
            )
            for ch in resp.json()
            if ch.get("type") in VOICE_CHANNEL_TYPES
        ]
        channels.sort(key=lambda c: c.position)
        return channels

    async def add_member_to_guild(self, access_token: str, discord_user_id: int) -> bool:
        """Join the user to the guild with their OAuth token.

        Returns True if they were added, False if already a member.
        """
        resp = await self._request(
            "PUT",
            f"/guilds/{self.guild_id}/members/{discord_user_id}",
            json={"access_token": access_token},
        )
        return resp.status_code == 201
