"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime, timedelta

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of voicegate.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import jwt  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import BigInteger, Engine, create_engine  # noqa: E402
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.ext.compiler import compiles  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from voicegate.api.deps import (  # noqa: E402
    JWT_ALGORITHM,
    JWT_SECRET,
    get_config,
    get_directory,
    get_engine,
)
from voicegate.api.main import app  # noqa: E402
from voicegate.config import VoicegateConfig  # noqa: E402
from voicegate.constants import is_managed_role_name  # noqa: E402
from voicegate.database.models import Base, DiscordProfile, EventStatus, User, UserRole  # noqa: E402
from voicegate.services import event_service, tag_service  # noqa: E402
from voicegate.services.access_service import EventAccessCoordinator  # noqa: E402
from voicegate.services.directory import (  # noqa: E402
    DirectoryError,
    RoleRemovalResult,
    VoiceChannel,
)

VOICE_CHANNEL_ID = 900000000000000001
OTHER_VOICE_CHANNEL_ID = 900000000000000002


# ---------------------------------------------------------------------------
# BigInteger → INTEGER so autoincrement primary keys work on SQLite.
# ---------------------------------------------------------------------------
@compiles(BigInteger, "sqlite")
def _compile_bigint_as_integer(type_, compiler, **kw):
    return "INTEGER"


# SQLite has no JSONB; SQLAlchemy's JSON bind/result processing still works on TEXT.
@compiles(PG_JSONB, "sqlite")
def _compile_jsonb_as_text(type_, compiler, **kw):
    return "TEXT"


# Helper to run async code without pytest-asyncio
def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all Voicegate tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


# ---------------------------------------------------------------------------
# In-memory Discord
# ---------------------------------------------------------------------------
class FakeDirectory:
    """In-memory stand-in for :class:`~voicegate.services.directory.DiscordDirectory`.

    Flip the ``fail_*`` switches to simulate Discord refusing a call.
    """

    def __init__(self) -> None:
        self.overwrites: set[tuple[int, int]] = set()  # (channel_id, member_id)
        self.member_roles: dict[int, set[str]] = {}
        self.guild_roles: dict[str, int] = {}
        self.guild_members: set[int] = set()
        self.voice_channels = [
            VoiceChannel(id=VOICE_CHANNEL_ID, name="Event Stage", type="voice", position=0),
            VoiceChannel(id=OTHER_VOICE_CHANNEL_ID, name="Study Room", type="voice", position=1),
        ]
        self.disconnected: list[int] = []
        self.calls: list[tuple] = []

        self.fail_grant = False
        self.fail_revoke = False
        self.fail_disconnect = False
        self.fail_assign = False
        self.fail_list = False
        self.fail_remove: set[str] = set()

    async def grant_channel_access(self, discord_user_id: int, channel_id: int) -> None:
        self.calls.append(("grant", discord_user_id, channel_id))
        if self.fail_grant:
            raise DirectoryError("Missing Permissions", status_code=403)
        self.overwrites.add((channel_id, discord_user_id))

    async def revoke_channel_access(self, discord_user_id: int, channel_id: int) -> None:
        self.calls.append(("revoke", discord_user_id, channel_id))
        if self.fail_revoke:
            raise DirectoryError("timed out")
        self.overwrites.discard((channel_id, discord_user_id))

    async def disconnect_member(self, discord_user_id: int) -> None:
        self.calls.append(("disconnect", discord_user_id))
        if self.fail_disconnect:
            raise DirectoryError("timed out")
        self.disconnected.append(discord_user_id)

    async def assign_role(self, discord_user_id: int, role_name: str) -> None:
        self.calls.append(("assign_role", discord_user_id, role_name))
        if self.fail_assign:
            raise DirectoryError("Missing Permissions", status_code=403)
        self.member_roles.setdefault(discord_user_id, set()).add(role_name)

    async def remove_all_managed_roles(self, discord_user_id: int) -> RoleRemovalResult:
        self.calls.append(("remove_managed", discord_user_id))
        result = RoleRemovalResult()
        held = self.member_roles.setdefault(discord_user_id, set())
        for name in sorted(held):
            if not is_managed_role_name(name):
                continue
            if name in self.fail_remove:
                result.failed.append(name)
                continue
            held.discard(name)
            result.succeeded.append(name)
        return result

    async def list_voice_channels(self) -> list[VoiceChannel]:
        if self.fail_list:
            raise DirectoryError("timed out")
        return list(self.voice_channels)

    async def add_member_to_guild(self, access_token: str, discord_user_id: int) -> bool:
        added = discord_user_id not in self.guild_members
        self.guild_members.add(discord_user_id)
        return added

    async def ensure_role(self, name: str, color: int) -> bool:
        if name in self.guild_roles:
            return False
        self.guild_roles[name] = color
        return True

    def has_access(self, discord_user_id: int, channel_id: int = VOICE_CHANNEL_ID) -> bool:
        return (channel_id, discord_user_id) in self.overwrites

    def count(self, kind: str) -> int:
        return sum(1 for call in self.calls if call[0] == kind)


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def coordinator(db_engine, directory) -> EventAccessCoordinator:
    return EventAccessCoordinator(db_engine, directory)


# ---------------------------------------------------------------------------
# Row factories.  Usable from tests via ``from conftest import ...``.
# ---------------------------------------------------------------------------
def make_user(
    engine: Engine,
    *,
    username: str = "member",
    role: UserRole = UserRole.MEMBER,
    discord_id: int | None = None,
    guild_joined: bool = True,
) -> int:
    """Insert a user (and a linked Discord profile if *discord_id*)."""
    with Session(engine) as session:
        user = User(username=username, role=role.value)
        session.add(user)
        session.flush()
        if discord_id is not None:
            session.add(DiscordProfile(
                user_id=user.id,
                discord_id=discord_id,
                discord_username=username,
                guild_joined=guild_joined,
            ))
        session.commit()
        return user.id


def make_tag(engine: Engine, name: str, **kwargs) -> int:
    kwargs.setdefault("display_name", name.replace("_", " ").title())
    return tag_service.create_tag(engine, name=name, **kwargs).id


def give_tag(engine: Engine, user_id: int, tag_id: int) -> None:
    tag_service.assign_tag(engine, user_id, tag_id)


def make_event(
    engine: Engine,
    *,
    title: str = "Weekly Mock Interview",
    status: str = EventStatus.ACTIVE.value,
    max_participants: int | None = None,
    required_tag_ids=(),
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    voice_channel_id: int = VOICE_CHANNEL_ID,
) -> int:
    start = start_time or datetime.now(UTC) - timedelta(minutes=10)
    return event_service.create_event(
        engine,
        title=title,
        event_type="mock_interview",
        start_time=start,
        end_time=end_time,
        voice_channel_id=voice_channel_id,
        max_participants=max_participants,
        required_tag_ids=required_tag_ids,
        status=status,
    ).id


# ---------------------------------------------------------------------------
# Auth & API client
# ---------------------------------------------------------------------------
def make_token(sub: int | str, role: str = "member", username: str = "Tester") -> str:
    """Create a signed JWT for *sub* with *role*."""
    return jwt.encode(
        {"sub": str(sub), "username": username, "role": role},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def test_config() -> VoicegateConfig:
    return VoicegateConfig(community_name="Test Community", bot_prefix="!", guild_id=1)


@pytest.fixture
def client(db_engine, directory, test_config):
    """TestClient wired to the SQLite engine and the fake directory."""
    from fastapi.testclient import TestClient

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_directory] = lambda: directory
    app.dependency_overrides[get_config] = lambda: test_config
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
