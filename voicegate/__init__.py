"""
Voicegate — Tag-Gated Voice Events for Discord Communities
============================================================
Links community members to their Discord identity, keeps their platform
role mirrored onto the guild, and hands out access to scheduled voice
events only to members holding the tags an event requires.

Package layout::

    voicegate/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Managed Discord role names/colours, revoke reasons
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default tag catalogue
    ├── engine/
    │   ├── errors.py      # Domain error codes (no HTTP knowledge)
    │   └── eligibility.py # Pure eligibility evaluation
    ├── services/
    │   ├── directory.py          # Discord REST adapter (httpx)
    │   ├── tag_service.py        # Tags + user tag assignments
    │   ├── event_service.py      # Events, participants, voice access rows
    │   ├── user_service.py       # Users + linked Discord profiles
    │   ├── access_service.py     # Event access state machine
    │   ├── role_sync_service.py  # Local role → Discord role
    │   └── activity_service.py   # Login / role-change audit trail
    ├── bot/
    │   ├── __main__.py    # python -m voicegate.bot
    │   ├── core.py        # Bot subclass, cog loader
    │   └── cogs/
    │       ├── tasks.py   # Expired-event sweep
    │       └── admin.py   # /end-event, /sync-role
    └── api/
        ├── main.py        # FastAPI app
        ├── auth.py        # Discord OAuth2 → JWT
        ├── deps.py        # Engine/config/directory providers, auth guards
        ├── rate_limit.py  # Per-user access request throttle
        ├── envelope.py    # Response envelope + domain error → HTTP status
        └── routes/        # Events, public + admin REST endpoints
"""

__version__ = "0.1.0"
