"""
voicegate.config — YAML Configuration Loader
=============================================

**Why this file exists:**
This module reads ``config.yaml`` for the non-secret settings (guild
identity, access throttling, Discord call timeouts, sweep cadence).
Secrets (database URL, JWT secret, bot token, OAuth credentials) come
from the environment (``.env`` via python-dotenv).

Usage::

    from voicegate.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.guild_id)              # 1468816181854081229
    print(cfg.access_request_limit)  # 10
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class VoicegateConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str

    # Discord
    bot_prefix: str
    guild_id: int  # Guild whose roles and voice channels are managed

    # API
    api_port: int = 8000

    # Access request throttle (per user, sliding window)
    access_request_limit: int = 10
    access_request_window_seconds: int = 300

    # Upper bound for a single Discord REST call
    discord_timeout_seconds: float = 10.0

    # How often the bot closes events whose end_time has passed
    sweep_interval_minutes: int = 5


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> VoicegateConfig:
    """Read *path* and return a :class:`VoicegateConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return VoicegateConfig(
        community_name=raw["community_name"],
        bot_prefix=raw.get("bot_prefix", "!"),
        guild_id=int(raw["guild_id"]),
        api_port=int(raw.get("api_port", 8000)),
        access_request_limit=int(raw.get("access_request_limit", 10)),
        access_request_window_seconds=int(raw.get("access_request_window_seconds", 300)),
        discord_timeout_seconds=float(raw.get("discord_timeout_seconds", 10.0)),
        sweep_interval_minutes=int(raw.get("sweep_interval_minutes", 5)),
    )
