"""
voicegate.bot.core — Bot Instance & Cog Loader
===============================================

**Why this file exists:**
The bot process is the scheduler half of Voicegate.  :class:`VoicegateBot`
subclasses ``commands.Bot`` and carries the shared state every Cog reads
through ``self.bot``:

1. ``bot.cfg`` — the parsed :class:`VoicegateConfig`.
2. ``bot.engine`` — the SQLAlchemy engine.
3. ``bot.directory`` — the Discord REST adapter used for overwrites/roles.
4. ``bot.coordinator`` — an :class:`EventAccessCoordinator` wired to both.

On startup it loads the Cogs, syncs the slash-command tree (guild-scoped
when ``DEV_GUILD_ID`` is set) and makes sure the managed roles exist.
"""

from __future__ import annotations

import logging
import os

import discord
from discord.ext import commands
from sqlalchemy import Engine

from voicegate.config import VoicegateConfig
from voicegate.services.access_service import EventAccessCoordinator
from voicegate.services.directory import ExternalDirectory
from voicegate.services.role_sync_service import setup_managed_roles

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "voicegate.bot.cogs.tasks",
    "voicegate.bot.cogs.admin",
]


class VoicegateBot(commands.Bot):
    """Custom Bot subclass that carries project-wide state.

    Parameters
    ----------
    cfg:
        The parsed :class:`VoicegateConfig` from ``config.yaml``.
    engine:
        A SQLAlchemy :class:`Engine`.
    directory:
        The :class:`ExternalDirectory` the coordinator talks to.
    """

    def __init__(
        self,
        cfg: VoicegateConfig,
        engine: Engine,
        directory: ExternalDirectory,
    ) -> None:
        # Slash commands only; no message content or presence needed.
        intents = discord.Intents.default()
        intents.members = True
        intents.presences = False

        super().__init__(
            command_prefix=cfg.bot_prefix,
            intents=intents,
            description=f"{cfg.community_name} voice events",
        )

        self.cfg = cfg
        self.engine = engine
        self.directory = directory
        # The sweep runs without a throttle; only member requests are limited.
        self.coordinator = EventAccessCoordinator(engine, directory)

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Load every Cog; a broken one is logged and skipped."""
        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

    async def on_ready(self) -> None:
        """Fired when the bot has connected and the cache is populated."""
        assert self.user is not None
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)

        # --- Slash-command sync ---------------------------------------------
        dev_guild_id = os.getenv("DEV_GUILD_ID")
        if dev_guild_id:
            guild = discord.Object(id=int(dev_guild_id))
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            logger.info("Synced %d commands to dev guild %s", len(synced), dev_guild_id)
        else:
            synced = await self.tree.sync()
            logger.info("Synced %d commands globally", len(synced))

        # --- Managed roles --------------------------------------------------
        result = await setup_managed_roles(self.directory)
        logger.info(
            "Managed roles: %d created, %d existing, %d failed",
            len(result["created"]), len(result["existing"]), len(result["failed"]),
        )
        if result["failed"]:
            logger.warning(
                "Could not create managed roles %s; role sync will fail for them",
                ", ".join(result["failed"]),
            )

    async def close(self) -> None:
        logger.info("Bot shutting down…")
        await super().close()
