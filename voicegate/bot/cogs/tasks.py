"""
voicegate.bot.cogs.tasks — Periodic Background Tasks
=====================================================

- **Expired-event sweep** — every ``sweep_interval_minutes`` (default 5),
  ends each active event whose ``end_time`` has passed: active grants are
  revoked on Discord, pending requests closed, the event marked completed.

The sweep runs in the bot process; all database work goes through
``run_db()`` inside the coordinator.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discord.ext import commands, tasks

if TYPE_CHECKING:
    from voicegate.bot.core import VoicegateBot

logger = logging.getLogger(__name__)


class PeriodicTasks(commands.Cog):
    """Cog for scheduled background maintenance tasks."""

    def __init__(self, bot: VoicegateBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        self.sweep_loop.change_interval(minutes=self.bot.cfg.sweep_interval_minutes)
        self.sweep_loop.start()

    async def cog_unload(self) -> None:
        self.sweep_loop.cancel()

    # -------------------------------------------------------------------
    # Expired-event sweep
    # -------------------------------------------------------------------
    @tasks.loop(minutes=5)
    async def sweep_loop(self):
        """End active events that are past their end time."""
        try:
            totals = await self.bot.coordinator.sweep_expired_events()
        except Exception:
            logger.exception("Event sweep failed", extra={"task": "sweep"})
            return
        if totals["events"]:
            logger.info(
                "Event sweep complete: %d events ended, %d grants revoked, "
                "%d left on Discord, %d failed",
                totals["events"], totals["revoked"], totals["external_failed"], totals["failed"],
            )

    @sweep_loop.before_loop
    async def _wait_sweep(self):
        await self.bot.wait_until_ready()


async def setup(bot: VoicegateBot) -> None:
    await bot.add_cog(PeriodicTasks(bot))
