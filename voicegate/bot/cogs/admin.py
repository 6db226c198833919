"""
voicegate.bot.cogs.admin — Staff Slash Commands
================================================

Discord slash commands for event staff:
- /end-event — end an event now, revoking every active voice grant
- /sync-role — re-mirror a member's local role onto their Discord roles

Both require the invoker's *local* role to be moderator or admin; Discord
roles are only a mirror and are never trusted for authorization.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from voicegate.constants import STAFF_ROLES
from voicegate.database.engine import run_db
from voicegate.engine.errors import AccessError
from voicegate.services.role_sync_service import sync_user_role
from voicegate.services.user_service import get_user_by_discord_id

if TYPE_CHECKING:
    from voicegate.bot.core import VoicegateBot

logger = logging.getLogger(__name__)


def is_staff():
    """Check that the invoking member is a moderator or admin locally."""
    async def predicate(interaction: discord.Interaction) -> bool:
        bot: VoicegateBot = interaction.client  # type: ignore[assignment]
        user = await run_db(get_user_by_discord_id, bot.engine, interaction.user.id)
        return user is not None and user.role in STAFF_ROLES
    return app_commands.check(predicate)


class Admin(commands.Cog, name="Admin"):
    """Event staff commands."""

    def __init__(self, bot: VoicegateBot) -> None:
        self.bot = bot

    # -------------------------------------------------------------------
    # /end-event
    # -------------------------------------------------------------------
    @app_commands.command(name="end-event", description="End an event and revoke all voice access.")
    @app_commands.describe(event_id="ID of the event to end")
    @is_staff()
    async def end_event(self, interaction: discord.Interaction, event_id: int) -> None:
        await interaction.response.defer(ephemeral=True)
        staff = await run_db(get_user_by_discord_id, self.bot.engine, interaction.user.id)
        try:
            stats = await self.bot.coordinator.end_event(
                event_id, processed_by=staff.id if staff else None,
            )
        except AccessError as exc:
            await interaction.followup.send(f"❌ {exc.message}", ephemeral=True)
            return

        summary = f"✅ Event {event_id} ended: {len(stats.revoked)} revoked"
        if stats.external_failed:
            summary += (
                f", {len(stats.external_failed)} closed locally but still on the channel"
                " (remove their overwrites by hand)"
            )
        if stats.failed:
            summary += f", {len(stats.failed)} failed (see logs)"
        if stats.pending_closed:
            summary += f", {stats.pending_closed} pending request(s) closed"
        await interaction.followup.send(summary, ephemeral=True)

    # -------------------------------------------------------------------
    # /sync-role
    # -------------------------------------------------------------------
    @app_commands.command(name="sync-role", description="Re-sync a member's Discord role.")
    @app_commands.describe(member="The member whose role should be re-synced")
    @is_staff()
    async def sync_role(self, interaction: discord.Interaction, member: discord.Member) -> None:
        await interaction.response.defer(ephemeral=True)
        user = await run_db(get_user_by_discord_id, self.bot.engine, member.id)
        if user is None:
            await interaction.followup.send(
                f"❌ **{member.display_name}** has not linked a Voicegate account.",
                ephemeral=True,
            )
            return

        synced = await sync_user_role(self.bot.engine, self.bot.directory, user.id)
        if synced:
            await interaction.followup.send(
                f"✅ **{member.display_name}** synced to role `{user.role}`.", ephemeral=True,
            )
        else:
            await interaction.followup.send(
                f"⚠️ Could not sync **{member.display_name}**, check the bot's role permissions.",
                ephemeral=True,
            )

    # -------------------------------------------------------------------
    # Error handling
    # -------------------------------------------------------------------
    async def cog_app_command_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        if isinstance(error, app_commands.CheckFailure):
            await interaction.response.send_message(
                "🔒 You need the moderator or admin role to use this command.",
                ephemeral=True,
            )
        else:
            raise error


async def setup(bot: VoicegateBot) -> None:
    await bot.add_cog(Admin(bot))
