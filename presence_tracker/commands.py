from typing import Optional

import discord

from .errors import PersistenceError
from .notifier import format_duration, format_local


def register_commands(bot):
    """Register all slash commands on the bot. Called once during setup."""
    guild_scope = discord.Object(id=bot.config.guild_id)

    @bot.tree.command(name="status", description="Show presence tracker status", guild=guild_scope)
    async def status(interaction):
        coordinator = bot.coordinator
        stats = coordinator.stats

        tracked_name = str(bot.config.tracked_voice_channel_id)
        if bot.tracked_voice_channel is not None:
            tracked_name = bot.tracked_voice_channel.name

        lines = [
            "Presence tracker status: online" if bot.runtime_ready else "Presence tracker status: starting",
            f"Tracked voice channel: `{tracked_name}`",
            f"Accumulation mode: `{coordinator.mode.value}`",
            f"Open sessions: `{len(coordinator.store)}`",
            f"Events processed: `{stats.events}` (ignored duplicates: `{stats.duplicates_ignored}`)",
            f"Sessions opened/closed: `{stats.opened}`/`{stats.closed}`",
            f"Persistence failures: `{stats.persistence_failures}`",
            f"Notification failures: `{stats.notification_failures}`",
        ]
        await interaction.response.send_message("\n".join(lines), ephemeral=True)

    @bot.tree.command(name="total-time", description="Show a member's recorded voice time", guild=guild_scope)
    async def total_time(interaction, member: Optional[discord.Member] = None):
        if interaction.guild is None or interaction.guild.id != bot.config.guild_id:
            await interaction.response.send_message("This command can only be used in the configured server.", ephemeral=True)
            return

        target = member or interaction.user
        try:
            record = bot.db.find_cumulative_time(str(target.id))
        except PersistenceError as exc:
            bot.logger.exception("/total-time lookup failed")
            await interaction.response.send_message(f"Failed to read stored time: `{exc}`", ephemeral=True)
            return

        if record is None:
            await interaction.response.send_message(f"No recorded time for {target.display_name}.", ephemeral=True)
            return

        await interaction.response.send_message(
            f"{target.display_name}: `{format_duration(record.cumulative_duration)}` "
            f"(last updated {format_local(record.last_updated_at, bot.config.timezone)})",
            ephemeral=True,
        )
