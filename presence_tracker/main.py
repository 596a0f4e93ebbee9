from __future__ import annotations

import logging

import discord
from discord.ext import commands
from dotenv import load_dotenv

from .commands import register_commands
from .config import Config, load_config
from .coordinator import SessionCoordinator
from .db import Database
from .duration import utc_now
from .models import PresenceEvent
from .notifier import ChannelRole, DiscordNotifier
from .session_store import SessionStore


class PresenceTrackerBot(commands.Bot):
    def __init__(self, config: Config, db: Database) -> None:
        intents = discord.Intents.none()
        intents.guilds = True
        intents.voice_states = True

        super().__init__(command_prefix="!", intents=intents)

        self.config = config
        self.db = db
        self.notifier = DiscordNotifier({})
        self.coordinator = SessionCoordinator(
            SessionStore(),
            db,
            self.notifier,
            config.tracked_voice_channel_id,
            tz=config.timezone,
            mode=config.accumulation_mode,
        )

        self.logger = logging.getLogger("presence-tracker-bot")

        # runtime_ready prevents event handlers from running before channel/permission checks pass.
        self.runtime_ready = False
        self.guild_obj: discord.Guild | None = None
        self.tracked_voice_channel: discord.VoiceChannel | None = None

    async def setup_hook(self) -> None:
        register_commands(self)
        await self.tree.sync(guild=discord.Object(id=self.config.guild_id))

    async def on_ready(self) -> None:
        self.logger.info("Connected as %s (%s)", self.user, self.user.id if self.user else "unknown")
        if self.runtime_ready:
            return

        if await self._validate_runtime_resources():
            self.runtime_ready = True
            self.logger.info("Runtime checks passed")

    async def _validate_runtime_resources(self) -> bool:
        # Fail fast if guild/channels/permissions are misconfigured.
        guild = self.get_guild(self.config.guild_id)
        if guild is None:
            self.logger.error("Configured guild %s not found", self.config.guild_id)
            await self.close()
            return False

        tracked = guild.get_channel(self.config.tracked_voice_channel_id)
        if not isinstance(tracked, discord.VoiceChannel):
            self.logger.error("Tracked channel %s is missing or not a voice channel", self.config.tracked_voice_channel_id)
            await self.close()
            return False

        me = guild.me
        if me is None and self.user is not None:
            me = guild.get_member(self.user.id)

        if me is None:
            self.logger.error("Unable to resolve bot member in guild %s", guild.id)
            await self.close()
            return False

        required = {
            ChannelRole.ENTER: self.config.enter_channel_id,
            ChannelRole.LEAVE: self.config.leave_channel_id,
            ChannelRole.TOTAL_TIME: self.config.total_time_channel_id,
        }
        for role, channel_id in required.items():
            channel = self._resolve_text_channel(guild, me, channel_id)
            if channel is None:
                self.logger.error("Channel %s for %s notices is unusable", channel_id, role.value)
                await self.close()
                return False
            self.notifier.bind(role, channel)

        if self.config.alert_channel_id is not None:
            alert = self._resolve_text_channel(guild, me, self.config.alert_channel_id)
            if alert is None:
                # Alerts are optional; keep running without them.
                self.logger.warning("Alert channel %s is unusable; operator alerts disabled", self.config.alert_channel_id)
            else:
                self.notifier.bind(ChannelRole.ALERT, alert)

        self.guild_obj = guild
        self.tracked_voice_channel = tracked

        await self._reseed_open_sessions_from_channel()
        return True

    def _resolve_text_channel(
        self,
        guild: discord.Guild,
        me: discord.Member,
        channel_id: int,
    ) -> discord.TextChannel | None:
        channel = guild.get_channel(channel_id)
        if not isinstance(channel, discord.TextChannel):
            return None

        perms = channel.permissions_for(me)
        if not perms.view_channel or not perms.send_messages:
            return None
        return channel

    async def _reseed_open_sessions_from_channel(self) -> None:
        if self.tracked_voice_channel is None:
            return

        # Ignore bot accounts so only human members appear in tracked totals.
        active_users = [(str(member.id), member.name) for member in self.tracked_voice_channel.members if not member.bot]
        count = await self.coordinator.reseed_sessions(active_users, started_at_utc=utc_now())
        self.logger.info("Reseeded open sessions for %d active users", count)

    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        if not self.runtime_ready:
            return

        if member.bot:
            return

        if member.guild.id != self.config.guild_id:
            return

        event = PresenceEvent(
            user_id=str(member.id),
            username=member.name,
            previous_channel_id=before.channel.id if before.channel else None,
            new_channel_id=after.channel.id if after.channel else None,
        )
        await self.coordinator.handle(event)

    async def close(self) -> None:
        self.db.close()
        await super().close()


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def main() -> None:
    load_dotenv()

    config = load_config()
    configure_logging(config.log_level)

    db = Database(config.database_path)
    db.initialize()

    bot = PresenceTrackerBot(config=config, db=db)
    # Logging is already configured; keep discord.py from installing its own handler.
    bot.run(config.discord_token, log_handler=None)


if __name__ == "__main__":
    main()
