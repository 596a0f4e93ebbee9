from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Mapping, Protocol
from zoneinfo import ZoneInfo

import aiohttp
import discord

from .duration import Duration
from .errors import NotificationError
from .models import CumulativeTimeRecord


class ChannelRole(str, Enum):
    ENTER = "enter"
    LEAVE = "leave"
    TOTAL_TIME = "total_time"
    ALERT = "alert"


def format_duration(duration: Duration) -> str:
    return f"{duration.hours}h {duration.minutes}m {duration.seconds}s"


def format_local(at: datetime, tz: ZoneInfo) -> str:
    return at.astimezone(tz).isoformat(timespec="seconds")


def join_message(username: str, at: datetime, tz: ZoneInfo) -> str:
    return f"```User {username} joined the voice channel at {format_local(at, tz)}```"


def leave_message(username: str, at: datetime, tz: ZoneInfo) -> str:
    return f"```User {username} left the voice channel at {format_local(at, tz)}```"


def total_time_message(record: CumulativeTimeRecord, tz: ZoneInfo) -> str:
    return (
        f"```User {record.username} spent a total of {format_duration(record.cumulative_duration)} "
        f"in the voice channel until {format_local(record.last_updated_at, tz)}.```"
    )


class Notifier(Protocol):
    async def notify(self, role: ChannelRole, message: str) -> bool: ...


class TextChannelLike(Protocol):
    async def send(self, content: str, **kwargs): ...


class DiscordNotifier:
    """Routes each notification role to its Discord text channel."""

    def __init__(
        self,
        channels: Mapping[ChannelRole, TextChannelLike],
        logger: logging.Logger | None = None,
    ) -> None:
        self._channels = dict(channels)
        self.logger = logger or logging.getLogger(__name__)

    def bind(self, role: ChannelRole, channel: TextChannelLike) -> None:
        self._channels[role] = channel

    def has_role(self, role: ChannelRole) -> bool:
        return role in self._channels

    async def notify(self, role: ChannelRole, message: str) -> bool:
        channel = self._channels.get(role)
        if channel is None:
            self.logger.debug("No channel configured for role %s; dropping message", role.value)
            return False

        try:
            # Never ping users from presence notices.
            await channel.send(message, allowed_mentions=discord.AllowedMentions.none())
        except (discord.HTTPException, aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            raise NotificationError(f"Failed to send {role.value} notification") from exc
        return True
