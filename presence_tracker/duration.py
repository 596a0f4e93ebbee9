from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .errors import MalformedTimestamp

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Duration:
    hours: int = 0
    minutes: int = 0
    seconds: int = 0

    @classmethod
    def from_seconds(cls, total_seconds: int) -> Duration:
        safe_seconds = max(0, int(total_seconds))
        hours, remainder = divmod(safe_seconds, 3600)
        minutes, seconds = divmod(remainder, 60)
        return cls(hours=hours, minutes=minutes, seconds=seconds)

    @property
    def total_seconds(self) -> int:
        return self.hours * 3600 + self.minutes * 60 + self.seconds

    def __add__(self, other: object) -> Duration:
        if not isinstance(other, Duration):
            return NotImplemented
        return Duration.from_seconds(self.total_seconds + other.total_seconds)


ZERO = Duration()


def parse_timestamp(value: datetime | str | None) -> datetime:
    """Parse a datetime or ISO timestamp and normalize it to UTC."""
    if value is None or value == "":
        raise MalformedTimestamp("timestamp is missing")

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise MalformedTimestamp(f"invalid timestamp: {value!r}") from exc
    else:
        raise MalformedTimestamp(f"unsupported timestamp type: {type(value).__name__}")

    if parsed.tzinfo is None:
        # Stored values should be timezone-aware; treat naive values as UTC for resilience.
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def elapsed(
    start: datetime | str | None,
    end: datetime,
    *,
    on_malformed: Callable[[object], None] | None = None,
) -> Duration:
    """Split the time between ``start`` and ``end`` into hours, minutes and seconds.

    A missing or unparsable ``start`` yields the zero duration. The problem is
    logged and reported through ``on_malformed`` instead of being raised, so a
    single bad timestamp never interrupts session bookkeeping.
    """
    try:
        started = parse_timestamp(start)
    except MalformedTimestamp:
        logger.warning("Malformed session start %r; counting zero duration", start)
        if on_malformed is not None:
            on_malformed(start)
        return ZERO

    ended = parse_timestamp(end)
    return Duration.from_seconds(int((ended - started).total_seconds()))
