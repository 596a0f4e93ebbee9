from __future__ import annotations


class TrackerError(Exception):
    """Base class for recoverable presence tracker failures."""


class MalformedTimestamp(TrackerError, ValueError):
    """A session timestamp was missing or could not be parsed."""


class PersistenceError(TrackerError):
    """Reading from or writing to the durable store failed."""


class NotificationError(TrackerError):
    """An outbound notification could not be delivered."""
