from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Protocol
from zoneinfo import ZoneInfo

from .classifier import PresenceChange, classify
from .duration import ZERO, Duration, elapsed, parse_timestamp, utc_now
from .errors import NotificationError, PersistenceError
from .models import AccumulationMode, AuditAction, AuditEntry, CumulativeTimeRecord, PresenceEvent
from .notifier import ChannelRole, Notifier, join_message, leave_message, total_time_message
from .session_store import SessionStore


class PresenceStore(Protocol):
    def append_audit_entry(self, entry: AuditEntry) -> None: ...

    def upsert_cumulative_time(self, record: CumulativeTimeRecord) -> None: ...

    def find_cumulative_time(self, user_id: str) -> CumulativeTimeRecord | None: ...


class Outcome(str, Enum):
    OPENED = "opened"
    CLOSED = "closed"
    TOUCHED = "touched"
    DUPLICATE_IGNORED = "duplicate_ignored"
    IRRELEVANT = "irrelevant"


@dataclass(slots=True)
class TrackerStats:
    events: int = 0
    opened: int = 0
    closed: int = 0
    touched: int = 0
    duplicates_ignored: int = 0
    irrelevant: int = 0
    malformed_timestamps: int = 0
    persistence_failures: int = 0
    notification_failures: int = 0


class SessionCoordinator:
    """Turns presence notifications into sessions, audit entries and totals.

    A user is *tracking* while the session store holds an open session for
    them and *idle* otherwise. Events for the same user are processed one at
    a time under a per-user lock; events for different users may interleave.

    Collaborator failures are logged and counted but never roll back the
    session store, which has already changed by the time persistence runs.
    """

    def __init__(
        self,
        store: SessionStore,
        db: PresenceStore,
        notifier: Notifier,
        tracked_channel_id: int,
        *,
        tz: ZoneInfo,
        clock: Callable[[], datetime] = utc_now,
        mode: AccumulationMode = AccumulationMode.OVERWRITE,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.db = db
        self.notifier = notifier
        self.tracked_channel_id = tracked_channel_id
        self.tz = tz
        self.clock = clock
        self.mode = mode
        self.logger = logger or logging.getLogger(__name__)
        self.stats = TrackerStats()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def handle(self, event: PresenceEvent) -> Outcome:
        # Stamp the event on arrival so queued events keep their own time.
        now = parse_timestamp(event.occurred_at or self.clock())
        self.stats.events += 1

        change = classify(event.previous_channel_id, event.new_channel_id, self.tracked_channel_id)
        if change is PresenceChange.IRRELEVANT:
            self.stats.irrelevant += 1
            return Outcome.IRRELEVANT

        lock = self._lock_for(event.user_id)
        try:
            async with lock:
                if change is PresenceChange.ENTERED:
                    return await self._enter(event, now)
                if change is PresenceChange.LEFT:
                    return await self._leave(event, now)
                return self._touch(event, now)
        finally:
            self._release_lock(event.user_id)

    async def reseed_sessions(
        self,
        members: Iterable[tuple[str, str]],
        started_at_utc: datetime | None = None,
    ) -> int:
        """Replace open sessions with ``(user_id, username)`` pairs already in the channel.

        Each reseeded session gets a join audit entry so the leave that later
        closes it has a matching join. No enter notice is sent.
        """
        started = parse_timestamp(started_at_utc or self.clock())
        members = list(members)
        self.store.reseed([user_id for user_id, _ in members], started)
        for user_id, username in members:
            await self._record_join(user_id, username, started)
        return len(members)

    async def _enter(self, event: PresenceEvent, now: datetime) -> Outcome:
        if not self.store.open(event.user_id, now):
            return self._ignore(PresenceChange.ENTERED, event)

        self.stats.opened += 1
        self.logger.info("Session opened: user=%s (%s)", event.user_id, event.username)

        await self._record_join(event.user_id, event.username, now)
        await self._notify(ChannelRole.ENTER, join_message(event.username, now, self.tz))
        return Outcome.OPENED

    async def _record_join(self, user_id: str, username: str, now: datetime) -> None:
        await self._persist(
            "append join audit entry",
            self.db.append_audit_entry,
            AuditEntry(username=username, user_id=user_id, action=AuditAction.JOIN, timestamp=now),
        )

        found, existing = await self._persist("find cumulative time", self.db.find_cumulative_time, user_id)
        if found and existing is None:
            await self._persist(
                "create cumulative time record",
                self.db.upsert_cumulative_time,
                CumulativeTimeRecord(
                    user_id=user_id,
                    username=username,
                    cumulative_duration=ZERO,
                    last_updated_at=now,
                ),
            )

    async def _leave(self, event: PresenceEvent, now: datetime) -> Outcome:
        if not self.store.has(event.user_id):
            return self._ignore(PresenceChange.LEFT, event)

        entered_at = self.store.close(event.user_id)
        session_duration = elapsed(entered_at, now, on_malformed=self._note_malformed)
        self.stats.closed += 1
        self.logger.info(
            "Session closed: user=%s (%s) tracked=%ss",
            event.user_id,
            event.username,
            session_duration.total_seconds,
        )

        await self._persist(
            "append leave audit entry",
            self.db.append_audit_entry,
            AuditEntry(username=event.username, user_id=event.user_id, action=AuditAction.LEAVE, timestamp=now),
        )

        record = await self._merge(event, session_duration, now)
        if record is not None:
            await self._persist("upsert cumulative time", self.db.upsert_cumulative_time, record)

        await self._notify(ChannelRole.LEAVE, leave_message(event.username, now, self.tz))
        if record is not None:
            await self._notify(ChannelRole.TOTAL_TIME, total_time_message(record, self.tz))
        return Outcome.CLOSED

    def _touch(self, event: PresenceEvent, now: datetime) -> Outcome:
        if not self.store.touch(event.user_id, now):
            return self._ignore(PresenceChange.STILL_PRESENT, event)

        self.stats.touched += 1
        self.logger.debug("Session re-stamped: user=%s at=%s", event.user_id, now.isoformat())
        return Outcome.TOUCHED

    async def _merge(
        self,
        event: PresenceEvent,
        session_duration: Duration,
        now: datetime,
    ) -> CumulativeTimeRecord | None:
        if self.mode is AccumulationMode.OVERWRITE:
            total = session_duration
        else:
            found, existing = await self._persist("find cumulative time", self.db.find_cumulative_time, event.user_id)
            if not found:
                # Writing without the stored base would wipe the user's history.
                self.logger.warning("Skipping total update for user=%s: stored total unavailable", event.user_id)
                return None
            base = existing.cumulative_duration if existing is not None else ZERO
            total = base + session_duration

        return CumulativeTimeRecord(
            user_id=event.user_id,
            username=event.username,
            cumulative_duration=total,
            last_updated_at=now,
        )

    def _ignore(self, change: PresenceChange, event: PresenceEvent) -> Outcome:
        self.stats.duplicates_ignored += 1
        self.logger.debug("Ignoring duplicate %s for user=%s", change.value, event.user_id)
        return Outcome.DUPLICATE_IGNORED

    def _note_malformed(self, value: object) -> None:
        self.stats.malformed_timestamps += 1

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        return lock

    def _release_lock(self, user_id: str) -> None:
        # Drop the lock once no handler holds or waits on it.
        remaining = self._lock_users[user_id] - 1
        if remaining:
            self._lock_users[user_id] = remaining
            return
        del self._lock_users[user_id]
        del self._locks[user_id]

    async def _persist(self, operation: str, func: Callable[..., Any], *args: Any) -> tuple[bool, Any]:
        try:
            return True, func(*args)
        except PersistenceError:
            self.stats.persistence_failures += 1
            self.logger.exception("Persistence failure: %s", operation)
            await self._alert(f"Persistence failure: {operation}. Continuing with in-memory state only.")
            return False, None

    async def _notify(self, role: ChannelRole, message: str) -> None:
        try:
            await self.notifier.notify(role, message)
        except NotificationError:
            self.stats.notification_failures += 1
            self.logger.warning("Failed to deliver %s notification", role.value, exc_info=True)

    async def _alert(self, message: str) -> None:
        try:
            await self.notifier.notify(ChannelRole.ALERT, message)
        except NotificationError:
            self.logger.warning("Failed to deliver operator alert", exc_info=True)
