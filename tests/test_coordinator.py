import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import aiohttp
import pytest

from presence_tracker.coordinator import Outcome, SessionCoordinator
from presence_tracker.db import Database
from presence_tracker.duration import Duration
from presence_tracker.errors import NotificationError, PersistenceError
from presence_tracker.models import AccumulationMode, AuditAction, PresenceEvent
from presence_tracker.notifier import ChannelRole, DiscordNotifier
from presence_tracker.session_store import SessionStore

TRACKED = 500
OTHER = 600
T0 = datetime(2026, 2, 1, 10, 0, 0, tzinfo=timezone.utc)


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[ChannelRole, str]] = []

    async def notify(self, role: ChannelRole, message: str) -> bool:
        self.sent.append((role, message))
        return True

    def roles(self) -> list[ChannelRole]:
        return [role for role, _ in self.sent]


class FailingNotifier(FakeNotifier):
    async def notify(self, role: ChannelRole, message: str) -> bool:
        raise NotificationError("channel unavailable")


class BrokenDatabase:
    def append_audit_entry(self, entry) -> None:
        raise PersistenceError("disk full")

    def upsert_cumulative_time(self, record) -> None:
        raise PersistenceError("disk full")

    def find_cumulative_time(self, user_id):
        raise PersistenceError("disk full")


class SlowNotifier(FakeNotifier):
    async def notify(self, role: ChannelRole, message: str) -> bool:
        # Yield so other handlers get a chance to interleave.
        await asyncio.sleep(0)
        return await super().notify(role, message)


def make_db() -> Database:
    db = Database(":memory:")
    db.initialize()
    return db


def make_coordinator(db=None, notifier=None, mode=AccumulationMode.OVERWRITE):
    return SessionCoordinator(
        SessionStore(),
        db if db is not None else make_db(),
        notifier if notifier is not None else FakeNotifier(),
        TRACKED,
        tz=ZoneInfo("UTC"),
        clock=lambda: T0,
        mode=mode,
    )


def event(previous, new, at=None, user_id="100", username="alice") -> PresenceEvent:
    return PresenceEvent(
        user_id=user_id,
        username=username,
        previous_channel_id=previous,
        new_channel_id=new,
        occurred_at=at,
    )


@pytest.mark.asyncio
async def test_enter_then_leave_end_to_end() -> None:
    db = make_db()
    notifier = FakeNotifier()
    coordinator = make_coordinator(db, notifier)

    assert await coordinator.handle(event(None, TRACKED, T0)) is Outcome.OPENED
    assert await coordinator.handle(event(TRACKED, None, T0 + timedelta(seconds=125))) is Outcome.CLOSED

    entries = db.list_audit_entries("100")
    assert [(entry.action, entry.timestamp) for entry in entries] == [
        (AuditAction.JOIN, T0),
        (AuditAction.LEAVE, T0 + timedelta(seconds=125)),
    ]

    record = db.find_cumulative_time("100")
    assert record is not None
    assert record.cumulative_duration == Duration(0, 2, 5)
    assert record.username == "alice"

    assert notifier.roles() == [ChannelRole.ENTER, ChannelRole.LEAVE, ChannelRole.TOTAL_TIME]
    assert "0h 2m 5s" in notifier.sent[2][1]
    assert not coordinator.store.has("100")


@pytest.mark.asyncio
async def test_enter_creates_zero_record_once() -> None:
    db = make_db()
    coordinator = make_coordinator(db)

    await coordinator.handle(event(None, TRACKED, T0))

    record = db.find_cumulative_time("100")
    assert record is not None
    assert record.cumulative_duration == Duration()


@pytest.mark.asyncio
async def test_duplicate_leave_has_no_side_effects() -> None:
    db = make_db()
    notifier = FakeNotifier()
    coordinator = make_coordinator(db, notifier)

    assert await coordinator.handle(event(TRACKED, None, T0)) is Outcome.DUPLICATE_IGNORED

    assert db.list_audit_entries() == []
    assert db.find_cumulative_time("100") is None
    assert notifier.sent == []
    assert coordinator.stats.duplicates_ignored == 1


@pytest.mark.asyncio
async def test_enter_while_tracking_is_noop() -> None:
    db = make_db()
    notifier = FakeNotifier()
    coordinator = make_coordinator(db, notifier)

    await coordinator.handle(event(None, TRACKED, T0))
    outcome = await coordinator.handle(event(OTHER, TRACKED, T0 + timedelta(minutes=1)))

    assert outcome is Outcome.DUPLICATE_IGNORED
    assert coordinator.store.get("100").entered_at == T0
    assert len(db.list_audit_entries()) == 1
    assert notifier.roles() == [ChannelRole.ENTER]


@pytest.mark.asyncio
async def test_transfer_and_reenter_without_leave_keeps_single_join() -> None:
    db = make_db()
    coordinator = make_coordinator(db)

    await coordinator.handle(event(None, TRACKED, T0))
    # The transfer notification is lost; only the re-entry arrives.
    await coordinator.handle(event(OTHER, TRACKED, T0 + timedelta(seconds=30)))

    entries = db.list_audit_entries("100")
    assert [entry.action for entry in entries] == [AuditAction.JOIN]
    assert len(coordinator.store) == 1


@pytest.mark.asyncio
async def test_still_present_restamps_start() -> None:
    db = make_db()
    coordinator = make_coordinator(db)

    await coordinator.handle(event(None, TRACKED, T0))
    assert await coordinator.handle(event(TRACKED, TRACKED, T0 + timedelta(minutes=10))) is Outcome.TOUCHED
    await coordinator.handle(event(TRACKED, None, T0 + timedelta(minutes=11)))

    assert db.find_cumulative_time("100").cumulative_duration == Duration(0, 1, 0)


@pytest.mark.asyncio
async def test_still_present_without_session_is_ignored() -> None:
    coordinator = make_coordinator()

    assert await coordinator.handle(event(TRACKED, TRACKED, T0)) is Outcome.DUPLICATE_IGNORED
    assert len(coordinator.store) == 0


@pytest.mark.asyncio
async def test_irrelevant_event() -> None:
    notifier = FakeNotifier()
    coordinator = make_coordinator(notifier=notifier)

    assert await coordinator.handle(event(OTHER, None, T0)) is Outcome.IRRELEVANT
    assert notifier.sent == []
    assert coordinator.stats.irrelevant == 1


@pytest.mark.asyncio
async def test_overwrite_mode_replaces_total() -> None:
    db = make_db()
    coordinator = make_coordinator(db)

    await coordinator.handle(event(None, TRACKED, T0))
    await coordinator.handle(event(TRACKED, None, T0 + timedelta(minutes=5)))
    await coordinator.handle(event(None, TRACKED, T0 + timedelta(minutes=10)))
    await coordinator.handle(event(TRACKED, None, T0 + timedelta(minutes=12)))

    assert db.find_cumulative_time("100").cumulative_duration == Duration(0, 2, 0)


@pytest.mark.asyncio
async def test_additive_mode_accumulates_total() -> None:
    db = make_db()
    notifier = FakeNotifier()
    coordinator = make_coordinator(db, notifier, mode=AccumulationMode.ADDITIVE)

    await coordinator.handle(event(None, TRACKED, T0))
    await coordinator.handle(event(TRACKED, None, T0 + timedelta(minutes=5)))
    await coordinator.handle(event(None, TRACKED, T0 + timedelta(minutes=10)))
    await coordinator.handle(event(TRACKED, None, T0 + timedelta(minutes=12)))

    assert db.find_cumulative_time("100").cumulative_duration == Duration(0, 7, 0)
    assert "0h 7m 0s" in notifier.sent[-1][1]


@pytest.mark.asyncio
async def test_malformed_start_closes_with_zero_duration() -> None:
    db = make_db()
    coordinator = make_coordinator(db)
    coordinator.store.open("100", "not-a-timestamp")

    outcome = await coordinator.handle(event(TRACKED, None, T0))

    assert outcome is Outcome.CLOSED
    assert db.find_cumulative_time("100").cumulative_duration == Duration()
    assert coordinator.stats.malformed_timestamps == 1


@pytest.mark.asyncio
async def test_event_without_timestamp_uses_clock() -> None:
    db = make_db()
    coordinator = make_coordinator(db)

    await coordinator.handle(event(None, TRACKED))

    assert coordinator.store.get("100").entered_at == T0


@pytest.mark.asyncio
async def test_persistence_failure_keeps_in_memory_state() -> None:
    notifier = FakeNotifier()
    coordinator = make_coordinator(BrokenDatabase(), notifier)

    assert await coordinator.handle(event(None, TRACKED, T0)) is Outcome.OPENED
    assert coordinator.store.has("100")

    assert await coordinator.handle(event(TRACKED, None, T0 + timedelta(seconds=5))) is Outcome.CLOSED
    assert not coordinator.store.has("100")

    assert coordinator.stats.persistence_failures == 4
    assert ChannelRole.ALERT in notifier.roles()
    # Overwrite mode does not need the stored total, so the notice still goes out.
    assert notifier.roles()[-2:] == [ChannelRole.LEAVE, ChannelRole.TOTAL_TIME]


@pytest.mark.asyncio
async def test_additive_mode_skips_total_when_store_unreadable() -> None:
    notifier = FakeNotifier()
    coordinator = make_coordinator(BrokenDatabase(), notifier, mode=AccumulationMode.ADDITIVE)
    coordinator.store.open("100", T0)

    await coordinator.handle(event(TRACKED, None, T0 + timedelta(seconds=5)))

    assert ChannelRole.TOTAL_TIME not in notifier.roles()
    assert ChannelRole.LEAVE in notifier.roles()


@pytest.mark.asyncio
async def test_notification_failure_does_not_interrupt_processing() -> None:
    db = make_db()
    coordinator = make_coordinator(db, FailingNotifier())

    await coordinator.handle(event(None, TRACKED, T0))
    await coordinator.handle(event(TRACKED, None, T0 + timedelta(seconds=90)))

    assert len(db.list_audit_entries()) == 2
    assert db.find_cumulative_time("100").cumulative_duration == Duration(0, 1, 30)
    assert coordinator.stats.notification_failures == 3


@pytest.mark.asyncio
async def test_at_most_one_open_session_for_any_sequence() -> None:
    steps = [
        (None, TRACKED),
        (TRACKED, None),
        (TRACKED, TRACKED),
        (OTHER, None),
        (OTHER, TRACKED),
        (TRACKED, OTHER),
    ]

    for sequence in itertools.product(steps, repeat=4):
        coordinator = make_coordinator()
        for offset, (previous, new) in enumerate(sequence):
            await coordinator.handle(event(previous, new, T0 + timedelta(seconds=offset)))
            assert len(coordinator.store) <= 1

        joins = [e for e in coordinator.db.list_audit_entries() if e.action is AuditAction.JOIN]
        leaves = [e for e in coordinator.db.list_audit_entries() if e.action is AuditAction.LEAVE]
        # Every leave closes a join; at most one join is still open.
        assert len(joins) - len(leaves) in (0, 1)


@pytest.mark.asyncio
async def test_same_user_events_are_serialized() -> None:
    db = make_db()
    notifier = SlowNotifier()
    coordinator = make_coordinator(db, notifier)

    await asyncio.gather(
        coordinator.handle(event(None, TRACKED, T0)),
        coordinator.handle(event(None, TRACKED, T0)),
        coordinator.handle(event(TRACKED, None, T0 + timedelta(seconds=10))),
    )

    actions = [entry.action for entry in db.list_audit_entries("100")]
    assert actions == [AuditAction.JOIN, AuditAction.LEAVE]
    assert notifier.roles() == [ChannelRole.ENTER, ChannelRole.LEAVE, ChannelRole.TOTAL_TIME]


@pytest.mark.asyncio
async def test_different_users_are_independent() -> None:
    db = make_db()
    coordinator = make_coordinator(db, SlowNotifier())

    await asyncio.gather(
        coordinator.handle(event(None, TRACKED, T0, user_id="1", username="a")),
        coordinator.handle(event(None, TRACKED, T0, user_id="2", username="b")),
    )

    assert sorted(session.user_id for session in coordinator.store.list_open()) == ["1", "2"]


@pytest.mark.asyncio
async def test_reseed_sessions_records_joins_without_notices() -> None:
    db = make_db()
    notifier = FakeNotifier()
    coordinator = make_coordinator(db, notifier)

    assert await coordinator.reseed_sessions([("1", "alice"), ("2", "bob")]) == 2

    assert coordinator.store.get("1").entered_at == T0
    assert [entry.action for entry in db.list_audit_entries("1")] == [AuditAction.JOIN]
    assert db.find_cumulative_time("2").cumulative_duration == Duration()
    assert notifier.sent == []

    await coordinator.handle(event(TRACKED, None, T0 + timedelta(seconds=40), user_id="1", username="alice"))

    assert [entry.action for entry in db.list_audit_entries("1")] == [AuditAction.JOIN, AuditAction.LEAVE]
    assert db.find_cumulative_time("1").cumulative_duration == Duration(0, 0, 40)


@pytest.mark.asyncio
async def test_locks_are_released_after_processing() -> None:
    coordinator = make_coordinator(notifier=SlowNotifier())

    for i in range(50):
        await coordinator.handle(event(OTHER, 700, T0, user_id=str(i)))

    await asyncio.gather(
        coordinator.handle(event(None, TRACKED, T0)),
        coordinator.handle(event(TRACKED, TRACKED, T0 + timedelta(seconds=1))),
        coordinator.handle(event(TRACKED, None, T0 + timedelta(seconds=2))),
    )

    assert coordinator.stats.irrelevant == 50
    assert coordinator.stats.closed == 1
    assert coordinator._locks == {}


@pytest.mark.asyncio
async def test_naive_event_time_is_treated_as_utc() -> None:
    db = make_db()
    coordinator = make_coordinator(db)
    naive = datetime(2026, 2, 1, 10, 0, 0)

    assert await coordinator.handle(event(None, TRACKED, naive)) is Outcome.OPENED
    assert await coordinator.handle(event(TRACKED, None, naive + timedelta(seconds=5))) is Outcome.CLOSED

    assert db.list_audit_entries("100")[0].timestamp == T0
    assert db.find_cumulative_time("100").cumulative_duration == Duration(0, 0, 5)


class DroppingChannel:
    async def send(self, content: str, **kwargs):
        raise aiohttp.ClientConnectionError("connection reset")


@pytest.mark.asyncio
async def test_transport_errors_do_not_escape_handle() -> None:
    db = make_db()
    channel = DroppingChannel()
    notifier = DiscordNotifier(
        {ChannelRole.ENTER: channel, ChannelRole.LEAVE: channel, ChannelRole.TOTAL_TIME: channel}
    )
    coordinator = make_coordinator(db, notifier)

    assert await coordinator.handle(event(None, TRACKED, T0)) is Outcome.OPENED
    assert await coordinator.handle(event(TRACKED, None, T0 + timedelta(seconds=3))) is Outcome.CLOSED

    assert coordinator.stats.notification_failures == 3
    assert db.find_cumulative_time("100").cumulative_duration == Duration(0, 0, 3)
