from __future__ import annotations

from datetime import UTC, datetime, timedelta

from chatsync.schemas.presence import PresenceEntry
from chatsync.sync.presence import PresenceTracker


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def test_typing_expires_after_ttl_without_stop_signal():
    clock = FakeClock(T0)
    tracker = PresenceTracker(ttl_seconds=5, clock=clock)

    tracker.set_typing("c1", "bob", True)
    assert tracker.get_typing("c1") == {"bob"}

    clock.advance(5)
    assert tracker.get_typing("c1") == {"bob"}

    clock.advance(1)
    assert tracker.get_typing("c1") == set()


def test_stop_typing_removes_entry_immediately():
    clock = FakeClock(T0)
    tracker = PresenceTracker(ttl_seconds=5, clock=clock)
    tracker.set_typing("c1", "bob", True)
    tracker.set_typing("c1", "carol", True)

    tracker.set_typing("c1", "bob", False)

    assert tracker.get_typing("c1") == {"carol"}


def test_apply_reports_visible_changes_only():
    clock = FakeClock(T0)
    tracker = PresenceTracker(ttl_seconds=5, clock=clock)
    entry = PresenceEntry(conversation_id="c1", user_id="bob", is_typing=True, expires_at=T0 + timedelta(seconds=5))

    assert tracker.apply(entry) is True
    assert tracker.apply(entry) is False

    expired = PresenceEntry(conversation_id="c1", user_id="dave", is_typing=True, expires_at=T0 - timedelta(seconds=1))
    assert tracker.apply(expired) is False
    assert tracker.get_typing("c1") == {"bob"}


def test_sweep_reclaims_expired_entries():
    clock = FakeClock(T0)
    tracker = PresenceTracker(ttl_seconds=5, clock=clock)
    tracker.set_typing("c1", "bob", True)
    tracker.set_typing("c2", "carol", True)

    clock.advance(10)

    assert tracker.sweep() == 2
    assert tracker.sweep() == 0
