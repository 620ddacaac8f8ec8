from __future__ import annotations

from datetime import UTC, datetime, timedelta

from ecotrack.state.presence import PresenceTracker

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def test_observe_reports_transitions_to_online() -> None:
    tracker = PresenceTracker(cutoff=8.0)

    assert tracker.observe("bin-01", T0) is True
    assert tracker.observe("bin-01", T0 + timedelta(seconds=1)) is False

    record = tracker.get("bin-01")
    assert record is not None
    assert record.online is True
    assert record.last_seen == T0 + timedelta(seconds=1)


def test_sweep_expires_only_after_cutoff() -> None:
    tracker = PresenceTracker(cutoff=8.0)
    tracker.observe("bin-01", T0)
    tracker.observe("bin-02", T0 + timedelta(seconds=5))

    assert tracker.sweep(T0 + timedelta(seconds=8)) == set()
    assert tracker.sweep(T0 + timedelta(seconds=9)) == {"bin-01"}
    # Already offline devices are not reported again.
    assert tracker.sweep(T0 + timedelta(seconds=10)) == set()
    assert tracker.sweep(T0 + timedelta(seconds=14)) == {"bin-02"}

    record = tracker.get("bin-01")
    assert record is not None
    assert record.online is False
    assert record.last_seen == T0


def test_next_message_after_expiry_flips_back_online() -> None:
    tracker = PresenceTracker(cutoff=2.0)
    tracker.observe("bin-01", T0)
    tracker.sweep(T0 + timedelta(seconds=3))

    assert tracker.observe("bin-01", T0 + timedelta(seconds=4)) is True


def test_forget_and_snapshot() -> None:
    tracker = PresenceTracker(cutoff=8.0)
    tracker.observe("bin-01", T0)
    tracker.observe("bin-02", T0)

    tracker.forget("bin-01")
    tracker.forget("missing")

    assert set(tracker.snapshot()) == {"bin-02"}
    assert tracker.cutoff == timedelta(seconds=8)
