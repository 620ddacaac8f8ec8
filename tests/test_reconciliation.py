from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

from ecotrack.ingestion.bus import normalize_message
from ecotrack.models.device import LogEntry
from ecotrack.models.message import NormalizedMessage
from ecotrack.state.engine import ReconciliationEngine
from ecotrack.state.policy import merge_logs

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _msg(topic: str, payload: object, *, at: datetime, retained: bool = False) -> NormalizedMessage:
    raw = payload if isinstance(payload, (bytes, str)) else json.dumps(payload)
    message = normalize_message(topic, raw, retained, now=at)
    assert message is not None
    return message


def _engine() -> ReconciliationEngine:
    return ReconciliationEngine(full_threshold=90, log_capacity=5, presence_cutoff=8.0, clock=lambda: T0)


def test_live_overlay_wins_over_store_base() -> None:
    engine = _engine()
    engine.apply_store_snapshot({"bin-01": {"fillPct": 40, "address": "12 Main St"}}, T0)

    engine.apply_message(_msg("esp32/bin-01/sensor", {"fillPct": 95}, at=T0 + timedelta(seconds=1)))

    device = engine.get("bin-01")
    assert device is not None
    assert device.fill_pct == 95
    assert device.bin_full is True
    assert device.online is True
    assert device.registered is True
    # Store-only fields survive the overlay.
    assert device.address == "12 Main St"


def test_bus_only_device_is_flagged_unregistered() -> None:
    engine = _engine()
    engine.apply_message(_msg("esp32/bin-09/sensor", {"flooded": True}, at=T0))

    device = engine.get("bin-09")
    assert device is not None
    assert device.registered is False
    assert device.flooded is True
    assert engine.is_registered("bin-09") is False


def test_bare_live_flag_contradicting_stored_level_drops_level() -> None:
    engine = _engine()
    engine.apply_store_snapshot({"bin-01": {"fillPct": 95}}, T0)

    engine.apply_message(_msg("esp32/bin-01/sensor", {"binFull": False}, at=T0))

    device = engine.get("bin-01")
    assert device is not None
    assert device.bin_full is False
    assert device.fill_pct is None


def test_store_removal_keeps_device_with_fresh_presence() -> None:
    engine = _engine()
    engine.apply_store_snapshot({"bin-01": {"fillPct": 10}, "bin-02": {"fillPct": 20}}, T0)
    engine.apply_message(_msg("esp32/bin-01/sensor", {"fillPct": 15}, at=T0))

    engine.apply_store_snapshot({}, T0 + timedelta(seconds=2))

    view = engine.view()
    assert "bin-01" in view
    assert view["bin-01"].registered is False
    assert "bin-02" not in view


def test_store_removal_drops_device_with_stale_presence() -> None:
    engine = _engine()
    engine.apply_store_snapshot({"bin-01": {"fillPct": 10}}, T0)
    engine.apply_message(_msg("esp32/bin-01/sensor", {"fillPct": 15}, at=T0))

    engine.apply_store_snapshot({}, T0 + timedelta(seconds=30))

    assert "bin-01" not in engine.view()


def test_device_count_never_decreases_without_delete() -> None:
    engine = _engine()
    counts = []
    for index, device_id in enumerate(["bin-01", "bin-02", "bin-01", "bin-03"]):
        at = T0 + timedelta(seconds=index * 5)
        engine.apply_message(_msg(f"esp32/{device_id}/sensor", {"fillPct": 10}, at=at))
        engine.sweep(at)
        counts.append(len(engine.view()))

    engine.sweep(T0 + timedelta(minutes=10))
    counts.append(len(engine.view()))

    assert counts == sorted(counts)
    assert counts[-1] == 3


def test_sweep_marks_silent_device_offline_and_next_message_restores() -> None:
    engine = _engine()
    engine.apply_message(_msg("esp32/bin-01/sensor", {"fillPct": 10}, at=T0))

    assert engine.sweep(T0 + timedelta(seconds=8)) == set()
    assert engine.sweep(T0 + timedelta(seconds=10)) == {"bin-01"}
    device = engine.get("bin-01")
    assert device is not None
    assert device.online is False
    assert device.last_seen == T0

    engine.apply_message(_msg("esp32/bin-01/sensor", {"fillPct": 11}, at=T0 + timedelta(seconds=11)))
    device = engine.get("bin-01")
    assert device is not None
    assert device.online is True


def test_retained_messages_do_not_count_as_presence() -> None:
    engine = _engine()
    engine.apply_message(_msg("esp32/bin-01/sensor", {"fillPct": 10}, at=T0, retained=True))

    device = engine.get("bin-01")
    assert device is not None
    assert device.online is False
    assert engine.known_retained_topics("bin-01") == ("esp32/bin-01/sensor",)

    engine.apply_message(_msg("esp32/bin-01/sensor", b"", at=T0, retained=True))
    assert engine.known_retained_topics("bin-01") == ()


def test_store_tombstone_hides_device_until_fresh_message() -> None:
    engine = _engine()
    engine.apply_message(_msg("esp32/bin-01/sensor", {"fillPct": 10}, at=T0))

    deleted_at = T0 + timedelta(seconds=5)
    engine.apply_store_snapshot({"bin-01": {"deleted": True, "deletedAt": _ms(deleted_at)}}, deleted_at)
    assert "bin-01" not in engine.view()

    # A retained replay after the delete is not evidence the device is back.
    engine.apply_message(_msg("esp32/bin-01/sensor", {"fillPct": 12}, at=T0 + timedelta(seconds=6), retained=True))
    assert "bin-01" not in engine.view()

    engine.apply_message(_msg("esp32/bin-01/sensor", {"fillPct": 14}, at=T0 + timedelta(seconds=7)))
    device = engine.get("bin-01")
    assert device is not None
    assert device.fill_pct == 14


def test_bus_tombstone_hides_device() -> None:
    engine = _engine()
    engine.apply_message(_msg("esp32/bin-01/sensor", {"fillPct": 10}, at=T0))

    deleted_at = T0 + timedelta(seconds=1)
    changed = engine.apply_message(
        _msg("deleted_devices/bin-01", {"id": "bin-01", "deletedAt": _ms(deleted_at)}, at=deleted_at, retained=True)
    )

    assert changed is True
    assert "bin-01" not in engine.view()


def test_hide_then_remove_live() -> None:
    engine = _engine()
    engine.apply_store_snapshot({"bin-01": {"fillPct": 10, "lastSeen": _ms(T0)}}, T0)
    engine.apply_message(_msg("esp32/bin-01/sensor", {"fillPct": 15}, at=T0))

    engine.hide("bin-01", T0 + timedelta(seconds=1))
    engine.remove_live("bin-01")

    assert "bin-01" not in engine.view()
    assert engine.presence.get("bin-01") is None

    engine.unhide("bin-01")
    assert "bin-01" in engine.view()


def test_view_is_cached_until_state_changes() -> None:
    engine = _engine()
    engine.apply_message(_msg("esp32/bin-01/sensor", {"fillPct": 10}, at=T0))

    first = engine.view()
    assert engine.view() is first

    engine.apply_message(_msg("esp32/bin-01/sensor", {"fillPct": 20}, at=T0))
    assert engine.view() is not first


def test_logs_merge_bus_first_and_dedupe_mirrored_copies() -> None:
    engine = _engine()
    stamp = _ms(T0)
    engine.apply_store_snapshot(
        {
            "bin-01": {
                "logs": {
                    "-a": {"ts": stamp, "fillPct": 10},
                    "-b": {"ts": stamp - 1_000, "fillPct": 5},
                }
            }
        },
        T0,
    )
    engine.apply_message(_msg("esp32/bin-01/sensor", {"ts": stamp, "fillPct": 10}, at=T0))

    device = engine.get("bin-01")
    assert device is not None
    assert [entry.source for entry in device.logs] == ["bus", "store"]
    assert device.logs[1].payload == {"ts": stamp - 1_000, "fillPct": 5}


def test_merge_logs_truncates_to_capacity() -> None:
    live = [LogEntry(ts=index, arrival=T0, payload={"n": index}, source="bus") for index in range(4)]
    stored = [LogEntry(ts=100 + index, arrival=T0, payload={"n": index}, source="store") for index in range(4)]

    merged = merge_logs(live, stored, capacity=5)

    assert len(merged) == 5
    assert [entry.source for entry in merged] == ["bus"] * 4 + ["store"]


def test_add_logs_ignores_unknown_devices() -> None:
    engine = _engine()
    entry = LogEntry(ts=1, arrival=T0, payload={"n": 1})

    assert engine.add_logs("bin-99", [entry]) == 0

    engine.apply_message(_msg("esp32/bin-01/sensor", {"fillPct": 10}, at=T0))
    assert engine.add_logs("bin-01", [entry]) == 1
    device = engine.get("bin-01")
    assert device is not None
    assert device.logs[0].payload == {"fillPct": 10}
    assert device.logs[-1] == entry


def _history(at: datetime, payload: dict[str, object]) -> LogEntry:
    stamp = _ms(at)
    return LogEntry(ts=stamp, epoch_ms=float(stamp), arrival=T0, payload={"ts": stamp, **payload})


def test_backfill_never_evicts_newer_live_messages() -> None:
    engine = _engine()
    later = T0 + timedelta(hours=1)
    for seq in range(4):
        engine.apply_message(_msg("esp32/bin-01/sensor", {"ts": _ms(later) + seq, "seq": seq}, at=later))

    backfill = [
        _history(T0 - timedelta(seconds=2), {"msg": "old2"}),
        _history(T0 - timedelta(seconds=1), {"msg": "old1"}),
        # Already in the ring from the live stream.
        LogEntry(
            ts=_ms(later) + 3,
            epoch_ms=float(_ms(later) + 3),
            arrival=later,
            payload={"ts": _ms(later) + 3, "seq": 3},
        ),
    ]
    assert engine.add_logs("bin-01", backfill) == 3

    device = engine.get("bin-01")
    assert device is not None
    labels = [entry.payload.get("seq", entry.payload.get("msg")) for entry in device.logs]
    assert labels == [3, 2, 1, 0, "old1"]


def test_local_delete_hides_stored_device_with_skewed_last_seen() -> None:
    engine = _engine()
    ahead = _ms(T0 + timedelta(seconds=30))
    engine.apply_store_snapshot({"bin-05": {"fillPct": 20, "lastSeen": ahead}}, T0)

    engine.hide("bin-05", T0)
    engine.hide("bin-05", T0)
    assert "bin-05" not in engine.view()

    # A snapshot taken before the tombstone write landed.
    engine.apply_store_snapshot({"bin-05": {"fillPct": 20, "lastSeen": ahead}}, T0)
    assert "bin-05" not in engine.view()

    engine.apply_store_snapshot(
        {"bin-05": {"fillPct": 20, "lastSeen": ahead, "deleted": True, "deletedAt": _ms(T0)}},
        T0,
    )
    assert "bin-05" not in engine.view()


def test_resurrection_asks_once_for_store_marker_clear() -> None:
    engine = _engine()
    engine.apply_store_snapshot({"bin-05": {"deleted": True, "deletedAt": _ms(T0)}}, T0)
    assert engine.take_marker_clear("bin-05") is False

    later = T0 + timedelta(seconds=5)
    engine.apply_message(_msg("esp32/bin-05/sensor", {"fillPct": 30}, at=later))
    assert "bin-05" in engine.view()
    assert engine.take_marker_clear("bin-05") is True
    assert engine.take_marker_clear("bin-05") is False

    # The old marker echoed back before the clear lands does not hide it again.
    engine.apply_store_snapshot({"bin-05": {"deleted": True, "deletedAt": _ms(T0)}}, later)
    assert "bin-05" in engine.view()

    engine.apply_store_snapshot({"bin-05": {"fillPct": 30}}, later)
    device = engine.get("bin-05")
    assert device is not None
    assert device.registered is True


def test_marker_cleared_in_store_restores_device() -> None:
    engine = _engine()
    engine.apply_store_snapshot({"bin-07": {"deleted": True}}, T0)
    assert "bin-07" not in engine.view()

    engine.apply_store_snapshot({"bin-07": {"fillPct": 5}}, T0 + timedelta(seconds=1))
    assert "bin-07" in engine.view()
