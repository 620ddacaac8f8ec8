from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from ecotrack.ingestion.bus import normalize_message
from ecotrack.ingestion.normalize import (
    classify_timestamp,
    clamp_pct,
    extract_coordinates,
    extract_device_id,
    normalize_lat_lon,
    parse_boolish,
    parse_payload,
)
from ecotrack.models.device import CoordinateFix, TimestampKind

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def _normalize(topic: str, payload: object, retained: bool = False):
    raw = payload if isinstance(payload, (bytes, str)) else json.dumps(payload)
    return normalize_message(topic, raw, retained, now=NOW)


def test_fill_above_threshold_sets_bin_full() -> None:
    msg = _normalize("esp32/bin-01/sensor", {"fillPct": 95})
    assert msg is not None
    assert msg.fields["fill_pct"] == 95
    assert msg.fields["bin_full"] is True


def test_fill_below_threshold_clears_bin_full() -> None:
    msg = _normalize("esp32/bin-01/sensor", {"fill_pct": 40})
    assert msg is not None
    assert msg.fields["fill_pct"] == 40
    assert msg.fields["bin_full"] is False


def test_explicit_bin_full_without_level_reports_full_bin() -> None:
    msg = _normalize("esp32/bin-01/sensor", {"binFull": True})
    assert msg is not None
    assert msg.fields["fill_pct"] == 100
    assert msg.fields["bin_full"] is True


def test_fill_pct_is_clamped_and_rounded() -> None:
    assert clamp_pct("120") == 100
    assert clamp_pct(-5) == 0
    assert clamp_pct(87.5) == 88
    assert clamp_pct("n/a") is None


def test_swapped_coordinates_are_repaired_and_flagged() -> None:
    msg = _normalize("esp32/bin-01/gps", {"lat": 121.05, "lon": 14.60})
    assert msg is not None
    assert msg.fields["lat"] == pytest.approx(14.60)
    assert msg.fields["lon"] == pytest.approx(121.05)
    assert msg.coord_fix == CoordinateFix.SWAPPED


def test_unrepairable_latitude_is_nulled() -> None:
    lat, lon, fix = normalize_lat_lon(200, 14.60)
    assert lat is None
    assert lon == pytest.approx(14.60)
    assert fix == CoordinateFix.NULLED


def test_zero_zero_placeholder_is_nulled() -> None:
    assert normalize_lat_lon(0, 0) == (None, None, CoordinateFix.NULLED)


def test_coordinates_found_in_nested_and_string_encodings() -> None:
    assert extract_coordinates({"location": {"latitude": 14.6, "lng": 121.0}})[:2] == (14.6, 121.0)
    assert extract_coordinates({"gps": "14.6, 121.0"})[:2] == (14.6, 121.0)
    assert extract_coordinates({"coords": [14.6, 121.0]})[:2] == (14.6, 121.0)
    assert extract_coordinates({"gpsLat": "14.6", "gpsLong": "121.0"})[:2] == (14.6, 121.0)


def test_device_id_from_topic_then_payload() -> None:
    assert extract_device_id(["esp32", "bin-01", "sensor"], {"id": "other"}) == "bin-01"
    assert extract_device_id(["sensor", "data"], {"deviceId": "bin-07"}) == "bin-07"
    # Reserved segments never count as ids.
    assert extract_device_id(["esp32", "status"], {"node_id": "bin-08"}) == "bin-08"


def test_device_id_from_gps_topic_tail() -> None:
    msg = _normalize("city/bin-03/gps", "14.6,121.0")
    assert msg is not None
    assert msg.device_id == "bin-03"
    assert msg.fields["lat"] == pytest.approx(14.6)
    assert msg.fields["lon"] == pytest.approx(121.0)


def test_message_without_resolvable_id_is_dropped() -> None:
    assert _normalize("broadcast/all", {"fillPct": 10}) is None


def test_loose_booleans() -> None:
    assert parse_boolish("true") is True
    assert parse_boolish('"false"') is False
    assert parse_boolish(1) is True
    assert parse_boolish("maybe") == "maybe"

    msg = _normalize("esp32/bin-02/sensor", {"flood": 1})
    assert msg is not None
    assert msg.fields["flooded"] is True

    unknown = _normalize("esp32/bin-02/sensor", {"flooded": "maybe"})
    assert unknown is not None
    assert "flooded" not in unknown.fields


def test_topic_category_implies_field() -> None:
    flood = _normalize("esp32/bin-02/flood", b"1")
    assert flood is not None
    assert flood.fields["flooded"] is True

    fill = _normalize("esp32/bin-02/fill", b"87.5")
    assert fill is not None
    assert fill.fields["fill_pct"] == 88
    assert fill.fields["bin_full"] is False


def test_payload_wrapping() -> None:
    assert parse_payload(b'{"a": 1}') == {"a": 1}
    assert parse_payload(b"42") == {"value": 42}
    assert parse_payload(b"not json") == {"raw": "not json"}


def test_timestamp_kinds() -> None:
    assert classify_timestamp(1_700_000_000_000) == (TimestampKind.EPOCH_MS, 1_700_000_000_000)
    assert classify_timestamp(1_700_000_000) == (TimestampKind.EPOCH_S, 1_700_000_000_000.0)
    assert classify_timestamp(12_345) == (TimestampKind.UPTIME, None)
    assert classify_timestamp(None) == (TimestampKind.NONE, None)


def test_message_carries_log_entry_with_arrival() -> None:
    msg = _normalize("esp32/bin-01/sensor", {"fillPct": 10, "ts": 12_345})
    assert msg is not None
    assert msg.log is not None
    assert msg.log.source == "bus"
    assert msg.log.ts_kind == TimestampKind.UPTIME
    assert msg.log.arrival == NOW


def test_empty_payload_is_a_clear_not_telemetry() -> None:
    msg = _normalize("esp32/bin-01/status", b"", retained=True)
    assert msg is not None
    assert msg.is_empty
    assert msg.fields == {}
    assert msg.log is None


def test_tombstone_topic() -> None:
    msg = _normalize("deleted_devices/bin-05", {"id": "bin-05", "deletedAt": 1_767_268_800_000})
    assert msg is not None
    assert msg.tombstone is True
    assert msg.device_id == "bin-05"

    cleared = _normalize("deleted_devices/bin-05", b"", retained=True)
    assert cleared is not None
    assert cleared.tombstone is False


def test_meta_topic_populates_meta_not_logs() -> None:
    msg = _normalize("devices/bin-05/meta", {"address": "12 Main St", "model": "v2"})
    assert msg is not None
    assert msg.meta == {"address": "12 Main St", "model": "v2"}
    assert msg.fields["address"] == "12 Main St"
    assert msg.log is None
