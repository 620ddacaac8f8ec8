"""Normalization helpers.

Centralizes defensive parsing of heterogeneous device encodings. Nothing in
here raises on bad input: malformed values become ``None`` (or pass through
unchanged where the caller asked for that) so the engine keeps running.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping, Sequence
from typing import Any

from ecotrack import _constants as c
from ecotrack.models.device import CoordinateFix, TimestampKind

_TRUE_STRINGS = frozenset({"true", "1", '"true"'})
_FALSE_STRINGS = frozenset({"false", "0", '"false"'})
_COORD_SPLIT = re.compile(r"[ ,;|]+")


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or value == "--" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def parse_boolish(value: Any) -> Any:
    """Coerce loosely-typed booleans; unrecognized values pass through."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    return value


def normalize_booleans(data: Mapping[str, Any], keys: Sequence[str]) -> dict[str, Any]:
    """Return a copy of *data* with the given keys passed through :func:`parse_boolish`."""
    result = dict(data)
    for key in keys:
        if key in result:
            result[key] = parse_boolish(result[key])
    return result


def first_present(data: Mapping[str, Any], keys: Sequence[str]) -> tuple[str | None, Any]:
    """Return ``(key, value)`` for the first key of *keys* present in *data*."""
    for key in keys:
        if key in data:
            return key, data[key]
    return None, None


def clamp_pct(value: Any) -> int | None:
    """Coerce to a number, clamp to [0, 100] and round half up."""
    parsed = safe_float(value)
    if parsed is None:
        return None
    clamped = max(0.0, min(100.0, parsed))
    return int(math.floor(clamped + 0.5))


def extract_fill_pct(data: Mapping[str, Any]) -> int | None:
    """Fill percentage from the first known key, else 100 for an explicit full flag."""
    key, raw = first_present(data, c.FILL_PCT_KEYS)
    if key is not None:
        pct = clamp_pct(raw)
        if pct is not None:
            return pct
    _flag_key, flag = first_present(data, c.BIN_FULL_KEYS)
    if parse_boolish(flag) is True:
        return 100
    return None


def derive_bin_full(fill_pct: int | None, explicit: Any, threshold: int) -> bool:
    """``fill_pct >= threshold`` when known, else the explicit flag."""
    if fill_pct is not None:
        return fill_pct >= threshold
    return parse_boolish(explicit) is True


def is_valid_lat(value: float | None) -> bool:
    return value is not None and -90.0 <= value <= 90.0


def is_valid_lon(value: float | None) -> bool:
    return value is not None and -180.0 <= value <= 180.0


def normalize_lat_lon(lat_raw: Any, lon_raw: Any) -> tuple[float | None, float | None, CoordinateFix]:
    """Best-effort coordinate repair.

    A latitude outside [-90, 90] whose partner would be a valid latitude is
    taken as a swapped pair. Anything still invalid is nulled. Exact
    ``(0, 0)`` is a firmware placeholder and is nulled as well. The returned
    flag records what happened so callers can surface it.
    """
    lat = safe_float(lat_raw)
    lon = safe_float(lon_raw)
    if lat is None and lon is None:
        return None, None, CoordinateFix.NONE

    if lat is not None and lon is not None:
        if lat == 0.0 and lon == 0.0:
            return None, None, CoordinateFix.NULLED
        if not is_valid_lat(lat) and is_valid_lat(lon) and is_valid_lon(lat):
            return lon, lat, CoordinateFix.SWAPPED

    fix = CoordinateFix.NONE
    if lat is not None and not is_valid_lat(lat):
        lat = None
        fix = CoordinateFix.NULLED
    if lon is not None and not is_valid_lon(lon):
        lon = None
        fix = CoordinateFix.NULLED
    return lat, lon, fix


def _find_coordinate_pair(payload: Any, _depth: int = 0) -> tuple[Any, Any] | None:
    if _depth > 4 or payload is None:
        return None

    if isinstance(payload, str):
        parts = [p for p in _COORD_SPLIT.split(payload.strip()) if p]
        if len(parts) >= 2 and safe_float(parts[0]) is not None and safe_float(parts[1]) is not None:
            return parts[0], parts[1]
        return None

    if isinstance(payload, Sequence) and not isinstance(payload, (bytes, bytearray)):
        if len(payload) >= 2 and not isinstance(payload[0], (dict, list)):
            return payload[0], payload[1]
        return None

    if not isinstance(payload, Mapping):
        return None

    lat_key, lat_val = first_present(payload, c.LAT_KEYS)
    lon_key, lon_val = first_present(payload, c.LON_KEYS)
    if lat_key is not None and lon_key is not None:
        return lat_val, lon_val

    for nested_key in c.NESTED_COORD_KEYS:
        nested = payload.get(nested_key)
        if isinstance(nested, (Mapping, str, list)):
            found = _find_coordinate_pair(nested, _depth + 1)
            if found is not None:
                return found

    # Fuzzy keys such as "gpsLat" / "gpsLong".
    keys = [str(k) for k in payload]
    lat_fuzzy = next((k for k in keys if "lat" in k.lower()), None)
    lon_fuzzy = next((k for k in keys if any(s in k.lower() for s in ("lon", "lng", "long"))), None)
    if lat_fuzzy is not None and lon_fuzzy is not None and lat_fuzzy != lon_fuzzy:
        return payload[lat_fuzzy], payload[lon_fuzzy]
    return None


def extract_coordinates(payload: Any) -> tuple[float | None, float | None, CoordinateFix]:
    """Locate and repair a coordinate pair anywhere in *payload*."""
    pair = _find_coordinate_pair(payload)
    if pair is None:
        return None, None, CoordinateFix.NONE
    return normalize_lat_lon(*pair)


def classify_timestamp(value: Any) -> tuple[TimestampKind, float | None]:
    """Guess what a device timestamp means from its magnitude.

    Returns ``(kind, epoch_ms)``; ``epoch_ms`` is ``None`` for device uptime
    counters and missing values. Values close to the thresholds can be
    misclassified, so ordering across devices must use local arrival time.
    """
    ts = safe_float(value)
    if ts is None or ts <= 0:
        return TimestampKind.NONE, None
    if ts >= c.EPOCH_MS_THRESHOLD:
        return TimestampKind.EPOCH_MS, ts
    if ts >= c.EPOCH_S_THRESHOLD:
        return TimestampKind.EPOCH_S, ts * 1000.0
    return TimestampKind.UPTIME, None


def extract_timestamp(payload: Any) -> Any:
    if isinstance(payload, Mapping):
        _key, value = first_present(payload, c.TIMESTAMP_KEYS)
        return value
    return None


def is_valid_device_id(candidate: Any) -> bool:
    if not isinstance(candidate, str):
        return False
    return bool(c.DEVICE_ID_PATTERN.match(candidate)) and candidate.lower() not in c.RESERVED_IDS


def extract_device_id(
    topic_parts: Sequence[str],
    payload: Mapping[str, Any] | None,
    prefixes: Sequence[str] = c.DEVICE_TOPIC_PREFIXES,
) -> str | None:
    """Resolve a device id from the topic path, then the payload, then a ``…/<id>/gps`` tail."""
    if len(topic_parts) >= 2 and topic_parts[0] in prefixes and is_valid_device_id(topic_parts[1]):
        return topic_parts[1]

    if payload:
        for key in c.PAYLOAD_ID_KEYS:
            value = payload.get(key)
            if value is None or value == "":
                continue
            candidate = str(value).strip()
            if is_valid_device_id(candidate):
                return candidate

    if len(topic_parts) >= 2 and "gps" in topic_parts[-1].lower():
        candidate = topic_parts[-2]
        if is_valid_device_id(candidate):
            return candidate
    return None


def parse_payload(raw: bytes | str) -> dict[str, Any]:
    """Decode a bus payload into a dict.

    JSON objects are returned as-is, other JSON values are wrapped as
    ``{"value": ...}``, and undecodable text is wrapped as ``{"raw": text}``.
    """
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return {"raw": text}
    if isinstance(parsed, dict):
        return parsed
    return {"value": parsed}
