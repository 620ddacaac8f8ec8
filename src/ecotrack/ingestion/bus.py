"""Bus ingestion.

Turns a raw ``(topic, payload, retained)`` bus message into a
:class:`~ecotrack.models.message.NormalizedMessage`. Only the state engine
is allowed to merge the result.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from ecotrack import _constants as c
from ecotrack._redact import redact_for_log
from ecotrack.ingestion.normalize import (
    classify_timestamp,
    derive_bin_full,
    extract_coordinates,
    extract_device_id,
    extract_fill_pct,
    extract_timestamp,
    first_present,
    is_valid_device_id,
    normalize_booleans,
    parse_boolish,
    parse_payload,
    safe_str,
)
from ecotrack.models.device import CoordinateFix, LogEntry
from ecotrack.models.message import NormalizedMessage

_logger = logging.getLogger(__name__)

_BOOLEAN_KEYS: tuple[str, ...] = (*c.BIN_FULL_KEYS, *c.FLOODED_KEYS, "online")
_BIN_FULL_SEGMENTS = frozenset({"bin_full", "binfull", "full"})
_FLOOD_SEGMENTS = frozenset({"flood", "flooded"})
_FILL_SEGMENTS = frozenset({"fill", "fillpct", "fill_pct", "level"})
_COORD_SEGMENTS = frozenset(c.NESTED_COORD_KEYS)


def _split_topic(topic: str) -> list[str]:
    return [part for part in topic.strip().split("/") if part]


def _bare_value(payload: dict[str, Any]) -> Any:
    """The scalar a category topic carries, e.g. ``1`` or ``{"value": true}``."""
    if "value" in payload:
        return payload["value"]
    if "raw" in payload:
        return payload["raw"]
    if len(payload) == 1:
        return next(iter(payload.values()))
    return None


def _topic_implied(parts: Sequence[str], payload: dict[str, Any]) -> dict[str, Any]:
    tail = {part.lower() for part in parts[2:]}
    implied: dict[str, Any] = {}
    if tail & _BIN_FULL_SEGMENTS:
        value = parse_boolish(_bare_value(payload))
        if isinstance(value, bool):
            implied["binFull"] = value
    if tail & _FLOOD_SEGMENTS:
        value = parse_boolish(_bare_value(payload))
        if isinstance(value, bool):
            implied["flooded"] = value
    if tail & _FILL_SEGMENTS and not any(key in payload for key in c.FILL_PCT_KEYS):
        implied["fillPct"] = _bare_value(payload)
    if tail & _COORD_SEGMENTS and not any(key in payload for key in c.NESTED_COORD_KEYS):
        bare = _bare_value(payload)
        if isinstance(bare, (str, list)):
            implied["gps"] = bare
    return implied


def extract_fields(payload: dict[str, Any], *, full_threshold: int) -> tuple[dict[str, Any], CoordinateFix]:
    """Build the normalized telemetry patch for a parsed payload.

    Only keys the payload actually carried appear in the result.
    """
    data = normalize_booleans(payload, _BOOLEAN_KEYS)
    fields: dict[str, Any] = {}

    fill_pct = extract_fill_pct(data)
    if fill_pct is not None:
        fields["fill_pct"] = fill_pct
    flag_key, flag = first_present(data, c.BIN_FULL_KEYS)
    if fill_pct is not None or flag_key is not None:
        fields["bin_full"] = derive_bin_full(fill_pct, flag, full_threshold)

    _flood_key, flooded = first_present(data, c.FLOODED_KEYS)
    if isinstance(flooded, bool):
        fields["flooded"] = flooded

    lat, lon, fix = extract_coordinates(payload)
    if lat is not None or lon is not None or fix != CoordinateFix.NONE:
        fields["lat"] = lat
        fields["lon"] = lon

    _address_key, address = first_present(data, c.ADDRESS_KEYS)
    address_text = safe_str(address) if isinstance(address, str) else None
    if address_text:
        fields["address"] = address_text
    return fields, fix


def _tombstone_message(
    topic: str,
    parts: Sequence[str],
    payload: dict[str, Any],
    *,
    retained: bool,
    now: datetime,
) -> NormalizedMessage | None:
    device_id = parts[1] if len(parts) == 2 else None
    if device_id is None or not is_valid_device_id(device_id):
        _logger.debug("Dropping tombstone with unusable topic=%s", topic)
        return None
    return NormalizedMessage(
        device_id=device_id,
        topic=topic,
        category=c.TOMBSTONE_PREFIX,
        retained=retained,
        arrival=now,
        payload=payload,
        # An empty retained payload clears the marker; it is not itself a delete.
        tombstone=payload.get("raw") != "",
    )


def normalize_message(
    topic: str,
    raw_payload: bytes | str,
    retained: bool,
    *,
    now: datetime,
    prefixes: Sequence[str] = c.DEVICE_TOPIC_PREFIXES,
    full_threshold: int = c.FULL_THRESHOLD,
) -> NormalizedMessage | None:
    """Normalize one bus message.

    Returns ``None`` when no device id can be resolved. Never raises on
    malformed payloads.
    """
    parts = _split_topic(topic)
    payload = parse_payload(raw_payload)

    if parts and parts[0] == c.TOMBSTONE_PREFIX:
        return _tombstone_message(topic, parts, payload, retained=retained, now=now)

    device_id = extract_device_id(parts, payload, prefixes)
    if device_id is None:
        _logger.debug("Dropping message without device id topic=%s payload=%s", topic, redact_for_log(payload))
        return None

    category = parts[2] if len(parts) > 2 else None
    subcategory = parts[3] if len(parts) > 3 else None

    if payload.get("raw") == "":
        return NormalizedMessage(
            device_id=device_id,
            topic=topic,
            category=category,
            subcategory=subcategory,
            retained=retained,
            arrival=now,
            payload=payload,
        )

    is_meta = parts[0] == c.REGISTRY_PREFIX and category == c.META_CATEGORY
    source = {**payload, **_topic_implied(parts, payload)}
    fields, fix = extract_fields(source, full_threshold=full_threshold)

    meta: dict[str, Any] = {}
    log: LogEntry | None = None
    if is_meta:
        meta = {key: value for key, value in payload.items() if key != "raw"}
    else:
        ts = extract_timestamp(payload)
        ts_kind, epoch_ms = classify_timestamp(ts)
        log = LogEntry(ts=ts, ts_kind=ts_kind, epoch_ms=epoch_ms, arrival=now, payload=payload, source="bus")

    if fix != CoordinateFix.NONE:
        _logger.debug("Coordinates %s for device=%s topic=%s", fix.value, device_id, topic)

    return NormalizedMessage(
        device_id=device_id,
        topic=topic,
        category=category,
        subcategory=subcategory,
        retained=retained,
        arrival=now,
        payload=payload,
        fields=fields,
        meta=meta,
        coord_fix=fix,
        log=log,
    )
