"""Store snapshot ingestion.

Translates a full ``devices`` subtree from the remote store into the
engine's base layer.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from ecotrack import _constants as c
from ecotrack.ingestion.normalize import (
    classify_timestamp,
    derive_bin_full,
    extract_coordinates,
    extract_fill_pct,
    extract_timestamp,
    is_valid_device_id,
    parse_payload,
)
from ecotrack.models._base import parse_epoch
from ecotrack.models.device import CoordinateFix, Device, LogEntry, StoreDeviceRecord

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreSnapshot:
    """A parsed store subtree: live documents plus tombstoned ids."""

    devices: dict[str, Device] = field(default_factory=dict)
    tombstones: dict[str, datetime | None] = field(default_factory=dict)
    """Deleted ids mapped to their recorded deletion time, if any."""


def _log_entry(raw: Any, *, now: datetime) -> LogEntry:
    payload = raw
    if isinstance(raw, str):
        parsed = parse_payload(raw)
        payload = raw if "raw" in parsed else parsed
    ts = extract_timestamp(payload)
    ts_kind, epoch_ms = classify_timestamp(ts)
    arrival = parse_epoch(epoch_ms) if epoch_ms is not None else None
    return LogEntry(
        ts=ts,
        ts_kind=ts_kind,
        epoch_ms=epoch_ms,
        arrival=arrival or now,
        payload=payload,
        source="store",
    )


def parse_store_logs(raw_logs: Any, *, now: datetime, capacity: int) -> tuple[LogEntry, ...]:
    """Parse a nested log structure (list or keyed mapping), newest first.

    Entries sort by their best available timestamp. Entries that tie, or
    carry no usable timestamp, keep their stored order with later entries
    treated as newer.
    """
    if isinstance(raw_logs, Mapping):
        items = list(raw_logs.values())
    elif isinstance(raw_logs, list):
        items = [item for item in raw_logs if item is not None]
    else:
        return ()

    entries = [(_log_entry(item, now=now), index) for index, item in enumerate(items)]
    entries.sort(key=lambda pair: (pair[0].sort_key, pair[1]), reverse=True)
    return tuple(entry for entry, _index in entries[:capacity])


def parse_store_device(
    device_id: str,
    record: StoreDeviceRecord,
    *,
    now: datetime,
    full_threshold: int,
    log_capacity: int,
) -> Device:
    """Build a base-layer device from a validated store document.

    Fill level, coordinates and address fall back to the ``meta`` object
    when the top-level document does not carry them.
    """
    raw = record.raw
    meta = record.meta

    fill_pct = extract_fill_pct(raw)
    if fill_pct is None and meta:
        fill_pct = extract_fill_pct(meta)
    explicit_full = record.bin_full if record.bin_full is not None else meta.get("binFull")

    lat, lon, fix = extract_coordinates(raw)
    if lat is None and lon is None and meta:
        lat, lon, meta_fix = extract_coordinates(meta)
        fix = meta_fix if meta_fix != CoordinateFix.NONE else fix

    address = record.address
    if address is None:
        for key in c.ADDRESS_KEYS:
            value = meta.get(key)
            if isinstance(value, str) and value.strip():
                address = value.strip()
                break

    return Device(
        id=device_id,
        online=bool(record.online),
        last_seen=record.last_seen,
        fill_pct=fill_pct,
        bin_full=derive_bin_full(fill_pct, explicit_full, full_threshold),
        flooded=bool(record.flooded),
        lat=lat,
        lon=lon,
        address=address,
        coord_fix=fix,
        logs=parse_store_logs(record.logs, now=now, capacity=log_capacity),
        meta=dict(meta),
        registered=True,
    )


def parse_store_snapshot(
    snapshot: Any,
    *,
    now: datetime,
    full_threshold: int = c.FULL_THRESHOLD,
    log_capacity: int = c.LOG_CAPACITY,
) -> StoreSnapshot:
    """Parse a ``{device_id: document}`` subtree.

    Malformed documents are skipped with a debug log; a missing or
    non-object subtree yields an empty snapshot.
    """
    if not isinstance(snapshot, Mapping):
        if snapshot is not None:
            _logger.debug("Ignoring non-object store snapshot type=%s", type(snapshot).__name__)
        return StoreSnapshot()

    devices: dict[str, Device] = {}
    tombstones: dict[str, datetime | None] = {}
    for key, document in snapshot.items():
        device_id = str(key).strip()
        if not is_valid_device_id(device_id) or not isinstance(document, Mapping):
            _logger.debug("Skipping store entry key=%s", key)
            continue
        try:
            record = StoreDeviceRecord.model_validate(dict(document))
        except ValidationError:
            _logger.debug("Skipping invalid store document id=%s", device_id, exc_info=True)
            continue

        # Marked documents stay tombstones whatever their lastSeen says.
        if record.deleted:
            tombstones[device_id] = record.deleted_at
            continue
        devices[device_id] = parse_store_device(
            device_id,
            record,
            now=now,
            full_threshold=full_threshold,
            log_capacity=log_capacity,
        )
    return StoreSnapshot(devices=devices, tombstones=tombstones)
