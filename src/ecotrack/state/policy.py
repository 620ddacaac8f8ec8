"""Deterministic merge policy.

This module contains *no* payload parsing. The ingestion layer is
responsible for producing normalized fields and timestamps.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timedelta

from ecotrack.models.device import LogEntry


def keep_after_store_removal(live_last_seen: datetime | None, *, now: datetime, cutoff: float) -> bool:
    """A device removed from the store survives while its live presence is fresh."""
    if live_last_seen is None:
        return False
    return now - live_last_seen <= timedelta(seconds=cutoff)


def is_hidden_by_tombstone(deleted_at: datetime | None, seen_at: datetime | None) -> bool:
    """Whether activity at *seen_at* predates a deletion at *deleted_at*."""
    if deleted_at is None:
        return False
    return seen_at is None or seen_at <= deleted_at


def resurrects(deleted_at: datetime, *, arrival: datetime, retained: bool) -> bool:
    """Only a fresh message that arrived after the deletion brings a device back."""
    return not retained and arrival > deleted_at


def _log_identity(entry: LogEntry) -> str | None:
    if entry.ts is None:
        return None
    try:
        return json.dumps([entry.ts, entry.payload], sort_keys=True, default=str)
    except (TypeError, ValueError):
        return None


def merge_logs(
    live: Iterable[LogEntry],
    older: Iterable[LogEntry],
    *,
    capacity: int,
) -> tuple[LogEntry, ...]:
    """Live ring entries first, then *older* history, truncated.

    Both inputs are expected newest first. An entry carrying the same
    timestamp and payload as one already taken (a mirrored or backfilled
    copy of it) is dropped.
    """
    merged: list[LogEntry] = []
    seen: set[str] = set()
    for entry in [*live, *older]:
        identity = _log_identity(entry)
        if identity is not None:
            if identity in seen:
                continue
            seen.add(identity)
        merged.append(entry)
        if len(merged) >= capacity:
            break
    return tuple(merged)


def newest_first(entries: Iterable[LogEntry], *, capacity: int) -> tuple[LogEntry, ...]:
    """Sort history newest first by best-available timestamp, deduplicated and truncated."""
    ordered = sorted(entries, key=lambda entry: entry.sort_key, reverse=True)
    return merge_logs(ordered, (), capacity=capacity)
