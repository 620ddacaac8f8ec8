"""Reconciliation engine.

Owns the device set. Two layers are combined on read:

* the *base layer*, an immutable mapping replaced wholesale by each store
  snapshot;
* the *live overlay*, per-device fields, metadata and log history written
  by bus messages.

Presence comes from :class:`~ecotrack.state.presence.PresenceTracker` and
overrides ``online`` / ``last_seen`` for any device it has seen.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from ecotrack import _constants as c
from ecotrack._redact import redact_for_log
from ecotrack.ingestion.store import parse_store_snapshot
from ecotrack.models._base import parse_epoch
from ecotrack.models.device import CoordinateFix, Device, LogEntry
from ecotrack.models.message import NormalizedMessage
from ecotrack.state.logbuffer import LogRing
from ecotrack.state.policy import (
    is_hidden_by_tombstone,
    keep_after_store_removal,
    merge_logs,
    newest_first,
    resurrects,
)
from ecotrack.state.presence import PresenceTracker

_logger = logging.getLogger(__name__)

_EMPTY_VIEW: Mapping[str, Device] = MappingProxyType({})


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class _LiveRecord:
    """Mutable overlay state for one device. Never exposed."""

    logs: LogRing
    history: tuple[LogEntry, ...] = ()
    """Backfilled entries, newest first; always ranked behind the ring."""
    fields: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)
    coord_fix: CoordinateFix = CoordinateFix.NONE
    retained_topics: set[str] = field(default_factory=set)
    last_fresh: datetime | None = None


class ReconciliationEngine:
    """Deterministic merge of bus and store state.

    Given the same sequence of inputs the engine produces the same views.
    All mutation happens through :meth:`apply_store_snapshot`,
    :meth:`apply_message`, :meth:`sweep` and the command hooks; readers only
    ever see immutable snapshots from :meth:`view`.
    """

    def __init__(
        self,
        *,
        full_threshold: int = c.FULL_THRESHOLD,
        log_capacity: int = c.LOG_CAPACITY,
        presence_cutoff: float = c.PRESENCE_CUTOFF_S,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._full_threshold = full_threshold
        self._log_capacity = log_capacity
        self._cutoff = presence_cutoff
        self._clock = clock
        self._presence = PresenceTracker(cutoff=presence_cutoff)
        self._base: Mapping[str, Device] = _EMPTY_VIEW
        self._live: dict[str, _LiveRecord] = {}
        self._tombstones: dict[str, datetime] = {}
        # Ids whose store document carried ``deleted`` in the last snapshot.
        self._store_marked: set[str] = set()
        # Resurrection time of ids brought back by a fresh message.
        self._revived: dict[str, datetime] = {}
        self._marker_clears: set[str] = set()
        self._version = 0
        self._view_cache: tuple[int, Mapping[str, Device]] = (0, _EMPTY_VIEW)

    @property
    def version(self) -> int:
        """Monotonic counter bumped whenever the combined view may have changed."""
        return self._version

    @property
    def presence(self) -> PresenceTracker:
        return self._presence

    def _bump(self) -> None:
        self._version += 1

    def _live_record(self, device_id: str) -> _LiveRecord:
        record = self._live.get(device_id)
        if record is None:
            record = _LiveRecord(logs=LogRing(self._log_capacity))
            self._live[device_id] = record
        return record

    def _drop_live(self, device_id: str) -> bool:
        removed = self._live.pop(device_id, None) is not None
        if self._presence.get(device_id) is not None:
            self._presence.forget(device_id)
            removed = True
        return removed

    # ------------------------------------------------------------------
    # Store snapshots
    # ------------------------------------------------------------------

    def apply_store_snapshot(self, snapshot: Any, now: datetime | None = None) -> bool:
        """Replace the base layer with a full store subtree.

        Returns ``True`` when the combined view may have changed.
        """
        now = now or self._clock()
        parsed = parse_store_snapshot(
            snapshot,
            now=now,
            full_threshold=self._full_threshold,
            log_capacity=self._log_capacity,
        )

        removed = set(self._base) - set(parsed.devices) - set(parsed.tombstones)
        for device_id in removed:
            record = self._presence.get(device_id)
            last_seen = record.last_seen if record is not None and record.online else None
            if keep_after_store_removal(last_seen, now=now, cutoff=self._cutoff):
                _logger.debug("Keeping device=%s removed from store; live presence is fresh", device_id)
                continue
            self._drop_live(device_id)

        for device_id, deleted_at in parsed.tombstones.items():
            self._record_tombstone(device_id, deleted_at, now=now)

        for device_id in parsed.devices:
            self._revived.pop(device_id, None)
            self._marker_clears.discard(device_id)
            # A marker seen earlier and now gone was cleared by another session.
            if device_id in self._store_marked and self._tombstones.pop(device_id, None) is not None:
                _logger.debug("Store cleared deletion of device=%s", device_id)
        self._store_marked = set(parsed.tombstones)

        self._base = MappingProxyType(dict(parsed.devices))
        self._bump()
        return True

    def _record_tombstone(self, device_id: str, deleted_at: datetime | None, *, now: datetime) -> bool:
        revived_at = self._revived.get(device_id)
        if revived_at is not None:
            # The marker this device was revived from, echoed back before it is cleared.
            if deleted_at is None or deleted_at <= revived_at:
                return False
            del self._revived[device_id]
            self._marker_clears.discard(device_id)

        previous = self._tombstones.get(device_id)
        if deleted_at is None:
            # Undated markers count from the first time they were seen.
            deleted_at = previous or now
        if previous is not None and previous >= deleted_at:
            return False
        self._tombstones[device_id] = deleted_at

        live = self._live.get(device_id)
        if live is not None and is_hidden_by_tombstone(deleted_at, live.last_fresh):
            self._drop_live(device_id)
        return True

    # ------------------------------------------------------------------
    # Bus messages
    # ------------------------------------------------------------------

    def apply_message(self, msg: NormalizedMessage) -> bool:
        """Write one normalized bus message into the live overlay.

        Returns ``True`` when the combined view may have changed.
        """
        device_id = msg.device_id

        if msg.category == c.TOMBSTONE_PREFIX:
            if not msg.tombstone:
                return False
            deleted_at = parse_epoch(msg.payload.get("deletedAt")) or msg.arrival
            if self._record_tombstone(device_id, deleted_at, now=msg.arrival):
                _logger.debug("Tombstone received for device=%s", device_id)
                self._bump()
                return True
            return False

        if msg.is_empty:
            live = self._live.get(device_id)
            if live is not None:
                live.retained_topics.discard(msg.topic)
            return False

        deleted_at = self._tombstones.get(device_id)
        if deleted_at is not None:
            if not resurrects(deleted_at, arrival=msg.arrival, retained=msg.retained):
                _logger.debug("Ignoring message for deleted device=%s topic=%s", device_id, msg.topic)
                return False
            _logger.debug("Fresh message resurrects deleted device=%s", device_id)
            self._tombstones.pop(device_id, None)
            self._revived[device_id] = msg.arrival
            self._marker_clears.add(device_id)

        live = self._live_record(device_id)
        live.fields.update(msg.fields)
        if msg.meta:
            live.meta.update(msg.meta)
        if "lat" in msg.fields or "lon" in msg.fields:
            live.coord_fix = msg.coord_fix
        if msg.log is not None:
            live.logs.append(msg.log)
        if msg.retained:
            live.retained_topics.add(msg.topic)
        else:
            live.last_fresh = msg.arrival
            self._presence.observe(device_id, msg.arrival)

        _logger.debug(
            "Applied message device=%s topic=%s retained=%s fields=%s",
            device_id,
            msg.topic,
            msg.retained,
            redact_for_log(msg.fields),
        )
        self._bump()
        return True

    def add_logs(self, device_id: str, entries: list[LogEntry]) -> int:
        """Merge backfilled entries into a known device's history.

        Backfill ranks behind the live ring regardless of timestamps, so it
        never evicts messages received during the session.
        """
        if not entries or (device_id not in self._live and device_id not in self._base):
            return 0
        live = self._live_record(device_id)
        live.history = newest_first([*entries, *live.history], capacity=self._log_capacity)
        self._bump()
        return len(entries)

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    def sweep(self, now: datetime | None = None) -> set[str]:
        """Expire silent devices; returns the ids that flipped offline."""
        flipped = self._presence.sweep(now or self._clock())
        if flipped:
            self._bump()
        return flipped

    # ------------------------------------------------------------------
    # Command hooks
    # ------------------------------------------------------------------

    def hide(self, device_id: str, at: datetime | None = None) -> None:
        """Hide a device locally until a fresh message arrives after *at*.

        The stored document is hidden too, whatever its ``lastSeen`` says.
        """
        stamp = at or self._clock()
        previous = self._tombstones.get(device_id)
        self._tombstones[device_id] = max(previous, stamp) if previous is not None else stamp
        self._revived.pop(device_id, None)
        self._marker_clears.discard(device_id)
        self._bump()

    def unhide(self, device_id: str) -> None:
        self._revived.pop(device_id, None)
        self._marker_clears.discard(device_id)
        if self._tombstones.pop(device_id, None) is not None:
            self._bump()

    def take_marker_clear(self, device_id: str) -> bool:
        """Whether a resurrected device still needs its store deletion marker cleared.

        Returns ``True`` once per resurrection.
        """
        if device_id not in self._marker_clears:
            return False
        self._marker_clears.discard(device_id)
        return True

    def remove_live(self, device_id: str) -> bool:
        """Drop the live overlay and presence record for a device."""
        removed = self._drop_live(device_id)
        if removed:
            self._bump()
        return removed

    def known_retained_topics(self, device_id: str) -> tuple[str, ...]:
        live = self._live.get(device_id)
        if live is None:
            return ()
        return tuple(sorted(live.retained_topics))

    def is_registered(self, device_id: str) -> bool:
        return device_id in self._base

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def _is_hidden(self, device_id: str, live: _LiveRecord | None) -> bool:
        # Stored timestamps can be skewed; only fresh bus traffic outlives a tombstone.
        deleted_at = self._tombstones.get(device_id)
        if deleted_at is None:
            return False
        return live is None or is_hidden_by_tombstone(deleted_at, live.last_fresh)

    def _combine(self, device_id: str, base: Device | None, live: _LiveRecord | None) -> Device:
        data: dict[str, Any] = base.model_dump() if base is not None else {"id": device_id}
        data["registered"] = base is not None
        data["logs"] = base.logs if base is not None else ()

        if live is not None:
            fields = live.fields
            if "bin_full" in fields and "fill_pct" not in fields and data.get("fill_pct") is not None:
                # A bare live flag contradicting a stored level wins over the stale level.
                if (data["fill_pct"] >= self._full_threshold) != fields["bin_full"]:
                    data["fill_pct"] = None
            data.update(fields)
            data["meta"] = {**data.get("meta", {}), **live.meta}
            if "lat" in fields or "lon" in fields:
                data["coord_fix"] = live.coord_fix
            history = (*live.history, *data["logs"])
            data["logs"] = merge_logs(live.logs.entries(), history, capacity=self._log_capacity)

        if data.get("fill_pct") is not None:
            data["bin_full"] = data["fill_pct"] >= self._full_threshold

        presence = self._presence.get(device_id)
        if presence is not None:
            data["online"] = presence.online
            data["last_seen"] = presence.last_seen
        elif base is None:
            data["online"] = False

        return Device.model_validate(data)

    def view(self) -> Mapping[str, Device]:
        """Immutable snapshot of every known device, keyed by id."""
        cached_version, cached = self._view_cache
        if cached_version == self._version:
            return cached

        combined: dict[str, Device] = {}
        for device_id in sorted(set(self._base) | set(self._live)):
            base = self._base.get(device_id)
            live = self._live.get(device_id)
            if self._is_hidden(device_id, live):
                continue
            combined[device_id] = self._combine(device_id, base, live)

        result: Mapping[str, Device] = MappingProxyType(combined)
        self._view_cache = (self._version, result)
        return result

    def get(self, device_id: str) -> Device | None:
        return self.view().get(device_id)
