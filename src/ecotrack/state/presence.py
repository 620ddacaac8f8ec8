"""Presence tracking with timeout-based expiry."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from ecotrack.models.device import PresenceRecord

_logger = logging.getLogger(__name__)


class PresenceTracker:
    """Online/offline shadow state driven by fresh bus messages.

    A device is online from the moment a fresh message arrives until a sweep
    finds it silent for longer than ``cutoff`` seconds.
    """

    def __init__(self, *, cutoff: float) -> None:
        self._cutoff = timedelta(seconds=cutoff)
        self._records: dict[str, PresenceRecord] = {}

    @property
    def cutoff(self) -> timedelta:
        return self._cutoff

    def observe(self, device_id: str, now: datetime) -> bool:
        """Mark *device_id* online. Returns ``True`` if it was not online before."""
        previous = self._records.get(device_id)
        self._records[device_id] = PresenceRecord(online=True, last_seen=now)
        return previous is None or not previous.online

    def sweep(self, now: datetime) -> set[str]:
        """Expire silent devices and return the ids that flipped offline."""
        flipped: set[str] = set()
        for device_id, record in self._records.items():
            if record.online and now - record.last_seen > self._cutoff:
                flipped.add(device_id)
        for device_id in flipped:
            self._records[device_id] = PresenceRecord(online=False, last_seen=self._records[device_id].last_seen)
        if flipped:
            _logger.debug("Presence sweep flipped %d device(s) offline: %s", len(flipped), sorted(flipped))
        return flipped

    def get(self, device_id: str) -> PresenceRecord | None:
        return self._records.get(device_id)

    def snapshot(self) -> dict[str, PresenceRecord]:
        return dict(self._records)

    def forget(self, device_id: str) -> None:
        self._records.pop(device_id, None)
