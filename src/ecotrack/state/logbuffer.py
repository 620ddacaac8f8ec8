"""Bounded per-device log history."""

from __future__ import annotations

from collections import deque

from ecotrack.models.device import LogEntry


class LogRing:
    """Fixed-capacity history of live messages, newest first.

    Inserting into a full ring drops the oldest entry. Backfilled history is
    kept outside the ring so it can never push out live entries.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._entries: deque[LogEntry] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: LogEntry) -> None:
        self._entries.appendleft(entry)

    def entries(self) -> tuple[LogEntry, ...]:
        return tuple(self._entries)

    def clear(self) -> None:
        self._entries.clear()
