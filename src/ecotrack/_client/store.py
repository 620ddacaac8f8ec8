"""Internal store coordination for :class:`ecotrack.monitor.EcotrackMonitor`.

Owns:
- the watch loop with bounded exponential backoff
- the bounded FIFO queue of best-effort writes that failed while the store was unreachable
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from ecotrack._transport import RemoteStore
from ecotrack.config import StoreProfile
from ecotrack.exceptions import EcotrackStoreError


@dataclass(frozen=True)
class _PendingWrite:
    path: str
    partial: dict[str, Any]


class StoreCoordinator:
    def __init__(
        self,
        *,
        store: RemoteStore,
        profile: StoreProfile,
        on_snapshot: Callable[[Any], None],
        logger: logging.Logger,
    ) -> None:
        self._store = store
        self._profile = profile
        self._on_snapshot = on_snapshot
        self._logger = logger
        self._pending: deque[_PendingWrite] = deque(maxlen=profile.max_pending_writes)
        self._flush_lock = asyncio.Lock()
        self._connected = False

    @property
    def store(self) -> RemoteStore:
        return self._store

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    def device_path(self, device_id: str) -> str:
        return f"{self._profile.devices_root.strip('/')}/{device_id}"

    async def run_watch(self) -> None:
        """Watch the devices subtree forever, reconnecting with backoff."""
        root = self._profile.devices_root
        delay = self._profile.reconnect_min_delay
        while True:
            try:
                async for tree in self._store.watch(root):
                    if not self._connected:
                        self._connected = True
                        delay = self._profile.reconnect_min_delay
                        self._logger.info("Store watch connected path=%s", root)
                        await self.flush_pending()
                    self._on_snapshot(tree)
                # A watch that ends without an error is treated like a dropped stream.
                raise EcotrackStoreError("Store watch ended", path=root)
            except asyncio.CancelledError:
                self._connected = False
                raise
            except EcotrackStoreError as exc:
                self._connected = False
                self._logger.info("Store watch interrupted (%s); retrying in %.1fs", exc, delay)
            except Exception:
                self._connected = False
                self._logger.debug("Store watch failed; retrying in %.1fs", delay, exc_info=True)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._profile.reconnect_max_delay)

    async def write(self, path: str, partial: Mapping[str, Any]) -> None:
        """Merge-write that raises :class:`EcotrackStoreError` on failure."""
        await self._store.write(path, partial)

    async def write_best_effort(self, path: str, partial: Mapping[str, Any]) -> bool:
        """Merge-write; on failure queue it for the next reconnect.

        Returns ``True`` when the write reached the store. Writes reach the
        store in call order, behind anything already queued.
        """
        item = _PendingWrite(path=path, partial=dict(partial))
        async with self._flush_lock:
            if self._pending:
                self._enqueue(item)
                await self._drain()
                return all(pending is not item for pending in self._pending)
            try:
                await self._store.write(item.path, item.partial)
            except EcotrackStoreError:
                self._logger.debug("Best-effort write to %s failed; queued", path, exc_info=True)
                self._enqueue(item)
                return False
            return True

    async def flush_pending(self) -> int:
        """Replay queued writes in order; stops at the first failure."""
        async with self._flush_lock:
            return await self._drain()

    def _enqueue(self, item: _PendingWrite) -> None:
        if len(self._pending) == self._pending.maxlen:
            dropped = self._pending[0]
            self._logger.warning("Store write queue full; dropping oldest write to %s", dropped.path)
        self._pending.append(item)

    async def _drain(self) -> int:
        # Caller holds the flush lock.
        flushed = 0
        while self._pending:
            item = self._pending[0]
            try:
                await self._store.write(item.path, item.partial)
            except EcotrackStoreError:
                self._logger.debug("Queued write to %s failed again", item.path, exc_info=True)
                break
            if self._pending and self._pending[0] is item:
                self._pending.popleft()
            flushed += 1
        if flushed:
            self._logger.debug("Flushed %d queued store write(s)", flushed)
        return flushed
