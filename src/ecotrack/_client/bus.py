"""Internal bus coordination for :class:`ecotrack.monitor.EcotrackMonitor`.

Owns:
- starting/stopping the threaded bus runtime
- translating raw bus messages into normalized messages
- time-boxed log backfill subscriptions
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ecotrack import _constants as c
from ecotrack._mqtt import BusMessage, BusRuntime
from ecotrack.config import EcotrackConfig
from ecotrack.exceptions import EcotrackBusError
from ecotrack.ingestion.bus import normalize_message
from ecotrack.ingestion.normalize import classify_timestamp, extract_timestamp, parse_payload
from ecotrack.models.device import LogEntry
from ecotrack.models.message import NormalizedMessage

_END_MARKERS = ("done", "end", "complete")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def logs_topic_filter(device_id: str) -> str:
    return f"+/{device_id}/{c.LOGS_CATEGORY}"


def _is_end_marker(payload: Any) -> bool:
    if isinstance(payload, list):
        return not payload
    if isinstance(payload, Mapping):
        return any(payload.get(key) is True for key in _END_MARKERS)
    return False


def _log_entries(payload: Any, now: datetime) -> list[LogEntry]:
    """Backfill payloads carry one entry or a list of entries."""
    items = payload if isinstance(payload, list) else [payload]
    entries: list[LogEntry] = []
    for item in items:
        if item is None or _is_end_marker(item):
            continue
        ts = extract_timestamp(item)
        ts_kind, epoch_ms = classify_timestamp(ts)
        entries.append(LogEntry(ts=ts, ts_kind=ts_kind, epoch_ms=epoch_ms, arrival=now, payload=item, source="bus"))
    return entries


@dataclass
class _Backfill:
    device_id: str
    min_entries: int
    done: asyncio.Event = field(default_factory=asyncio.Event)
    entries: list[LogEntry] = field(default_factory=list)


class BusCoordinator:
    def __init__(
        self,
        *,
        config: EcotrackConfig,
        loop: asyncio.AbstractEventLoop,
        on_message: Callable[[NormalizedMessage], None],
        on_connection_change: Callable[[bool], None] | None = None,
        runtime_factory: Callable[..., BusRuntime] = BusRuntime,
        clock: Callable[[], datetime] = _utcnow,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._loop = loop
        self._on_normalized = on_message
        self._on_connection_change = on_connection_change
        self._runtime_factory = runtime_factory
        self._clock = clock
        self._logger = logger
        self._runtime: BusRuntime | None = None
        self._backfills: dict[str, _Backfill] = {}

    @property
    def runtime(self) -> BusRuntime | None:
        return self._runtime

    @property
    def is_connected(self) -> bool:
        runtime = self._runtime
        return runtime is not None and runtime.is_connected

    async def start(self) -> None:
        runtime = self._runtime_factory(
            loop=self._loop,
            profile=self._config.broker,
            on_message=self.handle_message,
            on_connection_change=self._on_connection_change,
            logger=self._logger,
        )
        previous = self._runtime
        await self._loop.run_in_executor(None, runtime.start)
        self._runtime = runtime
        if previous is not None:
            await self._loop.run_in_executor(None, previous.stop)

    async def stop(self) -> None:
        runtime = self._runtime
        self._runtime = None
        for backfill in self._backfills.values():
            backfill.done.set()
        if runtime is None:
            return
        try:
            await self._loop.run_in_executor(None, runtime.stop)
        except Exception:
            self._logger.debug("Bus runtime stop failed", exc_info=True)

    def _require_runtime(self) -> BusRuntime:
        runtime = self._runtime
        if runtime is None:
            raise EcotrackBusError("Bus runtime is not running")
        return runtime

    def publish(self, topic: str, payload: bytes | str | None, *, retain: bool = False) -> bool:
        return self._require_runtime().publish(topic, payload, retain=retain)

    def handle_message(self, message: BusMessage) -> None:
        """Runs on the event loop for every delivered message."""
        parts = [part for part in message.topic.split("/") if part]
        if len(parts) == 3 and parts[2] == c.LOGS_CATEGORY:
            backfill = self._backfills.get(parts[1])
            if backfill is not None:
                self._accumulate(backfill, message)
                return

        normalized = normalize_message(
            message.topic,
            message.payload,
            message.retained,
            now=self._clock(),
            prefixes=self._config.topic_prefixes,
            full_threshold=self._config.full_threshold,
        )
        if normalized is None:
            return
        self._on_normalized(normalized)

    def _accumulate(self, backfill: _Backfill, message: BusMessage) -> None:
        payload = parse_payload(message.payload)
        if payload.get("raw") == "":
            return
        body: Any = payload["value"] if set(payload) == {"value"} else payload
        backfill.entries.extend(_log_entries(body, self._clock()))
        if _is_end_marker(body) or len(backfill.entries) >= backfill.min_entries:
            backfill.done.set()

    async def backfill_logs(self, device_id: str, *, timeout: float, min_entries: int) -> list[LogEntry]:
        """Subscribe to a device's log topic and collect entries.

        Completes once ``min_entries`` arrived or the device sends an end
        marker. On timeout the subscription is dropped and anything
        accumulated is discarded.
        """
        runtime = self._runtime
        if runtime is None or timeout <= 0:
            return []

        existing = self._backfills.get(device_id)
        if existing is not None:
            # Share an in-flight backfill rather than subscribing twice.
            try:
                await asyncio.wait_for(asyncio.shield(existing.done.wait()), timeout)
            except TimeoutError:
                return []
            return list(existing.entries)

        backfill = _Backfill(device_id=device_id, min_entries=max(1, min_entries))
        self._backfills[device_id] = backfill
        pattern = logs_topic_filter(device_id)
        runtime.subscribe(pattern)
        try:
            await asyncio.wait_for(backfill.done.wait(), timeout)
            return list(backfill.entries)
        except TimeoutError:
            self._logger.debug(
                "Log backfill for device=%s timed out; discarding %d entries",
                device_id,
                len(backfill.entries),
            )
            return []
        finally:
            self._backfills.pop(device_id, None)
            current = self._runtime
            if current is not None:
                current.unsubscribe(pattern)
