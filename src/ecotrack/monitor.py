"""High-level async monitor for EcoTrack devices."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Coroutine, Mapping
from datetime import UTC, datetime
from typing import Any

import aiohttp

from ecotrack._client import commands as _commands
from ecotrack._client.bus import BusCoordinator
from ecotrack._client.store import StoreCoordinator
from ecotrack._mqtt import BusRuntime
from ecotrack._transport import RemoteStore, StoreTransport
from ecotrack.alerts.channels import AudioCue, DesktopNotifier, Notifier, TerminalBell
from ecotrack.alerts.context import AlertContext, MutePreference
from ecotrack.alerts.dispatcher import AlertDispatcher
from ecotrack.config import EcotrackConfig
from ecotrack.exceptions import EcotrackBusError
from ecotrack.models.alert import AlertBanner, NotificationPermission
from ecotrack.models.device import Device, LogEntry
from ecotrack.models.fleet import CommandResult, FleetMetrics
from ecotrack.models.message import NormalizedMessage
from ecotrack.state.engine import ReconciliationEngine
from ecotrack.state.events import BusMessageEvent, EngineEvent, StoreSnapshotEvent, SweepEvent
from ecotrack.state.metrics import derive_metrics

_logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Mapping[str, Device], FleetMetrics], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EcotrackMonitor:
    """Aggregates bus telemetry and store documents into one device view.

    Usage::

        async with EcotrackMonitor(EcotrackConfig.from_env()) as monitor:
            devices = monitor.snapshot()
            await monitor.delete("bin-07")

    All engine mutations happen in one consumer task that drains an
    :class:`asyncio.Queue` in arrival order. Readers get immutable
    snapshots; changes are pushed through ``on_change``.
    """

    def __init__(
        self,
        config: EcotrackConfig | None = None,
        *,
        store: RemoteStore | None = None,
        session: aiohttp.ClientSession | None = None,
        enable_bus: bool = True,
        runtime_factory: Callable[..., BusRuntime] = BusRuntime,
        notifier: Notifier | None = None,
        audio: AudioCue | None = None,
        on_change: ChangeCallback | None = None,
        on_alert: Callable[[AlertBanner], None] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config or EcotrackConfig()
        self._clock = clock
        self._logger = _logger
        self._external_session = session is not None
        self._http_session = session
        self._remote_store = store
        self._enable_bus = enable_bus
        self._runtime_factory = runtime_factory
        self._on_change = on_change
        self._on_alert = on_alert

        self._engine = ReconciliationEngine(
            full_threshold=self._config.full_threshold,
            log_capacity=self._config.log_capacity,
            presence_cutoff=self._config.presence_cutoff,
            clock=clock,
        )
        self._alerts = AlertDispatcher(
            context=AlertContext(
                debounce=self._config.alert_debounce,
                mute=MutePreference(self._config.mute_preference_path),
            ),
            notifier=notifier if notifier is not None else DesktopNotifier(),
            audio=audio if audio is not None else TerminalBell(),
            audio_interval=self._config.audio_interval,
        )

        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[EngineEvent] = asyncio.Queue()
        self._tasks: list[asyncio.Task[Any]] = []
        self._background: set[asyncio.Task[Any]] = set()
        self._bus: BusCoordinator | None = None
        self._store: StoreCoordinator | None = None
        self._last_mirror: dict[str, float] = {}
        self._notified_version = -1

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> EcotrackMonitor:
        self._loop = asyncio.get_running_loop()

        store = self._remote_store
        if store is None and self._config.store.base_url:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            store = StoreTransport(self._config.store, self._http_session)
        if store is not None:
            self._store = StoreCoordinator(
                store=store,
                profile=self._config.store,
                on_snapshot=self._enqueue_snapshot,
                logger=_logger,
            )

        if self._enable_bus:
            bus = BusCoordinator(
                config=self._config,
                loop=self._loop,
                on_message=self._enqueue_message,
                on_connection_change=self._on_bus_connection,
                runtime_factory=self._runtime_factory,
                clock=self._clock,
                logger=_logger,
            )
            try:
                await bus.start()
            except Exception:
                _logger.warning("Bus runtime failed to start", exc_info=True)
            else:
                self._bus = bus

        self._tasks.append(asyncio.create_task(self._consume(), name="ecotrack-consumer"))
        self._tasks.append(asyncio.create_task(self._sweep_loop(), name="ecotrack-sweep"))
        if self._store is not None:
            self._tasks.append(asyncio.create_task(self._store.run_watch(), name="ecotrack-store-watch"))
        return self

    async def __aexit__(self, *exc: Any) -> None:
        tasks = self._tasks + list(self._background)
        self._tasks = []
        self._background.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

        if self._bus is not None:
            await self._bus.stop()
            self._bus = None
        await self._alerts.close()
        self._store = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._loop = None

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def _enqueue_message(self, message: NormalizedMessage) -> None:
        self._queue.put_nowait(BusMessageEvent(message=message, received_at=message.arrival))

    def _enqueue_snapshot(self, snapshot: Any) -> None:
        self._queue.put_nowait(StoreSnapshotEvent(snapshot=snapshot, received_at=self._clock()))

    def _on_bus_connection(self, connected: bool) -> None:
        _logger.debug("Bus connection state changed connected=%s", connected)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweep_interval)
            self._queue.put_nowait(SweepEvent(received_at=self._clock()))

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._process(event)
            except Exception:
                _logger.debug("Event processing failed source=%s", event.source, exc_info=True)
            finally:
                self._queue.task_done()

    async def _process(self, event: EngineEvent) -> None:
        engine = self._engine
        before = engine.version
        if isinstance(event, BusMessageEvent):
            message = event.message
            if engine.apply_message(message) and not message.retained:
                if engine.take_marker_clear(message.device_id):
                    self._clear_deletion(message.device_id)
                if message.fields:
                    self._schedule_mirror(message.device_id)
        elif isinstance(event, StoreSnapshotEvent):
            engine.apply_store_snapshot(event.snapshot, event.received_at)
        elif isinstance(event, SweepEvent):
            engine.sweep(event.received_at)

        if engine.version != before:
            self._after_change(event.received_at)

    def _after_change(self, now: datetime) -> None:
        view = self._engine.view()
        events = self._alerts.evaluate(view, now)
        if events:
            raised = self._alerts.raise_banners(events, now)
            # OS notifications can block for a long time; keep them off the consumer.
            self._spawn(self._alerts.notify(events))
            if self._on_alert is not None:
                for banner in raised:
                    try:
                        self._on_alert(banner)
                    except Exception:
                        _logger.debug("on_alert callback failed", exc_info=True)
        self._notify_change()

    def _notify_change(self) -> None:
        version = self._engine.version
        if version == self._notified_version:
            return
        self._notified_version = version
        callback = self._on_change
        if callback is None:
            return
        view = self._engine.view()
        try:
            callback(view, derive_metrics(view.values(), full_threshold=self._config.full_threshold))
        except Exception:
            _logger.debug("on_change callback failed", exc_info=True)

    # ------------------------------------------------------------------
    # Mirrored writes
    # ------------------------------------------------------------------

    def _schedule_mirror(self, device_id: str) -> None:
        store = self._store
        if store is None or not self._config.mirror_writes or not self._engine.is_registered(device_id):
            return
        now = time.monotonic()
        last = self._last_mirror.get(device_id)
        if last is not None and now - last < self._config.mirror_min_interval:
            return
        device = self._engine.get(device_id)
        if device is None:
            return
        self._last_mirror[device_id] = now
        patch = device.to_store_patch(now=self._clock())
        self._spawn(store.write_best_effort(store.device_path(device_id), patch))

    def _clear_deletion(self, device_id: str) -> None:
        """Undo a delete after resurrection: drop the store marker and the retained tombstone."""
        store = self._store
        if store is not None:
            self._spawn(store.write_best_effort(store.device_path(device_id), {"deleted": None, "deletedAt": None}))
        bus = self._bus
        if bus is not None:
            try:
                bus.publish(_commands.tombstone_topic(device_id), b"", retain=True)
            except EcotrackBusError:
                _logger.debug("Clearing tombstone topic for %s failed", device_id, exc_info=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def config(self) -> EcotrackConfig:
        return self._config

    @property
    def engine(self) -> ReconciliationEngine:
        return self._engine

    @property
    def alerts(self) -> AlertDispatcher:
        return self._alerts

    @property
    def bus_connected(self) -> bool:
        return self._bus is not None and self._bus.is_connected

    @property
    def store_connected(self) -> bool:
        return self._store is not None and self._store.is_connected

    def snapshot(self) -> Mapping[str, Device]:
        """Immutable view of every known device."""
        return self._engine.view()

    def device(self, device_id: str) -> Device | None:
        return self._engine.get(device_id)

    def metrics(self) -> FleetMetrics:
        return derive_metrics(self._engine.view().values(), full_threshold=self._config.full_threshold)

    @property
    def banners(self) -> tuple[AlertBanner, ...]:
        return self._alerts.banners

    @property
    def muted(self) -> bool:
        return self._alerts.muted

    async def wait_idle(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def delete(self, device_id: str) -> CommandResult:
        return await _commands.delete_device(self, device_id)

    async def refresh(self, device_id: str) -> CommandResult:
        return await _commands.refresh_device(self, device_id)

    async def register(self, device_id: str) -> CommandResult:
        return await _commands.register_device(self, device_id)

    async def load_logs(self, device_id: str) -> tuple[LogEntry, ...]:
        return await _commands.load_logs(self, device_id)

    async def request_notification_permission(self) -> NotificationPermission:
        return await self._alerts.request_notification_permission()

    def set_muted(self, muted: bool) -> None:
        self._alerts.set_muted(muted)

    def dismiss_alert(self, banner_id: str) -> bool:
        return self._alerts.dismiss(banner_id)

    def dismiss_all_alerts(self) -> int:
        return self._alerts.dismiss_all()

