"""Internal command operations for :class:`ecotrack.monitor.EcotrackMonitor`.

These functions keep ``monitor.py`` small without changing the public API.
Every command is a sequence of idempotent steps; a failed step is reported
in the returned :class:`~ecotrack.models.fleet.CommandResult`, never raised.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from ecotrack import _constants as c
from ecotrack.exceptions import EcotrackBusError, EcotrackStoreError
from ecotrack.ingestion.normalize import is_valid_device_id
from ecotrack.ingestion.store import parse_store_logs
from ecotrack.models._base import to_epoch_ms
from ecotrack.models.device import LogEntry
from ecotrack.models.fleet import CommandResult, CommandStep
from ecotrack.state.policy import newest_first

if TYPE_CHECKING:
    from ecotrack.monitor import EcotrackMonitor


def meta_topic(device_id: str) -> str:
    return f"{c.REGISTRY_PREFIX}/{device_id}/{c.META_CATEGORY}"


def tombstone_topic(device_id: str) -> str:
    return f"{c.TOMBSTONE_PREFIX}/{device_id}"


class _Steps:
    """Collects step outcomes for one command."""

    def __init__(self, command: str, device_id: str) -> None:
        self.command = command
        self.device_id = device_id
        self.completed: list[CommandStep] = []
        self.failed: list[CommandStep] = []
        self.errors: dict[str, str] = {}

    def ok(self, step: CommandStep) -> None:
        self.completed.append(step)

    def fail(self, step: CommandStep, error: BaseException | str) -> None:
        self.failed.append(step)
        self.errors[step.value] = str(error)

    def result(self) -> CommandResult:
        return CommandResult(
            command=self.command,
            device_id=self.device_id,
            completed=tuple(self.completed),
            failed=tuple(self.failed),
            errors=dict(self.errors),
        )


def _validate_id(device_id: str) -> str:
    candidate = device_id.strip()
    if not is_valid_device_id(candidate):
        raise ValueError(f"Invalid device id: {device_id!r}")
    return candidate


async def delete_device(monitor: EcotrackMonitor, device_id: str) -> CommandResult:
    """Delete a device from every layer.

    (a) tombstone the store document, (b) clear its retained bus topics and
    publish a retained tombstone, (c) drop the live overlay. The id is
    hidden locally before any step runs; a later fresh message for it
    brings it back.
    """
    device_id = _validate_id(device_id)
    steps = _Steps("delete", device_id)
    engine = monitor._engine
    now = monitor._clock()
    deleted_ms = to_epoch_ms(now)
    retained_topics = engine.known_retained_topics(device_id)
    engine.hide(device_id, now)

    store = monitor._store
    if store is None:
        steps.fail(CommandStep.STORE_TOMBSTONE, "store not configured")
    else:
        try:
            await store.write(store.device_path(device_id), {"deleted": True, "deletedAt": deleted_ms})
            steps.ok(CommandStep.STORE_TOMBSTONE)
        except EcotrackStoreError as exc:
            monitor._logger.debug("Store tombstone for %s failed", device_id, exc_info=True)
            steps.fail(CommandStep.STORE_TOMBSTONE, exc)

    bus = monitor._bus
    if bus is None:
        steps.fail(CommandStep.BUS_CLEAR, "bus not configured")
    else:
        try:
            for topic in sorted({*retained_topics, meta_topic(device_id)}):
                bus.publish(topic, b"", retain=True)
            tombstone = json.dumps({"id": device_id, "deletedAt": deleted_ms})
            bus.publish(tombstone_topic(device_id), tombstone, retain=True)
            steps.ok(CommandStep.BUS_CLEAR)
        except EcotrackBusError as exc:
            monitor._logger.debug("Bus clear for %s failed", device_id, exc_info=True)
            steps.fail(CommandStep.BUS_CLEAR, exc)

    engine.remove_live(device_id)
    monitor._alerts.context.forget(device_id)
    steps.ok(CommandStep.LIVE_REMOVE)

    monitor._notify_change()
    result = steps.result()
    monitor._logger.info("Delete device=%s ok=%s failed=%s", device_id, result.ok, list(result.failed))
    return result


async def refresh_device(monitor: EcotrackMonitor, device_id: str) -> CommandResult:
    """Best-effort ``lastRefreshed`` stamp on the device document."""
    device_id = _validate_id(device_id)
    steps = _Steps("refresh", device_id)
    store = monitor._store
    if store is None:
        steps.fail(CommandStep.STORE_WRITE, "store not configured")
        return steps.result()

    patch = {"lastRefreshed": to_epoch_ms(monitor._clock())}
    if await store.write_best_effort(store.device_path(device_id), patch):
        steps.ok(CommandStep.STORE_WRITE)
    else:
        steps.fail(CommandStep.STORE_WRITE, "store unreachable; write queued")
    return steps.result()


async def register_device(monitor: EcotrackMonitor, device_id: str) -> CommandResult:
    """Promote a bus-only device into the store and publish its retained meta."""
    device_id = _validate_id(device_id)
    steps = _Steps("register", device_id)
    engine = monitor._engine
    now = monitor._clock()

    engine.unhide(device_id)
    device = engine.get(device_id)
    meta: dict[str, Any] = dict(device.meta) if device is not None else {}
    meta.setdefault("id", device_id)
    meta.setdefault("registeredAt", to_epoch_ms(now))

    store = monitor._store
    if store is None:
        steps.fail(CommandStep.STORE_WRITE, "store not configured")
    else:
        patch: dict[str, Any] = device.to_store_patch(now=now) if device is not None else {"online": False}
        patch["meta"] = meta
        # Null removes any earlier tombstone.
        patch["deleted"] = None
        patch["deletedAt"] = None
        try:
            await store.write(store.device_path(device_id), patch)
            steps.ok(CommandStep.STORE_WRITE)
        except EcotrackStoreError as exc:
            monitor._logger.debug("Register write for %s failed", device_id, exc_info=True)
            steps.fail(CommandStep.STORE_WRITE, exc)

    bus = monitor._bus
    if bus is None:
        steps.fail(CommandStep.BUS_META, "bus not configured")
    else:
        try:
            bus.publish(meta_topic(device_id), json.dumps(meta, default=str), retain=True)
            bus.publish(tombstone_topic(device_id), b"", retain=True)
            steps.ok(CommandStep.BUS_META)
        except EcotrackBusError as exc:
            monitor._logger.debug("Register publish for %s failed", device_id, exc_info=True)
            steps.fail(CommandStep.BUS_META, exc)

    monitor._notify_change()
    return steps.result()


async def load_logs(monitor: EcotrackMonitor, device_id: str) -> tuple[LogEntry, ...]:
    """Fetch history through the configured side-channel, newest first.

    Bus backfills are kept as history behind the live log ring. Failures and
    timeouts yield an empty result.
    """
    device_id = _validate_id(device_id)
    config = monitor._config
    now = monitor._clock()

    if config.backfill_mode == "bus":
        bus = monitor._bus
        if bus is None:
            return ()
        entries = await bus.backfill_logs(
            device_id,
            timeout=config.backfill_timeout,
            min_entries=config.backfill_min_entries,
        )
        if monitor._engine.add_logs(device_id, entries):
            monitor._notify_change()
        return newest_first(entries, capacity=config.log_capacity)

    store = monitor._store
    if store is None:
        return ()
    try:
        raw = await store.store.read(f"{store.device_path(device_id)}/logs")
    except EcotrackStoreError:
        monitor._logger.debug("Log read for %s failed", device_id, exc_info=True)
        return ()
    return parse_store_logs(raw, now=now, capacity=config.log_capacity)
