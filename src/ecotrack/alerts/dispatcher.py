"""Debounced multi-channel alert dispatch.

The in-app banner is the authoritative channel: every fired event raises
one and it stays until dismissed. OS notifications and the audible cue are
best-effort and never fail the dispatcher.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from datetime import datetime

from ecotrack import _constants as c
from ecotrack.alerts.channels import AudioCue, Notifier
from ecotrack.alerts.context import AlertContext
from ecotrack.models.alert import AlertBanner, AlertEvent, AlertKind, NotificationPermission
from ecotrack.models.device import Device

_logger = logging.getLogger(__name__)


def _conditions(device: Device) -> tuple[tuple[AlertKind, bool], ...]:
    return ((AlertKind.BIN_FULL, device.bin_full), (AlertKind.FLOOD, device.flooded))


class AlertDispatcher:
    """Turns device views into alert events, banners, notifications and sound."""

    def __init__(
        self,
        *,
        context: AlertContext,
        notifier: Notifier | None = None,
        audio: AudioCue | None = None,
        audio_interval: float = c.AUDIO_INTERVAL_S,
    ) -> None:
        self._context = context
        self._notifier = notifier
        self._audio = audio
        self._audio_interval = audio_interval
        self._banners: dict[str, AlertBanner] = {}
        self._audio_task: asyncio.Task[None] | None = None

    @property
    def context(self) -> AlertContext:
        return self._context

    @property
    def banners(self) -> tuple[AlertBanner, ...]:
        return tuple(self._banners.values())

    @property
    def muted(self) -> bool:
        return self._context.mute.muted

    @property
    def audio_active(self) -> bool:
        return self._audio_task is not None and not self._audio_task.done()

    def evaluate(self, view: Mapping[str, Device], now: datetime) -> list[AlertEvent]:
        """Return the alert events to fire for *view*, recording them as fired.

        A condition that stays active fires again once the debounce window
        has elapsed since it last fired.
        """
        events: list[AlertEvent] = []
        for device_id, device in view.items():
            for kind, active in _conditions(device):
                key = (kind, device_id)
                since = self._context.observe(key, active, now)
                if since is None:
                    continue
                if not self._context.should_fire(key, now):
                    continue
                self._context.record(key, now)
                events.append(AlertEvent(kind=kind, device_id=device_id, first_detected_at=since))

        self._context.retain_devices(view.keys())
        return events

    def raise_banners(self, events: list[AlertEvent], now: datetime) -> list[AlertBanner]:
        raised: list[AlertBanner] = []
        for event in events:
            banner = AlertBanner(event=event, raised_at=now)
            self._banners[banner.banner_id] = banner
            raised.append(banner)
            _logger.info("Alert raised: %s", banner.message)
        if raised:
            self._ensure_audio()
        return raised

    async def notify(self, events: list[AlertEvent]) -> None:
        """Push events to the OS channel; failures are logged and swallowed."""
        notifier = self._notifier
        if notifier is None or not events:
            return
        try:
            if notifier.permission == NotificationPermission.DEFAULT:
                await notifier.request_permission()
            if notifier.permission != NotificationPermission.GRANTED:
                return
            for event in events:
                await notifier.notify(event)
        except Exception:
            _logger.debug("OS notification failed", exc_info=True)

    async def process(self, view: Mapping[str, Device], now: datetime) -> list[AlertEvent]:
        """Evaluate, raise banners and notify in one step."""
        events = self.evaluate(view, now)
        if events:
            self.raise_banners(events, now)
            await self.notify(events)
        return events

    def dismiss(self, banner_id: str) -> bool:
        removed = self._banners.pop(banner_id, None) is not None
        if not self._banners:
            self._stop_audio()
        return removed

    def dismiss_all(self) -> int:
        count = len(self._banners)
        self._banners.clear()
        self._stop_audio()
        return count

    def set_muted(self, muted: bool) -> None:
        self._context.mute.set(muted)
        if muted:
            self._stop_audio()
        else:
            self._ensure_audio()

    async def request_notification_permission(self) -> NotificationPermission:
        if self._notifier is None:
            return NotificationPermission.UNSUPPORTED
        try:
            return await self._notifier.request_permission()
        except Exception:
            _logger.debug("Notification permission request failed", exc_info=True)
            return NotificationPermission.DENIED

    # ------------------------------------------------------------------
    # Audible loop
    # ------------------------------------------------------------------

    def _ensure_audio(self) -> None:
        if self._audio is None or not self._banners or self.muted or self.audio_active:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._audio_task = loop.create_task(self._audio_loop(), name="ecotrack-alert-audio")

    def _stop_audio(self) -> None:
        task = self._audio_task
        self._audio_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _audio_loop(self) -> None:
        audio = self._audio
        if audio is None:
            return
        while self._banners and not self.muted:
            try:
                audio.play()
            except Exception:
                _logger.debug("Audible cue failed", exc_info=True)
            await asyncio.sleep(self._audio_interval)

    async def close(self) -> None:
        task = self._audio_task
        self._audio_task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
