"""Alert bookkeeping injected into the dispatcher.

Holds the per-``(kind, device)`` debounce map and the persisted mute
preference. Nothing here is module-global so tests and multiple monitors can
run side by side.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path

from ecotrack import _constants as c
from ecotrack.models.alert import AlertKind

_logger = logging.getLogger(__name__)


class MutePreference:
    """Audible-cue mute flag, persisted as JSON when a path is given."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._muted = self._load()

    @property
    def muted(self) -> bool:
        return self._muted

    def _load(self) -> bool:
        if self._path is None or not self._path.exists():
            return False
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            _logger.debug("Unreadable mute preference at %s", self._path, exc_info=True)
            return False
        return isinstance(data, dict) and data.get("muted") is True

    def set(self, muted: bool) -> None:
        self._muted = bool(muted)
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps({"muted": self._muted}), encoding="utf-8")
        except OSError:
            _logger.debug("Failed to persist mute preference to %s", self._path, exc_info=True)


class AlertContext:
    """Debounce state for alert dispatch."""

    def __init__(
        self,
        *,
        debounce: float = c.ALERT_DEBOUNCE_S,
        mute: MutePreference | None = None,
    ) -> None:
        self._debounce = timedelta(seconds=debounce)
        self.mute = mute or MutePreference()
        self._last_fired: dict[tuple[AlertKind, str], datetime] = {}
        self._active_since: dict[tuple[AlertKind, str], datetime] = {}

    @property
    def debounce(self) -> timedelta:
        return self._debounce

    def observe(self, key: tuple[AlertKind, str], active: bool, now: datetime) -> datetime | None:
        """Track when a condition became active. Returns that time while active."""
        if not active:
            self._active_since.pop(key, None)
            return None
        return self._active_since.setdefault(key, now)

    def should_fire(self, key: tuple[AlertKind, str], now: datetime) -> bool:
        last = self._last_fired.get(key)
        return last is None or now - last >= self._debounce

    def record(self, key: tuple[AlertKind, str], now: datetime) -> None:
        self._last_fired[key] = now

    def last_fired(self, key: tuple[AlertKind, str]) -> datetime | None:
        return self._last_fired.get(key)

    def retain_devices(self, device_ids: Iterable[str]) -> None:
        """Stop tracking active conditions for devices that are gone."""
        keep = set(device_ids)
        for key in [key for key in self._active_since if key[1] not in keep]:
            self._active_since.pop(key, None)

    def forget(self, device_id: str) -> None:
        for store in (self._last_fired, self._active_since):
            for key in [key for key in store if key[1] == device_id]:
                store.pop(key, None)
