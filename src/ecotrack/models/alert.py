"""Alert models."""

from __future__ import annotations

import secrets
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class AlertKind(StrEnum):
    BIN_FULL = "bin_full"
    FLOOD = "flood"


class NotificationPermission(StrEnum):
    """OS notification permission, mirroring the browser permission states."""

    GRANTED = "granted"
    DENIED = "denied"
    DEFAULT = "default"
    UNSUPPORTED = "unsupported"


_MESSAGES: dict[AlertKind, str] = {
    AlertKind.BIN_FULL: "Bin Full at Device {device_id}",
    AlertKind.FLOOD: "Flood Alert at Device {device_id}",
}


class AlertEvent(BaseModel):
    """A detected alert condition. Derived, never persisted."""

    model_config = ConfigDict(frozen=True)

    kind: AlertKind
    device_id: str
    first_detected_at: datetime

    @property
    def key(self) -> tuple[AlertKind, str]:
        return (self.kind, self.device_id)

    @property
    def message(self) -> str:
        return _MESSAGES[self.kind].format(device_id=self.device_id)


class AlertBanner(BaseModel):
    """In-app alert that stays visible until the user dismisses it."""

    model_config = ConfigDict(frozen=True)

    banner_id: str = Field(default_factory=lambda: secrets.token_hex(4))
    event: AlertEvent
    raised_at: datetime

    @property
    def message(self) -> str:
        return self.event.message
