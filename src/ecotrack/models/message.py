"""Normalized bus message model."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ecotrack.models.device import CoordinateFix, LogEntry


class NormalizedMessage(BaseModel):
    """A bus message after normalization, attributed to one device.

    ``fields`` holds only keys the message actually carried, so applying it
    to a device is a plain overwrite merge.
    """

    model_config = ConfigDict(frozen=True)

    device_id: str
    topic: str
    category: str | None = None
    subcategory: str | None = None
    retained: bool = False
    arrival: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    """Parsed payload, or ``{"raw": text}`` when it was not JSON."""
    fields: dict[str, Any] = Field(default_factory=dict)
    """Normalized telemetry patch (``fill_pct``, ``bin_full``, ``flooded``, ``lat``, ``lon``, ...)."""
    meta: dict[str, Any] = Field(default_factory=dict)
    """Free-form metadata from a registry ``meta`` topic."""
    coord_fix: CoordinateFix = CoordinateFix.NONE
    tombstone: bool = False
    """The message is a ``deleted_devices/<id>`` marker."""
    log: LogEntry | None = None

    @field_validator("device_id")
    @classmethod
    def _normalize_device_id(cls, value: str) -> str:
        device_id = value.strip()
        if not device_id:
            raise ValueError("device_id must be non-empty")
        return device_id

    @property
    def is_empty(self) -> bool:
        """A zero-length payload, which clears a retained topic."""
        return self.payload.get("raw") == ""
