"""Device, log and presence models."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ecotrack.models._base import EcotrackBaseModel, EpochTimestamp, to_epoch_ms


class CoordinateFix(StrEnum):
    """What the coordinate heuristic did to a reported position."""

    NONE = "none"
    SWAPPED = "swapped"
    NULLED = "nulled"


class TimestampKind(StrEnum):
    """Best guess at what a device-reported timestamp means."""

    EPOCH_MS = "epoch_ms"
    EPOCH_S = "epoch_s"
    UPTIME = "uptime"
    NONE = "none"


class LogEntry(BaseModel):
    """One history entry for a device.

    ``arrival`` is always a local wall-clock time. For store-derived entries
    it is the resolved device timestamp when one exists, else the time the
    snapshot was received.
    """

    model_config = ConfigDict(frozen=True)

    ts: Any = None
    """Logical timestamp as reported (epoch ms, epoch s, uptime counter or absent)."""
    ts_kind: TimestampKind = TimestampKind.NONE
    epoch_ms: float | None = None
    """``ts`` resolved to epoch milliseconds, when the magnitude allows it."""
    arrival: datetime
    payload: Any = None
    source: Literal["bus", "store"] = "bus"

    @property
    def sort_key(self) -> tuple[int, float]:
        """Newest-first ordering key for entries without a shared arrival clock.

        Entries with a resolvable epoch sort above uptime-only entries, which
        only order among themselves.
        """
        if self.epoch_ms is not None:
            return (2, self.epoch_ms)
        if self.ts_kind == TimestampKind.UPTIME:
            return (1, float(self.ts))
        return (0, self.arrival.timestamp())


class PresenceRecord(BaseModel):
    """Shadow online state for one device, owned by the presence tracker."""

    model_config = ConfigDict(frozen=True)

    online: bool
    last_seen: datetime


class StoreDeviceRecord(EcotrackBaseModel):
    """A ``devices/{id}`` document as stored.

    Only the fields with a fixed meaning are declared; fill level and
    coordinates come in too many shapes and are resolved from ``raw`` by the
    store ingestion layer.
    """

    online: bool | None = None
    last_seen: EpochTimestamp = None
    flooded: bool | None = Field(default=None, validation_alias=AliasChoices("flooded", "flood"))
    bin_full: bool | None = Field(default=None, validation_alias=AliasChoices("binFull", "bin_full"))
    address: str | None = Field(
        default=None,
        validation_alias=AliasChoices("address", "street_address", "display_name", "location_name"),
    )
    deleted: bool | None = None
    deleted_at: EpochTimestamp = None
    meta: dict[str, Any] = Field(default_factory=dict)
    logs: Any = None

    @field_validator("online", "flooded", "bin_full", "deleted", mode="before")
    @classmethod
    def _lenient_bool(cls, value: Any) -> Any:
        # Unparseable flags are dropped rather than failing the whole document.
        if isinstance(value, (bool, int, float, str)):
            text = str(value).strip().lower()
            if text in {"true", "1", "1.0", '"true"', "yes", "on"}:
                return True
            if text in {"false", "0", "0.0", '"false"', "no", "off"}:
                return False
        return None

    @field_validator("meta", mode="before")
    @classmethod
    def _meta_dict(cls, value: Any) -> dict[str, Any]:
        return dict(value) if isinstance(value, dict) else {}


class Device(BaseModel):
    """The unified per-device record exposed to readers.

    Instances are immutable snapshots produced by the reconciliation engine.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    online: bool = False
    last_seen: datetime | None = None
    fill_pct: int | None = Field(default=None, ge=0, le=100)
    bin_full: bool = False
    flooded: bool = False
    lat: float | None = None
    lon: float | None = None
    address: str | None = None
    coord_fix: CoordinateFix = CoordinateFix.NONE
    logs: tuple[LogEntry, ...] = ()
    meta: dict[str, Any] = Field(default_factory=dict)
    registered: bool = False
    """``False`` for devices seen only on the bus; callers may request registration."""

    @property
    def has_position(self) -> bool:
        return self.lat is not None and self.lon is not None

    def to_store_patch(self, *, now: datetime | None = None) -> dict[str, Any]:
        """camelCase partial document for a merge write to ``devices/{id}``."""
        stamp = self.last_seen or now or datetime.now(UTC)
        patch: dict[str, Any] = {
            "online": self.online,
            "lastSeen": to_epoch_ms(stamp),
            "binFull": self.bin_full,
            "flooded": self.flooded,
        }
        if self.fill_pct is not None:
            patch["fillPct"] = self.fill_pct
        if self.lat is not None and self.lon is not None:
            patch["lat"] = self.lat
            patch["lon"] = self.lon
        if self.meta:
            patch["meta"] = dict(self.meta)
        return patch
