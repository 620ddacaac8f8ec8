"""Data models for devices, telemetry, alerts and commands."""

from ecotrack.models._base import EcotrackBaseModel, EpochTimestamp, parse_epoch, to_epoch_ms
from ecotrack.models.alert import AlertBanner, AlertEvent, AlertKind, NotificationPermission
from ecotrack.models.device import (
    CoordinateFix,
    Device,
    LogEntry,
    PresenceRecord,
    StoreDeviceRecord,
    TimestampKind,
)
from ecotrack.models.fleet import CommandResult, CommandStep, FleetMetrics
from ecotrack.models.message import NormalizedMessage

__all__ = [
    "AlertBanner",
    "AlertEvent",
    "AlertKind",
    "CommandResult",
    "CommandStep",
    "CoordinateFix",
    "Device",
    "EcotrackBaseModel",
    "EpochTimestamp",
    "FleetMetrics",
    "LogEntry",
    "NormalizedMessage",
    "NotificationPermission",
    "PresenceRecord",
    "StoreDeviceRecord",
    "TimestampKind",
    "parse_epoch",
    "to_epoch_ms",
]
