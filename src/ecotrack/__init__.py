"""ecotrack - Async device-state aggregation and alerting for EcoTrack bins and flood sensors."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ecotrack")
except PackageNotFoundError:
    __version__ = "0+local"
from ecotrack.config import BrokerProfile, EcotrackConfig, StoreProfile
from ecotrack.exceptions import (
    EcotrackBusError,
    EcotrackConfigError,
    EcotrackError,
    EcotrackStoreError,
    EcotrackTransportError,
)
from ecotrack.models import (
    AlertBanner,
    AlertEvent,
    AlertKind,
    CommandResult,
    CommandStep,
    CoordinateFix,
    Device,
    FleetMetrics,
    LogEntry,
    NormalizedMessage,
    NotificationPermission,
    PresenceRecord,
    TimestampKind,
)
from ecotrack.monitor import EcotrackMonitor

__all__ = [
    "__version__",
    "AlertBanner",
    "AlertEvent",
    "AlertKind",
    "BrokerProfile",
    "CommandResult",
    "CommandStep",
    "CoordinateFix",
    "Device",
    "EcotrackBusError",
    "EcotrackConfig",
    "EcotrackConfigError",
    "EcotrackError",
    "EcotrackMonitor",
    "EcotrackStoreError",
    "EcotrackTransportError",
    "FleetMetrics",
    "LogEntry",
    "NormalizedMessage",
    "NotificationPermission",
    "PresenceRecord",
    "StoreProfile",
    "TimestampKind",
]
