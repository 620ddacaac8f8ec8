"""Internal constants shared across the library."""

from __future__ import annotations

import re

# ------------------------------------------------------------------
# Topic namespace
# ------------------------------------------------------------------

DEVICE_TOPIC_PREFIXES: tuple[str, ...] = ("esp32", "device", "devices")
REGISTRY_PREFIX = "devices"
TOMBSTONE_PREFIX = "deleted_devices"
META_CATEGORY = "meta"
LOGS_CATEGORY = "logs"

DEFAULT_SUBSCRIPTIONS: tuple[str, ...] = (
    "esp32/#",
    "device/+/#",
    f"{REGISTRY_PREFIX}/+/{META_CATEGORY}",
    f"{TOMBSTONE_PREFIX}/+",
)

# ------------------------------------------------------------------
# Device identity
# ------------------------------------------------------------------

DEVICE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,80}$")
RESERVED_IDS: frozenset[str] = frozenset(
    {"sensor", "status", "gps", "devices", "meta", "deleted_devices", "broadcast", "mqtt"}
)
PAYLOAD_ID_KEYS: tuple[str, ...] = ("id", "deviceId", "device_id", "dev_id", "node_id", "name")

# ------------------------------------------------------------------
# Telemetry field aliases (first match wins)
# ------------------------------------------------------------------

FILL_PCT_KEYS: tuple[str, ...] = (
    "fillPct",
    "fill_pct",
    "binFillPct",
    "bin_fill_pct",
    "fill",
    "fillPercent",
    "fill_percent",
)
BIN_FULL_KEYS: tuple[str, ...] = ("binFull", "bin_full")
FLOODED_KEYS: tuple[str, ...] = ("flooded", "flood")
LAT_KEYS: tuple[str, ...] = ("lat", "latitude", "Lat", "Latitude", "LAT")
LON_KEYS: tuple[str, ...] = ("lon", "lng", "longitude", "Lon", "Longitude", "LON", "Lng")
NESTED_COORD_KEYS: tuple[str, ...] = ("gps", "location", "coords")
ADDRESS_KEYS: tuple[str, ...] = ("address", "street_address", "display_name", "location_name")
TIMESTAMP_KEYS: tuple[str, ...] = ("ts", "timestamp", "time", "t")

# ------------------------------------------------------------------
# Timestamp magnitude heuristic
# ------------------------------------------------------------------

# Values at or above this are epoch milliseconds (year 2001+).
EPOCH_MS_THRESHOLD = 1_000_000_000_000
# Values at or above this (and below the ms threshold) are epoch seconds.
# Anything smaller and positive is treated as a device uptime counter.
EPOCH_S_THRESHOLD = 1_000_000_000

# ------------------------------------------------------------------
# Engine defaults
# ------------------------------------------------------------------

FULL_THRESHOLD = 90
LOG_CAPACITY = 50
SWEEP_INTERVAL_S = 2.0
PRESENCE_CUTOFF_S = 8.0
ALERT_DEBOUNCE_S = 20.0
AUDIO_INTERVAL_S = 3.0
