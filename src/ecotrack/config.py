"""Monitor configuration for ecotrack."""

from __future__ import annotations

import dataclasses
import os
from typing import Any, Literal

from ecotrack import _constants as c
from ecotrack.exceptions import EcotrackConfigError

BackfillMode = Literal["store", "bus"]


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_tuple(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclasses.dataclass(frozen=True)
class BrokerProfile:
    """Telemetry bus connection settings.

    Parameters
    ----------
    host : str
        Broker hostname.
    port : int
        Broker port. ``8884`` is the usual secure WebSocket port.
    transport : str
        ``"websockets"`` or ``"tcp"``.
    ws_path : str
        HTTP path of the WebSocket endpoint.
    tls : bool
        Enable TLS with the system trust store.
    username, password : str or None
        Broker credentials, passed through verbatim.
    keepalive : int
        MQTT keepalive in seconds.
    client_id_prefix : str
        A random suffix is appended per session.
    reconnect_min_delay, reconnect_max_delay : int
        Bounds for the exponential reconnect backoff, in seconds.
    subscriptions : tuple of str
        Topic filters re-subscribed on every (re)connect.
    qos : int
        QoS used for subscriptions and produced messages.
    """

    host: str = "localhost"
    port: int = 8884
    transport: Literal["tcp", "websockets"] = "websockets"
    ws_path: str = "/mqtt"
    tls: bool = True
    username: str | None = None
    password: str | None = None
    keepalive: int = 60
    client_id_prefix: str = "ecotrack_"
    reconnect_min_delay: int = 1
    reconnect_max_delay: int = 30
    subscriptions: tuple[str, ...] = c.DEFAULT_SUBSCRIPTIONS
    qos: int = 1


@dataclasses.dataclass(frozen=True)
class StoreProfile:
    """Remote store connection settings.

    ``base_url`` is the database root (e.g.
    ``https://example-default-rtdb.firebaseio.com``). ``auth_token`` is
    opaque and appended as the ``auth`` query parameter when set.
    """

    base_url: str = ""
    auth_token: str | None = None
    devices_root: str = c.REGISTRY_PREFIX
    request_timeout: float = 10.0
    reconnect_min_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    max_pending_writes: int = 500
    """Queued best-effort writes kept while the store is unreachable; oldest dropped first."""


@dataclasses.dataclass(frozen=True)
class EcotrackConfig:
    """Aggregation engine configuration.

    Parameters
    ----------
    broker : BrokerProfile
        Telemetry bus settings.
    store : StoreProfile
        Remote store settings.
    full_threshold : int
        Fill percentage at or above which a bin counts as full.
    sweep_interval : float
        Seconds between presence sweeps.
    presence_cutoff : float
        Inactivity in seconds after which a device is considered offline.
        Must be at least ``sweep_interval``.
    log_capacity : int
        Per-device log ring size.
    alert_debounce : float
        Minimum seconds between two alerts of the same kind for a device.
    audio_interval : float
        Seconds between audible cues while undismissed alerts exist.
    backfill_mode : str
        ``"store"`` reads logs through the store, ``"bus"`` opens a
        time-boxed subscription.
    backfill_timeout : float
        Seconds a bus backfill subscription stays open.
    backfill_min_entries : int
        Bus backfill completes early once this many entries arrived.
    mirror_writes : bool
        Mirror normalized bus telemetry into the store (best-effort).
    mirror_min_interval : float
        Minimum seconds between two mirrored writes for one device.
    mute_preference_path : str or None
        JSON file that persists the mute preference. ``None`` keeps it in memory.
    topic_prefixes : tuple of str
        Topic roots whose second segment is a device id.
    """

    broker: BrokerProfile = dataclasses.field(default_factory=BrokerProfile)
    store: StoreProfile = dataclasses.field(default_factory=StoreProfile)
    full_threshold: int = c.FULL_THRESHOLD
    sweep_interval: float = c.SWEEP_INTERVAL_S
    presence_cutoff: float = c.PRESENCE_CUTOFF_S
    log_capacity: int = c.LOG_CAPACITY
    alert_debounce: float = c.ALERT_DEBOUNCE_S
    audio_interval: float = c.AUDIO_INTERVAL_S
    backfill_mode: BackfillMode = "store"
    backfill_timeout: float = 5.0
    backfill_min_entries: int = 10
    mirror_writes: bool = True
    mirror_min_interval: float = 5.0
    mute_preference_path: str | None = None
    topic_prefixes: tuple[str, ...] = c.DEVICE_TOPIC_PREFIXES

    def __post_init__(self) -> None:
        if self.sweep_interval <= 0:
            raise EcotrackConfigError(f"sweep_interval must be positive, got {self.sweep_interval}")
        if self.presence_cutoff < self.sweep_interval:
            raise EcotrackConfigError(
                f"presence_cutoff ({self.presence_cutoff}) must be >= sweep_interval ({self.sweep_interval})"
            )
        if self.log_capacity < 1:
            raise EcotrackConfigError(f"log_capacity must be >= 1, got {self.log_capacity}")
        if not 0 <= self.full_threshold <= 100:
            raise EcotrackConfigError(f"full_threshold must be within 0..100, got {self.full_threshold}")
        if self.backfill_mode not in ("store", "bus"):
            raise EcotrackConfigError(f"backfill_mode must be 'store' or 'bus', got {self.backfill_mode!r}")
        if self.store.max_pending_writes < 1:
            raise EcotrackConfigError(f"store.max_pending_writes must be >= 1, got {self.store.max_pending_writes}")

    @classmethod
    def from_env(cls, **overrides: Any) -> EcotrackConfig:
        """Create configuration from environment variables.

        Reads optional ``ECOTRACK_*`` variables. Explicit keyword arguments
        override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        EcotrackConfig
            Populated configuration.
        """
        env = os.environ

        broker_kwargs: dict[str, Any] = {}
        _ENV_BROKER_MAP = {
            "ECOTRACK_MQTT_HOST": "host",
            "ECOTRACK_MQTT_TRANSPORT": "transport",
            "ECOTRACK_MQTT_WS_PATH": "ws_path",
            "ECOTRACK_MQTT_USERNAME": "username",
            "ECOTRACK_MQTT_PASSWORD": "password",
            "ECOTRACK_MQTT_CLIENT_ID_PREFIX": "client_id_prefix",
        }
        for env_key, field_name in _ENV_BROKER_MAP.items():
            val = env.get(env_key)
            if val is not None:
                broker_kwargs[field_name] = val
        port_env = env.get("ECOTRACK_MQTT_PORT")
        if port_env is not None:
            broker_kwargs["port"] = int(port_env)
        keepalive_env = env.get("ECOTRACK_MQTT_KEEPALIVE")
        if keepalive_env is not None:
            broker_kwargs["keepalive"] = int(keepalive_env)
        if "ECOTRACK_MQTT_TLS" in env:
            broker_kwargs["tls"] = _env_bool(env.get("ECOTRACK_MQTT_TLS"), True)
        subs_env = env.get("ECOTRACK_MQTT_SUBSCRIPTIONS")
        if subs_env is not None:
            broker_kwargs["subscriptions"] = _env_tuple(subs_env)

        broker_overrides = overrides.pop("broker", None)
        if isinstance(broker_overrides, dict):
            broker_kwargs.update(broker_overrides)
        elif isinstance(broker_overrides, BrokerProfile):
            broker_kwargs = dataclasses.asdict(broker_overrides)

        store_kwargs: dict[str, Any] = {}
        _ENV_STORE_MAP = {
            "ECOTRACK_STORE_URL": "base_url",
            "ECOTRACK_STORE_AUTH": "auth_token",
            "ECOTRACK_STORE_ROOT": "devices_root",
        }
        for env_key, field_name in _ENV_STORE_MAP.items():
            val = env.get(env_key)
            if val is not None:
                store_kwargs[field_name] = val

        store_overrides = overrides.pop("store", None)
        if isinstance(store_overrides, dict):
            store_kwargs.update(store_overrides)
        elif isinstance(store_overrides, StoreProfile):
            store_kwargs = dataclasses.asdict(store_overrides)

        config_kwargs: dict[str, Any] = {
            "broker": BrokerProfile(**broker_kwargs),
            "store": StoreProfile(**store_kwargs),
        }

        _ENV_FLOAT_MAP = {
            "ECOTRACK_SWEEP_INTERVAL": "sweep_interval",
            "ECOTRACK_PRESENCE_CUTOFF": "presence_cutoff",
            "ECOTRACK_ALERT_DEBOUNCE": "alert_debounce",
            "ECOTRACK_AUDIO_INTERVAL": "audio_interval",
            "ECOTRACK_BACKFILL_TIMEOUT": "backfill_timeout",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = float(val)

        _ENV_INT_MAP = {
            "ECOTRACK_FULL_THRESHOLD": "full_threshold",
            "ECOTRACK_LOG_CAPACITY": "log_capacity",
        }
        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = int(val)

        backfill_env = env.get("ECOTRACK_BACKFILL_MODE")
        if backfill_env is not None and "backfill_mode" not in overrides:
            config_kwargs["backfill_mode"] = backfill_env.strip().lower()

        if "mirror_writes" not in overrides:
            config_kwargs["mirror_writes"] = _env_bool(env.get("ECOTRACK_MIRROR_WRITES"), True)

        mute_env = env.get("ECOTRACK_MUTE_FILE")
        if mute_env is not None and "mute_preference_path" not in overrides:
            config_kwargs["mute_preference_path"] = mute_env

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
