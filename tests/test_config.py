from __future__ import annotations

import pytest

from ecotrack.config import BrokerProfile, EcotrackConfig, StoreProfile
from ecotrack.exceptions import EcotrackConfigError

_ENV_KEYS = (
    "ECOTRACK_MQTT_HOST",
    "ECOTRACK_MQTT_PORT",
    "ECOTRACK_MQTT_TLS",
    "ECOTRACK_MQTT_SUBSCRIPTIONS",
    "ECOTRACK_STORE_URL",
    "ECOTRACK_STORE_AUTH",
    "ECOTRACK_SWEEP_INTERVAL",
    "ECOTRACK_PRESENCE_CUTOFF",
    "ECOTRACK_LOG_CAPACITY",
    "ECOTRACK_BACKFILL_MODE",
    "ECOTRACK_MIRROR_WRITES",
    "ECOTRACK_MUTE_FILE",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults() -> None:
    config = EcotrackConfig()

    assert config.full_threshold == 90
    assert config.sweep_interval == 2.0
    assert config.presence_cutoff == 8.0
    assert config.log_capacity == 50
    assert config.alert_debounce == 20.0
    assert config.broker.transport == "websockets"
    assert "deleted_devices/+" in config.broker.subscriptions


def test_from_env_reads_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ECOTRACK_MQTT_HOST", "broker.example")
    monkeypatch.setenv("ECOTRACK_MQTT_PORT", "1883")
    monkeypatch.setenv("ECOTRACK_MQTT_TLS", "off")
    monkeypatch.setenv("ECOTRACK_MQTT_SUBSCRIPTIONS", "esp32/#, devices/+/meta")
    monkeypatch.setenv("ECOTRACK_STORE_URL", "https://db.example")
    monkeypatch.setenv("ECOTRACK_STORE_AUTH", "token")
    monkeypatch.setenv("ECOTRACK_LOG_CAPACITY", "20")
    monkeypatch.setenv("ECOTRACK_BACKFILL_MODE", "BUS")
    monkeypatch.setenv("ECOTRACK_MIRROR_WRITES", "no")

    config = EcotrackConfig.from_env()

    assert config.broker.host == "broker.example"
    assert config.broker.port == 1883
    assert config.broker.tls is False
    assert config.broker.subscriptions == ("esp32/#", "devices/+/meta")
    assert config.store.base_url == "https://db.example"
    assert config.store.auth_token == "token"
    assert config.log_capacity == 20
    assert config.backfill_mode == "bus"
    assert config.mirror_writes is False


def test_explicit_overrides_win_over_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ECOTRACK_MQTT_HOST", "env-host")
    monkeypatch.setenv("ECOTRACK_LOG_CAPACITY", "20")

    config = EcotrackConfig.from_env(broker={"host": "flag-host"}, log_capacity=5)

    assert config.broker.host == "flag-host"
    assert config.log_capacity == 5


def test_profile_override_replaces_env_broker(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ECOTRACK_MQTT_HOST", "env-host")

    config = EcotrackConfig.from_env(broker=BrokerProfile(host="profile-host"))

    assert config.broker.host == "profile-host"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"sweep_interval": 0},
        {"sweep_interval": 10.0, "presence_cutoff": 5.0},
        {"log_capacity": 0},
        {"full_threshold": 101},
        {"backfill_mode": "carrier-pigeon"},
        {"store": StoreProfile(max_pending_writes=0)},
    ],
)
def test_invalid_values_are_rejected(kwargs: dict[str, object]) -> None:
    with pytest.raises(EcotrackConfigError):
        EcotrackConfig(**kwargs)  # type: ignore[arg-type]
