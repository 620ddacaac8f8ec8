from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from ecotrack._mqtt import BusMessage, BusRuntime
from ecotrack.config import BrokerProfile
from ecotrack.exceptions import EcotrackBusError


class _ReasonCode:
    def __init__(self, value: int) -> None:
        self.value = value

    def __str__(self) -> str:
        return f"rc={self.value}"


class _FakeClient:
    """Records the calls the runtime makes on a paho client."""

    def __init__(self, profile: BrokerProfile, client_id: str) -> None:
        self.profile = profile
        self.client_id = client_id
        self.calls: list[tuple[str, Any]] = []
        self.subscribed: list[str] = []
        self.unsubscribed: list[str] = []
        self.published: list[tuple[str, bytes, bool]] = []
        self.publish_rc = 0
        self.on_connect: Any = None
        self.on_message: Any = None
        self.on_disconnect: Any = None

    def enable_logger(self, logger: Any) -> None:
        self.calls.append(("enable_logger", logger))

    def ws_set_options(self, *, path: str) -> None:
        self.calls.append(("ws_set_options", path))

    def tls_set(self) -> None:
        self.calls.append(("tls_set", None))

    def username_pw_set(self, username: str, password: str | None) -> None:
        self.calls.append(("username_pw_set", (username, password)))

    def reconnect_delay_set(self, *, min_delay: int, max_delay: int) -> None:
        self.calls.append(("reconnect_delay_set", (min_delay, max_delay)))

    def connect_async(self, host: str, port: int, *, keepalive: int) -> None:
        self.calls.append(("connect_async", (host, port, keepalive)))

    def loop_start(self) -> None:
        self.calls.append(("loop_start", None))

    def loop_stop(self) -> None:
        self.calls.append(("loop_stop", None))

    def disconnect(self) -> None:
        self.calls.append(("disconnect", None))

    def subscribe(self, pattern: str, qos: int = 0) -> None:
        self.subscribed.append(pattern)

    def unsubscribe(self, pattern: str) -> None:
        self.unsubscribed.append(pattern)

    def publish(self, topic: str, payload: bytes, qos: int = 0, retain: bool = False) -> SimpleNamespace:
        if self.publish_rc == 0:
            self.published.append((topic, payload, retain))
        return SimpleNamespace(rc=self.publish_rc)

    def connect(self) -> None:
        self.on_connect(self, None, None, _ReasonCode(0), None)

    def drop(self) -> None:
        self.on_disconnect(self, None, None, _ReasonCode(7), None)


def _runtime(
    profile: BrokerProfile,
    *,
    messages: list[BusMessage] | None = None,
    changes: list[bool] | None = None,
) -> tuple[BusRuntime, list[_FakeClient]]:
    clients: list[_FakeClient] = []

    def factory(p: BrokerProfile, client_id: str) -> _FakeClient:
        client = _FakeClient(p, client_id)
        clients.append(client)
        return client

    runtime = BusRuntime(
        loop=asyncio.get_running_loop(),
        profile=profile,
        on_message=(messages.append if messages is not None else lambda _m: None),
        on_connection_change=(changes.append if changes is not None else None),
        client_factory=factory,
    )
    return runtime, clients


@pytest.mark.asyncio
async def test_start_configures_client_from_profile() -> None:
    profile = BrokerProfile(host="broker.example", port=8884, username="u", password="p", client_id_prefix="dash_")
    runtime, clients = _runtime(profile)

    runtime.start()

    client = clients[0]
    names = [name for name, _ in client.calls]
    assert names == [
        "enable_logger",
        "ws_set_options",
        "tls_set",
        "username_pw_set",
        "reconnect_delay_set",
        "connect_async",
        "loop_start",
    ]
    assert ("connect_async", ("broker.example", 8884, 60)) in client.calls
    assert client.client_id.startswith("dash_")
    assert runtime.is_running
    assert not runtime.is_connected

    runtime.stop()
    assert ("loop_stop", None) in client.calls
    assert not runtime.is_running


@pytest.mark.asyncio
async def test_connect_resubscribes_and_flushes_outbox_in_order() -> None:
    profile = BrokerProfile(subscriptions=("esp32/#",))
    changes: list[bool] = []
    runtime, clients = _runtime(profile, changes=changes)
    runtime.start()
    runtime.subscribe("+/bin-01/logs")

    assert runtime.publish("devices/bin-01/meta", "{}", retain=True) is False
    assert runtime.publish("deleted_devices/bin-01", b"x", retain=True) is False
    assert runtime.pending_publishes == 2

    client = clients[0]
    client.connect()
    await asyncio.sleep(0)

    assert runtime.is_connected
    assert client.subscribed == ["esp32/#", "+/bin-01/logs"]
    assert [topic for topic, _, _ in client.published] == ["devices/bin-01/meta", "deleted_devices/bin-01"]
    assert runtime.pending_publishes == 0
    assert changes == [True]

    # A reconnect re-issues every subscription.
    client.drop()
    client.connect()
    await asyncio.sleep(0)
    assert client.subscribed.count("esp32/#") == 2
    assert changes == [True, False, True]
    runtime.stop()


@pytest.mark.asyncio
async def test_rejected_publish_is_queued() -> None:
    runtime, clients = _runtime(BrokerProfile(subscriptions=()))
    runtime.start()
    client = clients[0]
    client.connect()

    client.publish_rc = 4
    assert runtime.publish("devices/bin-01/meta", b"{}") is False
    assert runtime.pending_publishes == 1

    client.publish_rc = 0
    client.drop()
    client.connect()
    assert runtime.pending_publishes == 0
    assert client.published == [("devices/bin-01/meta", b"{}", False)]
    runtime.stop()


@pytest.mark.asyncio
async def test_failed_connect_keeps_runtime_disconnected() -> None:
    runtime, clients = _runtime(BrokerProfile())
    runtime.start()
    client = clients[0]

    client.on_connect(client, None, None, _ReasonCode(5), None)

    assert not runtime.is_connected
    assert client.subscribed == []
    runtime.stop()


@pytest.mark.asyncio
async def test_messages_are_marshalled_onto_the_loop() -> None:
    messages: list[BusMessage] = []
    runtime, clients = _runtime(BrokerProfile(), messages=messages)
    runtime.start()
    client = clients[0]

    client.on_message(client, None, SimpleNamespace(topic="esp32/bin-01/sensor", payload=b'{"fillPct": 5}', retain=1))
    assert messages == []
    await asyncio.sleep(0)

    assert messages == [BusMessage(topic="esp32/bin-01/sensor", payload=b'{"fillPct": 5}', retained=True)]
    runtime.stop()


@pytest.mark.asyncio
async def test_unsubscribe_only_sends_known_patterns() -> None:
    runtime, clients = _runtime(BrokerProfile(subscriptions=()))
    runtime.start()
    client = clients[0]
    client.connect()

    runtime.subscribe("+/bin-01/logs")
    runtime.unsubscribe("+/bin-01/logs")
    runtime.unsubscribe("+/bin-02/logs")

    assert client.subscribed == ["+/bin-01/logs"]
    assert client.unsubscribed == ["+/bin-01/logs"]
    assert runtime.subscriptions == ()
    runtime.stop()


@pytest.mark.asyncio
async def test_publish_without_runtime_raises() -> None:
    runtime, _clients = _runtime(BrokerProfile())

    with pytest.raises(EcotrackBusError):
        runtime.publish("devices/bin-01/meta", b"")
