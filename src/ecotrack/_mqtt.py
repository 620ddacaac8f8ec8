"""Internal telemetry bus runtime."""

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from ecotrack.config import BrokerProfile
from ecotrack.exceptions import EcotrackBusError


@dataclass(frozen=True)
class BusMessage:
    """A message as delivered by the broker, before normalization."""

    topic: str
    payload: bytes
    retained: bool = False


@dataclass(frozen=True)
class _PendingPublish:
    topic: str
    payload: bytes
    qos: int
    retain: bool


def build_client_id(profile: BrokerProfile) -> str:
    return f"{profile.client_id_prefix}{secrets.token_hex(4)}"


def _default_client_factory(profile: BrokerProfile, client_id: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
        client_id=client_id,
        protocol=mqtt.MQTTv311,
        transport=profile.transport,
    )


def _encode(payload: bytes | str | None) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, bytes):
        return payload
    return payload.encode("utf-8")


class BusRuntime:
    """Threaded paho-mqtt runtime that marshals messages onto an asyncio loop.

    Subscriptions are remembered and re-issued on every connect. Publishes
    made while disconnected wait in a FIFO outbox that is flushed on the next
    successful connect. Reconnects use paho's bounded exponential backoff.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        profile: BrokerProfile,
        on_message: Callable[[BusMessage], None],
        on_connection_change: Callable[[bool], None] | None = None,
        client_factory: Callable[[BrokerProfile, str], Any] = _default_client_factory,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._profile = profile
        self._on_message = on_message
        self._on_connection_change = on_connection_change
        self._client_factory = client_factory
        self._logger = logger or logging.getLogger(__name__)
        self._client: Any = None
        self._running = False
        self._connected = False
        self._lock = threading.Lock()
        self._subscriptions: dict[str, int] = {pattern: profile.qos for pattern in profile.subscriptions}
        self._outbox: deque[_PendingPublish] = deque()

    @property
    def is_running(self) -> bool:
        """Whether the network loop is active (connected or retrying)."""
        return self._running

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def subscriptions(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._subscriptions)

    @property
    def pending_publishes(self) -> int:
        with self._lock:
            return len(self._outbox)

    def _notify_connection(self, connected: bool) -> None:
        callback = self._on_connection_change
        if callback is not None:
            self._loop.call_soon_threadsafe(callback, connected)

    def start(self) -> None:
        """Create the client and begin connecting in the background."""
        self.stop()
        profile = self._profile
        client_id = build_client_id(profile)
        self._logger.debug(
            "Bus runtime start requested host=%s port=%s transport=%s client_id=%s",
            profile.host,
            profile.port,
            profile.transport,
            client_id,
        )

        client = self._client_factory(profile, client_id)
        client.enable_logger(self._logger)
        if profile.transport == "websockets":
            client.ws_set_options(path=profile.ws_path)
        if profile.tls:
            client.tls_set()
        if profile.username:
            client.username_pw_set(profile.username, profile.password)
        client.reconnect_delay_set(min_delay=profile.reconnect_min_delay, max_delay=profile.reconnect_max_delay)

        def on_connect(
            c: Any,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("Bus connect failed: %s", reason_code)
                return
            self._logger.info("Bus connected host=%s", profile.host)
            with self._lock:
                self._connected = True
                patterns = list(self._subscriptions.items())
                pending = list(self._outbox)
                self._outbox.clear()
            for pattern, qos in patterns:
                self._logger.debug("Bus subscribing pattern=%s", pattern)
                c.subscribe(pattern, qos=qos)
            for index, item in enumerate(pending):
                info = c.publish(item.topic, item.payload, qos=item.qos, retain=item.retain)
                if info.rc != mqtt.MQTT_ERR_SUCCESS:
                    with self._lock:
                        self._outbox.extendleft(reversed(pending[index:]))
                    self._logger.debug("Outbox flush interrupted rc=%s", info.rc)
                    break
            self._notify_connection(True)

        def on_message(_c: Any, _userdata: Any, msg: Any) -> None:
            try:
                message = BusMessage(topic=msg.topic, payload=bytes(msg.payload), retained=bool(msg.retain))
                self._loop.call_soon_threadsafe(self._on_message, message)
            except Exception:
                self._logger.debug("Bus message dispatch failure topic=%s", getattr(msg, "topic", None), exc_info=True)

        def on_disconnect(
            _client: Any,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            with self._lock:
                self._connected = False
            if self._running:
                self._logger.info("Bus disconnected: %s", reason_code)
                self._notify_connection(False)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        # connect_async lets the network loop own retries, so an unreachable
        # broker never raises here.
        client.connect_async(profile.host, profile.port, keepalive=profile.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("Bus network loop started")

    def stop(self) -> None:
        """Disconnect and stop the network loop if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        with self._lock:
            self._connected = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("Bus disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("Bus network loop stopped")

    def subscribe(self, pattern: str, qos: int | None = None) -> None:
        level = self._profile.qos if qos is None else qos
        with self._lock:
            self._subscriptions[pattern] = level
            connected = self._connected
        client = self._client
        if client is not None and connected:
            client.subscribe(pattern, qos=level)

    def unsubscribe(self, pattern: str) -> None:
        with self._lock:
            known = self._subscriptions.pop(pattern, None) is not None
            connected = self._connected
        client = self._client
        if client is not None and connected and known:
            client.unsubscribe(pattern)

    def publish(
        self,
        topic: str,
        payload: bytes | str | None,
        *,
        qos: int | None = None,
        retain: bool = False,
    ) -> bool:
        """Publish now, or queue while disconnected.

        Returns ``True`` when handed to the client, ``False`` when queued.
        Raises :class:`EcotrackBusError` when the runtime is not started.
        """
        client = self._client
        if client is None:
            raise EcotrackBusError(f"Bus runtime not started; cannot publish to {topic}", path=topic)
        item = _PendingPublish(
            topic=topic,
            payload=_encode(payload),
            qos=self._profile.qos if qos is None else qos,
            retain=retain,
        )
        with self._lock:
            if not self._connected:
                self._outbox.append(item)
                self._logger.debug("Bus offline; queued publish topic=%s", topic)
                return False
        info = client.publish(item.topic, item.payload, qos=item.qos, retain=item.retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            with self._lock:
                self._outbox.append(item)
            self._logger.debug("Publish rejected rc=%s; queued topic=%s", info.rc, topic)
            return False
        return True
