"""Publish/subscribe bus interface and the paho-mqtt runtime behind it."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, cast

import paho.mqtt.client as mqtt

from leafbridge.config import BridgeConfig
from leafbridge.exceptions import TransportError

MessageHandler = Callable[[str, bytes], None]


class BusClient(Protocol):
    """What the core needs from the message bus."""

    async def publish(self, topic: str, payload: str) -> None:
        ...

    def subscribe(self, topic_pattern: str, handler: MessageHandler) -> None:
        ...


@dataclass(frozen=True)
class _Subscription:
    pattern: str
    handler: MessageHandler


class MqttBus:
    """Threaded paho-mqtt runtime that delivers inbound messages onto an asyncio loop.

    Handlers always run on the event loop thread, never on the paho network
    thread.  Subscriptions are replayed on every (re)connect.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        on_connect: Callable[[], None] | None = None,
        qos: int = 0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._loop = loop
        self._on_connect_cb = on_connect
        self._qos = qos
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._subscriptions: list[_Subscription] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the MQTT network loop is active."""
        return self._running

    def subscribe(self, topic_pattern: str, handler: MessageHandler) -> None:
        """Register *handler* for topics matching *topic_pattern* (MQTT wildcards allowed)."""
        self._subscriptions.append(_Subscription(topic_pattern, handler))
        client = self._client
        if client is not None and client.is_connected():
            client.subscribe(topic_pattern, qos=self._qos)

    async def publish(self, topic: str, payload: str) -> None:
        """Queue *payload* for *topic*; raises TransportError if paho refuses it."""
        client = self._client
        if client is None:
            raise TransportError("MQTT bus not started", endpoint=topic)
        info = client.publish(topic, payload, qos=self._qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(
                f"MQTT publish to {topic} failed: {mqtt.error_string(info.rc)}",
                endpoint=topic,
            )
        self._logger.debug("MQTT publish topic=%s mid=%s", topic, info.mid)

    def start(self) -> None:
        """Connect to the broker and start the network thread."""
        self.stop()
        loop = self._loop or asyncio.get_running_loop()
        self._loop = loop
        self._logger.info("MQTT connecting to %s:%s", self._config.mqtt_server, self._config.mqtt_port)

        client = mqtt.Client(callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2)
        client.enable_logger(self._logger)
        if self._config.mqtt_username:
            client.username_pw_set(self._config.mqtt_username, self._config.mqtt_password)

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.is_failure:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.info("MQTT connected reason=%s", reason_code)
            for sub in self._subscriptions:
                self._logger.debug("MQTT subscribing topic=%s", sub.pattern)
                c.subscribe(sub.pattern, qos=self._qos)
            if self._on_connect_cb is not None:
                loop.call_soon_threadsafe(self._on_connect_cb)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            for sub in self._subscriptions:
                if mqtt.topic_matches_sub(sub.pattern, msg.topic):
                    loop.call_soon_threadsafe(sub.handler, msg.topic, bytes(msg.payload))

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.warning("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        try:
            client.connect(self._config.mqtt_server, self._config.mqtt_port, keepalive=self._config.mqtt_keepalive)
        except OSError as exc:
            raise TransportError(
                f"Cannot connect to MQTT broker {self._config.mqtt_server}:{self._config.mqtt_port}: {exc}"
            ) from exc
        client.loop_start()

        self._client = client
        self._running = True

    def stop(self) -> None:
        """Stop and disconnect the MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
