"""Bridge process: wires the telemetry client, bus, scheduler and commands."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from leafbridge.bus import BusClient, MqttBus
from leafbridge.commands import CommandCoordinator
from leafbridge.config import BridgeConfig
from leafbridge.scheduler import BackoffPolicy, PollScheduler
from leafbridge.session import SessionCache
from leafbridge.telemetry import TelemetryClient, load_telemetry_client

_logger = logging.getLogger(__name__)

CLIMATE_SUBTOPIC = "/ac"
CONNECTED_PAYLOAD = "CONNECTED"


class Bridge:
    """Routes inbound bus commands and runs the poll scheduler.

    Usage::

        bridge = Bridge(config, client, bus)
        bridge.start()
        ...
        bridge.stop()
    """

    def __init__(
        self,
        config: BridgeConfig,
        client: TelemetryClient,
        bus: BusClient,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._config = config
        self._bus = bus
        self._loop = loop
        self._announce_task: asyncio.Task[None] | None = None
        self.sessions = SessionCache(client)
        self.scheduler = PollScheduler(
            client,
            self.sessions,
            bus,
            config.telemetry_topic,
            policy=BackoffPolicy.from_config(config),
            loop=loop,
        )
        self.commands = CommandCoordinator(
            client,
            self.sessions,
            bus,
            config.telemetry_topic,
            device_id=config.device_id,
            max_attempts=config.command_max_attempts,
            retry_delay=config.command_retry_delay,
            scheduler=self.scheduler,
            revalidate_delay=config.revalidate_delay,
            loop=loop,
        )
        self._command_prefix = config.command_topic.rstrip("/")

    @property
    def command_subscription(self) -> str:
        return f"{self._command_prefix}/#"

    def start(self) -> None:
        self._bus.subscribe(self.command_subscription, self.on_message)
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.commands.cancel_all()

    def on_message(self, topic: str, payload: bytes | str) -> None:
        """Dispatch an inbound bus message by its subtopic."""
        subtopic = topic[len(self._command_prefix) :] if topic.startswith(self._command_prefix) else topic
        _logger.debug("Inbound message topic=%s payload=%r", topic, payload)
        if subtopic == CLIMATE_SUBTOPIC:
            self.commands.handle_command(payload)
            return
        _logger.info("Ignoring message on unhandled topic %s", topic)

    def on_connected(self) -> None:
        """Bus (re)connected; schedule the connection marker."""
        loop = self._loop or asyncio.get_running_loop()
        self._announce_task = loop.create_task(self.announce())

    async def announce(self) -> None:
        """Publish the connection marker on the telemetry topic."""
        try:
            await self._bus.publish(self._config.telemetry_topic, CONNECTED_PAYLOAD)
        except Exception:  # noqa: BLE001
            _logger.warning("Publishing connection marker failed", exc_info=True)


async def run_bridge(config: BridgeConfig, stop_event: asyncio.Event) -> None:
    """Run the bridge until *stop_event* is set."""
    loop = asyncio.get_running_loop()
    client: Any = load_telemetry_client(config)

    async with contextlib.AsyncExitStack() as stack:
        if hasattr(client, "__aenter__"):
            client = await stack.enter_async_context(client)

        def on_connect() -> None:
            bridge.on_connected()

        bus = MqttBus(config, loop=loop, on_connect=on_connect)
        bridge = Bridge(config, client, bus, loop=loop)

        bus.start()
        stack.callback(bus.stop)
        bridge.start()
        stack.callback(bridge.stop)
        _logger.info(
            "Bridge running: commands on %s, telemetry on %s",
            bridge.command_subscription,
            config.telemetry_topic,
        )
        await stop_event.wait()
        _logger.info("Bridge stopping")
