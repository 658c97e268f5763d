from __future__ import annotations

import asyncio
from typing import Any

import pytest

from leafbridge.bridge import CONNECTED_PAYLOAD, Bridge
from leafbridge.config import BridgeConfig
from leafbridge.session import Session


class _FakeClient:
    def __init__(self) -> None:
        self.climate_calls: list[bool] = []

    async def authenticate(self) -> Session:
        return Session(token="token-1")

    async def request_fresh_status(self, _session: Session) -> None:
        return None

    async def fetch_battery_status(self, _session: Session) -> dict[str, Any]:
        return {}

    async def fetch_climate_status(self, _session: Session) -> dict[str, Any]:
        return {}

    async def set_climate(self, _session: Session, on: bool) -> None:
        self.climate_calls.append(on)


class _FakeBus:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []
        self.subscriptions: list[str] = []

    async def publish(self, topic: str, payload: str) -> None:
        self.published.append((topic, payload))

    def subscribe(self, topic_pattern: str, _handler: Any) -> None:
        self.subscriptions.append(topic_pattern)


def _config(**overrides: Any) -> BridgeConfig:
    base: dict[str, Any] = {
        "username": "user@example.com",
        "password": "secret",
        "region_code": "NE",
        "command_topic": "leaf/command",
        "telemetry_topic": "leaf/telemetry",
        "command_retry_delay": 0.0,
    }
    base.update(overrides)
    return BridgeConfig(**base)


async def _drain(bridge: Bridge) -> None:
    task = bridge.commands.active_chain()
    if task is not None:
        await task


@pytest.mark.asyncio
async def test_on_payload_on_ac_subtopic_invokes_climate_on_once() -> None:
    client = _FakeClient()
    bridge = Bridge(_config(), client, _FakeBus())

    bridge.on_message("leaf/command/ac", b"ON")
    await _drain(bridge)

    assert client.climate_calls == [True]


@pytest.mark.asyncio
async def test_each_delivered_message_runs_its_own_command() -> None:
    client = _FakeClient()
    bridge = Bridge(_config(), client, _FakeBus())

    bridge.on_message("leaf/command/ac", b"OFF")
    await _drain(bridge)
    bridge.on_message("leaf/command/ac", b"ON")
    await _drain(bridge)

    assert client.climate_calls == [False, True]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("topic", "payload"),
    [
        ("leaf/command/ac", b"MAYBE"),
        ("leaf/command/charge", b"ON"),
        ("leaf/command", b"ON"),
        ("other/topic/ac", b"ON"),
    ],
)
async def test_unhandled_messages_are_ignored(topic: str, payload: bytes) -> None:
    client = _FakeClient()
    bus = _FakeBus()
    bridge = Bridge(_config(), client, bus)

    bridge.on_message(topic, payload)
    await asyncio.sleep(0)

    assert bridge.commands.active_chain() is None
    assert client.climate_calls == []
    assert bus.published == []


@pytest.mark.asyncio
async def test_start_subscribes_to_command_subtopics_and_polls() -> None:
    bus = _FakeBus()
    bridge = Bridge(_config(command_topic="leaf/command/"), _FakeClient(), bus)
    try:
        bridge.start()
        assert bus.subscriptions == ["leaf/command/#"]
        assert bridge.scheduler.has_pending_timer
    finally:
        bridge.stop()

    assert not bridge.scheduler.has_pending_timer


@pytest.mark.asyncio
async def test_bridge_applies_config_to_core() -> None:
    bridge = Bridge(
        _config(poll_interval=600.0, min_backoff=10.0, max_backoff=60.0, backoff_multiplier=2.0),
        _FakeClient(),
        _FakeBus(),
    )

    assert bridge.scheduler.policy.poll_interval == 600.0
    assert bridge.scheduler.policy.next_backoff(40.0) == 60.0


@pytest.mark.asyncio
async def test_announce_publishes_connected_marker() -> None:
    bus = _FakeBus()
    bridge = Bridge(_config(), _FakeClient(), bus)

    await bridge.announce()

    assert bus.published == [("leaf/telemetry", CONNECTED_PAYLOAD)]
