from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from leafbridge.commands import ClimateCommand, CommandAttempt, CommandCoordinator, CommandState
from leafbridge.exceptions import AuthError, TransportError
from leafbridge.session import Session, SessionCache


class _FakeClient:
    """Telemetry client whose set_climate fails with the queued errors, then succeeds."""

    def __init__(self, errors: list[Exception] | None = None, *, always_fail: bool = False) -> None:
        self.errors = list(errors or [])
        self.always_fail = always_fail
        self.logins = 0
        self.climate_calls: list[bool] = []
        self.gate: asyncio.Event | None = None

    async def authenticate(self) -> Session:
        self.logins += 1
        return Session(token=f"token-{self.logins}")

    async def request_fresh_status(self, _session: Session) -> None:
        return None

    async def fetch_battery_status(self, _session: Session) -> dict[str, Any]:
        return {}

    async def fetch_climate_status(self, _session: Session) -> dict[str, Any]:
        return {}

    async def set_climate(self, _session: Session, on: bool) -> None:
        self.climate_calls.append(on)
        if self.gate is not None:
            await self.gate.wait()
        if self.always_fail:
            raise TransportError("vehicle unreachable")
        if self.errors:
            raise self.errors.pop(0)


class _FakeBus:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []

    async def publish(self, topic: str, payload: str) -> None:
        self.published.append((topic, payload))

    def subscribe(self, _topic_pattern: str, _handler: Any) -> None:
        return None


class _FakeScheduler:
    def __init__(self) -> None:
        self.requests: list[float] = []

    def request_poll(self, delay: float) -> None:
        self.requests.append(delay)


def _make(
    client: _FakeClient,
    **kwargs: Any,
) -> tuple[CommandCoordinator, _FakeBus]:
    bus = _FakeBus()
    kwargs.setdefault("retry_delay", 0.0)
    coordinator = CommandCoordinator(client, SessionCache(client), bus, "leaf/telemetry", **kwargs)
    return coordinator, bus


@pytest.mark.parametrize(
    ("payload", "expected"),
    [("ON", ClimateCommand.ON), (b"OFF", ClimateCommand.OFF), (" ON\n", ClimateCommand.ON), ("on", None), ("1", None)],
)
def test_climate_command_parse(payload: str | bytes, expected: ClimateCommand | None) -> None:
    assert ClimateCommand.parse(payload) is expected


def test_command_attempt_exhaustion() -> None:
    attempt = CommandAttempt(desired_state=ClimateCommand.ON, max_attempts=2)
    assert not attempt.exhausted
    attempt.attempt_count = 2
    assert attempt.exhausted


@pytest.mark.asyncio
async def test_success_on_first_attempt_publishes_one_confirmation() -> None:
    client = _FakeClient()
    coordinator, bus = _make(client)

    task = coordinator.handle_command("ON")
    assert task is not None
    assert await task is CommandState.SUCCEEDED

    assert client.climate_calls == [True]
    assert bus.published == [("leaf/telemetry", json.dumps({"isRemoteACOn": True}, separators=(",", ":")))]
    assert coordinator.state() is CommandState.IDLE


@pytest.mark.asyncio
async def test_success_on_later_attempt_publishes_exactly_once() -> None:
    client = _FakeClient(errors=[AuthError("expired"), TransportError("timeout")])
    coordinator, bus = _make(client)

    task = coordinator.handle_command("OFF")
    assert task is not None
    assert await task is CommandState.SUCCEEDED

    assert client.climate_calls == [False, False, False]
    assert len(bus.published) == 1
    assert json.loads(bus.published[0][1]) == {"isRemoteACOn": False}


@pytest.mark.asyncio
async def test_exhausted_command_stops_after_max_attempts_without_confirmation() -> None:
    client = _FakeClient(always_fail=True)
    coordinator, bus = _make(client, max_attempts=3)

    task = coordinator.handle_command("ON")
    assert task is not None
    assert await task is CommandState.EXHAUSTED

    assert client.climate_calls == [True, True, True]
    assert bus.published == []
    assert coordinator.state() is CommandState.IDLE
    assert coordinator.active_chain() is None


@pytest.mark.asyncio
async def test_each_failed_attempt_forces_reauthentication() -> None:
    client = _FakeClient(always_fail=True)
    coordinator, _ = _make(client, max_attempts=3)

    task = coordinator.handle_command("ON")
    assert task is not None
    await task

    assert client.logins == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", ["TOGGLE", "", b"\xff\xfe", "on"])
async def test_unrecognised_payload_invokes_neither_path(payload: str | bytes) -> None:
    client = _FakeClient()
    coordinator, bus = _make(client)

    assert coordinator.handle_command(payload) is None
    await asyncio.sleep(0)

    assert client.climate_calls == []
    assert client.logins == 0
    assert bus.published == []


@pytest.mark.asyncio
async def test_new_command_cancels_active_chain() -> None:
    client = _FakeClient()
    client.gate = asyncio.Event()
    coordinator, bus = _make(client)

    first = coordinator.handle_command("ON")
    assert first is not None
    while not client.climate_calls:
        await asyncio.sleep(0)
    assert coordinator.state() is CommandState.APPLYING

    second = coordinator.handle_command("OFF")
    assert second is not None
    client.gate.set()

    assert await second is CommandState.SUCCEEDED
    assert first.cancelled()
    assert client.climate_calls == [True, False]
    assert [json.loads(payload) for _, payload in bus.published] == [{"isRemoteACOn": False}]
    assert coordinator.state() is CommandState.IDLE


@pytest.mark.asyncio
async def test_retrying_state_is_visible_between_attempts() -> None:
    client = _FakeClient(errors=[TransportError("timeout")])
    coordinator, _ = _make(client, retry_delay=0.05)

    task = coordinator.handle_command("ON")
    assert task is not None
    while len(client.climate_calls) < 1:
        await asyncio.sleep(0)
    await asyncio.sleep(0.01)
    assert coordinator.state() is CommandState.RETRYING

    assert await task is CommandState.SUCCEEDED


@pytest.mark.asyncio
async def test_success_requests_revalidation_poll() -> None:
    scheduler = _FakeScheduler()
    coordinator, _ = _make(_FakeClient(), scheduler=scheduler, revalidate_delay=120.0)

    task = coordinator.handle_command("ON")
    assert task is not None
    await task

    assert scheduler.requests == [120.0]


@pytest.mark.asyncio
async def test_no_revalidation_when_disabled_or_exhausted() -> None:
    scheduler = _FakeScheduler()
    coordinator, _ = _make(_FakeClient(), scheduler=scheduler)
    task = coordinator.handle_command("ON")
    assert task is not None
    await task

    failing, _ = _make(_FakeClient(always_fail=True), scheduler=scheduler, revalidate_delay=120.0)
    task = failing.handle_command("ON")
    assert task is not None
    await task

    assert scheduler.requests == []


@pytest.mark.asyncio
async def test_confirmation_publish_failure_does_not_retry_command() -> None:
    class _BrokenBus(_FakeBus):
        async def publish(self, topic: str, payload: str) -> None:
            raise TransportError("broker gone")

    client = _FakeClient()
    coordinator = CommandCoordinator(client, SessionCache(client), _BrokenBus(), "leaf/telemetry", retry_delay=0.0)

    task = coordinator.handle_command("ON")
    assert task is not None
    assert await task is CommandState.SUCCEEDED
    assert client.climate_calls == [True]


@pytest.mark.asyncio
async def test_cancel_all_stops_active_chain() -> None:
    client = _FakeClient()
    client.gate = asyncio.Event()
    coordinator, bus = _make(client)

    task = coordinator.handle_command("ON")
    assert task is not None
    while not client.climate_calls:
        await asyncio.sleep(0)

    coordinator.cancel_all()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert bus.published == []
