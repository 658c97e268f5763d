"""Climate command coordinator.

State machine per device::

    IDLE -> AUTHENTICATING -> APPLYING -> SUCCEEDED -> IDLE
                  ^               |
                  |               v
               RETRYING <---- (failure) ----> EXHAUSTED -> IDLE

A failed attempt invalidates the cached session so the next attempt logs in
again.  A new command for a device cancels that device's active chain.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from leafbridge.bus import BusClient
from leafbridge.normalize import ClimateConfirmation
from leafbridge.session import SessionCache
from leafbridge.telemetry import TelemetryClient

if TYPE_CHECKING:
    from leafbridge.scheduler import PollScheduler

_logger = logging.getLogger(__name__)


class ClimateCommand(enum.StrEnum):
    """Recognised payloads on the ``/ac`` command topic."""

    ON = "ON"
    OFF = "OFF"

    @property
    def is_on(self) -> bool:
        return self is ClimateCommand.ON

    @classmethod
    def parse(cls, payload: str | bytes) -> ClimateCommand | None:
        """Return the command for *payload*, or ``None`` when unrecognised."""
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                return None
        try:
            return cls(payload.strip())
        except ValueError:
            return None


class CommandState(enum.StrEnum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    APPLYING = "applying"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass
class CommandAttempt:
    """Progress of one inbound command; ``attempt_count`` counts failed attempts."""

    desired_state: ClimateCommand
    attempt_count: int = 0
    max_attempts: int = 3

    @property
    def exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts


class CommandCoordinator:
    """Applies climate commands with bounded retry, one chain per device."""

    def __init__(
        self,
        client: TelemetryClient,
        sessions: SessionCache,
        bus: BusClient,
        telemetry_topic: str,
        *,
        device_id: str = "leaf",
        max_attempts: int = 3,
        retry_delay: float = 15.0,
        scheduler: PollScheduler | None = None,
        revalidate_delay: float | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._client = client
        self._sessions = sessions
        self._bus = bus
        self._topic = telemetry_topic
        self._device_id = device_id
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._scheduler = scheduler
        self._revalidate_delay = revalidate_delay
        self._loop = loop
        self._chains: dict[str, asyncio.Task[CommandState]] = {}
        self._states: dict[str, CommandState] = {}

    def state(self, device_id: str | None = None) -> CommandState:
        return self._states.get(device_id or self._device_id, CommandState.IDLE)

    def active_chain(self, device_id: str | None = None) -> asyncio.Task[CommandState] | None:
        task = self._chains.get(device_id or self._device_id)
        return task if task is not None and not task.done() else None

    def handle_command(self, payload: str | bytes) -> asyncio.Task[CommandState] | None:
        """Start applying *payload* (``ON``/``OFF``) and return the chain task.

        Unrecognised payloads are logged and ignored.
        """
        command = ClimateCommand.parse(payload)
        if command is None:
            _logger.warning("Ignoring unknown climate command %r", payload)
            return None

        device_id = self._device_id
        previous = self.active_chain(device_id)
        if previous is not None:
            _logger.info("Climate command %s supersedes the active command for %s", command, device_id)
            previous.cancel()

        attempt = CommandAttempt(desired_state=command, max_attempts=self._max_attempts)
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(self._run_chain(device_id, attempt))
        self._chains[device_id] = task
        return task

    def cancel_all(self) -> None:
        for task in self._chains.values():
            if not task.done():
                task.cancel()
        self._chains.clear()
        self._states.clear()

    async def _run_chain(self, device_id: str, attempt: CommandAttempt) -> CommandState:
        try:
            while True:
                self._states[device_id] = CommandState.AUTHENTICATING
                try:
                    session = await self._sessions.ensure()
                    self._states[device_id] = CommandState.APPLYING
                    await self._client.set_climate(session, attempt.desired_state.is_on)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    self._sessions.invalidate()
                    attempt.attempt_count += 1
                    if attempt.exhausted:
                        _logger.error(
                            "Climate %s failed after %d attempts, giving up: %s",
                            attempt.desired_state,
                            attempt.attempt_count,
                            exc,
                        )
                        self._states[device_id] = CommandState.EXHAUSTED
                        return CommandState.EXHAUSTED
                    _logger.warning(
                        "Climate %s failed (attempt %d/%d), retrying in %.1fs: %s",
                        attempt.desired_state,
                        attempt.attempt_count,
                        attempt.max_attempts,
                        self._retry_delay,
                        exc,
                    )
                    self._states[device_id] = CommandState.RETRYING
                    await asyncio.sleep(self._retry_delay)
                    continue

                self._states[device_id] = CommandState.SUCCEEDED
                _logger.info("Climate %s applied for %s", attempt.desired_state, device_id)
                await self._confirm(attempt.desired_state)
                return CommandState.SUCCEEDED
        finally:
            if self._chains.get(device_id) is asyncio.current_task():
                del self._chains[device_id]
                self._states[device_id] = CommandState.IDLE

    async def _confirm(self, command: ClimateCommand) -> None:
        confirmation = ClimateConfirmation(is_remote_ac_on=command.is_on)
        try:
            await self._bus.publish(self._topic, confirmation.to_json())
        except Exception:  # noqa: BLE001
            _logger.warning("Publishing climate confirmation failed", exc_info=True)

        if self._scheduler is not None and self._revalidate_delay is not None:
            self._scheduler.request_poll(self._revalidate_delay)
