"""Poll scheduler.

Drives the repeating cycle::

    ensure session -> request fresh status -> fetch battery + climate
        -> normalize -> publish -> schedule next

A successful cycle resets the backoff and waits ``poll_interval``.  A failed
cycle publishes nothing, invalidates the cached session and waits for the
backoff interval, which grows by ``multiplier`` on every consecutive failure
up to ``max_backoff``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging

from leafbridge._redact import redact_for_log
from leafbridge.bus import BusClient
from leafbridge.config import BridgeConfig
from leafbridge.normalize import TelemetryRecord, normalize
from leafbridge.session import SessionCache
from leafbridge.telemetry import TelemetryClient

_logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class BackoffPolicy:
    """Timing of the poll cycle, all values in seconds."""

    poll_interval: float = 30 * 60
    min_backoff: float = 30.0
    max_backoff: float = 2 * 3600
    multiplier: float = 1.5

    @classmethod
    def from_config(cls, config: BridgeConfig) -> BackoffPolicy:
        return cls(
            poll_interval=config.poll_interval,
            min_backoff=config.min_backoff,
            max_backoff=config.max_backoff,
            multiplier=config.backoff_multiplier,
        )

    def next_backoff(self, current: float) -> float:
        return min(current * self.multiplier, self.max_backoff)


class PollScheduler:
    """Owns the poll timer and the backoff state.

    At most one timer is outstanding and at most one cycle runs at a time.
    Errors never leave :meth:`run_cycle`; they only change the next delay.
    """

    def __init__(
        self,
        client: TelemetryClient,
        sessions: SessionCache,
        bus: BusClient,
        telemetry_topic: str,
        *,
        policy: BackoffPolicy | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._client = client
        self._sessions = sessions
        self._bus = bus
        self._topic = telemetry_topic
        self._policy = policy or BackoffPolicy()
        self._loop = loop
        self._current_backoff = self._policy.min_backoff
        self._timer: asyncio.TimerHandle | None = None
        self._cycle: asyncio.Task[float] | None = None
        self._next_delay: float | None = None
        self._consecutive_failures = 0

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    @property
    def current_backoff(self) -> float:
        """Current backoff interval; ``min_backoff`` after a success."""
        return self._current_backoff

    @property
    def next_delay(self) -> float | None:
        """Delay used for the currently pending timer, if any."""
        return self._next_delay

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None

    @property
    def is_polling(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    def start(self) -> None:
        """Begin polling immediately."""
        _logger.info(
            "Starting poll scheduler interval=%.0fs backoff=%.0f..%.0fs x%.2f",
            self._policy.poll_interval,
            self._policy.min_backoff,
            self._policy.max_backoff,
            self._policy.multiplier,
        )
        self._schedule(0)

    def stop(self) -> None:
        """Cancel the pending timer and any running cycle."""
        self._cancel_timer()
        if self._cycle is not None and not self._cycle.done():
            self._cycle.cancel()
        self._cycle = None

    def request_poll(self, delay: float) -> None:
        """Supersede the pending timer with a poll after *delay* seconds.

        Ignored while a cycle is running; that cycle publishes fresh data and
        schedules its own successor.
        """
        if self.is_polling:
            _logger.debug("Poll requested in %.0fs while a cycle is running; ignoring", delay)
            return
        _logger.debug("Poll requested in %.0fs", delay)
        self._schedule(delay)

    async def run_cycle(self) -> float:
        """Run one full cycle, schedule the next one and return its delay."""
        try:
            record = await self._poll_once()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            delay = self._on_failure(exc)
        else:
            delay = self._on_success(record)
        self._schedule(delay)
        return delay

    # ------------------------------------------------------------------
    # Cycle steps
    # ------------------------------------------------------------------

    async def _poll_once(self) -> TelemetryRecord:
        session = await self._sessions.ensure()
        await self._client.request_fresh_status(session)
        battery, climate = await asyncio.gather(
            self._client.fetch_battery_status(session),
            self._client.fetch_climate_status(session),
        )
        _logger.debug("Fetched battery=%s climate=%s", redact_for_log(battery), redact_for_log(climate))
        record = normalize(battery, climate)
        await self._bus.publish(self._topic, record.to_json())
        return record

    def _on_success(self, record: TelemetryRecord) -> float:
        _logger.info(
            "Published telemetry soc=%s charging=%s plugged=%s",
            record.soc,
            record.is_battery_charging,
            record.is_plugged_in,
        )
        self._consecutive_failures = 0
        self._current_backoff = self._policy.min_backoff
        return self._policy.poll_interval

    def _on_failure(self, exc: Exception) -> float:
        self._sessions.invalidate()
        self._consecutive_failures += 1
        self._current_backoff = self._policy.next_backoff(self._current_backoff)
        _logger.warning(
            "Poll failed (%d in a row), retrying in %.0fs: %s: %s",
            self._consecutive_failures,
            self._current_backoff,
            type(exc).__name__,
            exc,
        )
        _logger.debug("Poll failure details", exc_info=exc)
        return self._current_backoff

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._next_delay = None

    def _schedule(self, delay: float) -> None:
        self._cancel_timer()
        loop = self._loop or asyncio.get_running_loop()
        self._next_delay = delay
        self._timer = loop.call_later(delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        self._next_delay = None
        if self.is_polling:
            _logger.debug("Poll timer fired while a cycle is running; skipping")
            return
        loop = self._loop or asyncio.get_running_loop()
        self._cycle = loop.create_task(self.run_cycle())
