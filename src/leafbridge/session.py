"""Cached authentication session shared by polling and commands."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from leafbridge.telemetry import TelemetryClient

_logger = logging.getLogger(__name__)


class Session(BaseModel):
    """Opaque authentication handle returned by the telemetry client.

    Parameters
    ----------
    token : str
        Session id sent with every request.
    vin : str or None
        Vehicle identification number bound to the session, when known.
    created_at : float
        Monotonic timestamp (``time.monotonic()``) when the session
        was created.
    ttl : float
        Time-to-live in seconds; ``inf`` never expires.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    token: str
    vin: str | None = None
    created_at: float = Field(default_factory=time.monotonic)
    ttl: float = float("inf")

    @property
    def is_expired(self) -> bool:
        """Whether the session has exceeded its TTL."""
        return (time.monotonic() - self.created_at) >= self.ttl

    @property
    def age(self) -> float:
        """Seconds since the session was created."""
        return time.monotonic() - self.created_at


class SessionCache:
    """Holds at most one valid session.

    Access is single-threaded (event loop only); any failure path calls
    :meth:`invalidate` so the next consumer, poll or command, logs in again.
    Callers that arrive while a login is in flight wait for that login
    instead of starting a second one.
    """

    def __init__(self, client: TelemetryClient) -> None:
        self._client = client
        self._session: Session | None = None
        self._login: asyncio.Task[Session] | None = None

    @property
    def current(self) -> Session | None:
        return self._session

    async def ensure(self) -> Session:
        """Return the cached session, authenticating if none or expired."""
        if self._session is not None and not self._session.is_expired:
            return self._session
        if self._login is None:
            _logger.debug("Authenticating with vehicle service")
            self._login = asyncio.ensure_future(self._client.authenticate())
            self._login.add_done_callback(self._login_done)
        else:
            _logger.debug("Waiting for in-flight authentication")
        # Shielded so a cancelled caller does not abort the login for the others.
        return await asyncio.shield(self._login)

    def _login_done(self, task: asyncio.Task[Session]) -> None:
        if self._login is task:
            self._login = None
        if not task.cancelled() and task.exception() is None:
            self._session = task.result()

    def invalidate(self) -> None:
        """Drop the cached session (next call will re-authenticate)."""
        if self._session is not None:
            _logger.debug("Invalidating cached session age=%.0fs", self._session.age)
        self._session = None
