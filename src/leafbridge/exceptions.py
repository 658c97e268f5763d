"""Custom exception hierarchy for leafbridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all leafbridge errors."""


class BridgeConfigError(BridgeError):
    """Invalid or missing configuration."""


class AuthError(BridgeError):
    """Login failed or the cached session was rejected."""


class StaleDataError(BridgeError):
    """The vehicle service returned its cached record instead of a fresh one.

    Treated as a failure of the current poll cycle only; the scheduler
    backs off and tries again.
    """


class TransportError(BridgeError):
    """Network, HTTP or bus level failure."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class MalformedResponseError(BridgeError):
    """Upstream payload did not have the expected shape."""
