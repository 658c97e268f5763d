"""HTTP transport for the vehicle-data service."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from http.cookies import SimpleCookie
from typing import Any, Protocol

import aiohttp

from leafbridge._redact import redact_for_log
from leafbridge.config import BridgeConfig
from leafbridge.exceptions import TransportError

_logger = logging.getLogger(__name__)

USER_AGENT = "leafbridge/1.0"


class Transport(Protocol):
    """Structural transport interface used by the telemetry client.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`FormTransport`) concrete.
    """

    async def post_form(self, endpoint: str, params: Mapping[str, Any]) -> dict[str, Any]:
        ...


class FormTransport:
    """Posts form-encoded requests and decodes JSON replies, keeping cookies."""

    def __init__(self, config: BridgeConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._cookies: dict[str, str] = {}
        self._cookie_header: str = ""

    def _update_cookies(self, headers: Any) -> None:
        """Extract Set-Cookie headers and store them."""
        changed = False
        for raw in headers.getall("Set-Cookie", []):
            cookie: SimpleCookie = SimpleCookie()
            cookie.load(raw)
            for key, morsel in cookie.items():
                if self._cookies.get(key) != morsel.value:
                    self._cookies[key] = morsel.value
                    changed = True

        if changed:
            self._cookie_header = "; ".join(f"{k}={v}" for k, v in self._cookies.items())

    async def post_form(self, endpoint: str, params: Mapping[str, Any]) -> dict[str, Any]:
        """POST *params* form-encoded to ``base_url + endpoint`` and return the JSON object."""
        headers: dict[str, str] = {
            "accept": "application/json",
            "user-agent": USER_AGENT,
        }
        if self._cookie_header:
            headers["cookie"] = self._cookie_header

        url = f"{self._config.base_url}{endpoint}"
        form = {key: str(value) for key, value in params.items() if value is not None}
        _logger.debug("POST %s params=%s", url, redact_for_log(form))

        try:
            async with self._http.post(url, data=form, headers=headers) as resp:
                self._update_cookies(resp.headers)
                text = await resp.text()
                if resp.status != 200:
                    raise TransportError(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
        except TransportError:
            raise
        except aiohttp.ClientError as exc:
            raise TransportError(
                f"Request to {endpoint} failed: {exc}",
                endpoint=endpoint,
            ) from exc

        try:
            body = json.loads(text)
        except json.JSONDecodeError as exc:
            raise TransportError(
                f"Invalid JSON from {endpoint}: {text[:200]}",
                endpoint=endpoint,
            ) from exc

        if not isinstance(body, dict):
            raise TransportError(
                f"Expected a JSON object from {endpoint}",
                endpoint=endpoint,
            )
        _logger.debug("Response %s body=%s", endpoint, redact_for_log(body))
        return body
