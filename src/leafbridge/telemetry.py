"""Telemetry client interface and the default HTTP implementation.

Endpoints (relative to ``config.base_url``):
  - /gdc/UserLoginRequest.php
  - /gdc/BatteryStatusCheckRequest.php
  - /gdc/BatteryStatusRecordsRequest.php
  - /gdc/RemoteACRecordsRequest.php
  - /gdc/ACRemoteRequest.php
  - /gdc/ACRemoteOffRequest.php

Every reply is a JSON object with a ``status`` field mirroring an HTTP code.
Password encryption and other service-side handshakes are expected to be
handled by whatever sits at ``base_url``.
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import aiohttp

from leafbridge._transport import FormTransport, Transport
from leafbridge.config import BridgeConfig
from leafbridge.exceptions import (
    AuthError,
    BridgeConfigError,
    BridgeError,
    MalformedResponseError,
    StaleDataError,
    TransportError,
)
from leafbridge.session import Session

_logger = logging.getLogger(__name__)

RawStatus = dict[str, Any]

_LOGIN_ENDPOINT = "/gdc/UserLoginRequest.php"
_STATUS_CHECK_ENDPOINT = "/gdc/BatteryStatusCheckRequest.php"
_BATTERY_RECORDS_ENDPOINT = "/gdc/BatteryStatusRecordsRequest.php"
_CLIMATE_RECORDS_ENDPOINT = "/gdc/RemoteACRecordsRequest.php"
_CLIMATE_ON_ENDPOINT = "/gdc/ACRemoteRequest.php"
_CLIMATE_OFF_ENDPOINT = "/gdc/ACRemoteOffRequest.php"

_STATUS_OK = 200
_STATUS_UNAUTHORIZED = 401


@runtime_checkable
class TelemetryClient(Protocol):
    """What the scheduler and the command coordinator need from the vehicle service."""

    async def authenticate(self) -> Session:
        ...

    async def request_fresh_status(self, session: Session) -> None:
        """Ask the vehicle for a fresh reading; raise StaleDataError if only the cached one is available."""
        ...

    async def fetch_battery_status(self, session: Session) -> RawStatus:
        ...

    async def fetch_climate_status(self, session: Session) -> RawStatus:
        ...

    async def set_climate(self, session: Session, on: bool) -> None:
        ...


def _first_vehicle_info(response: RawStatus) -> dict[str, Any]:
    """Locate the vehicle entry carrying ``custom_sessionid`` in a login reply."""
    candidates: list[Any] = []
    info_list = response.get("VehicleInfoList")
    if isinstance(info_list, dict):
        candidates.extend([info_list.get("vehicleInfo"), info_list.get("VehicleInfo")])
    candidates.append(response.get("vehicleInfo"))

    for candidate in candidates:
        if isinstance(candidate, list) and candidate and isinstance(candidate[0], dict):
            return candidate[0]
        if isinstance(candidate, dict):
            return candidate
    raise MalformedResponseError(f"{_LOGIN_ENDPOINT} reply has no vehicle info")


def _check_status(endpoint: str, response: RawStatus) -> None:
    status = response.get("status")
    try:
        code = int(status) if status is not None else None
    except (TypeError, ValueError):
        code = None

    if code == _STATUS_OK:
        return
    message = response.get("message") or response.get("ErrorMessage") or ""
    if code == _STATUS_UNAUTHORIZED:
        raise AuthError(f"{endpoint} rejected the session: status={status} {message}".rstrip())
    raise TransportError(
        f"{endpoint} failed: status={status} {message}".rstrip(),
        status_code=code,
        endpoint=endpoint,
    )


class HttpTelemetryClient:
    """Async client for a Carwings-compatible vehicle-data service.

    Usage::

        async with HttpTelemetryClient(config) as client:
            session = await client.authenticate()
            battery = await client.fetch_battery_status(session)
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        http_session: aiohttp.ClientSession | None = None,
        transport: Transport | None = None,
    ) -> None:
        self._config = config
        self._external_session = http_session is not None
        self._http_session = http_session
        self._transport = transport

    async def __aenter__(self) -> HttpTelemetryClient:
        if self._transport is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._transport = FormTransport(self._config, self._http_session)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise BridgeError("Client not initialized. Use 'async with HttpTelemetryClient(...) as client:'")
        return self._transport

    def _session_params(self, session: Session) -> dict[str, Any]:
        return {
            "custom_sessionid": session.token,
            "RegionCode": self._config.region_code,
            "VIN": session.vin,
            "lg": self._config.locale,
            "tz": self._config.time_zone,
        }

    async def _post(self, endpoint: str, params: dict[str, Any]) -> RawStatus:
        response = await self._require_transport().post_form(endpoint, params)
        _check_status(endpoint, response)
        return response

    async def authenticate(self) -> Session:
        params = {
            "UserId": self._config.username,
            "Password": self._config.password,
            "RegionCode": self._config.region_code,
            "lg": self._config.locale,
            "tz": self._config.time_zone,
        }
        response = await self._post(_LOGIN_ENDPOINT, params)
        info = _first_vehicle_info(response)
        token = info.get("custom_sessionid")
        if not isinstance(token, str) or not token.strip():
            raise AuthError(f"{_LOGIN_ENDPOINT} reply carries no session id")
        vin = info.get("vin")
        ttl = self._config.session_ttl if self._config.session_ttl > 0 else float("inf")
        _logger.debug("Authenticated vin=%s", vin)
        return Session(token=token, vin=vin if isinstance(vin, str) else None, ttl=ttl)

    async def request_fresh_status(self, session: Session) -> None:
        try:
            await self._post(_STATUS_CHECK_ENDPOINT, self._session_params(session))
        except AuthError as exc:
            raise StaleDataError(str(exc)) from exc

    async def fetch_battery_status(self, session: Session) -> RawStatus:
        return await self._post(_BATTERY_RECORDS_ENDPOINT, self._session_params(session))

    async def fetch_climate_status(self, session: Session) -> RawStatus:
        return await self._post(_CLIMATE_RECORDS_ENDPOINT, self._session_params(session))

    async def set_climate(self, session: Session, on: bool) -> None:
        endpoint = _CLIMATE_ON_ENDPOINT if on else _CLIMATE_OFF_ENDPOINT
        await self._post(endpoint, self._session_params(session))


def load_telemetry_client(config: BridgeConfig) -> TelemetryClient:
    """Build the telemetry client named by ``config.telemetry_client``."""
    module_name, _, attr = config.telemetry_client.partition(":")
    try:
        module = importlib.import_module(module_name)
        factory: Callable[[BridgeConfig], TelemetryClient] = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise BridgeConfigError(f"Cannot load telemetry client {config.telemetry_client!r}: {exc}") from exc
    return factory(config)
