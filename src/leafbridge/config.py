"""Bridge configuration for leafbridge."""

from __future__ import annotations

import dataclasses
import json
import os
from pathlib import Path
from typing import Any

from leafbridge.exceptions import BridgeConfigError

DEFAULT_TELEMETRY_CLIENT = "leafbridge.telemetry:HttpTelemetryClient"


@dataclasses.dataclass(frozen=True)
class BridgeConfig:
    """Bridge configuration.

    Parameters
    ----------
    username : str
        Vehicle service account user id.
    password : str
        Vehicle service account password.
    region_code : str
        Vehicle service region code (e.g. ``"NE"`` for Europe).
    base_url : str
        Base URL of the vehicle-data service.
    locale : str
        Locale sent with every request.
    time_zone : str
        IANA time zone string sent with every request.
    device_id : str
        Identifier of the single vehicle this process serves.  Used to
        key the active command chain.
    mqtt_server : str
        MQTT broker host.
    mqtt_port : int
        MQTT broker port.
    mqtt_username : str or None
        Optional broker user.
    mqtt_password : str or None
        Optional broker password.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    command_topic : str
        Base topic for inbound commands.  ``<command_topic>/ac`` toggles
        the climate control.
    telemetry_topic : str
        Topic receiving telemetry and confirmation payloads.
    poll_interval : float
        Seconds between polls after a successful cycle.
    min_backoff : float
        Backoff interval in seconds after a success; the base that failures
        multiply.
    max_backoff : float
        Ceiling for the backoff interval in seconds.
    backoff_multiplier : float
        Factor applied to the backoff interval on every failed cycle.
    command_retry_delay : float
        Seconds between climate command attempts.
    command_max_attempts : int
        Attempts per climate command before giving up.
    revalidate_delay : float or None
        When set, a successful climate command schedules a fresh poll after
        this many seconds, superseding the regular timer.
    session_ttl : float
        Seconds before a cached session is considered expired.  ``0``
        disables expiry; the session then only refreshes after failures.
    telemetry_client : str
        ``"module:attribute"`` factory that builds the telemetry client
        from this config.
    """

    username: str
    password: str
    region_code: str
    base_url: str = "https://gdcportalgw.its-mo.com/api_v190426_NE"
    locale: str = "en-US"
    time_zone: str = "Europe/London"
    device_id: str = "leaf"
    mqtt_server: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_keepalive: int = 60
    command_topic: str = "leaf/command"
    telemetry_topic: str = "leaf/telemetry"
    poll_interval: float = 30 * 60
    min_backoff: float = 30.0
    max_backoff: float = 2 * 3600
    backoff_multiplier: float = 1.5
    command_retry_delay: float = 15.0
    command_max_attempts: int = 3
    revalidate_delay: float | None = None
    session_ttl: float = 0.0
    telemetry_client: str = DEFAULT_TELEMETRY_CLIENT

    def validate(self) -> BridgeConfig:
        """Fail fast on missing or inconsistent settings.

        Returns ``self`` so it can be chained after a constructor.
        """
        missing = [
            name for name in ("username", "password", "region_code") if not str(getattr(self, name) or "").strip()
        ]
        if missing:
            raise BridgeConfigError(f"Config incomplete, missing: {', '.join(missing)}")
        if not self.command_topic or not self.telemetry_topic:
            raise BridgeConfigError("command_topic and telemetry_topic must be set")
        if self.poll_interval <= 0:
            raise BridgeConfigError("poll_interval must be positive")
        if self.min_backoff <= 0 or self.max_backoff < self.min_backoff:
            raise BridgeConfigError("backoff bounds must satisfy 0 < min_backoff <= max_backoff")
        if self.backoff_multiplier < 1:
            raise BridgeConfigError("backoff_multiplier must be >= 1")
        if self.command_max_attempts < 1:
            raise BridgeConfigError("command_max_attempts must be >= 1")
        if ":" not in self.telemetry_client:
            raise BridgeConfigError("telemetry_client must look like 'module:attribute'")
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> BridgeConfig:
        """Create configuration from ``LEAF_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}
        for field in dataclasses.fields(cls):
            val = env.get(f"LEAF_{field.name.upper()}")
            if val is not None and field.name not in overrides:
                config_kwargs[field.name] = _coerce(field, val)

        config_kwargs.update(overrides)
        for required in ("username", "password", "region_code"):
            config_kwargs.setdefault(required, "")
        return cls(**config_kwargs)

    @classmethod
    def from_options_file(cls, path: str | Path, **overrides: Any) -> BridgeConfig:
        """Create configuration from a Home Assistant add-on ``options.json``.

        The add-on schema spells the region code ``regioncode``; every other
        key matches a field name.  Unknown keys are ignored.
        """
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise BridgeConfigError(f"Options file not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise BridgeConfigError(f"Options file {path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise BridgeConfigError(f"Options file {path} must contain a JSON object")

        if "regioncode" in raw and "region_code" not in raw:
            raw["region_code"] = raw.pop("regioncode")

        names = {field.name: field for field in dataclasses.fields(cls)}
        config_kwargs: dict[str, Any] = {}
        for key, value in raw.items():
            field = names.get(key)
            if field is None or value is None:
                continue
            config_kwargs[key] = _coerce(field, value) if isinstance(value, str) else value

        config_kwargs.update(overrides)
        for required in ("username", "password", "region_code"):
            config_kwargs.setdefault(required, "")
        return cls(**config_kwargs)


def _coerce(field: dataclasses.Field[Any], value: str) -> Any:
    """Convert a string setting to the field's declared type."""
    kind = str(field.type)
    try:
        if kind.startswith("int"):
            return int(value)
        if kind.startswith("float"):
            if not value.strip() and "None" in kind:
                return None
            return float(value)
    except ValueError as exc:
        raise BridgeConfigError(f"Invalid value for {field.name}: {value!r}") from exc
    return value
