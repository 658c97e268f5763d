"""Helpers for safe debug logging.

The bridge handles account credentials and session ids.  Form parameters and
decoded JSON bodies logged at DEBUG go through :func:`redact_for_log` first.
"""

from __future__ import annotations

from typing import Any

REDACTED = "<redacted>"

_SECRET_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "mqtt_password",
        "userid",
        "username",
        "token",
        "custom_sessionid",
        "authorization",
        "cookie",
    }
)


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}…<truncated>"


def redact_for_log(value: Any, *, max_string: int = 512) -> Any:
    """Return a copy of a JSON-like *value* with secrets masked and long strings clipped.

    Keys are matched case-insensitively.  Anything that is not a dict, list
    or JSON scalar is logged by its ``repr``.
    """
    if isinstance(value, dict):
        return {
            key: REDACTED if str(key).lower() in _SECRET_KEYS else redact_for_log(item, max_string=max_string)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_for_log(item, max_string=max_string) for item in value]
    if isinstance(value, str):
        return _clip(value, max_string)
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return _clip(repr(value), max_string)
