"""leafbridge - Vehicle telemetry to MQTT bridge with climate control."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("leafbridge")
except PackageNotFoundError:
    __version__ = "0+local"
from leafbridge.bridge import Bridge
from leafbridge.bus import BusClient, MqttBus
from leafbridge.commands import ClimateCommand, CommandAttempt, CommandCoordinator, CommandState
from leafbridge.config import BridgeConfig
from leafbridge.exceptions import (
    AuthError,
    BridgeConfigError,
    BridgeError,
    MalformedResponseError,
    StaleDataError,
    TransportError,
)
from leafbridge.normalize import ClimateConfirmation, TelemetryRecord, normalize
from leafbridge.scheduler import BackoffPolicy, PollScheduler
from leafbridge.session import Session, SessionCache
from leafbridge.telemetry import HttpTelemetryClient, TelemetryClient

__all__ = [
    "__version__",
    "AuthError",
    "BackoffPolicy",
    "Bridge",
    "BridgeConfig",
    "BridgeConfigError",
    "BridgeError",
    "BusClient",
    "ClimateCommand",
    "ClimateConfirmation",
    "CommandAttempt",
    "CommandCoordinator",
    "CommandState",
    "HttpTelemetryClient",
    "MalformedResponseError",
    "MqttBus",
    "PollScheduler",
    "Session",
    "SessionCache",
    "StaleDataError",
    "TelemetryClient",
    "TelemetryRecord",
    "TransportError",
    "normalize",
]
