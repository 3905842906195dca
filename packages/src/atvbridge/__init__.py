"""atvbridge.

Keeps a self-healing connection to an Apple TV, pairs new devices by
PIN and bridges status and device messages to MQTT.
"""

from importlib.metadata import PackageNotFoundError, version

from atvbridge._app import Bridge, parse_device_ref
from atvbridge._backends import (
    BackendListener,
    BackendPort,
    Credential,
    DeviceRef,
    DiscoveredDevice,
    PollBackend,
    PushBackend,
    Subscription,
)
from atvbridge._clock import ClockPort, SystemClock, TimerHandle
from atvbridge._errors import (
    GENERIC_PIN_ERROR,
    AtvBridgeError,
    ConnectionFailedError,
    DeviceNotFoundError,
    InvalidPairingRequestError,
    PairingCancelledError,
    PairingError,
    PairingInProgressError,
    PairingRejectedError,
    PairingResult,
    TransientLinkError,
    classify_pairing_error,
)
from atvbridge._heartbeat import Heartbeat
from atvbridge._logging import JsonFormatter, configure_logging
from atvbridge._manager import ConnectionManager, ConnectionState, StatusLevel
from atvbridge._mqtt import MqttClient, MqttLifecycle, MqttPort, NullMqttClient
from atvbridge._pairing import PairingConnection, PairingCoordinator, ScannerPort
from atvbridge._pin import PIN_LENGTH, PinRelay
from atvbridge._publisher import EventPublisher
from atvbridge._pyatv import (
    PyatvPollBackend,
    PyatvPushBackend,
    PyatvScanner,
    create_backend,
    create_scanner,
)
from atvbridge._reconnect import ReconnectPolicy
from atvbridge._router import CommandRouter
from atvbridge._settings import (
    BackendKind,
    ConnectionSettings,
    DeviceSettings,
    LoggingSettings,
    MqttSettings,
    PairingSettings,
    Settings,
)

try:
    __version__ = version("atvbridge")
except PackageNotFoundError:
    # editable installs without metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Bridge
    "Bridge",
    "parse_device_ref",
    # Backends
    "BackendKind",
    "BackendListener",
    "BackendPort",
    "Credential",
    "DeviceRef",
    "DiscoveredDevice",
    "PollBackend",
    "PushBackend",
    "PyatvPollBackend",
    "PyatvPushBackend",
    "PyatvScanner",
    "Subscription",
    "create_backend",
    "create_scanner",
    # Clock
    "ClockPort",
    "SystemClock",
    "TimerHandle",
    # Connection
    "ConnectionManager",
    "ConnectionState",
    "Heartbeat",
    "ReconnectPolicy",
    "StatusLevel",
    # Pairing
    "PIN_LENGTH",
    "PairingConnection",
    "PairingCoordinator",
    "PinRelay",
    "ScannerPort",
    # Errors
    "GENERIC_PIN_ERROR",
    "AtvBridgeError",
    "ConnectionFailedError",
    "DeviceNotFoundError",
    "InvalidPairingRequestError",
    "PairingCancelledError",
    "PairingError",
    "PairingInProgressError",
    "PairingRejectedError",
    "PairingResult",
    "TransientLinkError",
    "classify_pairing_error",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # MQTT
    "CommandRouter",
    "EventPublisher",
    "MqttClient",
    "MqttLifecycle",
    "MqttPort",
    "NullMqttClient",
    # Settings
    "ConnectionSettings",
    "DeviceSettings",
    "LoggingSettings",
    "MqttSettings",
    "PairingSettings",
    "Settings",
]
