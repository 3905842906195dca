"""Application configuration via pydantic-settings.

Configuration is loaded from environment variables and/or ``.env``
files.  Every variable carries the ``ATVBRIDGE_`` prefix and nested
models use ``__`` as the delimiter, e.g.
``ATVBRIDGE_DEVICE__IDENTIFIER=AA:BB:CC:DD:EE:FF``.

The schema covers:

* **Device** — which backend variant to use, which device to reach and
  the stored credential(s).
* **Connection** — startup delay, reconnect delay/cap, heartbeat and
  poll intervals.
* **Pairing** — discovery window, PIN poll interval and protocol.
* **MQTT** — broker connection and topic layout for the bridge.
* **Logging** — level, format, optional file sink, rotation.

All durations are in **seconds**.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Literal

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
)
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackendKind(StrEnum):
    """Backend variant selected once per connection manager."""

    NATIVE = "native"
    POLL = "poll"


# -------------------------------------------------------------------
# Sub-models (BaseModel, not BaseSettings; nested via composition)
# -------------------------------------------------------------------


class DeviceSettings(BaseModel):
    """The single device this bridge keeps a connection to.

    Environment variables (with ``__`` nesting)::

        ATVBRIDGE_DEVICE__BACKEND=native
        ATVBRIDGE_DEVICE__IDENTIFIER=6D797FD3-3538-427E-A47B-A32FC6CF3A69
        ATVBRIDGE_DEVICE__TOKEN=<credential from pairing>
        ATVBRIDGE_DEVICE__COMPANION_TOKEN=<poll backend only>
    """

    backend: BackendKind = Field(
        default=BackendKind.NATIVE,
        description=(
            "'native' uses the push-style MRP backend, 'poll' the "
            "AirPlay + Companion backend that polls device state."
        ),
    )
    identifier: str = Field(
        default="",
        description="Unique device identifier, host or MAC address.",
    )
    name: str = Field(
        default="",
        description="Display name used in logs and status payloads.",
    )
    address: str | None = Field(
        default=None,
        description="Optional host hint that narrows discovery to one address.",
    )
    token: SecretStr | None = Field(
        default=None,
        description=(
            "Stored credential.  Native backend: the pairing token.  "
            "Poll backend: the AirPlay credential.  When unset the "
            "connection manager is not started."
        ),
    )
    companion_token: SecretStr | None = Field(
        default=None,
        description="Companion credential (poll backend only).",
    )
    debug: bool = Field(
        default=False,
        description="Raise atvbridge and pyatv loggers to DEBUG.",
    )


class ConnectionSettings(BaseModel):
    """Timing of the connection manager.

    The defaults retry forever at a fixed 15 s delay.  Set
    ``reconnect_max_retries`` to stop after N consecutive failures.
    """

    startup_delay: Annotated[float, Field(ge=0)] = Field(
        default=1.5,
        description="Seconds between bridge start and the first connect.",
    )
    reconnect_delay: Annotated[float, Field(gt=0)] = Field(
        default=15.0,
        description="Fixed delay before each reconnect attempt.",
    )
    reconnect_max_retries: Annotated[int, Field(ge=1)] | None = Field(
        default=None,
        description="Consecutive reconnect attempts before giving up (None = never).",
    )
    heartbeat_interval: Annotated[float, Field(gt=0)] = Field(
        default=60.0,
        description="Seconds between keep-alive actions while connected.",
    )
    poll_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Seconds between state polls (poll backend only).",
    )


class PairingSettings(BaseModel):
    """Timing and protocol of the pairing handshake."""

    scan_timeout: Annotated[float, Field(gt=0)] = Field(
        default=1.5,
        description="Discovery window in seconds.",
    )
    pin_poll_interval: Annotated[float, Field(gt=0)] = Field(
        default=1.5,
        description="Seconds between PIN relay checks while waiting for a PIN.",
    )
    protocol: Literal["mrp", "airplay", "companion"] | None = Field(
        default=None,
        description=(
            "Protocol to pair.  When unset: 'mrp' for the native "
            "backend, 'airplay' for the poll backend."
        ),
    )


class MqttSettings(BaseModel):
    """MQTT broker connection and topic configuration.

    Environment variables (with ``__`` nesting)::

        ATVBRIDGE_MQTT__HOST=broker.local
        ATVBRIDGE_MQTT__PORT=1883
        ATVBRIDGE_MQTT__TOPIC_PREFIX=livingroom_atv
    """

    enabled: bool = Field(
        default=True,
        description="When false, status and messages are only logged.",
    )
    host: str = Field(
        default="localhost",
        description="Broker the bridge publishes status and device messages to.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        description="Broker TCP port.",
    )
    username: str | None = Field(
        default=None,
        description="Broker login; anonymous when unset.",
    )
    password: SecretStr | None = Field(
        default=None,
        description="Broker password, used together with ``username``.",
    )
    client_id: str = Field(
        default="",
        description="MQTT client identifier; generated when empty.",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Seconds to wait before reconnecting to the broker.",
    )
    topic_prefix: str = Field(
        default="atvbridge",
        description="Root prefix for all MQTT topics.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    ``format="json"`` emits one JSON object per line for log
    aggregators; ``"text"`` emits human-readable lines.  When ``file``
    is set, logs are also written to a size-rotated file.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Level of the root logger (library loggers included).",
    )
    format: Literal["json", "text"] = Field(
        default="text",
        description="'text' for terminals and journalctl, 'json' for log drivers.",
    )
    file: str | None = Field(
        default=None,
        description="Also write logs to this path (size-rotated).",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Rotate the log file once it reaches this size (MB).",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Rotated files kept next to ``file``.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for the bridge.

    Example ``.env``::

        ATVBRIDGE_DEVICE__BACKEND=poll
        ATVBRIDGE_DEVICE__IDENTIFIER=192.168.1.40
        ATVBRIDGE_DEVICE__TOKEN=...
        ATVBRIDGE_DEVICE__COMPANION_TOKEN=...
        ATVBRIDGE_MQTT__HOST=broker.local
        ATVBRIDGE_LOGGING__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="ATVBRIDGE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    device: DeviceSettings = Field(
        default_factory=DeviceSettings,
        description="Device and credential settings.",
    )
    connection: ConnectionSettings = Field(
        default_factory=ConnectionSettings,
        description="Connection manager timing.",
    )
    pairing: PairingSettings = Field(
        default_factory=PairingSettings,
        description="Pairing handshake settings.",
    )
    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="MQTT broker connection settings.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )

    @property
    def has_token(self) -> bool:
        """Whether a stored credential is available to connect with."""
        token = self.device.token
        return token is not None and bool(token.get_secret_value())
