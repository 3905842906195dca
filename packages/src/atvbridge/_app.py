"""Composition root wiring the connection manager, pairing and MQTT.

:class:`Bridge` builds every component from :class:`Settings` in its
constructor and orchestrates the lifecycle in :meth:`Bridge.run`:

1. Bootstrap — logging, MQTT connection, command subscriptions.
2. Connect — when a token is stored, start the connection manager after
   ``connection.startup_delay`` seconds.  Without a token the bridge only
   serves pairing and discovery commands.
3. Run — block until SIGTERM/SIGINT (or an injected event).
4. Tear down — cancel the startup timer and pairing tasks, stop the
   manager, shut the coordinator down, stop MQTT.

Typical usage::

    bridge = Bridge(settings=Settings())
    asyncio.run(bridge.run())

Every collaborator can be injected for tests (``mqtt``, ``clock``,
``backend``, ``scanner``).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import uuid
from collections.abc import Coroutine
from typing import Any

from atvbridge._backends import BackendPort, Credential, DeviceRef
from atvbridge._clock import ClockPort, SystemClock, TimerHandle
from atvbridge._errors import (
    InvalidPairingRequestError,
    PairingInProgressError,
    PairingResult,
)
from atvbridge._logging import configure_logging
from atvbridge._manager import ConnectionManager, StatusLevel
from atvbridge._mqtt import MqttClient, MqttLifecycle, MqttPort, NullMqttClient
from atvbridge._pairing import PairingCoordinator, ScannerPort
from atvbridge._pin import PinRelay
from atvbridge._publisher import EventPublisher
from atvbridge._pyatv import create_backend, create_scanner
from atvbridge._router import CommandRouter
from atvbridge._settings import Settings

logger = logging.getLogger(__name__)


def parse_device_ref(payload: str, default: DeviceRef) -> DeviceRef:
    """Parse a ``pair/set`` payload into a :class:`DeviceRef`.

    Accepts a JSON object (``{"identifier": ..., "name": ..., "address": ...}``),
    a bare identifier, or an empty payload meaning *default*.

    Raises:
        InvalidPairingRequestError: If the JSON is malformed or no
            identifier results, including an empty payload with an
            unconfigured *default*.
    """
    text = payload.strip()
    if not text:
        if not default.identifier:
            msg = "No identifier given and ATVBRIDGE_DEVICE__IDENTIFIER is unset"
            raise InvalidPairingRequestError(msg)
        return default
    if not text.startswith("{"):
        return DeviceRef(identifier=text)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        msg = f"Malformed pairing request: {exc.msg}"
        raise InvalidPairingRequestError(msg) from exc
    if not isinstance(data, dict):
        msg = "Pairing request must be a JSON object"
        raise InvalidPairingRequestError(msg)
    identifier = str(data.get("identifier") or "").strip()
    if not identifier:
        msg = "Pairing request needs an 'identifier'"
        raise InvalidPairingRequestError(msg)
    return DeviceRef(
        identifier=identifier,
        name=str(data.get("name") or ""),
        address=data.get("address"),
    )


class Bridge:
    """Runs one connection manager plus the pairing/discovery commands.

    Args:
        settings: Resolved application settings.
        version: Application version for log lines.
        mqtt: Override the MQTT adapter.
        clock: Override the scheduler (e.g. ``FakeClock``).
        backend: Override the backend variant built from settings.
        scanner: Override the discovery/pairing scanner.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        version: str = "",
        mqtt: MqttPort | None = None,
        clock: ClockPort | None = None,
        backend: BackendPort | None = None,
        scanner: ScannerPort | None = None,
    ) -> None:
        self._settings = settings
        self._version = version
        self._clock = clock if clock is not None else SystemClock()
        self._device = DeviceRef.from_settings(settings.device)
        prefix = settings.mqtt.topic_prefix

        self.mqtt = mqtt if mqtt is not None else self._create_mqtt(prefix)
        self.publisher = EventPublisher(
            mqtt=self.mqtt,
            topic_prefix=prefix,
            device=self._device.label,
        )
        self.relay = PinRelay()
        self.coordinator = PairingCoordinator(
            scanner=scanner if scanner is not None else create_scanner(settings),
            relay=self.relay,
            settings=settings.pairing,
        )
        self.router = CommandRouter(topic_prefix=prefix)
        self.router.register("pin", self._handle_pin)
        self.router.register("pair", self._handle_pair)
        self.router.register("discover", self._handle_discover)

        self.manager: ConnectionManager | None = None
        if settings.has_token and not self._device.identifier:
            logger.error("A device token is configured but no device identifier")
        elif settings.has_token:
            self.manager = ConnectionManager(
                backend=backend if backend is not None else create_backend(settings),
                credential=Credential.from_settings(settings.device),
                clock=self._clock,
                settings=settings.connection,
                name=self._device.label,
            )
            self.publisher.attach(self.manager)

        self._startup_timer: TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    async def run(self, *, shutdown_event: asyncio.Event | None = None) -> None:
        """Run until shutdown is requested."""
        configure_logging(
            self._settings.logging,
            service="atvbridge",
            version=self._version,
            device=self._device.label,
            debug=self._settings.device.debug,
        )
        if isinstance(self.mqtt, MqttLifecycle):
            await self.mqtt.start()
        for topic in self.router.subscriptions:
            await self.mqtt.subscribe(topic)
        self.mqtt.on_message(self.router.route)

        shutdown_event = self._install_signal_handlers(shutdown_event)

        if self.manager is not None:
            self._startup_timer = self._clock.call_later(
                self._settings.connection.startup_delay,
                self.manager.start,
            )
        elif self._settings.has_token:
            await self.publisher.publish_status(
                StatusLevel.ERROR,
                "no device identifier configured",
            )
        else:
            logger.warning("No device token configured; waiting for pairing")
            await self.publisher.publish_status(StatusLevel.INFO, "not paired")

        try:
            await shutdown_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Tear everything down.  Idempotent."""
        if self._startup_timer is not None:
            self._startup_timer.cancel()
            self._startup_timer = None
        self.coordinator.shutdown()
        await self._cancel_tasks()
        if self.manager is not None:
            await self.manager.stop()
        if isinstance(self.mqtt, MqttLifecycle):
            await self.mqtt.stop()
        logger.info("Shutdown complete")

    # -- command handlers ---------------------------------------------------

    async def _handle_pin(self, payload: str) -> None:
        self.coordinator.submit_pin(payload.strip())

    async def _handle_pair(self, payload: str) -> None:
        try:
            device = parse_device_ref(payload, self._device)
        except InvalidPairingRequestError as exc:
            logger.warning("Rejected pairing request: %s", exc)
            await self.publisher.publish_pairing_result(PairingResult.failure(exc))
            return
        # pairing waits for a PIN that arrives through this same receive loop
        self._spawn(self._pair_and_publish(device))

    async def _handle_discover(self, _payload: str) -> None:
        self._spawn(self._discover_and_publish())

    async def _pair_and_publish(self, device: DeviceRef) -> None:
        try:
            result = await self.coordinator.pair(device)
        except PairingInProgressError as exc:
            result = PairingResult.failure(exc)
        if result.ok:
            logger.info(
                "Pairing succeeded; store the token as ATVBRIDGE_DEVICE__TOKEN",
            )
        await self.publisher.publish_pairing_result(result)

    async def _discover_and_publish(self) -> None:
        devices = await self.coordinator.discover()
        await self.publisher.publish_discovery(devices)

    # -- helpers ------------------------------------------------------------

    def _create_mqtt(self, prefix: str) -> MqttPort:
        mqtt_settings = self._settings.mqtt
        if not mqtt_settings.enabled:
            return NullMqttClient()
        if not mqtt_settings.client_id:
            mqtt_settings = mqtt_settings.model_copy(
                update={"client_id": f"atvbridge-{uuid.uuid4().hex[:8]}"},
            )
        return MqttClient(settings=mqtt_settings, will_topic=f"{prefix}/status")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Command task failed", exc_info=task.exception())

    async def _cancel_tasks(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

    @staticmethod
    def _install_signal_handlers(
        shutdown_event: asyncio.Event | None,
    ) -> asyncio.Event:
        """Install SIGTERM/SIGINT handlers. Returns the shutdown event."""
        if shutdown_event is not None:
            return shutdown_event
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, event.set)
        return event
