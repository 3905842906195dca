"""Self-healing connection manager for a single device.

State machine::

    Disconnected ──start()──▶ Connecting ──opened──▶ Connected
                                  ▲    │                 │
                   timer fires    │    │ open failed     │ closed / error
                                  │    ▼                 ▼
                               Reconnecting ◀────────────┘

    stop() from any state ──▶ Disconnected (terminal)

On entering Connected the manager cancels the pending reconnect, starts
the heartbeat and makes one best-effort initial state request.  On
leaving Connected it stops the heartbeat, unsubscribes from the backend,
closes the live handle and schedules a reconnect.  Open failures take
the same reconnect path, so the manager retries until ``stop()``.

All timers go through the injected :class:`~atvbridge._clock.ClockPort`;
at most one heartbeat timer and one reconnect timer exist at any time.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from atvbridge._backends import BackendPort, Credential, Subscription
from atvbridge._clock import ClockPort
from atvbridge._errors import AtvBridgeError, ConnectionFailedError, TransientLinkError
from atvbridge._heartbeat import Heartbeat
from atvbridge._reconnect import ReconnectPolicy
from atvbridge._settings import ConnectionSettings

logger = logging.getLogger(__name__)


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class StatusLevel(StrEnum):
    INFO = "info"
    OK = "ok"
    ERROR = "error"


StatusCallback = Callable[[StatusLevel, str], Awaitable[None]]
"""Async callback receiving ``(level, text)`` on every status change."""

MessageCallback = Callable[[dict[str, Any]], Awaitable[None]]
"""Async callback receiving one device message payload."""


class _ManagerListener:
    """Adapts normalised backend signals onto the manager's handlers."""

    def __init__(self, manager: ConnectionManager) -> None:
        self._manager = manager

    async def opened(self) -> None:
        await self._manager._on_opened()

    async def closed(self, error: Exception | None) -> None:
        await self._manager._on_closed(error)

    async def message(self, payload: dict[str, Any]) -> None:
        await self._manager._on_message(payload)


class ConnectionManager:
    """Drives one backend through its connection lifecycle.

    Args:
        backend: The backend variant, fixed for the manager's lifetime.
        credential: Credential passed to every open attempt.
        clock: Scheduler for heartbeat and reconnect timers.
        settings: Heartbeat interval, reconnect delay and retry cap.
        name: Device label used in log lines.

    Usage::

        manager = ConnectionManager(backend=backend, credential=cred, clock=clock)
        manager.on_status(publish_status)
        manager.on_message(publish_message)
        await manager.start()
        ...
        await manager.stop()
    """

    def __init__(
        self,
        *,
        backend: BackendPort,
        credential: Credential,
        clock: ClockPort,
        settings: ConnectionSettings | None = None,
        name: str = "device",
    ) -> None:
        resolved = settings if settings is not None else ConnectionSettings()
        self._backend = backend
        self._credential = credential
        self._name = name
        self._state = ConnectionState.DISCONNECTED
        self._listener = _ManagerListener(self)
        self._subscription: Subscription | None = None
        self._status_callbacks: list[StatusCallback] = []
        self._message_callbacks: list[MessageCallback] = []

        self._heartbeat = Heartbeat(
            clock=clock,
            interval=resolved.heartbeat_interval,
            action=self._keep_alive,
        )
        self._reconnect = ReconnectPolicy(
            clock=clock,
            action=self._reconnect_now,
            delay=resolved.reconnect_delay,
            max_retries=resolved.reconnect_max_retries,
        )

        self._started = False
        self._stopped = False
        self._opening = False
        self._lost_while_opening = False
        self._loss_error: Exception | None = None

        self.last_error: AtvBridgeError | None = None
        self.open_attempts = 0

    # -- public API ---------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def backend(self) -> BackendPort:
        return self._backend

    @property
    def heartbeat(self) -> Heartbeat:
        return self._heartbeat

    @property
    def reconnect(self) -> ReconnectPolicy:
        return self._reconnect

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    @property
    def stopped(self) -> bool:
        return self._stopped

    def on_status(self, callback: StatusCallback) -> None:
        """Register a callback for ``(level, text)`` status events."""
        self._status_callbacks.append(callback)

    def on_message(self, callback: MessageCallback) -> None:
        """Register a callback for device message payloads."""
        self._message_callbacks.append(callback)

    async def start(self) -> None:
        """Open the connection; failures are retried, never raised.

        Raises:
            RuntimeError: If the manager was already stopped.
        """
        if self._stopped:
            msg = "ConnectionManager cannot be restarted after stop()"
            raise RuntimeError(msg)
        if self._started:
            logger.debug("ConnectionManager.start() called while already running")
            return
        self._started = True
        await self._open()

    async def stop(self) -> None:
        """Cancel all timers and close the connection.

        Idempotent — safe to call multiple times.
        """
        if self._stopped:
            return
        self._stopped = True
        self._reconnect.cancel()
        self._heartbeat.stop()
        await self._release()
        self._set_state(ConnectionState.DISCONNECTED)
        await self._emit_status(StatusLevel.INFO, "stopped")

    # -- open sequence ------------------------------------------------------

    async def _open(self) -> None:
        if self._stopped:
            return
        self._set_state(ConnectionState.CONNECTING)
        await self._emit_status(StatusLevel.INFO, "connecting ...")
        if self._stopped:
            return

        self._subscription = self._backend.subscribe(self._listener)
        self._opening = True
        self._lost_while_opening = False
        self._loss_error = None
        self.open_attempts += 1
        try:
            await self._backend.open(self._credential)
        except Exception as exc:
            self._opening = False
            await self._open_failed(exc)
            return
        self._opening = False

        if self._stopped:
            # stop() ran while the open was in flight
            await self._release()
            return
        if self._lost_while_opening:
            await self._link_lost(self._loss_error)

    async def _open_failed(self, exc: Exception) -> None:
        self._heartbeat.stop()
        logger.warning("Could not connect to %s: %s", self._name, exc)
        self.last_error = ConnectionFailedError(str(exc) or type(exc).__name__)
        await self._release()
        if self._stopped:
            return
        self._set_state(ConnectionState.RECONNECTING)
        await self._emit_status(StatusLevel.ERROR, "bad credential or unreachable")
        await self._schedule_reconnect()

    async def _reconnect_now(self) -> None:
        if self._stopped:
            return
        await self._release()
        await self._open()

    async def _schedule_reconnect(self) -> None:
        if self._stopped:
            return
        if self._reconnect.schedule() or self._reconnect.pending:
            return
        if self._reconnect.exhausted:
            self._set_state(ConnectionState.DISCONNECTED)
            await self._emit_status(
                StatusLevel.ERROR,
                f"giving up after {self._reconnect.attempts} attempts",
            )

    async def _release(self) -> None:
        """Unsubscribe and close the live handle, in that order."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        try:
            await self._backend.close()
        except Exception:
            logger.exception("Error closing connection to %s", self._name)

    # -- backend signals ----------------------------------------------------

    async def _on_opened(self) -> None:
        if self._stopped or self._state is ConnectionState.CONNECTED:
            return
        self._reconnect.reset()
        self.last_error = None
        self._set_state(ConnectionState.CONNECTED)
        await self._emit_status(StatusLevel.OK, "connected")
        self._heartbeat.start()
        await self._fetch_initial_state()

    async def _on_closed(self, error: Exception | None) -> None:
        if self._stopped:
            return
        if self._opening:
            # settle the pending open first; it decides what happens next
            self._lost_while_opening = True
            self._loss_error = error
            return
        if self._state is not ConnectionState.CONNECTED:
            logger.debug("Ignoring close event in state %s", self._state)
            return
        await self._link_lost(error)

    async def _on_message(self, payload: dict[str, Any]) -> None:
        if self._stopped:
            return
        await self._emit_message(payload)

    async def _link_lost(self, error: Exception | None) -> None:
        self._heartbeat.stop()
        self._set_state(ConnectionState.RECONNECTING)
        if error is None:
            logger.info("Connection to %s closed", self._name)
            self.last_error = TransientLinkError("connection closed")
        else:
            logger.warning("Connection to %s failed: %s", self._name, error)
            self.last_error = TransientLinkError(str(error) or type(error).__name__)
        await self._release()
        text = "disconnected" if error is None else "connection error"
        await self._emit_status(StatusLevel.ERROR, text)
        await self._schedule_reconnect()

    # -- heartbeat & initial state -----------------------------------------

    async def _keep_alive(self) -> None:
        if self._state is not ConnectionState.CONNECTED:
            return
        payload = await self._backend.send_keep_alive()
        if payload:
            await self._emit_message(payload)

    async def _fetch_initial_state(self) -> None:
        try:
            payload = await self._backend.request_initial_state()
        except Exception as exc:
            logger.debug("Initial state request failed (ignored): %s", exc)
            return
        if payload and not self._stopped:
            await self._emit_message(payload)

    # -- emission -----------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            logger.debug("%s: %s -> %s", self._name, self._state, state)
            self._state = state

    async def _emit_status(self, level: StatusLevel, text: str) -> None:
        for callback in self._status_callbacks:
            try:
                await callback(level, text)
            except Exception:
                logger.exception("Error in status callback")

    async def _emit_message(self, payload: dict[str, Any]) -> None:
        for callback in self._message_callbacks:
            try:
                await callback(payload)
            except Exception:
                logger.exception("Error in message callback")
