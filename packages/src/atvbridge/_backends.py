"""Backend capability port and the two event-normalising variant bases.

A backend wraps one external device protocol.  The connection manager
only ever talks to :class:`BackendPort`; the variant is chosen once by
:func:`atvbridge._pyatv.create_backend` and never switched at runtime.

Two structurally different variants exist:

- **Push** (:class:`PushBackend`) — the protocol pushes ``connect``,
  ``message``, ``close`` and ``error`` events.
- **Poll** (:class:`PollBackend`) — the adapter polls device state and
  emits ``update`` (one per changed key) and ``error`` events.

Both raw event surfaces are normalised at the boundary, inside
``subscribe()``, into the three signals of :class:`BackendListener`::

    push  connect              → opened()
          message(payload)     → message(payload)
          close                → closed(None)
          error(exc)           → closed(exc)

    poll  update(key, ...)     → message({...}); opened() unless key
                                 is the housekeeping key ``date_time``
          error(exc)           → closed(exc)

``subscribe()`` returns a :class:`Subscription` whose ``unsubscribe()``
detaches every raw handler it registered, exactly once.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar, Protocol, runtime_checkable

from atvbridge._settings import BackendKind, DeviceSettings

logger = logging.getLogger(__name__)

EventHandler = Callable[..., Awaitable[None]]
"""Async handler registered on a raw backend event."""

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DeviceRef:
    """Identifies one physical device.

    ``identifier`` is the unique id reported by discovery; for the poll
    backend it may also be a host or MAC address.  ``address`` is an
    optional host hint that narrows the scan.
    """

    identifier: str
    name: str = ""
    address: str | None = None

    @classmethod
    def from_settings(cls, settings: DeviceSettings) -> DeviceRef:
        return cls(
            identifier=settings.identifier,
            name=settings.name,
            address=settings.address,
        )

    @property
    def label(self) -> str:
        """Human-readable name for logs."""
        return self.name or self.identifier


@dataclass(frozen=True, slots=True)
class Credential:
    """Opaque credential(s) used to open an authenticated connection.

    Native backend: ``token`` is the pairing token.  Poll backend:
    ``token`` is the AirPlay credential and ``companion`` the
    Companion credential.  Secrets never appear in ``repr()``.
    """

    token: str = field(repr=False)
    companion: str | None = field(default=None, repr=False)

    @classmethod
    def from_settings(cls, settings: DeviceSettings) -> Credential:
        """Build a credential from stored settings.

        Raises:
            ValueError: If no token is configured.
        """
        if settings.token is None or not settings.token.get_secret_value():
            msg = "No device token configured; pair the device first"
            raise ValueError(msg)
        companion = (
            settings.companion_token.get_secret_value()
            if settings.companion_token is not None
            else None
        )
        return cls(token=settings.token.get_secret_value(), companion=companion or None)


@dataclass(frozen=True, slots=True)
class DiscoveredDevice:
    """One device found by a discovery scan."""

    name: str
    uid: str
    address: str | None = None

    def to_dict(self) -> dict[str, str]:
        """Serialise to the ``{name, uid}`` discovery shape."""
        return {"name": self.name, "uid": self.uid}

    def to_ref(self) -> DeviceRef:
        return DeviceRef(identifier=self.uid, name=self.name, address=self.address)


# ---------------------------------------------------------------------------
# Observer contract
# ---------------------------------------------------------------------------


@runtime_checkable
class BackendListener(Protocol):
    """Normalised backend signals consumed by the connection manager."""

    async def opened(self) -> None:
        """The connection is (still) usable."""
        ...

    async def closed(self, error: Exception | None) -> None:
        """The connection closed; *error* is set when it failed."""
        ...

    async def message(self, payload: dict[str, Any]) -> None:
        """The device pushed or reported state."""
        ...


class Subscription:
    """Handle for a set of raw handlers registered by ``subscribe()``.

    ``unsubscribe()`` runs its detach callback at most once; further
    calls are no-ops.
    """

    def __init__(self, detach: Callable[[], None]) -> None:
        self._detach: Callable[[], None] | None = detach

    @property
    def active(self) -> bool:
        return self._detach is not None

    def unsubscribe(self) -> None:
        detach, self._detach = self._detach, None
        if detach is not None:
            detach()


# ---------------------------------------------------------------------------
# Port (Protocol)
# ---------------------------------------------------------------------------


@runtime_checkable
class BackendPort(Protocol):
    """Capability contract every backend variant satisfies."""

    kind: BackendKind

    @property
    def is_open(self) -> bool: ...

    def subscribe(self, listener: BackendListener) -> Subscription: ...

    async def open(self, credential: Credential) -> None:
        """Open an authenticated connection.

        Raises:
            Exception: Any backend failure (bad credential, unreachable).
        """
        ...

    async def close(self) -> None:
        """Close the live handle.  Idempotent."""
        ...

    async def send_keep_alive(self) -> dict[str, Any] | None:
        """Run the heartbeat action.

        Returns:
            The device state to republish, or ``None`` when the action
            yields nothing worth publishing.
        """
        ...

    async def request_initial_state(self) -> dict[str, Any] | None:
        """Fetch state once after connecting (best effort)."""
        ...


# ---------------------------------------------------------------------------
# Raw event source
# ---------------------------------------------------------------------------


class EventSource:
    """Minimal async event emitter shared by both variants.

    Handlers are awaited in registration order.  A failing handler is
    logged and does not prevent the remaining handlers from running.
    """

    EVENTS: ClassVar[frozenset[str]] = frozenset()

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {
            event: [] for event in self.EVENTS
        }

    def on(self, event: str, handler: EventHandler) -> None:
        """Register *handler* for *event*."""
        self._handlers_for(event).append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        """Remove *handler* from *event*; unknown handlers are ignored."""
        handlers = self._handlers_for(event)
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._handlers_for(event))

    async def emit(self, event: str, *args: Any) -> None:
        """Deliver *event* to every registered handler."""
        for handler in list(self._handlers_for(event)):
            try:
                await handler(*args)
            except Exception:
                logger.exception("Error in '%s' handler %r", event, handler)

    def _handlers_for(self, event: str) -> list[EventHandler]:
        if event not in self._handlers:
            msg = f"{type(self).__name__} has no '{event}' event"
            raise ValueError(msg)
        return self._handlers[event]


# ---------------------------------------------------------------------------
# Variant bases
# ---------------------------------------------------------------------------


class PushBackend(EventSource):
    """Base for backends whose protocol pushes connection events.

    Subclasses implement ``open``/``close``/``send_keep_alive``/
    ``request_initial_state`` and call ``emit()`` with ``connect``,
    ``message``, ``close`` and ``error``.
    """

    EVENTS = frozenset({"connect", "message", "close", "error"})
    kind = BackendKind.NATIVE

    def subscribe(self, listener: BackendListener) -> Subscription:
        async def on_connect() -> None:
            await listener.opened()

        async def on_message(payload: dict[str, Any]) -> None:
            await listener.message(payload)

        async def on_close() -> None:
            await listener.closed(None)

        async def on_error(error: Exception) -> None:
            await listener.closed(error)

        handlers: dict[str, EventHandler] = {
            "connect": on_connect,
            "message": on_message,
            "close": on_close,
            "error": on_error,
        }
        for event, handler in handlers.items():
            self.on(event, handler)

        def detach() -> None:
            for event, handler in handlers.items():
                self.off(event, handler)

        return Subscription(detach)


class PollBackend(EventSource):
    """Base for backends that discover state by polling.

    Subclasses implement ``open``/``close``/``fetch_state`` and call
    :meth:`publish_state` after every successful poll.  The heartbeat
    action of a poll backend is a state fetch.
    """

    EVENTS = frozenset({"update", "error"})
    kind = BackendKind.POLL

    HOUSEKEEPING_KEY: ClassVar[str] = "date_time"
    """Key refreshed on every poll; it must not flip the connection status."""

    def __init__(self) -> None:
        super().__init__()
        self._last_state: dict[str, Any] = {}

    def subscribe(self, listener: BackendListener) -> Subscription:
        async def on_update(key: str, value: Any, old_value: Any) -> None:
            await listener.message({"key": key, "value": value, "old_value": old_value})
            if key != self.HOUSEKEEPING_KEY:
                await listener.opened()

        async def on_error(error: Exception) -> None:
            await listener.closed(error)

        self.on("update", on_update)
        self.on("error", on_error)

        def detach() -> None:
            self.off("update", on_update)
            self.off("error", on_error)

        return Subscription(detach)

    async def fetch_state(self) -> dict[str, Any]:
        raise NotImplementedError  # pragma: no cover

    async def send_keep_alive(self) -> dict[str, Any] | None:
        return await self.fetch_state()

    async def request_initial_state(self) -> dict[str, Any] | None:
        return await self.fetch_state()

    async def publish_state(self, state: dict[str, Any]) -> None:
        """Emit one ``update`` per key whose value changed since the last poll.

        The housekeeping key is emitted on every poll.
        """
        previous = self._last_state
        self._last_state = dict(state)
        for key, value in state.items():
            old_value = previous.get(key)
            if key == self.HOUSEKEEPING_KEY or key not in previous or value != old_value:
                await self.emit("update", key, value, old_value)

    def forget_state(self) -> None:
        """Drop the remembered state so the next poll reports every key."""
        self._last_state = {}
