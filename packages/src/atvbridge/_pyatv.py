"""pyatv-backed implementations of the backend and scanner ports.

- :class:`PyatvPushBackend` — MRP connection; the pyatv push updater and
  device listener feed ``message``/``close``/``error`` events.
- :class:`PyatvPollBackend` — AirPlay + Companion connection; state is
  polled every ``poll_interval`` seconds and diffed into ``update``
  events.
- :class:`PyatvScanner` — discovery and ephemeral pairing connections.

``pyatv`` is imported lazily inside each adapter so the mock backends
and the rest of the package work without the dependency installed.
pyatv delivers listener callbacks synchronously; the adapters turn them
into tracked tasks that await the async event handlers.

:func:`create_backend` is the only place that looks at the configured
backend kind.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Coroutine
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from atvbridge._backends import (
    BackendPort,
    Credential,
    DeviceRef,
    DiscoveredDevice,
    PollBackend,
    PushBackend,
)
from atvbridge._errors import ConnectionFailedError, DeviceNotFoundError
from atvbridge._pairing import PinCallback
from atvbridge._settings import BackendKind, Settings

logger = logging.getLogger(__name__)

_PLAYING_FIELDS = (
    "device_state",
    "media_type",
    "title",
    "artist",
    "album",
    "genre",
    "position",
    "total_time",
    "repeat",
    "shuffle",
)


def _import_pyatv() -> Any:
    try:
        import pyatv  # noqa: PLC0415
    except ModuleNotFoundError as exc:
        msg = "pyatv is required to talk to a real device"
        raise RuntimeError(msg) from exc
    return pyatv


def _protocol(name: str) -> Any:
    from pyatv.const import Protocol  # noqa: PLC0415

    protocols = {
        "mrp": Protocol.MRP,
        "airplay": Protocol.AirPlay,
        "companion": Protocol.Companion,
    }
    return protocols[name]


def playing_to_dict(playing: Any) -> dict[str, Any]:
    """Flatten a pyatv ``Playing`` object into a JSON-friendly dict."""
    state: dict[str, Any] = {}
    for name in _PLAYING_FIELDS:
        value = getattr(playing, name, None)
        if isinstance(value, Enum):
            value = value.name.lower()
        state[name] = value
    return state


async def _connect(
    device: DeviceRef,
    credentials: dict[str, str],
    scan_timeout: float,
) -> Any:
    """Scan for *device*, attach *credentials* and open a pyatv connection."""
    pyatv = _import_pyatv()
    loop = asyncio.get_running_loop()
    configs = await pyatv.scan(
        loop,
        identifier=device.identifier,
        hosts=[device.address] if device.address else None,
        timeout=scan_timeout,
    )
    if not configs:
        raise DeviceNotFoundError(device.identifier)
    config = configs[0]
    for protocol_name, secret in credentials.items():
        if not config.set_credentials(_protocol(protocol_name), secret):
            msg = f"{device.label} does not offer the {protocol_name} protocol"
            raise ConnectionFailedError(msg)
    return await pyatv.connect(config, loop)


async def _close_atv(atv: Any) -> None:
    pending = atv.close()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


class _TaskSpawner:
    """Keeps strong references to tasks spawned from sync callbacks."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    def spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


# ---------------------------------------------------------------------------
# Push backend (MRP)
# ---------------------------------------------------------------------------


class _PushListener:
    """pyatv ``DeviceListener`` + ``PushListener`` bound to one connection."""

    def __init__(self, backend: PyatvPushBackend, atv: Any) -> None:
        self._backend = backend
        self._atv = atv

    def _current(self) -> bool:
        return self._backend._atv is self._atv

    def connection_lost(self, exception: Exception) -> None:
        if self._current():
            self._backend._spawner.spawn(self._backend.emit("error", exception))

    def connection_closed(self) -> None:
        if self._current():
            self._backend._spawner.spawn(self._backend.emit("close"))

    def playstatus_update(self, _updater: Any, playstatus: Any) -> None:
        if self._current():
            self._backend._spawner.spawn(
                self._backend.emit("message", playing_to_dict(playstatus)),
            )

    def playstatus_error(self, _updater: Any, exception: Exception) -> None:
        if self._current():
            self._backend._spawner.spawn(self._backend.emit("error", exception))


class PyatvPushBackend(PushBackend):
    """Push-style backend over the MRP protocol."""

    def __init__(self, device: DeviceRef, *, scan_timeout: float = 1.5) -> None:
        super().__init__()
        self._device = device
        self._scan_timeout = scan_timeout
        self._atv: Any = None
        self._listener: _PushListener | None = None
        self._spawner = _TaskSpawner()

    @property
    def is_open(self) -> bool:
        return self._atv is not None

    async def open(self, credential: Credential) -> None:
        await self.close()
        atv = await _connect(self._device, {"mrp": credential.token}, self._scan_timeout)
        self._atv = atv
        # pyatv only keeps weak references to listeners
        self._listener = _PushListener(self, atv)
        atv.listener = self._listener
        atv.push_updater.listener = self._listener
        atv.push_updater.start()
        logger.debug("MRP connection to %s open", self._device.label)
        await self.emit("connect")

    async def close(self) -> None:
        atv, self._atv = self._atv, None
        self._listener = None
        if atv is None:
            return
        with contextlib.suppress(Exception):
            atv.push_updater.stop()
        await _close_atv(atv)

    async def send_keep_alive(self) -> dict[str, Any] | None:
        await self._require().metadata.playing()
        return None

    async def request_initial_state(self) -> dict[str, Any] | None:
        return playing_to_dict(await self._require().metadata.playing())

    def _require(self) -> Any:
        if self._atv is None:
            msg = "Backend is not connected"
            raise RuntimeError(msg)
        return self._atv


# ---------------------------------------------------------------------------
# Poll backend (AirPlay + Companion)
# ---------------------------------------------------------------------------


class PyatvPollBackend(PollBackend):
    """Poll-style backend over AirPlay with optional Companion credentials."""

    def __init__(
        self,
        device: DeviceRef,
        *,
        poll_interval: float = 5.0,
        scan_timeout: float = 1.5,
    ) -> None:
        super().__init__()
        self._device = device
        self._poll_interval = poll_interval
        self._scan_timeout = scan_timeout
        self._atv: Any = None
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def is_open(self) -> bool:
        return self._atv is not None

    async def open(self, credential: Credential) -> None:
        await self.close()
        credentials = {"airplay": credential.token}
        if credential.companion:
            credentials["companion"] = credential.companion
        self._atv = await _connect(self._device, credentials, self._scan_timeout)
        # the first poll doubles as the liveness check
        await self.publish_state(await self.fetch_state())
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def close(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        atv, self._atv = self._atv, None
        self.forget_state()
        if atv is not None:
            await _close_atv(atv)

    async def fetch_state(self) -> dict[str, Any]:
        if self._atv is None:
            msg = "Backend is not connected"
            raise RuntimeError(msg)
        state = playing_to_dict(await self._atv.metadata.playing())
        state[self.HOUSEKEEPING_KEY] = datetime.now(UTC).isoformat()
        return state

    async def _poll_loop(self) -> None:
        while self._atv is not None:
            await asyncio.sleep(self._poll_interval)
            try:
                state = await self.fetch_state()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await self.emit("error", exc)
                return
            await self.publish_state(state)


# ---------------------------------------------------------------------------
# Scanner / pairing
# ---------------------------------------------------------------------------


class _PyatvPairingConnection:
    """Wraps a pyatv ``PairingHandler``."""

    def __init__(self, handler: Any) -> None:
        self._handler = handler

    async def begin(self) -> PinCallback:
        await self._handler.begin()

        async def complete(pin: str) -> str | None:
            self._handler.pin(pin)
            await self._handler.finish()
            if not self._handler.has_paired:
                return None
            return self._handler.service.credentials

        return complete

    async def close(self) -> None:
        await self._handler.close()


class PyatvScanner:
    """Discovery and pairing connections via pyatv.

    Args:
        protocol: Protocol to pair (``"mrp"``, ``"airplay"`` or
            ``"companion"``).
    """

    def __init__(self, protocol: str = "mrp") -> None:
        self._protocol = protocol
        self._configs: dict[str, Any] = {}

    async def scan(
        self,
        *,
        timeout: float,
        identifier: str | None = None,
        address: str | None = None,
    ) -> list[DiscoveredDevice]:
        pyatv = _import_pyatv()
        configs = await pyatv.scan(
            asyncio.get_running_loop(),
            identifier=identifier,
            hosts=[address] if address else None,
            timeout=timeout,
        )
        devices: list[DiscoveredDevice] = []
        for config in configs:
            self._configs[config.identifier] = config
            devices.append(
                DiscoveredDevice(
                    name=config.name,
                    uid=config.identifier,
                    address=str(config.address),
                ),
            )
        logger.debug("Scan found %d device(s)", len(devices))
        return devices

    async def connect(self, device: DiscoveredDevice) -> _PyatvPairingConnection:
        config = self._configs.get(device.uid)
        if config is None:
            await self.scan(timeout=1.5, identifier=device.uid, address=device.address)
            config = self._configs.get(device.uid)
        if config is None:
            raise DeviceNotFoundError(device.uid)
        pyatv = _import_pyatv()
        handler = await pyatv.pair(
            config,
            _protocol(self._protocol),
            asyncio.get_running_loop(),
        )
        return _PyatvPairingConnection(handler)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def create_backend(settings: Settings) -> BackendPort:
    """Build the backend variant configured in *settings*."""
    device = DeviceRef.from_settings(settings.device)
    scan_timeout = settings.pairing.scan_timeout
    if settings.device.backend is BackendKind.POLL:
        return PyatvPollBackend(
            device,
            poll_interval=settings.connection.poll_interval,
            scan_timeout=scan_timeout,
        )
    return PyatvPushBackend(device, scan_timeout=scan_timeout)


def create_scanner(settings: Settings) -> PyatvScanner:
    """Build a scanner pairing the protocol that matches the backend."""
    protocol = settings.pairing.protocol
    if protocol is None:
        protocol = "airplay" if settings.device.backend is BackendKind.POLL else "mrp"
    return PyatvScanner(protocol=protocol)
