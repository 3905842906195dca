"""One-shot pairing handshake: discovery → PIN → credential.

The coordinator runs a strictly sequential protocol per ``pair()`` call:

1. Scan for the device (bounded window, 1.5 s by default).
2. Open an ephemeral, unauthenticated pairing connection.
3. Begin pairing; the backend returns a completion callback.
4. Poll the :class:`~atvbridge._pin.PinRelay` until a 4-character PIN is
   present.  There is no timeout; only :meth:`PairingCoordinator.shutdown`
   ends the wait.
5. Clear the relay and complete the handshake with the PIN.
6. Return the credential produced by the device.
7. Close the ephemeral connection whatever the outcome.
8. Classify failures into a user-facing message (see
   :func:`~atvbridge._errors.classify_pairing_error`).

Scanning and pairing go through :class:`ScannerPort` so the handshake
can be driven by the real pyatv adapter or by test doubles.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from atvbridge._backends import DeviceRef, DiscoveredDevice
from atvbridge._errors import (
    DeviceNotFoundError,
    PairingCancelledError,
    PairingRejectedError,
    PairingResult,
)
from atvbridge._pin import PinRelay
from atvbridge._settings import PairingSettings

logger = logging.getLogger(__name__)

PinCallback = Callable[[str], Awaitable[str | None]]
"""Completes a handshake with the PIN; returns the credential, if any."""

# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


@runtime_checkable
class PairingConnection(Protocol):
    """Ephemeral, unauthenticated connection used only for pairing."""

    async def begin(self) -> PinCallback:
        """Ask the device to display a PIN and return the completion step."""
        ...

    async def close(self) -> None: ...


@runtime_checkable
class ScannerPort(Protocol):
    """Discovery plus ephemeral pairing connections."""

    async def scan(
        self,
        *,
        timeout: float,
        identifier: str | None = None,
        address: str | None = None,
    ) -> list[DiscoveredDevice]:
        """Return devices seen within *timeout* seconds.

        When *identifier* is given only devices matching it are returned.
        """
        ...

    async def connect(self, device: DiscoveredDevice) -> PairingConnection: ...


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class PairingCoordinator:
    """Runs pairing attempts against one relay, one attempt at a time.

    Args:
        scanner: Discovery and pairing-connection port.
        relay: PIN hand-off shared with whoever collects the PIN.  A
            private relay is created when omitted.
        settings: Scan window and PIN poll interval.
    """

    def __init__(
        self,
        *,
        scanner: ScannerPort,
        relay: PinRelay | None = None,
        settings: PairingSettings | None = None,
    ) -> None:
        self._scanner = scanner
        self._relay = relay if relay is not None else PinRelay()
        self._settings = settings if settings is not None else PairingSettings()
        self._shutdown = asyncio.Event()
        self.pin_requested = asyncio.Event()
        """Set while an attempt is waiting for a PIN."""

    @property
    def relay(self) -> PinRelay:
        return self._relay

    @property
    def in_progress(self) -> bool:
        return self._relay.claimed

    def submit_pin(self, code: str) -> None:
        """Hand a PIN to the attempt in flight (or the next one to wait)."""
        self._relay.set_pin(code)

    async def discover(self) -> list[DiscoveredDevice]:
        """Scan for every device visible within the discovery window."""
        return await self._scanner.scan(timeout=self._settings.scan_timeout)

    async def pair(self, device: DeviceRef) -> PairingResult:
        """Pair with *device* and return the new credential or an error.

        Raises:
            PairingInProgressError: If another attempt is in flight.
        """
        if self._shutdown.is_set():
            return PairingResult.failure(
                PairingCancelledError("Pairing coordinator is shut down"),
            )
        with self._relay.claim():
            logger.info("Pairing with %s", device.label)
            try:
                token = await self._handshake(device)
            except Exception as exc:
                logger.warning("Pairing with %s failed: %s", device.label, exc)
                return PairingResult.failure(exc)
            finally:
                self.pin_requested.clear()
        logger.info("Paired with %s", device.label)
        return PairingResult.success(token)

    def shutdown(self) -> None:
        """Cancel any PIN wait and clear the relay.  Idempotent."""
        self._shutdown.set()
        self._relay.clear()

    # -- internals ----------------------------------------------------------

    async def _handshake(self, device: DeviceRef) -> str:
        found = await self._find(device)
        connection = await self._scanner.connect(found)
        try:
            complete = await connection.begin()
            pin = await self._wait_for_pin()
            self._relay.clear()
            token = await complete(pin)
        finally:
            await self._close(connection)
        if not token:
            msg = "Device did not return a credential"
            raise PairingRejectedError(msg)
        return token

    async def _find(self, device: DeviceRef) -> DiscoveredDevice:
        devices = await self._scanner.scan(
            timeout=self._settings.scan_timeout,
            identifier=device.identifier,
            address=device.address,
        )
        if not devices:
            raise DeviceNotFoundError(device.identifier)
        return devices[0]

    async def _wait_for_pin(self) -> str:
        self.pin_requested.set()
        logger.info("Waiting for PIN")
        while True:
            if await self._sleep(self._settings.pin_poll_interval):
                msg = "Pairing cancelled"
                raise PairingCancelledError(msg)
            pin = self._relay.try_take()
            if pin is not None:
                return pin

    async def _sleep(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return ``True`` if shutdown was requested."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    @staticmethod
    async def _close(connection: PairingConnection) -> None:
        try:
            await connection.close()
        except Exception:
            logger.exception("Error closing pairing connection")
