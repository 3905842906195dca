"""Hand-off point between a human-entered PIN and an in-flight pairing.

The relay holds a single slot.  External callers (CLI prompt, MQTT
``pin/set`` command) write into it; the pairing coordinator polls it.
Last write wins and values that are not exactly four characters long
are never handed out.

A relay serves one pairing attempt at a time.  :meth:`PinRelay.claim`
marks an attempt as in flight and raises
:class:`~atvbridge._errors.PairingInProgressError` for a second one,
instead of letting two handshakes race for the same PIN.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator

from atvbridge._errors import PairingInProgressError

logger = logging.getLogger(__name__)

PIN_LENGTH = 4


class PinRelay:
    """Single-slot, last-write-wins PIN hand-off."""

    def __init__(self) -> None:
        self._pin: str | None = None
        self._claimed = False

    @property
    def claimed(self) -> bool:
        """Whether a pairing attempt currently owns the relay."""
        return self._claimed

    @property
    def has_value(self) -> bool:
        return self._pin is not None

    def set_pin(self, code: str) -> None:
        """Overwrite the slot with *code*, stored exactly as given."""
        self._pin = str(code)
        logger.debug("PIN relay updated (%d characters)", len(self._pin))

    def try_take(self) -> str | None:
        """Return the slot value if it is exactly four characters, else ``None``.

        The slot is not cleared; call :meth:`clear` after consuming.
        """
        if self._pin is not None and len(self._pin) == PIN_LENGTH:
            return self._pin
        return None

    def clear(self) -> None:
        self._pin = None

    @contextlib.contextmanager
    def claim(self) -> Iterator[PinRelay]:
        """Own the relay for the duration of one pairing attempt.

        The slot is cleared on entry and on exit, whatever the outcome.

        Raises:
            PairingInProgressError: If another attempt holds the relay.
        """
        if self._claimed:
            msg = "A pairing attempt is already in progress"
            raise PairingInProgressError(msg)
        self._claimed = True
        self.clear()
        try:
            yield self
        finally:
            self.clear()
            self._claimed = False
