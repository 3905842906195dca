"""Exception taxonomy and structured pairing results.

Exception hierarchy::

    AtvBridgeError
    ├── DeviceNotFoundError       scan found no matching device
    ├── ConnectionFailedError     open/auth failure, retried by the manager
    ├── TransientLinkError        close/error during a healthy session
    └── PairingError
        ├── PairingRejectedError  bad PIN or device-imposed lockout
        ├── PairingInProgressError  a second concurrent pairing attempt
        ├── PairingCancelledError   coordinator shut down during PIN wait
        └── InvalidPairingRequestError  malformed request or no identifier

Connection errors never escape the manager; they are recorded in
``ConnectionManager.last_error`` and surfaced as status events.  Pairing
errors are converted into a :class:`PairingResult` so that callers see a
terminal ``{"token": ...}`` or ``{"error": ...}`` value instead of an
exception.  ``PairingInProgressError`` is the exception to that rule: no
attempt was started, so it is raised.

Payload schema::

    {"token": "..."}                                   success
    {"error": "Too many attempts", "error_type": "pairing_rejected"}
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class AtvBridgeError(Exception):
    """Base class for every error raised by atvbridge."""


class DeviceNotFoundError(AtvBridgeError):
    """Discovery returned no device with the requested identifier."""

    def __init__(self, identifier: str) -> None:
        super().__init__(f"Device '{identifier}' not found")
        self.identifier = identifier


class ConnectionFailedError(AtvBridgeError):
    """The backend could not open an authenticated connection."""


class TransientLinkError(AtvBridgeError):
    """The backend reported a close or error during an open session."""


class PairingError(AtvBridgeError):
    """Base class for pairing failures."""


class PairingRejectedError(PairingError):
    """The device refused the PIN or returned no credential."""


class PairingInProgressError(PairingError):
    """Another pairing attempt already holds the PIN relay."""


class PairingCancelledError(PairingError):
    """The coordinator was shut down while waiting for a PIN."""


class InvalidPairingRequestError(PairingError, ValueError):
    """A pairing request that names no device or cannot be parsed."""


# ---------------------------------------------------------------------------
# Pairing error classification
# ---------------------------------------------------------------------------

GENERIC_PIN_ERROR = "Wrong PIN code, please try again and initiate pairing once more"

_LOCKOUT_PATTERN = re.compile(r"(attempt|rebooting)", re.IGNORECASE)

_ERROR_TYPES: dict[type[Exception], str] = {
    DeviceNotFoundError: "device_not_found",
    PairingRejectedError: "pairing_rejected",
    PairingInProgressError: "pairing_in_progress",
    PairingCancelledError: "pairing_cancelled",
    InvalidPairingRequestError: "invalid_request",
}


def classify_pairing_error(error: Exception) -> str:
    """Return the user-facing text for a failed pairing attempt.

    Lockout messages from the device ("Too many attempts", "rebooting")
    are returned verbatim so the human can see why the device refused.
    Errors raised by atvbridge itself carry their own text.  Anything
    else collapses to :data:`GENERIC_PIN_ERROR`.
    """
    message = str(error)
    if isinstance(
        error,
        (
            DeviceNotFoundError,
            PairingInProgressError,
            PairingCancelledError,
            InvalidPairingRequestError,
        ),
    ):
        return message
    if message and _LOCKOUT_PATTERN.search(message):
        return message
    return GENERIC_PIN_ERROR


# ---------------------------------------------------------------------------
# Result value object
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PairingResult:
    """Terminal outcome of one ``pair()`` call.

    Exactly one of ``token`` and ``error`` is set.
    """

    token: str | None = None
    error: str | None = None
    error_type: str | None = None

    def __post_init__(self) -> None:
        if (self.token is None) == (self.error is None):
            msg = "PairingResult needs exactly one of 'token' or 'error'"
            raise ValueError(msg)

    @classmethod
    def success(cls, token: str) -> PairingResult:
        """Build a successful result carrying the new credential."""
        return cls(token=token)

    @classmethod
    def failure(cls, error: Exception) -> PairingResult:
        """Build a failed result from *error* using the classification rules."""
        return cls(
            error=classify_pairing_error(error),
            error_type=_ERROR_TYPES.get(type(error), "pairing_rejected"),
        )

    @property
    def ok(self) -> bool:
        """Whether pairing produced a token."""
        return self.token is not None

    def to_dict(self) -> dict[str, str]:
        """Serialise to the ``{token}`` / ``{error}`` wire shape."""
        if self.token is not None:
            return {"token": self.token}
        data = {"error": self.error or ""}
        if self.error_type is not None:
            data["error_type"] = self.error_type
        return data

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(self.to_dict())
