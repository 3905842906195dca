"""Public test-support utilities for atvbridge.

Re-exports test doubles and factories so consumer test suites can
import everything from a single ``atvbridge.testing`` namespace.

Provided symbols:

- :class:`BridgeHarness` — Bridge wired to the doubles below.
- :class:`FakeClock` — deterministic clock with simulated timers.
- :class:`MockPushBackend` / :class:`MockPollBackend` — scriptable backends.
- :class:`MockScanner` / :class:`MockPairingConnection` — pairing doubles.
- :class:`MockMqttClient` — in-memory MQTT double that records calls.
- :class:`NullMqttClient` — silent no-op MQTT adapter.
- :func:`make_settings` — ``Settings`` factory without ``.env`` files.
"""

from atvbridge._mqtt import NullMqttClient
from atvbridge.testing._backends import (
    MockPairingConnection,
    MockPollBackend,
    MockPushBackend,
    MockScanner,
)
from atvbridge.testing._clock import FakeClock, FakeTimer
from atvbridge.testing._harness import BridgeHarness
from atvbridge.testing._mqtt import MockMqttClient
from atvbridge.testing._settings import make_settings

__all__ = [
    "BridgeHarness",
    "FakeClock",
    "FakeTimer",
    "MockMqttClient",
    "MockPairingConnection",
    "MockPollBackend",
    "MockPushBackend",
    "MockScanner",
    "NullMqttClient",
    "make_settings",
]
