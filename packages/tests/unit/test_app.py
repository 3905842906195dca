"""Unit tests for atvbridge._app — the Bridge composition root.

Test Techniques Used:
    - State Transition Testing: bootstrap → startup delay → run → teardown
    - Specification-based Testing: MQTT command handling (pair, pin,
      discover) and payload parsing
    - Mock-based Isolation: BridgeHarness with MockMqttClient, FakeClock,
      MockPushBackend and MockScanner
"""

from __future__ import annotations

import asyncio

import pytest

from atvbridge._app import Bridge, parse_device_ref
from atvbridge._backends import DeviceRef, DiscoveredDevice
from atvbridge._errors import InvalidPairingRequestError
from atvbridge._manager import ConnectionState
from atvbridge._mqtt import MqttClient, NullMqttClient
from atvbridge.testing import (
    BridgeHarness,
    MockPairingConnection,
    MockScanner,
    make_settings,
)

pytestmark = pytest.mark.usefixtures("_restore_root_logger")

PAIRED = {"identifier": "living-room", "token": "stored-token"}


class TestParseDeviceRef:
    """Technique: Equivalence Partitioning — accepted payload shapes."""

    DEFAULT = DeviceRef(identifier="configured")

    def test_empty_uses_default(self) -> None:
        assert parse_device_ref("  ", self.DEFAULT) is self.DEFAULT

    def test_bare_identifier(self) -> None:
        assert parse_device_ref("abc\n", self.DEFAULT) == DeviceRef("abc")

    def test_json_object(self) -> None:
        payload = '{"identifier": "abc", "name": "Den", "address": "10.0.0.9"}'
        assert parse_device_ref(payload, self.DEFAULT) == DeviceRef("abc", "Den", "10.0.0.9")

    def test_json_without_identifier(self) -> None:
        with pytest.raises(ValueError, match="identifier"):
            parse_device_ref('{"name": "Den"}', self.DEFAULT)

    def test_empty_without_configured_identifier(self) -> None:
        with pytest.raises(InvalidPairingRequestError, match="IDENTIFIER is unset"):
            parse_device_ref("", DeviceRef(identifier=""))

    @pytest.mark.parametrize(
        ("payload", "message"),
        [
            ("{bad", "Malformed pairing request"),
            ('{"identifier": ', "Malformed pairing request"),
            ('{"identifier": "  "}', "needs an 'identifier'"),
        ],
    )
    def test_unusable_json_is_rejected(self, payload: str, message: str) -> None:
        with pytest.raises(InvalidPairingRequestError, match=message):
            parse_device_ref(payload, self.DEFAULT)


class TestConstruction:
    """Technique: Specification-based Testing — what gets wired."""

    def test_no_token_means_no_manager(self) -> None:
        harness = BridgeHarness.create()
        assert harness.bridge.manager is None

    def test_token_builds_manager(self) -> None:
        harness = BridgeHarness.create(device=dict(PAIRED))
        assert harness.bridge.manager is not None
        assert harness.bridge.manager.backend is harness.backend

    def test_mqtt_disabled_uses_null_client(self) -> None:
        bridge = Bridge(
            settings=make_settings(mqtt={"enabled": False}),
            scanner=MockScanner(),
        )
        assert isinstance(bridge.mqtt, NullMqttClient)

    def test_default_mqtt_client_gets_id_and_will(self) -> None:
        bridge = Bridge(
            settings=make_settings(mqtt={"topic_prefix": "den"}),
            scanner=MockScanner(),
        )
        assert isinstance(bridge.mqtt, MqttClient)
        assert bridge.mqtt.settings.client_id.startswith("atvbridge-")
        assert bridge.mqtt.will_topic == "den/status"

    def test_token_without_identifier_builds_no_manager(self) -> None:
        harness = BridgeHarness.create(device={"identifier": "", "token": "t"})
        assert harness.bridge.manager is None


class TestLifecycle:
    """Technique: State Transition Testing — run and teardown."""

    async def test_subscribes_command_topics(self) -> None:
        harness = BridgeHarness.create()
        await harness.start()
        assert sorted(harness.mqtt.subscriptions) == [
            "atv/discover/set",
            "atv/pair/set",
            "atv/pin/set",
        ]
        await harness.stop()

    async def test_unpaired_bridge_reports_not_paired(self) -> None:
        harness = BridgeHarness.create()
        await harness.start()
        [status] = harness.published("status")
        assert status["text"] == "not paired"
        await harness.stop()
        assert harness.backend.open_calls == 0

    async def test_manager_starts_after_startup_delay(self) -> None:
        harness = BridgeHarness.create(device=dict(PAIRED))
        await harness.start()
        assert harness.backend.open_calls == 0

        await harness.clock.advance(1.5)

        manager = harness.bridge.manager
        assert manager is not None
        assert manager.state is ConnectionState.CONNECTED
        assert harness.published("status")[-1]["text"] == "connected"
        await harness.stop()

    async def test_device_messages_reach_mqtt(self) -> None:
        harness = BridgeHarness.create(device=dict(PAIRED))
        await harness.start()
        await harness.clock.advance(1.5)

        await harness.backend.push({"title": "Song"})

        assert harness.published("message") == [{"title": "Song"}]
        await harness.stop()

    async def test_shutdown_stops_manager_and_timers(self) -> None:
        harness = BridgeHarness.create(device=dict(PAIRED))
        await harness.start()
        await harness.clock.advance(1.5)

        await harness.stop()

        assert harness.clock.pending == 0
        assert not harness.backend.is_open
        assert harness.published("status")[-1]["text"] == "stopped"

    async def test_token_without_identifier_reports_error(self) -> None:
        harness = BridgeHarness.create(device={"identifier": "", "token": "t"})
        await harness.start()
        await harness.clock.advance(1.5)

        [status] = harness.published("status")
        assert status["level"] == "error"
        assert status["text"] == "no device identifier configured"
        assert harness.backend.open_calls == 0
        await harness.stop()

    async def test_shutdown_before_startup_delay_never_connects(self) -> None:
        harness = BridgeHarness.create(device=dict(PAIRED))
        await harness.start()
        await harness.stop()
        await harness.clock.advance(10.0)
        assert harness.backend.open_calls == 0


class TestCommands:
    """Technique: Specification-based Testing — MQTT command handling."""

    async def test_pair_then_pin_publishes_token(self) -> None:
        harness = BridgeHarness.create()
        await harness.start()

        await harness.command("pair", "living-room")
        await harness.wait_until(harness.bridge.coordinator.pin_requested.is_set)
        await harness.command("pin", "1234")
        await harness.wait_until(lambda: bool(harness.published("pair/result")))

        assert harness.published("pair/result") == [{"token": "token-1234"}]
        assert harness.scanner.connection.close_calls == 1
        await harness.stop()

    async def test_empty_pair_payload_uses_configured_device(self) -> None:
        harness = BridgeHarness.create()
        await harness.start()

        await harness.command("pair")
        await harness.wait_until(harness.bridge.coordinator.pin_requested.is_set)

        assert harness.scanner.scans[0][1] == "living-room"
        await harness.stop()

    async def test_lockout_is_published_verbatim(self) -> None:
        scanner = MockScanner(
            devices=[DiscoveredDevice(name="Living Room", uid="living-room")],
            connection=MockPairingConnection(error="Too many attempts"),
        )
        harness = BridgeHarness.create(scanner=scanner)
        await harness.start()

        await harness.command("pair", "living-room")
        await harness.wait_until(harness.bridge.coordinator.pin_requested.is_set)
        await harness.command("pin", "0000")
        await harness.wait_until(lambda: bool(harness.published("pair/result")))

        assert harness.published("pair/result") == [
            {"error": "Too many attempts", "error_type": "pairing_rejected"},
        ]
        await harness.stop()

    async def test_concurrent_pair_reports_in_progress(self) -> None:
        harness = BridgeHarness.create()
        await harness.start()

        await harness.command("pair", "living-room")
        await harness.wait_until(harness.bridge.coordinator.pin_requested.is_set)
        await harness.command("pair", "living-room")
        await harness.wait_until(lambda: bool(harness.published("pair/result")))

        [result] = harness.published("pair/result")
        assert result["error_type"] == "pairing_in_progress"
        await harness.stop()

    async def test_unknown_device_publishes_not_found(self) -> None:
        harness = BridgeHarness.create()
        await harness.start()

        await harness.command("pair", "bedroom")
        await harness.wait_until(lambda: bool(harness.published("pair/result")))

        assert harness.published("pair/result")[0]["error"] == "Device 'bedroom' not found"
        await harness.stop()

    async def test_padded_pin_payload_is_trimmed(self) -> None:
        harness = BridgeHarness.create()
        await harness.start()

        await harness.command("pair", "living-room")
        await harness.wait_until(harness.bridge.coordinator.pin_requested.is_set)
        await harness.command("pin", " 1234\n")
        await harness.wait_until(lambda: bool(harness.published("pair/result")))

        assert harness.published("pair/result") == [{"token": "token-1234"}]
        await harness.stop()

    async def test_pair_payload_without_identifier_publishes_failure(self) -> None:
        harness = BridgeHarness.create()
        await harness.start()

        await harness.command("pair", '{"name": "no id"}')

        assert harness.published("pair/result") == [
            {"error": "Pairing request needs an 'identifier'", "error_type": "invalid_request"},
        ]
        assert harness.scanner.scans == []
        await harness.stop()

    async def test_malformed_pair_payload_publishes_failure(self) -> None:
        harness = BridgeHarness.create()
        await harness.start()

        await harness.command("pair", "{bad")

        [result] = harness.published("pair/result")
        assert result["error_type"] == "invalid_request"
        assert result["error"].startswith("Malformed pairing request")
        assert harness.scanner.scans == []
        await harness.stop()

    async def test_empty_pair_payload_without_configured_device_publishes_failure(
        self,
    ) -> None:
        harness = BridgeHarness.create(device={"identifier": ""})
        await harness.start()

        await harness.command("pair")
        await asyncio.sleep(0.01)

        [result] = harness.published("pair/result")
        assert result["error_type"] == "invalid_request"
        assert "IDENTIFIER is unset" in result["error"]
        assert harness.scanner.scans == []
        assert not harness.bridge.relay.claimed
        await harness.stop()

    async def test_discover_publishes_devices(self) -> None:
        harness = BridgeHarness.create()
        await harness.start()

        await harness.command("discover")
        await harness.wait_until(lambda: bool(harness.published("discover/result")))

        assert harness.published("discover/result") == [
            [{"name": "Living Room", "uid": "living-room"}],
        ]
        await harness.stop()

    async def test_shutdown_cancels_pairing_wait(self) -> None:
        harness = BridgeHarness.create()
        await harness.start()
        await harness.command("pair", "living-room")
        await harness.wait_until(harness.bridge.coordinator.pin_requested.is_set)

        await harness.stop()

        assert harness.scanner.connection.close_calls == 1
        assert not harness.bridge.relay.claimed
