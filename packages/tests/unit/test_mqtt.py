"""Unit tests for atvbridge._mqtt — MQTT port and adapters.

Test Techniques Used:
    - Protocol Conformance: isinstance checks for MqttPort / MqttLifecycle
    - State Transition Testing: MqttClient start / stop / reconnect
    - Mock-based Isolation: aiomqtt patched via sys.modules
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Iterator
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import SecretStr

from atvbridge._mqtt import MqttClient, MqttLifecycle, MqttPort, NullMqttClient
from atvbridge._settings import MqttSettings
from atvbridge.testing import MockMqttClient

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


async def _blocking_messages():  # type: ignore[no-untyped-def]
    """Block until cancelled, yielding nothing (like an idle broker)."""
    await asyncio.Event().wait()
    yield  # pragma: no cover


def _connected_client() -> AsyncMock:
    client = AsyncMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    type(client).messages = property(lambda self: _blocking_messages())
    client.subscribe = AsyncMock()
    client.publish = AsyncMock()
    return client


@pytest.fixture
def mock_aiomqtt() -> Iterator[tuple[MagicMock, AsyncMock]]:
    """Patch ``sys.modules`` so the lazy ``import aiomqtt`` gets a mock."""
    module = MagicMock()
    client = _connected_client()
    module.Client.return_value = client
    module.Will = MagicMock()
    with patch.dict(sys.modules, {"aiomqtt": module}):
        yield module, client


async def wait_connected(client: MqttClient) -> None:
    for _ in range(100):
        if client.is_connected:
            return
        await asyncio.sleep(0.01)
    msg = "MqttClient never connected"
    raise AssertionError(msg)


# ---------------------------------------------------------------------------
# Protocols & simple adapters
# ---------------------------------------------------------------------------


class TestProtocols:
    """Technique: Protocol Conformance — structural subtyping."""

    def test_adapters_satisfy_port(self) -> None:
        assert isinstance(MqttClient(settings=MqttSettings()), MqttPort)
        assert isinstance(NullMqttClient(), MqttPort)
        assert isinstance(MockMqttClient(), MqttPort)

    def test_only_real_client_has_lifecycle(self) -> None:
        assert isinstance(MqttClient(settings=MqttSettings()), MqttLifecycle)
        assert not isinstance(NullMqttClient(), MqttLifecycle)


class TestNullMqttClient:
    """Technique: Specification-based Testing — everything is discarded."""

    async def test_operations_are_silent(self) -> None:
        client = NullMqttClient()
        await client.publish("a/b", "x", retain=True)
        await client.subscribe("a/#")
        client.on_message(AsyncMock())


class TestMockMqttClient:
    """Technique: Specification-based Testing — recording double."""

    async def test_records_and_delivers(self) -> None:
        client = MockMqttClient()
        received: list[tuple[str, str]] = []

        async def on_message(topic: str, payload: str) -> None:
            received.append((topic, payload))

        client.on_message(on_message)
        await client.publish("atv/status", '{"a": 1}', retain=True)
        await client.subscribe("atv/pin/set")
        await client.deliver("atv/pin/set", "1234")

        assert client.get_messages_for("atv/status") == [('{"a": 1}', True, 1)]
        assert client.json_for("atv/status") == [{"a": 1}]
        assert client.subscriptions == ["atv/pin/set"]
        assert received == [("atv/pin/set", "1234")]

        client.reset()
        assert client.published == []


# ---------------------------------------------------------------------------
# MqttClient
# ---------------------------------------------------------------------------


class TestMqttClientLifecycle:
    """Technique: State Transition Testing — start / stop."""

    async def test_connects_and_stops(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock],
    ) -> None:
        client = MqttClient(settings=MqttSettings())
        await client.start()
        await wait_connected(client)

        await client.stop()

        assert not client.is_connected
        assert client._listen_task is None  # noqa: SLF001

    async def test_stop_is_idempotent(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock],
    ) -> None:
        client = MqttClient(settings=MqttSettings())
        await client.start()
        await client.stop()
        await client.stop()

    async def test_start_twice_keeps_one_task(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock],
    ) -> None:
        client = MqttClient(settings=MqttSettings())
        await client.start()
        task = client._listen_task  # noqa: SLF001
        await client.start()
        assert client._listen_task is task  # noqa: SLF001
        await client.stop()

    async def test_publish_requires_connection(self) -> None:
        client = MqttClient(settings=MqttSettings())
        with pytest.raises(RuntimeError, match="not connected"):
            await client.publish("atv/status", "{}")


class TestMqttClientConnect:
    """Technique: Mock-based Isolation — arguments handed to aiomqtt."""

    async def test_credentials_and_will(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock],
    ) -> None:
        module, _ = mock_aiomqtt
        settings = MqttSettings(
            host="broker.test",
            username="bridge",
            password=SecretStr("s3cret"),
            client_id="atvbridge-1",
        )
        client = MqttClient(settings=settings, will_topic="atv/status")
        await client.start()
        await wait_connected(client)

        kwargs = module.Client.call_args.kwargs
        assert kwargs["hostname"] == "broker.test"
        assert kwargs["username"] == "bridge"
        assert kwargs["password"] == "s3cret"
        assert kwargs["identifier"] == "atvbridge-1"
        module.Will.assert_called_once()
        assert module.Will.call_args.kwargs["topic"] == "atv/status"
        assert module.Will.call_args.kwargs["retain"] is True
        assert json.loads(module.Will.call_args.kwargs["payload"])["text"] == "offline"
        await client.stop()

    async def test_no_will_topic(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock],
    ) -> None:
        module, _ = mock_aiomqtt
        client = MqttClient(settings=MqttSettings())
        await client.start()
        await wait_connected(client)
        assert module.Client.call_args.kwargs["will"] is None
        await client.stop()

    async def test_publish_and_subscribe_when_connected(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock],
    ) -> None:
        _, inner = mock_aiomqtt
        client = MqttClient(settings=MqttSettings())
        await client.start()
        await wait_connected(client)

        await client.publish("atv/status", "{}", retain=True)
        await client.subscribe("atv/pin/set")

        inner.publish.assert_awaited_once_with("atv/status", "{}", retain=True, qos=1)
        inner.subscribe.assert_awaited_with("atv/pin/set", qos=1)
        await client.stop()


class TestMqttClientReconnect:
    """Technique: State Transition Testing — retry and restore."""

    async def test_reconnects_and_restores_subscriptions(self) -> None:
        module = MagicMock()
        clients: list[AsyncMock] = []

        def factory(**_kwargs: object) -> AsyncMock:
            if not clients:
                failing = AsyncMock()
                failing.__aenter__ = AsyncMock(side_effect=OSError("refused"))
                failing.__aexit__ = AsyncMock(return_value=False)
                clients.append(failing)
                return failing
            client = _connected_client()
            clients.append(client)
            return client

        module.Client = factory
        module.Will = MagicMock()

        with patch.dict(sys.modules, {"aiomqtt": module}):
            client = MqttClient(settings=MqttSettings(reconnect_interval=0.05))
            await client.subscribe("atv/pair/set")
            await client.start()
            await wait_connected(client)

            assert len(clients) == 2
            clients[1].subscribe.assert_awaited_with("atv/pair/set", qos=1)
            await client.stop()


class TestMqttClientDispatch:
    """Technique: Specification-based Testing — inbound decoding."""

    async def test_decodes_bytes_and_calls_every_callback(self) -> None:
        client = MqttClient(settings=MqttSettings())
        received: list[tuple[str, str]] = []

        async def broken(topic: str, payload: str) -> None:
            raise RuntimeError("handler bug")

        async def record(topic: str, payload: str) -> None:
            received.append((topic, payload))

        client.on_message(broken)
        client.on_message(record)
        await client._dispatch(  # noqa: SLF001
            SimpleNamespace(topic="atv/pin/set", payload=b"1234"),
        )

        assert received == [("atv/pin/set", "1234")]

    async def test_skips_empty_payload(self) -> None:
        client = MqttClient(settings=MqttSettings())
        callback = AsyncMock()
        client.on_message(callback)
        await client._dispatch(SimpleNamespace(topic="t", payload=None))  # noqa: SLF001
        callback.assert_not_awaited()
