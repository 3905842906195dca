"""MQTT port and adapters used to expose the bridge.

Provides :class:`MqttPort` (Protocol) and two implementations:

- :class:`MqttClient` — aiomqtt-based client with reconnection
- :class:`NullMqttClient` — no-op adapter for ``mqtt.enabled = false``

The in-memory test double lives in :mod:`atvbridge.testing`.

aiomqtt is imported lazily inside ``MqttClient._run_sessions()`` so
the null adapter and the test double work without it.  Subscriptions
are tracked and restored after every reconnect.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from atvbridge._settings import MqttSettings

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, str], Awaitable[None]]
"""Async callback receiving (topic, payload) for each inbound message."""


@runtime_checkable
class MqttPort(Protocol):
    """Publish/subscribe contract used by the publisher and router."""

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None: ...

    async def subscribe(self, topic: str) -> None: ...

    def on_message(self, callback: MessageCallback) -> None: ...


@runtime_checkable
class MqttLifecycle(Protocol):
    """Adapters that own a background connection."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


@dataclass
class NullMqttClient:
    """Discards every publish and subscription."""

    async def publish(
        self,
        topic: str,
        payload: str,  # noqa: ARG002
        *,
        retain: bool = False,  # noqa: ARG002
        qos: int = 1,  # noqa: ARG002
    ) -> None:
        logger.debug("NullMqttClient.publish(%s) discarded", topic)

    async def subscribe(self, topic: str) -> None:
        logger.debug("NullMqttClient.subscribe(%s) discarded", topic)

    def on_message(self, callback: MessageCallback) -> None:  # noqa: ARG002
        return None


OFFLINE_PAYLOAD = '{"level": "error", "text": "offline", "state": "disconnected"}'
"""Retained last-will payload published by the broker when the bridge dies."""


class MqttClient:
    """aiomqtt adapter owning one background broker session.

    The session task reconnects every ``settings.reconnect_interval``
    seconds after a failure and re-subscribes every topic requested so
    far.  Publishing requires a live session.

    Args:
        settings: Broker address, credentials and reconnect interval.
        will_topic: Topic for the retained :data:`OFFLINE_PAYLOAD` will.
    """

    def __init__(self, *, settings: MqttSettings, will_topic: str | None = None) -> None:
        self.settings = settings
        self.will_topic = will_topic
        self._handlers: list[MessageCallback] = []
        self._topics: dict[str, None] = {}
        self._client: Any = None
        self._listen_task: asyncio.Task[None] | None = None
        self._online = asyncio.Event()
        self._closing = False

    def __repr__(self) -> str:
        return f"MqttClient(host={self.settings.host!r}, port={self.settings.port})"

    @property
    def is_connected(self) -> bool:
        return self._online.is_set()

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Publish *payload* on the live session.

        Raises:
            RuntimeError: If no broker session is up.
        """
        client = self._client
        if client is None:
            msg = "MqttClient is not connected"
            raise RuntimeError(msg)
        await client.publish(topic, payload, retain=retain, qos=qos)

    async def subscribe(self, topic: str) -> None:
        """Subscribe to *topic* now (when connected) and on every reconnect."""
        self._topics[topic] = None
        if self._client is not None:
            await self._client.subscribe(topic, qos=1)

    def on_message(self, callback: MessageCallback) -> None:
        self._handlers.append(callback)

    async def start(self) -> None:
        if self._listen_task is not None and not self._listen_task.done():
            return
        self._closing = False
        self._listen_task = asyncio.create_task(self._run_sessions())

    async def stop(self) -> None:
        """Cancel the session task and forget the client.  Idempotent."""
        self._closing = True
        task, self._listen_task = self._listen_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._client = None
        self._online.clear()

    # -- session loop -------------------------------------------------------

    async def _run_sessions(self) -> None:
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttClient"
            raise RuntimeError(msg) from exc

        while not self._closing:
            try:
                async with aiomqtt.Client(**self._client_options(aiomqtt)) as client:
                    await self._serve(client)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "MQTT session to %s ended, retrying in %.1fs",
                    self.settings.host,
                    self.settings.reconnect_interval,
                    exc_info=True,
                )
                await asyncio.sleep(self.settings.reconnect_interval)

    def _client_options(self, aiomqtt: Any) -> dict[str, Any]:
        password = self.settings.password
        will = None
        if self.will_topic is not None:
            will = aiomqtt.Will(
                topic=self.will_topic,
                payload=OFFLINE_PAYLOAD,
                qos=1,
                retain=True,
            )
        return {
            "hostname": self.settings.host,
            "port": self.settings.port,
            "username": self.settings.username,
            "password": password.get_secret_value() if password is not None else None,
            "identifier": self.settings.client_id or None,
            "will": will,
        }

    async def _serve(self, client: Any) -> None:
        self._client = client
        try:
            for topic in self._topics:
                await client.subscribe(topic, qos=1)
            self._online.set()
            logger.info("MQTT connected to %s:%d", self.settings.host, self.settings.port)
            async for message in client.messages:
                await self._dispatch(message)
        finally:
            self._online.clear()
            self._client = None

    async def _dispatch(self, message: Any) -> None:
        raw = message.payload
        if raw is None:
            return
        topic = str(message.topic)
        payload = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
        for handler in self._handlers:
            try:
                await handler(topic, payload)
            except Exception:
                logger.exception("MQTT handler failed for %s", topic)
