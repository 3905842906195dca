"""Publishes connection status, device messages and pairing results to MQTT.

Topic layout::

    {prefix}/status            ← connection status (retained JSON)
    {prefix}/message           ← one JSON object per device message
    {prefix}/pair/result       ← {"token": ...} or {"error": ...}
    {prefix}/discover/result   ← [{"name": ..., "uid": ...}, ...]

Status payload schema::

    {
        "level": "ok",
        "text": "connected",
        "state": "connected",
        "device": "Living Room",
        "timestamp": "2026-10-19T12:00:00+00:00"
    }

All publication is fire-and-forget: failures are logged, never
propagated, so a broker outage cannot disturb the device connection.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from atvbridge._backends import DiscoveredDevice
from atvbridge._errors import PairingResult
from atvbridge._manager import ConnectionManager, StatusLevel
from atvbridge._mqtt import MqttPort

logger = logging.getLogger(__name__)


@dataclass
class EventPublisher:
    """Turns manager and pairing events into MQTT publications.

    Args:
        mqtt: MQTT port used for publishing.
        topic_prefix: Base prefix for all topics.
        device: Device label included in status payloads.
        clock: Optional callable returning a :class:`~datetime.datetime`
            for deterministic timestamps in tests.
    """

    mqtt: MqttPort
    topic_prefix: str
    device: str = ""
    clock: Callable[[], datetime] | None = field(default=None, repr=False)

    def attach(self, manager: ConnectionManager) -> None:
        """Forward every status and message event of *manager*."""

        async def on_status(level: StatusLevel, text: str) -> None:
            await self.publish_status(level, text, state=str(manager.state))

        manager.on_status(on_status)
        manager.on_message(self.publish_message)

    async def publish_status(
        self,
        level: StatusLevel,
        text: str,
        *,
        state: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "level": str(level),
            "text": text,
            "state": state,
            "device": self.device,
            "timestamp": self._now().isoformat(),
        }
        log = logger.warning if level is StatusLevel.ERROR else logger.info
        log("Status: %s (%s)", text, level)
        await self._safe_publish("status", json.dumps(payload), retain=True)

    async def publish_message(self, payload: dict[str, Any]) -> None:
        await self._safe_publish("message", json.dumps(payload, default=str))

    async def publish_pairing_result(self, result: PairingResult) -> None:
        await self._safe_publish("pair/result", result.to_json())

    async def publish_discovery(self, devices: list[DiscoveredDevice]) -> None:
        body = json.dumps([device.to_dict() for device in devices])
        await self._safe_publish("discover/result", body)

    def _now(self) -> datetime:
        return self.clock() if self.clock is not None else datetime.now(UTC)

    async def _safe_publish(
        self,
        suffix: str,
        payload: str,
        *,
        retain: bool = False,
    ) -> None:
        topic = f"{self.topic_prefix}/{suffix}"
        try:
            await self.mqtt.publish(topic, payload, retain=retain, qos=1)
        except Exception:
            logger.exception("Failed to publish to %s", topic)
