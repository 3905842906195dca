"""MQTT command topic routing.

Extracts command names from ``{prefix}/{command}/set`` topics and
dispatches the payload to the registered handler::

    {prefix}/pin/set       → submit a PIN to the pairing in flight
    {prefix}/pair/set      → start pairing (payload = device identifier)
    {prefix}/discover/set  → run a discovery scan

Handlers receive only the decoded payload.  Handler errors are logged
and never propagated back into the MQTT receive loop.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

CommandHandler = Callable[[str], Awaitable[None]]


class CommandRouter:
    """Routes ``{prefix}/{command}/set`` messages to per-command handlers."""

    def __init__(self, *, topic_prefix: str) -> None:
        self._topic_prefix = topic_prefix
        self._handlers: dict[str, CommandHandler] = {}

    def register(self, command: str, handler: CommandHandler) -> None:
        """Register the handler for *command*.

        Raises:
            ValueError: If *command* already has a handler or contains ``/``.
        """
        if not command or "/" in command:
            msg = f"Invalid command name '{command}'"
            raise ValueError(msg)
        if command in self._handlers:
            msg = f"Handler already registered for command '{command}'"
            raise ValueError(msg)
        self._handlers[command] = handler

    async def route(self, topic: str, payload: str) -> None:
        """Dispatch an inbound message; unknown topics are ignored."""
        command = self._extract_command(topic)
        if command is None:
            return
        handler = self._handlers.get(command)
        if handler is None:
            logger.warning("No handler for command '%s' (topic: %s)", command, topic)
            return
        try:
            await handler(payload)
        except Exception:
            logger.exception("Command '%s' failed", command)

    def _extract_command(self, topic: str) -> str | None:
        prefix = self._topic_prefix + "/"
        suffix = "/set"
        if not (topic.startswith(prefix) and topic.endswith(suffix)):
            return None
        middle = topic[len(prefix) : -len(suffix)]
        if "/" in middle or not middle:
            return None
        return middle

    @property
    def subscriptions(self) -> list[str]:
        """Topics to subscribe to for every registered command."""
        return [f"{self._topic_prefix}/{command}/set" for command in self._handlers]
