"""Monotonic clock and timer scheduling port with an asyncio adapter.

Provides :class:`ClockPort` (Protocol) and :class:`SystemClock`.  Every
timer in atvbridge (heartbeat, reconnect, startup delay) is armed through
``call_later()`` so tests can swap in a deterministic fake clock and
advance simulated time instead of sleeping.

Callbacks may be plain functions or return an awaitable.  Awaitables are
wrapped in tasks that the clock keeps a strong reference to until they
finish.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None] | None]
"""Zero-argument callback fired by a timer; may return an awaitable."""


@runtime_checkable
class TimerHandle(Protocol):
    """Cancellable handle returned by :meth:`ClockPort.call_later`."""

    def cancel(self) -> None: ...


@runtime_checkable
class ClockPort(Protocol):
    """Monotonic time source plus one-shot timer scheduling.

    The production implementation wraps ``time.monotonic()`` and
    ``loop.call_later()``.  Tests inject a fake whose time only moves
    when the test advances it.
    """

    def now(self) -> float:
        """Return monotonic time in seconds (arbitrary epoch)."""
        ...

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        """Fire *callback* once after *delay* seconds.

        Returns:
            A handle whose ``cancel()`` prevents the callback from firing.
        """
        ...


class SystemClock:
    """Production clock backed by the running asyncio event loop.

    Usage::

        clock = SystemClock()
        handle = clock.call_later(15.0, reconnect)
        ...
        handle.cancel()
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    def now(self) -> float:
        """Return monotonic time in seconds."""
        return time.monotonic()

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        """Schedule *callback* on the running loop after *delay* seconds."""
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, self._fire, callback)

    def _fire(self, callback: TimerCallback) -> None:
        try:
            result = callback()
        except Exception:
            logger.exception("Timer callback %r failed", callback)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Timer task failed",
                exc_info=task.exception(),
            )
