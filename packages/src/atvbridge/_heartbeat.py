"""Periodic keep-alive while the device connection is up.

The heartbeat re-arms a single one-shot timer after each beat, so at
most one timer is ever outstanding.  ``start()`` cancels any existing
timer before arming a new one; ``stop()`` cancels unconditionally.

Failures of the keep-alive action are swallowed.  A failed heartbeat
never changes connection state; only the backend's own close/error
events do that.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from atvbridge._clock import ClockPort, TimerHandle

logger = logging.getLogger(__name__)

HeartbeatAction = Callable[[], Awaitable[None]]


class Heartbeat:
    """Fires *action* every *interval* seconds between ``start()`` and ``stop()``."""

    def __init__(
        self,
        *,
        clock: ClockPort,
        interval: float,
        action: HeartbeatAction,
    ) -> None:
        if interval <= 0:
            msg = "Heartbeat interval must be positive"
            raise ValueError(msg)
        self._clock = clock
        self._interval = interval
        self._action = action
        self._timer: TimerHandle | None = None
        self._running = False
        self.beats = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> bool:
        """Whether a heartbeat timer is currently armed."""
        return self._timer is not None

    def start(self) -> None:
        self._cancel_timer()
        self._running = True
        self._arm()

    def stop(self) -> None:
        self._running = False
        self._cancel_timer()

    # -- internals ----------------------------------------------------------

    def _arm(self) -> None:
        self._timer = self._clock.call_later(self._interval, self._fire)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self) -> Awaitable[None]:
        self._timer = None
        return self._beat()

    async def _beat(self) -> None:
        if not self._running:
            return
        self.beats += 1
        try:
            await self._action()
        except Exception as exc:
            logger.debug("Heartbeat failed (ignored): %s", exc)
        # stop() or a restart during the action must not leave a second timer
        if self._running and self._timer is None:
            self._arm()
