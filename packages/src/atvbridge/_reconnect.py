"""Debounced fixed-delay reconnect policy.

A reconnect is scheduled only when none is pending, so a burst of
close/error events produces a single retry.  The delay is fixed (15 s by
default) and retries are unbounded unless ``max_retries`` is set.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from atvbridge._clock import ClockPort, TimerHandle

logger = logging.getLogger(__name__)

ReconnectAction = Callable[[], Awaitable[None]]


class ReconnectPolicy:
    """Single-shot delayed retry with at most one outstanding timer.

    Args:
        clock: Scheduler used to arm the retry timer.
        action: Coroutine function run when the timer fires.
        delay: Seconds between the loss and the retry.
        max_retries: Consecutive retries allowed before ``schedule()``
            refuses; ``None`` retries forever.
    """

    def __init__(
        self,
        *,
        clock: ClockPort,
        action: ReconnectAction,
        delay: float = 15.0,
        max_retries: int | None = None,
    ) -> None:
        if delay <= 0:
            msg = "Reconnect delay must be positive"
            raise ValueError(msg)
        if max_retries is not None and max_retries < 1:
            msg = "max_retries must be at least 1"
            raise ValueError(msg)
        self._clock = clock
        self._action = action
        self.delay = delay
        self.max_retries = max_retries
        self._timer: TimerHandle | None = None
        self.attempts = 0

    @property
    def pending(self) -> bool:
        return self._timer is not None

    @property
    def exhausted(self) -> bool:
        return self.max_retries is not None and self.attempts >= self.max_retries

    def schedule(self) -> bool:
        """Arm the retry timer.

        Returns:
            ``True`` if a timer was armed, ``False`` if one was already
            pending or the retry cap is reached.
        """
        if self._timer is not None:
            logger.debug("Reconnect already pending")
            return False
        if self.exhausted:
            logger.debug("Reconnect cap of %s reached", self.max_retries)
            return False
        self.attempts += 1
        logger.info(
            "Reconnecting in %.1fs (attempt %d)",
            self.delay,
            self.attempts,
        )
        self._timer = self._clock.call_later(self.delay, self._fire)
        return True

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def reset(self) -> None:
        """Cancel any pending retry and zero the attempt counter."""
        self.cancel()
        self.attempts = 0

    def _fire(self) -> Awaitable[None]:
        self._timer = None
        return self._action()
