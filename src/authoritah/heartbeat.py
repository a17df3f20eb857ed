"""Throttled lease renewal.

Hosting code tends to call ``heartbeat()`` from hot paths (every message
read, every loop tick). The scheduler lets the first call of each interval
through and drops the rest, so renewal traffic is bounded by the interval
no matter how often it is invoked.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class HeartbeatScheduler:
    """Rate limiter and periodic driver for a renewal coroutine.

    Args:
        renew: Coroutine function performing one renewal
        interval: Minimum number of seconds between two renewals
        on_error: Called with the exception when a background renewal fails
        clock: Monotonic time source (seconds)
    """

    def __init__(
        self,
        renew: Callable[[], Awaitable[Any]],
        interval: float,
        on_error: Callable[[BaseException], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.renew = renew
        self.interval = interval
        self.on_error = on_error
        self._clock = clock
        self._last_invoked: float | None = None
        self._pending: asyncio.Task[Any] | None = None
        self._timer: asyncio.Task[None] | None = None

    @property
    def last_invoked(self) -> float | None:
        return self._last_invoked

    @property
    def running(self) -> bool:
        """Whether the periodic timer is active."""
        return self._timer is not None and not self._timer.done()

    def trigger(self) -> asyncio.Task[Any] | None:
        """Renew now unless a renewal already went out this interval.

        Returns the renewal task, or None when the call was dropped.
        """
        now = self._clock()
        if self._last_invoked is not None and now - self._last_invoked < self.interval:
            return None

        return self._fire()

    def _fire(self) -> asyncio.Task[Any]:
        self._last_invoked = self._clock()
        task = asyncio.ensure_future(self.renew())
        task.add_done_callback(self._renewal_done)
        self._pending = task
        return task

    def _renewal_done(self, task: asyncio.Task[Any]) -> None:
        if self._pending is task:
            self._pending = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Heartbeat renewal failed: {exc}")
            if self.on_error is not None:
                self.on_error(exc)

    def start(self) -> None:
        """Start renewing every interval in the background."""
        if self.running:
            return
        self._timer = asyncio.create_task(self._tick_loop())

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.wait([self._fire()])
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        """Stop the periodic timer and wait out an in-flight renewal."""
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

        if self._pending is not None:
            await asyncio.wait([self._pending])

    def cancel(self) -> None:
        """Cancel the periodic timer without waiting for it."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def reset(self) -> None:
        """Forget the last invocation so the next trigger passes through."""
        self._last_invoked = None
