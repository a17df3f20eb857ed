"""Helpers for work that must only run on the lock holder.

Example:
    @leader_only("daily-report")
    async def generate_daily_report():
        # Only runs on the instance that acquires the lock
        ...

    async with LeaderOnlyTask("aggregation") as task:
        if task.should_run:
            await aggregate_data()
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import ParamSpec, TypeVar

from authoritah.authority import Authority
from authoritah.store.base import CoordinationStore

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


class LeaderOnlyTask:
    """One-shot contention for a lock around a block of work.

    The lock is attempted once on entry and released on exit; there is no
    waiting for a busy lock.
    """

    def __init__(
        self,
        name: str,
        ttl: float | None = None,
        store: CoordinationStore | None = None,
    ):
        self.name = name
        self.ttl = ttl
        self.store = store
        self._authority: Authority | None = None

    @property
    def should_run(self) -> bool:
        """Check if the task should run (we hold the lock)."""
        return self._authority is not None and self._authority.is_leader

    @property
    def authority(self) -> Authority | None:
        return self._authority

    async def __aenter__(self) -> LeaderOnlyTask:
        self._authority = Authority(self.name, ttl=self.ttl, store=self.store)
        try:
            await self._authority.__aenter__()
        except BaseException:
            await self._authority.close()
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._authority:
            await self._authority.__aexit__(exc_type, exc_val, exc_tb)


def leader_only(
    name: str,
    ttl: float | None = None,
    store: CoordinationStore | None = None,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R | None]]]:
    """Decorator that makes a coroutine function only run on the lock holder.

    Args:
        name: Lock name
        ttl: Lease TTL in seconds
        store: Coordination store shared by all instances

    Returns None without calling the function when the lock is taken.
    """

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R | None]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R | None:
            async with LeaderOnlyTask(name, ttl=ttl, store=store) as task:
                if task.should_run:
                    return await func(*args, **kwargs)
                logger.debug(f"Skipping {func.__name__} - not leader for '{name}'")
                return None

        return wrapper

    return decorator
