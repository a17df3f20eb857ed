"""Named notifications emitted by an authority."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class AuthorityEvent(str, Enum):
    """Notifications an authority emits."""

    READY = "ready"  # contention started
    ACQUIRED = "acquired"  # lease confirmed by the store
    TAKEN = "taken"  # lost a contention race, not fatal
    LOST = "lost"  # held lease was removed or expired
    EXPIRED = "expired"  # another instance's lease expired
    ERROR = "error"  # store failure with no caller to report to
    DISCONNECTED = "disconnected"  # watch subscription is gone for good


class LostReason(str, Enum):
    EXPIRED = "expired"
    DELETED = "deleted"
    RELEASED = "released"  # our own release() removed the key
    OVERWRITTEN = "overwritten"
    MISSED = "missed"  # found out by a failed renewal, not by a watch event
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class LostInfo:
    """Payload of the ``lost`` notification."""

    reason: LostReason

    @property
    def expired(self) -> bool:
        return self.reason is LostReason.EXPIRED


Listener = Callable[..., Any]


class EventNotifier:
    """Synchronous emitter with optional coroutine listeners.

    Plain listeners run inline; coroutine listeners are scheduled as tasks.
    A failing listener is logged and never affects the emitter.
    """

    def __init__(self) -> None:
        self._listeners: dict[AuthorityEvent, list[Listener]] = defaultdict(list)
        self._waiters: dict[AuthorityEvent, list[asyncio.Future[tuple[Any, ...]]]] = defaultdict(
            list
        )
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: AuthorityEvent | str, listener: Listener) -> Listener:
        self._listeners[AuthorityEvent(event)].append(listener)
        return listener

    def off(self, event: AuthorityEvent | str, listener: Listener) -> None:
        listeners = self._listeners.get(AuthorityEvent(event), [])
        if listener in listeners:
            listeners.remove(listener)

    def once(self, event: AuthorityEvent | str, listener: Listener) -> Listener:
        name = AuthorityEvent(event)

        def wrapper(*args: Any) -> Any:
            self.off(name, wrapper)
            return listener(*args)

        return self.on(name, wrapper)

    def next_event(self, event: AuthorityEvent | str) -> asyncio.Future[tuple[Any, ...]]:
        """Return a future resolved with the arguments of the next emission."""
        name = AuthorityEvent(event)
        future: asyncio.Future[tuple[Any, ...]] = asyncio.get_running_loop().create_future()
        self._waiters[name].append(future)
        future.add_done_callback(lambda done: self._discard_waiter(name, done))
        return future

    def _discard_waiter(self, name: AuthorityEvent, future: asyncio.Future[Any]) -> None:
        waiters = self._waiters.get(name)
        if waiters is not None and future in waiters:
            waiters.remove(future)
            if not waiters:
                del self._waiters[name]

    def waiter_count(self, event: AuthorityEvent | str) -> int:
        return len(self._waiters.get(AuthorityEvent(event), []))

    def listener_count(self, event: AuthorityEvent | str) -> int:
        return len(self._listeners.get(AuthorityEvent(event), []))

    def emit(self, event: AuthorityEvent | str, *args: Any) -> None:
        name = AuthorityEvent(event)

        waiters = self._waiters.pop(name, [])
        for future in waiters:
            if not future.done():
                future.set_result(args)

        for listener in list(self._listeners.get(name, [])):
            try:
                result = listener(*args)
            except Exception:
                logger.exception(f"Listener for '{name.value}' failed")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Async listener failed",
                exc_info=task.exception(),
            )

    async def drain(self) -> None:
        """Wait for scheduled coroutine listeners to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def clear(self) -> None:
        self._listeners.clear()
        for waiters in self._waiters.values():
            for future in waiters:
                future.cancel()
        self._waiters.clear()
