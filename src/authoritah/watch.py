"""Watch subscription on a lock key and translation of its change events."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum

from authoritah.store.base import CoordinationStore, WatchAction, WatchEvent, WatchStream

logger = logging.getLogger(__name__)


class Transition(str, Enum):
    """What a change event means for one instance."""

    OWN_EXPIRED = "own_expired"
    OTHER_EXPIRED = "other_expired"
    OWN_REMOVED = "own_removed"
    OTHER_REMOVED = "other_removed"
    FOREIGN_WRITE = "foreign_write"
    IGNORE = "ignore"


def classify(event: WatchEvent, owner_token: str) -> Transition:
    """Map a change event to a transition from the point of view of ``owner_token``.

    Removals are judged by the value the key held before the change; writes
    only matter when they name somebody else.
    """
    own_previous = event.prev_value == owner_token

    if event.action is WatchAction.EXPIRE:
        return Transition.OWN_EXPIRED if own_previous else Transition.OTHER_EXPIRED

    if event.action in (WatchAction.DELETE, WatchAction.COMPARE_AND_DELETE):
        return Transition.OWN_REMOVED if own_previous else Transition.OTHER_REMOVED

    if event.value is not None and event.value != owner_token:
        return Transition.FOREIGN_WRITE

    return Transition.IGNORE


class WatchSubscription:
    """Persistent subscription feeding change events of one key to a consumer.

    Args:
        store: Store to subscribe to
        key: Key to watch
        deliver: Called with every change event, in delivery order
        on_terminated: Called once with the error that ended the subscription
    """

    def __init__(
        self,
        store: CoordinationStore,
        key: str,
        deliver: Callable[[WatchEvent], None],
        on_terminated: Callable[[BaseException], None],
    ):
        self.store = store
        self.key = key
        self.deliver = deliver
        self.on_terminated = on_terminated
        self.events_received = 0
        self._stream: WatchStream | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Open the subscription and start delivering events."""
        if self._task is not None:
            return
        self._stream = await self.store.watch(self.key)
        self._task = asyncio.create_task(self._consume())
        logger.debug(f"Watching '{self.key}'")

    async def _consume(self) -> None:
        assert self._stream is not None
        try:
            async for event in self._stream:
                if event.key != self.key:
                    continue
                self.events_received += 1
                self.deliver(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Watch on '{self.key}' terminated: {e}")
            self.on_terminated(e)
        else:
            logger.debug(f"Watch on '{self.key}' ended")

    async def stop(self) -> None:
        """Stop delivering events and close the stream."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._stream is not None:
            await self._stream.aclose()
            self._stream = None
