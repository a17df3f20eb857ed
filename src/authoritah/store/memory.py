"""In-process coordination store.

Keys live in a dict, TTLs are timers on the running event loop and every
watcher gets its own queue. Suitable for tests and single-process
deployments; for multiple processes use :class:`~authoritah.store.redis.RedisStore`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field

from authoritah.errors import (
    CompareFailedError,
    KeyExistsError,
    KeyNotFoundError,
    StoreUnavailableError,
    WatchTerminatedError,
)
from authoritah.store.base import CoordinationStore, WatchAction, WatchEvent, WatchStream

logger = logging.getLogger(__name__)

_CLOSED = object()
_TERMINATED = object()


@dataclass(eq=False)
class _Entry:
    value: str
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    def cancel(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class _MemoryWatchStream(WatchStream):
    def __init__(self, store: MemoryStore, key: str):
        self._store = store
        self._key = key
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    def push(self, item: object) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    async def __anext__(self) -> WatchEvent:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if item is _TERMINATED:
            self._closed = True
            self._store._unregister(self._key, self)
            raise WatchTerminatedError(self._key, f"Watch on '{self._key}' terminated")
        assert isinstance(item, WatchEvent)
        return item

    async def aclose(self) -> None:
        if self._closed:
            return
        self._store._unregister(self._key, self)
        self._queue.put_nowait(_CLOSED)
        self._closed = True


class MemoryStore(CoordinationStore):
    """Coordination store kept entirely in memory."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        self._watchers: dict[str, set[_MemoryWatchStream]] = defaultdict(set)
        self._revision = 0
        self._closed = False

    @property
    def revision(self) -> int:
        """Revision of the most recent change."""
        return self._revision

    def _check_open(self, key: str) -> None:
        if self._closed:
            raise StoreUnavailableError(key, "Memory store is closed")

    def _next_revision(self) -> int:
        self._revision += 1
        return self._revision

    def _publish(self, event: WatchEvent) -> None:
        for stream in list(self._watchers.get(event.key, ())):
            stream.push(event)

    def _unregister(self, key: str, stream: _MemoryWatchStream) -> None:
        watchers = self._watchers.get(key)
        if watchers is not None:
            watchers.discard(stream)
            if not watchers:
                del self._watchers[key]

    def _expire(self, key: str, entry: _Entry) -> None:
        if self._entries.get(key) is not entry:
            return
        del self._entries[key]
        entry.timer = None
        logger.debug(f"Key '{key}' expired")
        self._publish(
            WatchEvent(
                action=WatchAction.EXPIRE,
                key=key,
                prev_value=entry.value,
                revision=self._next_revision(),
            )
        )

    async def write(
        self,
        key: str,
        value: str,
        ttl: int | None = None,
        *,
        require_absent: bool = False,
        require_value: str | None = None,
    ) -> int:
        self._check_open(key)
        current = self._entries.get(key)

        if require_absent:
            if current is not None:
                raise KeyExistsError(key, current.value)
            action = WatchAction.CREATE
        elif require_value is not None:
            if current is None or current.value != require_value:
                raise CompareFailedError(
                    key, require_value, current.value if current is not None else None
                )
            action = WatchAction.COMPARE_AND_SWAP
        else:
            action = WatchAction.SET

        if current is not None:
            current.cancel()

        entry = _Entry(value)
        if ttl:
            loop = asyncio.get_running_loop()
            entry.timer = loop.call_later(ttl, self._expire, key, entry)
        self._entries[key] = entry

        revision = self._next_revision()
        self._publish(
            WatchEvent(
                action=action,
                key=key,
                value=value,
                prev_value=current.value if current is not None else None,
                revision=revision,
            )
        )
        return revision

    async def delete(self, key: str, *, require_value: str | None = None) -> int:
        self._check_open(key)
        current = self._entries.get(key)

        if require_value is not None:
            if current is None or current.value != require_value:
                raise CompareFailedError(
                    key, require_value, current.value if current is not None else None
                )
            action = WatchAction.COMPARE_AND_DELETE
        else:
            if current is None:
                raise KeyNotFoundError(key)
            action = WatchAction.DELETE

        current.cancel()
        del self._entries[key]

        revision = self._next_revision()
        self._publish(
            WatchEvent(action=action, key=key, prev_value=current.value, revision=revision)
        )
        return revision

    async def get(self, key: str) -> str | None:
        self._check_open(key)
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    async def watch(self, key: str) -> WatchStream:
        self._check_open(key)
        stream = _MemoryWatchStream(self, key)
        self._watchers[key].add(stream)
        return stream

    def kill_watchers(self, key: str | None = None) -> int:
        """Terminate watch streams permanently, as if resubscription failed.

        Returns the number of streams terminated.
        """
        keys = [key] if key is not None else list(self._watchers)
        killed = 0
        for watched_key in keys:
            for stream in list(self._watchers.get(watched_key, ())):
                stream.push(_TERMINATED)
                killed += 1
        return killed

    async def close(self) -> None:
        """Cancel TTL timers and end all watch streams."""
        self._closed = True
        for entry in self._entries.values():
            entry.cancel()
        for streams in list(self._watchers.values()):
            for stream in list(streams):
                await stream.aclose()
