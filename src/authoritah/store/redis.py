"""Redis implementation of the coordination store.

Redis has conditional writes (via Lua) and key expiry, but no watch stream
that carries the previous value of a key. The scripts below make one:

- Every mutation runs inside a script that bumps ``<key>:revision`` and
  PUBLISHes a JSON change event on ``<key>:events``.
- The last written value is mirrored into ``<key>:owner`` without a TTL.
  When the lock key expires, the mirror is still there; the first script
  to notice (the reap step) publishes an ``expire`` event carrying the
  mirrored value and deletes the mirror, so each expiry is reported once.
- Watchers also listen on the keyspace notification channel for the key
  and run the reap script when Redis reports ``expired``.

Key layout for lock key ``K``::

    K               owner token, with TTL
    K:owner         owner token mirror, no TTL
    K:revision      change counter
    K:events        pub/sub channel of change events
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, cast

import orjson
import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from authoritah.config import settings
from authoritah.errors import (
    CompareFailedError,
    KeyExistsError,
    KeyNotFoundError,
    StoreUnavailableError,
    WatchTerminatedError,
)
from authoritah.store.base import CoordinationStore, WatchAction, WatchEvent, WatchStream

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from redis.asyncio.client import PubSub

logger = logging.getLogger(__name__)

# Script status codes (revisions are always positive)
CONFLICT = -1
COMPARE_FAILED = -2
NOT_FOUND = -3

_REAP = """
local function reap()
  if redis.call('EXISTS', KEYS[1]) == 0 then
    local prev = redis.call('GET', KEYS[2])
    if prev then
      redis.call('DEL', KEYS[2])
      local rev = redis.call('INCR', KEYS[3])
      redis.call('PUBLISH', KEYS[4], cjson.encode({
        action = 'expire', key = KEYS[1], prev_value = prev, revision = rev
      }))
    end
  end
end
"""

REAP_SCRIPT = (
    _REAP
    + """
reap()
return 0
"""
)

WRITE_SCRIPT = (
    _REAP
    + """
reap()
local current = redis.call('GET', KEYS[1])
local action = 'set'
if ARGV[3] == 'create' then
  if current then return -1 end
  action = 'create'
elseif ARGV[3] == 'cas' then
  if current ~= ARGV[4] then return -2 end
  action = 'compareAndSwap'
end
local ttl = tonumber(ARGV[2])
if ttl > 0 then
  redis.call('SET', KEYS[1], ARGV[1], 'EX', ttl)
else
  redis.call('SET', KEYS[1], ARGV[1])
end
redis.call('SET', KEYS[2], ARGV[1])
local rev = redis.call('INCR', KEYS[3])
local event = {action = action, key = KEYS[1], value = ARGV[1], revision = rev}
if current then event['prev_value'] = current end
redis.call('PUBLISH', KEYS[4], cjson.encode(event))
return rev
"""
)

DELETE_SCRIPT = (
    _REAP
    + """
reap()
local current = redis.call('GET', KEYS[1])
local action = 'delete'
if ARGV[1] == 'cad' then
  if current ~= ARGV[2] then return -2 end
  action = 'compareAndDelete'
elseif not current then
  return -3
end
redis.call('DEL', KEYS[1], KEYS[2])
local rev = redis.call('INCR', KEYS[3])
redis.call('PUBLISH', KEYS[4], cjson.encode({
  action = action, key = KEYS[1], prev_value = current, revision = rev
}))
return rev
"""
)

# Module-level client shared by stores built without an explicit client
_redis_client: Redis | None = None


def get_redis() -> Redis:
    """Get or create the shared Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(  # type: ignore[no-untyped-call]
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    """Close the shared Redis client."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


def _decode(value: Any) -> str | None:
    if value is None:
        return None
    return value.decode() if isinstance(value, bytes) else str(value)


def lock_keys(key: str) -> list[str]:
    """Keys touched by the scripts, in KEYS[] order."""
    return [key, f"{key}:owner", f"{key}:revision", f"{key}:events"]


def events_channel(key: str) -> str:
    return f"{key}:events"


def parse_event(data: bytes | str) -> WatchEvent:
    """Decode a change event published by the scripts."""
    try:
        parsed = orjson.loads(data)
        return WatchEvent(
            action=WatchAction(parsed["action"]),
            key=parsed["key"],
            value=parsed.get("value"),
            prev_value=parsed.get("prev_value"),
            revision=int(parsed.get("revision", 0)),
        )
    except (orjson.JSONDecodeError, KeyError, ValueError, TypeError) as e:
        raise StoreUnavailableError("", f"Malformed change event: {e}") from e


class RedisStore(CoordinationStore):
    """Coordination store on top of a Redis server.

    Args:
        client: Redis client to use (the shared client from settings if None)
        configure_keyspace_events: Enable ``Kx`` keyspace notifications on first watch
    """

    def __init__(
        self,
        client: Redis | None = None,
        configure_keyspace_events: bool | None = None,
    ):
        self.client = client if client is not None else get_redis()
        self.configure_keyspace_events = (
            settings.redis_configure_keyspace_events
            if configure_keyspace_events is None
            else configure_keyspace_events
        )
        self._keyspace_configured = False
        self._write = self.client.register_script(WRITE_SCRIPT)
        self._delete = self.client.register_script(DELETE_SCRIPT)
        self._reap = self.client.register_script(REAP_SCRIPT)

    @property
    def db(self) -> int:
        return int(self.client.connection_pool.connection_kwargs.get("db", 0))

    async def _run(self, script: Any, key: str, args: list[Any]) -> int:
        try:
            result = await script(keys=lock_keys(key), args=args)
        except RedisError as e:
            raise StoreUnavailableError(key, f"Redis error for '{key}': {e}") from e
        try:
            return int(result)
        except (TypeError, ValueError) as e:
            raise StoreUnavailableError(key, f"Unexpected script reply {result!r}") from e

    async def write(
        self,
        key: str,
        value: str,
        ttl: int | None = None,
        *,
        require_absent: bool = False,
        require_value: str | None = None,
    ) -> int:
        if require_absent:
            mode = "create"
        elif require_value is not None:
            mode = "cas"
        else:
            mode = "set"

        result = await self._run(
            self._write, key, [value, int(ttl or 0), mode, require_value or ""]
        )
        if result == CONFLICT:
            raise KeyExistsError(key)
        if result == COMPARE_FAILED:
            raise CompareFailedError(key, require_value or "")
        return result

    async def delete(self, key: str, *, require_value: str | None = None) -> int:
        mode = "cad" if require_value is not None else "delete"
        result = await self._run(self._delete, key, [mode, require_value or ""])
        if result == COMPARE_FAILED:
            raise CompareFailedError(key, require_value or "")
        if result == NOT_FOUND:
            raise KeyNotFoundError(key)
        return result

    async def reap(self, key: str) -> None:
        """Publish a pending expiry of ``key``, if any."""
        await self._run(self._reap, key, [])

    async def get(self, key: str) -> str | None:
        try:
            return _decode(await self.client.get(key))
        except RedisError as e:
            raise StoreUnavailableError(key, f"Redis error for '{key}': {e}") from e

    async def ensure_keyspace_events(self) -> None:
        """Make sure Redis publishes ``expired`` keyspace notifications."""
        if self._keyspace_configured or not self.configure_keyspace_events:
            return
        try:
            config = await self.client.config_get("notify-keyspace-events")
            flags = _decode(config.get("notify-keyspace-events")) or ""
            missing = ""
            if "K" not in flags:
                missing += "K"
            if "x" not in flags and "A" not in flags:
                missing += "x"
            if missing:
                await self.client.config_set("notify-keyspace-events", flags + missing)
                logger.info(f"Enabled keyspace notifications '{flags + missing}'")
        except ResponseError as e:
            # Managed Redis offerings often forbid CONFIG; idle polling still reaps
            logger.warning(f"Could not configure keyspace notifications: {e}")
        except RedisError as e:
            raise StoreUnavailableError("", f"Redis error configuring notifications: {e}") from e
        self._keyspace_configured = True

    async def watch(self, key: str) -> WatchStream:
        await self.ensure_keyspace_events()
        stream = RedisWatchStream(self, key)
        await stream.subscribe()
        return stream

    async def close(self) -> None:
        await self.client.aclose()


class RedisWatchStream(WatchStream):
    """Pub/sub watch over the events channel and keyspace notifications.

    Reconnects with exponential backoff when the connection drops. Changes
    published while disconnected are lost; the reap on reconnect only
    recovers a missed expiry. While no messages arrive the key is reaped
    once per poll interval, so an expiry is still published when keyspace
    notifications are disabled or dropped.
    """

    def __init__(
        self,
        store: RedisStore,
        key: str,
        poll_timeout: float | None = None,
        reconnect_delay_initial: float | None = None,
        reconnect_delay_max: float | None = None,
        reconnect_delay_multiplier: float | None = None,
        max_reconnect_attempts: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.key = key
        self.events_channel = events_channel(key)
        self.keyspace_channel = f"__keyspace@{store.db}__:{key}"
        self.poll_timeout = poll_timeout or settings.watch_poll_timeout
        self.reconnect_delay_initial = (
            reconnect_delay_initial or settings.watch_reconnect_delay_initial
        )
        self.reconnect_delay_max = reconnect_delay_max or settings.watch_reconnect_delay_max
        self.reconnect_delay_multiplier = (
            reconnect_delay_multiplier or settings.watch_reconnect_delay_multiplier
        )
        self.max_reconnect_attempts = (
            max_reconnect_attempts or settings.watch_max_reconnect_attempts
        )
        self._clock = clock
        self._last_reap = clock()
        self._pubsub: PubSub | None = None
        self._closed = False

    async def subscribe(self) -> None:
        pubsub = self.store.client.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(self.events_channel, self.keyspace_channel)
        except RedisError as e:
            await self._close_pubsub(pubsub)
            raise StoreUnavailableError(self.key, f"Subscribe to '{self.key}' failed: {e}") from e
        self._pubsub = pubsub
        self._last_reap = self._clock()
        logger.debug(f"Subscribed to changes of '{self.key}'")

    async def _close_pubsub(self, pubsub: PubSub) -> None:
        try:
            await pubsub.aclose()
        except RedisError as e:
            logger.debug(f"Error closing pubsub for '{self.key}': {e}")

    async def _reset(self) -> None:
        if self._pubsub is not None:
            await self._close_pubsub(self._pubsub)
            self._pubsub = None

    async def _reap(self) -> None:
        self._last_reap = self._clock()
        try:
            await self.store.reap(self.key)
        except StoreUnavailableError as e:
            logger.warning(f"Reap of '{self.key}' failed: {e}")
            await self._reset()

    async def _reconnect(self) -> None:
        """Resubscribe with exponential backoff, or give up for good."""
        await self._reset()
        delay = self.reconnect_delay_initial
        for attempt in range(1, self.max_reconnect_attempts + 1):
            try:
                await self.subscribe()
                await self.store.reap(self.key)
                logger.info(f"Resubscribed to '{self.key}' after {attempt} attempt(s)")
                return
            except StoreUnavailableError as e:
                await self._reset()
                logger.warning(
                    f"Resubscribe attempt {attempt} for '{self.key}' failed: {e}, "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                delay = min(delay * self.reconnect_delay_multiplier, self.reconnect_delay_max)

        raise WatchTerminatedError(
            self.key,
            f"Max reconnect attempts ({self.max_reconnect_attempts}) reached for '{self.key}'",
        )

    async def __anext__(self) -> WatchEvent:
        while not self._closed:
            if self._pubsub is None:
                await self._reconnect()
            assert self._pubsub is not None

            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.poll_timeout
                )
            except RedisError as e:
                logger.warning(f"Watch connection for '{self.key}' dropped: {e}")
                await self._reset()
                continue

            if message is None or message.get("type") != "message":
                if self._clock() - self._last_reap >= self.poll_timeout:
                    await self._reap()
                continue

            channel = _decode(message.get("channel"))
            data = message.get("data")
            if channel == self.keyspace_channel:
                if _decode(data) == "expired":
                    await self._reap()
                continue

            try:
                return parse_event(cast(bytes | str, data))
            except StoreUnavailableError as e:
                logger.warning(f"Skipping change event on '{self.key}': {e}")

        raise StopAsyncIteration

    async def aclose(self) -> None:
        self._closed = True
        if self._pubsub is not None:
            try:
                await cast(Awaitable[None], self._pubsub.unsubscribe())
            except RedisError as e:
                logger.debug(f"Error unsubscribing from '{self.key}': {e}")
            await self._reset()
