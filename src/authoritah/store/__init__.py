"""Coordination stores for authoritah.

- MemoryStore: in-process, for tests and single-process deployments
- RedisStore: Redis server shared by all contenders
"""

from authoritah.store.base import CoordinationStore, WatchAction, WatchEvent, WatchStream
from authoritah.store.memory import MemoryStore
from authoritah.store.redis import RedisStore, close_redis, get_redis

__all__ = [
    "CoordinationStore",
    "MemoryStore",
    "RedisStore",
    "WatchAction",
    "WatchEvent",
    "WatchStream",
    "close_redis",
    "get_redis",
]
