"""Distributed lock and leader election over a watchable TTL store.

Provides:
- Authority: lease-based contender for a named lock
- Stores: MemoryStore (in-process) and RedisStore (shared)
- leader_only / LeaderOnlyTask for singleton work

Example:
    from authoritah import Authority

    authority = Authority("cleanup-job")
    authority.on("acquired", start_cleanup)
    authority.on("lost", stop_cleanup)
    await authority.start()
"""

from authoritah.authority import Authority, AuthorityState
from authoritah.errors import (
    AuthoritahError,
    AuthorityDisconnectedError,
    CompareFailedError,
    KeyExistsError,
    KeyNotFoundError,
    StoreError,
    StoreUnavailableError,
    WatchTerminatedError,
)
from authoritah.heartbeat import HeartbeatScheduler
from authoritah.leader import LeaderOnlyTask, leader_only
from authoritah.notifier import AuthorityEvent, EventNotifier, LostInfo, LostReason
from authoritah.store import CoordinationStore, MemoryStore, RedisStore, WatchAction, WatchEvent

__all__ = [
    "AuthoritahError",
    "Authority",
    "AuthorityDisconnectedError",
    "AuthorityEvent",
    "AuthorityState",
    "CompareFailedError",
    "CoordinationStore",
    "EventNotifier",
    "HeartbeatScheduler",
    "KeyExistsError",
    "KeyNotFoundError",
    "LeaderOnlyTask",
    "LostInfo",
    "LostReason",
    "MemoryStore",
    "RedisStore",
    "StoreError",
    "StoreUnavailableError",
    "WatchAction",
    "WatchEvent",
    "WatchTerminatedError",
    "leader_only",
]
