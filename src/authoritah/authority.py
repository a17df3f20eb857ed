"""Lease-based authority over a named lock.

Any number of processes may construct an :class:`Authority` for the same
name. Each one contends for a single store key with a conditional create;
the store guarantees at most one succeeds. The winner keeps its lease
alive by renewing it before the TTL runs out, and everybody watches the
key so that a release, expiry or forced deletion hands the lock over
without polling.

Example:
    authority = Authority("cleanup-job", ttl=15)
    authority.on("acquired", lambda: logger.info("leading"))
    authority.on("lost", lambda info: logger.warning(f"lost: {info.reason}"))

    await authority.start()  # ready() plus a background heartbeat

    while running:
        if authority.is_leader:
            await do_leader_work()
        await asyncio.sleep(1)

    await authority.close()

    # Or renew from a hot path instead of a timer
    async for message in stream:
        authority.heartbeat()  # at most one renewal per heartbeat_interval
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from types import TracebackType
from typing import Any, TypeVar
from uuid import uuid4

from authoritah.config import settings
from authoritah.errors import (
    AuthoritahError,
    AuthorityDisconnectedError,
    CompareFailedError,
    KeyExistsError,
    StoreError,
)
from authoritah.heartbeat import HeartbeatScheduler
from authoritah.notifier import AuthorityEvent, EventNotifier, Listener, LostInfo, LostReason
from authoritah.observability.logging import LogContext
from authoritah.observability.metrics import (
    record_acquisition,
    record_loss,
    record_renewal,
    set_lock_held,
)
from authoritah.store.base import CoordinationStore, WatchEvent
from authoritah.watch import Transition, WatchSubscription, classify

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _generate_owner_token() -> str:
    """Generate an owner token unique to this instance."""
    hostname = os.environ.get("HOSTNAME", os.environ.get("POD_NAME", "unknown"))
    return f"{hostname}-{uuid4().hex}"


class AuthorityState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    HELD = "held"
    RELEASING = "releasing"
    DISCONNECTED = "disconnected"


@dataclass
class _Command:
    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]


@dataclass
class _WatchTerminated:
    error: BaseException


class Authority:
    """Contender for a distributed lock.

    All state changes happen on one task that drains an inbox of operation
    commands and watch events in arrival order, so store completions and
    change notifications never interleave inside a transition.

    Args:
        name: Logical lock name; all contenders using it share one store key
        ttl: Lease TTL in seconds, rounded up (default ``settings.lock_ttl``)
        heartbeat_interval: Minimum seconds between heartbeat renewals
        store: Coordination store (a :class:`RedisStore` from settings if None)
    """

    def __init__(
        self,
        name: str,
        *,
        ttl: float | None = None,
        heartbeat_interval: float | None = None,
        store: CoordinationStore | None = None,
    ):
        ttl = settings.lock_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")

        if store is None:
            from authoritah.store.redis import RedisStore

            store = RedisStore()

        self.name = name
        self.key = f"{settings.lock_prefix}{name}"
        self.owner_token = _generate_owner_token()
        self.ttl = math.ceil(ttl)
        self.heartbeat_interval = (
            settings.heartbeat_interval if heartbeat_interval is None else heartbeat_interval
        )
        self.store = store
        self.notifier = EventNotifier()
        self.watcher = WatchSubscription(
            store,
            self.key,
            deliver=self._deliver_event,
            on_terminated=self._deliver_termination,
        )
        self._heartbeat = HeartbeatScheduler(
            self.extend,
            self.heartbeat_interval,
            on_error=self._background_error,
        )

        self._ready = False
        self._locked = False
        self._releasing = False
        self._disconnected = False
        self._closed = False
        # Revision of the last confirmed acquisition or renewal; older events are history
        self._lease_revision = 0
        # Revision of our own guarded delete, reported as lost when its event arrives
        self._release_revision = 0

        self._inbox: asyncio.Queue[_Command | WatchEvent | _WatchTerminated] = asyncio.Queue()
        self._loop_task: asyncio.Task[None] | None = None
        self._start_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"Authority(key={self.key!r}, state={self.state.value})"

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        """Whether this instance wants the lock."""
        return self._ready

    @property
    def is_leader(self) -> bool:
        """Whether this instance believes it holds a confirmed lease."""
        return self._locked

    @property
    def state(self) -> AuthorityState:
        if self._disconnected:
            return AuthorityState.DISCONNECTED
        if self._releasing:
            return AuthorityState.RELEASING
        if self._locked:
            return AuthorityState.HELD
        if self._ready:
            return AuthorityState.ACQUIRING
        return AuthorityState.IDLE

    async def current_owner(self) -> str | None:
        """Owner token currently stored under the lock key."""
        return await self.store.get(self.key)

    async def wait_for_leadership(self, timeout: float | None = None) -> bool:
        """Wait until this instance holds the lock.

        Args:
            timeout: Maximum time to wait in seconds (None = wait forever)

        Returns:
            True if the lock is held, False on timeout
        """
        if self._locked:
            return True

        future = self.notifier.next_event(AuthorityEvent.ACQUIRED)
        try:
            await asyncio.wait_for(future, timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def on(self, event: AuthorityEvent | str, listener: Listener) -> Listener:
        return self.notifier.on(event, listener)

    def off(self, event: AuthorityEvent | str, listener: Listener) -> None:
        self.notifier.off(event, listener)

    def once(self, event: AuthorityEvent | str, listener: Listener) -> Listener:
        return self.notifier.once(event, listener)

    def next_event(self, event: AuthorityEvent | str) -> asyncio.Future[tuple[Any, ...]]:
        return self.notifier.next_event(event)

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def ready(self) -> bool:
        """Start contending and attempt to acquire the lock.

        If the lock is taken, another attempt is made automatically when the
        holder releases it, loses it or lets it expire. Calling it while the
        lease is held returns True without another create, so a holder never
        reports itself as taken.

        Returns:
            True if the lock is held afterwards.
        """
        return await self._submit(self._do_ready)

    async def release(self) -> None:
        """Stop contending and give the lock back if it is held.

        Safe in any state; resolves immediately when nothing is held. Once the
        store reports the removal, ``lost`` is emitted with reason ``released``.
        """
        if self._loop_task is None:
            self._ready = False
            return
        await self._enqueue_command(self._do_release)

    async def extend(self) -> bool:
        """Renew the lease for another TTL.

        Calls :meth:`ready` when not contending yet. When contending without
        holding the lock this does nothing.

        Returns:
            True if the lease was renewed or (re)acquired.
        """
        return await self._submit(self._do_extend)

    def heartbeat(self) -> asyncio.Task[Any] | None:
        """Throttled :meth:`extend`; at most one renewal per heartbeat interval.

        Returns the renewal task, or None if the call was dropped.
        """
        return self._heartbeat.trigger()

    async def start(self) -> bool:
        """Contend for the lock and renew it in the background."""
        acquired = await self.ready()
        self._heartbeat.start()
        logger.info(f"Started heartbeat for '{self.key}' every {self.heartbeat_interval}s")
        return acquired

    async def stop(self) -> None:
        """Stop background renewal and release the lock."""
        await self._heartbeat.stop()
        await self.release()

    async def close(self) -> None:
        """Release the lock and tear down the watch subscription and state loop."""
        if self._closed:
            return
        self._closed = True

        await self._heartbeat.stop()
        if self._loop_task is None:
            self._ready = False
            return

        try:
            await self._enqueue_command(self._do_release)
        finally:
            await self.watcher.stop()
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
            self._discard_inbox()
            logger.debug(f"Closed authority for '{self.key}'")

    async def __aenter__(self) -> Authority:
        """Context manager entry - contend for the lock once."""
        await self.ready()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context manager exit - release and tear down."""
        await self.close()

    # -------------------------------------------------------------------------
    # State loop
    # -------------------------------------------------------------------------

    async def _ensure_running(self) -> None:
        if self._closed:
            raise AuthoritahError(f"Authority for '{self.key}' is closed")
        if self._disconnected:
            raise AuthorityDisconnectedError(self.name)
        if self._loop_task is not None:
            return

        async with self._start_lock:
            if self._loop_task is not None:
                return
            await self.watcher.start()
            self._loop_task = asyncio.create_task(self._run())

    async def _submit(self, operation: Callable[[], Awaitable[T]]) -> T:
        await self._ensure_running()
        result: T = await self._enqueue_command(operation)
        return result

    async def _enqueue_command(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(_Command(operation, future))
        return await future

    def _deliver_event(self, event: WatchEvent) -> None:
        self._inbox.put_nowait(event)

    def _deliver_termination(self, error: BaseException) -> None:
        self._inbox.put_nowait(_WatchTerminated(error))

    def _discard_inbox(self) -> None:
        while not self._inbox.empty():
            item = self._inbox.get_nowait()
            if isinstance(item, _Command) and not item.future.done():
                item.future.cancel()

    async def _run(self) -> None:
        with LogContext(lock=self.key, owner=self.owner_token):
            while True:
                item = await self._inbox.get()
                if isinstance(item, _Command):
                    await self._execute(item)
                elif isinstance(item, WatchEvent):
                    await self._reconcile_safely(item)
                else:
                    await self._handle_watch_terminated(item.error)

    async def _execute(self, command: _Command) -> None:
        if command.future.done():
            return
        try:
            result = await command.operation()
        except asyncio.CancelledError:
            command.future.cancel()
            raise
        except Exception as e:
            if not command.future.done():
                command.future.set_exception(e)
        else:
            if not command.future.done():
                command.future.set_result(result)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _set_locked(self, locked: bool) -> None:
        self._locked = locked
        set_lock_held(self.key, locked)

    def _lose(self, reason: LostReason) -> None:
        self._set_locked(False)
        record_loss(self.key, reason.value)
        logger.warning(f"Lost '{self.key}' ({reason.value})")
        self.notifier.emit(AuthorityEvent.LOST, LostInfo(reason))

    def _check_connected(self) -> None:
        if self._disconnected:
            raise AuthorityDisconnectedError(self.name)

    async def _attempt_lock(self) -> bool:
        if self._locked:
            return True

        try:
            revision = await self.store.write(
                self.key, self.owner_token, self.ttl, require_absent=True
            )
        except KeyExistsError:
            record_acquisition(self.key, "taken")
            logger.debug(f"'{self.key}' is held by another instance")
            self.notifier.emit(AuthorityEvent.TAKEN)
            return False
        except StoreError:
            record_acquisition(self.key, "error")
            raise

        self._lease_revision = revision
        self._set_locked(True)
        record_acquisition(self.key, "acquired")
        logger.info(f"Acquired '{self.key}'")
        self.notifier.emit(AuthorityEvent.ACQUIRED)
        return True

    async def _do_ready(self) -> bool:
        self._check_connected()
        self._ready = True
        self.notifier.emit(AuthorityEvent.READY)
        return await self._attempt_lock()

    async def _do_release(self) -> None:
        self._ready = False
        if not self._locked:
            return

        self._releasing = True
        try:
            self._release_revision = await self.store.delete(
                self.key, require_value=self.owner_token
            )
            logger.info(f"Released '{self.key}'")
        except CompareFailedError:
            logger.info(f"Lease on '{self.key}' was already gone at release")
        finally:
            self._releasing = False
        self._set_locked(False)

    async def _do_extend(self) -> bool:
        self._check_connected()
        if not self._ready:
            return await self._do_ready()
        if not self._locked:
            return False

        try:
            revision = await self.store.write(
                self.key, self.owner_token, self.ttl, require_value=self.owner_token
            )
        except CompareFailedError:
            # The lease went away without a delivered watch event
            record_renewal(self.key, "mismatch")
            self._lose(LostReason.MISSED)
            if self._ready:
                return await self._attempt_lock()
            return False
        except StoreError:
            record_renewal(self.key, "error")
            raise

        self._lease_revision = revision
        record_renewal(self.key, "renewed")
        logger.debug(f"Renewed '{self.key}' for {self.ttl}s")
        return True

    async def _reconcile(self, event: WatchEvent) -> None:
        if self._locked and event.revision and event.revision < self._lease_revision:
            logger.debug(f"Ignoring {event.action.value} at revision {event.revision} (stale)")
            return

        was_locked = self._locked
        transition = classify(event, self.owner_token)

        if transition is Transition.OWN_EXPIRED:
            if not was_locked:
                return
            # Not renewed in time: stop contending until told otherwise
            self._set_locked(False)
            await self._do_release()
            self._lose(LostReason.EXPIRED)

        elif transition is Transition.OTHER_EXPIRED:
            if was_locked:
                self._lose(LostReason.OVERWRITTEN)
            self.notifier.emit(AuthorityEvent.EXPIRED)
            if self._ready:
                await self._attempt_lock()

        elif transition is Transition.OWN_REMOVED:
            if was_locked:
                self._lose(LostReason.DELETED)
            elif event.revision and event.revision == self._release_revision:
                self._release_revision = 0
                record_loss(self.key, LostReason.RELEASED.value)
                self.notifier.emit(AuthorityEvent.LOST, LostInfo(LostReason.RELEASED))
            if self._ready:
                await self._attempt_lock()

        elif transition is Transition.OTHER_REMOVED:
            if was_locked:
                self._lose(LostReason.OVERWRITTEN)
            if self._ready:
                await self._attempt_lock()

        elif transition is Transition.FOREIGN_WRITE:
            if was_locked:
                self._lose(LostReason.OVERWRITTEN)

    async def _reconcile_safely(self, event: WatchEvent) -> None:
        try:
            await self._reconcile(event)
        except StoreError as e:
            logger.error(f"Reconciling {event.action.value} on '{self.key}' failed: {e}")
            self.notifier.emit(AuthorityEvent.ERROR, e)
        except Exception as e:
            logger.exception(f"Unexpected error reconciling {event.action.value}")
            self.notifier.emit(AuthorityEvent.ERROR, e)

    async def _handle_watch_terminated(self, error: BaseException) -> None:
        logger.error(f"Watch on '{self.key}' is gone, giving up authority: {error}")
        self._disconnected = True
        self._heartbeat.cancel()

        was_locked = self._locked
        try:
            await self._do_release()
        except StoreError as e:
            logger.warning(f"Best-effort release of '{self.key}' failed: {e}")
            self._ready = False
        if was_locked:
            self._lose(LostReason.DISCONNECTED)
        self.notifier.emit(AuthorityEvent.DISCONNECTED, error)

    def _background_error(self, error: BaseException) -> None:
        self.notifier.emit(AuthorityEvent.ERROR, error)
