"""Tests for the authority state machine against the in-memory store."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from authoritah import (
    AuthoritahError,
    Authority,
    AuthorityDisconnectedError,
    AuthorityState,
    LostInfo,
    LostReason,
    StoreUnavailableError,
)

AuthorityFactory = Callable[..., Authority]
CountingStore = Any


async def settle() -> None:
    """Let watch deliveries and their transitions run."""
    await asyncio.sleep(0.05)


class TestConstruction:
    """Tests for authority construction."""

    def test_key_uses_namespace_prefix(self, store: CountingStore) -> None:
        """All contenders for one name share one physical key."""
        a = Authority("jobs", store=store)
        b = Authority("jobs", store=store)

        assert a.key == "/authoritah/locks/jobs"
        assert a.key == b.key

    def test_owner_tokens_are_unique(self, store: CountingStore) -> None:
        """Every instance gets its own owner token."""
        tokens = {Authority("jobs", store=store).owner_token for _ in range(20)}

        assert len(tokens) == 20

    def test_ttl_rounded_up(self, store: CountingStore) -> None:
        """Fractional TTLs are rounded up to whole seconds."""
        assert Authority("jobs", ttl=1.2, store=store).ttl == 2
        assert Authority("jobs", ttl=3, store=store).ttl == 3

    def test_defaults(self, store: CountingStore) -> None:
        """Default TTL and heartbeat interval come from settings."""
        authority = Authority("jobs", store=store)

        assert authority.ttl == 15
        assert authority.heartbeat_interval == 2.0
        assert authority.state is AuthorityState.IDLE

    def test_rejects_non_positive_ttl(self, store: CountingStore) -> None:
        """A TTL of zero would never hold a lease."""
        with pytest.raises(ValueError, match="ttl must be positive"):
            Authority("jobs", ttl=0, store=store)


class TestAcquisition:
    """Tests for ready() and contention."""

    async def test_lock_when_free(self, make_authority: AuthorityFactory) -> None:
        """ready() acquires a free lock."""
        authority = make_authority()
        acquired = authority.next_event("acquired")

        assert await authority.ready() is True
        assert acquired.done()
        assert authority.is_leader
        assert authority.state is AuthorityState.HELD
        assert await authority.current_owner() == authority.owner_token

    async def test_ready_emits_ready_before_attempt(
        self, make_authority: AuthorityFactory
    ) -> None:
        """The ready notification precedes the acquisition."""
        authority = make_authority()
        events: list[str] = []
        authority.on("ready", lambda: events.append("ready"))
        authority.on("acquired", lambda: events.append("acquired"))

        await authority.ready()

        assert events == ["ready", "acquired"]

    async def test_creates_with_ttl_and_absence_guard(
        self, make_authority: AuthorityFactory, store: CountingStore
    ) -> None:
        """Acquisition is a conditional create carrying the TTL."""
        authority = make_authority(ttl=7)

        await authority.ready()

        assert store.writes == [
            {
                "key": authority.key,
                "value": authority.owner_token,
                "ttl": 7,
                "require_absent": True,
                "require_value": None,
            }
        ]

    async def test_not_locked_when_someone_else_has_lock(
        self, make_authority: AuthorityFactory
    ) -> None:
        """A second contender gets False and a taken notification."""
        authority = make_authority()
        non_authority = make_authority()

        assert await authority.ready() is True
        taken = non_authority.next_event("taken")
        assert await non_authority.ready() is False

        await asyncio.wait_for(taken, timeout=1)
        assert authority.is_leader
        assert not non_authority.is_leader
        assert non_authority.state is AuthorityState.ACQUIRING

    async def test_mutual_exclusion_under_concurrent_ready(
        self, make_authority: AuthorityFactory
    ) -> None:
        """Exactly one of many simultaneous contenders wins."""
        contenders = [make_authority() for _ in range(5)]

        results = await asyncio.gather(*(c.ready() for c in contenders))
        await settle()

        assert results.count(True) == 1
        assert sum(c.is_leader for c in contenders) == 1

    async def test_ready_twice_keeps_lock(
        self, make_authority: AuthorityFactory, store: CountingStore
    ) -> None:
        """A second ready() while holding does not contend with itself."""
        authority = make_authority()
        await authority.ready()
        taken = authority.next_event("taken")

        assert await authority.ready() is True
        assert len(store.writes) == 1
        assert not taken.done()
        taken.cancel()

    async def test_transport_error_propagates(self, flaky_store: Any) -> None:
        """Store failures other than a conflict reach the caller."""
        store = flaky_store
        authority = Authority("test_key", store=store)
        store.failing_owners.add(authority.owner_token)
        taken: list[object] = []
        authority.on("taken", lambda: taken.append(True))

        with pytest.raises(StoreUnavailableError):
            await authority.ready()

        assert taken == []
        assert not authority.is_leader
        await authority.close()


class TestHandover:
    """Tests for automatic failover between contenders."""

    async def test_acquired_when_previous_authority_released(
        self, make_authority: AuthorityFactory
    ) -> None:
        """A waiting contender takes over after a release."""
        authority = make_authority()
        non_authority = make_authority()
        await authority.ready()
        await non_authority.ready()

        acquired = non_authority.next_event("acquired")
        await authority.release()

        await asyncio.wait_for(acquired, timeout=1)
        assert non_authority.is_leader
        assert not authority.is_leader

    @pytest.mark.timing
    async def test_lock_times_out_if_not_extended(
        self, make_authority: AuthorityFactory
    ) -> None:
        """An unrenewed lease is lost as expired and contention stops."""
        authority = make_authority(ttl=1)
        await authority.ready()

        (info,) = await asyncio.wait_for(authority.next_event("lost"), timeout=1.5)

        assert isinstance(info, LostInfo)
        assert info.expired
        assert not authority.is_leader
        assert not authority.is_ready
        assert authority.state is AuthorityState.IDLE

    @pytest.mark.timing
    async def test_acquired_when_previous_authority_times_out(
        self, make_authority: AuthorityFactory
    ) -> None:
        """Expiry of the holder hands the lock to a ready contender."""
        authority = make_authority(ttl=1)
        non_authority = make_authority()
        await authority.ready()
        await non_authority.ready()

        lost = authority.next_event("lost")
        expired = non_authority.next_event("expired")
        acquired = non_authority.next_event("acquired")

        await asyncio.wait_for(lost, timeout=1.5)
        await asyncio.wait_for(acquired, timeout=1)
        assert expired.done()
        assert non_authority.is_leader
        assert not authority.is_leader

    @pytest.mark.timing
    async def test_lock_not_lost_if_extended(self, make_authority: AuthorityFactory) -> None:
        """Renewing faster than the TTL keeps the lease."""
        authority = make_authority(ttl=1)
        lost: list[LostInfo] = []
        authority.on("lost", lost.append)
        await authority.ready()

        for _ in range(8):
            await asyncio.sleep(0.2)
            assert await authority.extend() is True

        assert lost == []
        assert authority.is_leader

    async def test_forcefully_deleted_lock_is_reacquired(
        self, make_authority: AuthorityFactory, store: CountingStore
    ) -> None:
        """External deletion is reported and the lock is taken back."""
        authority = make_authority()
        await authority.ready()
        events: list[str] = []
        authority.on("lost", lambda info: events.append(f"lost:{info.reason.value}"))
        authority.on("acquired", lambda: events.append("acquired"))

        acquired = authority.next_event("acquired")
        await store.delete(authority.key)

        await asyncio.wait_for(acquired, timeout=1)
        assert events == ["lost:deleted", "acquired"]
        assert authority.is_leader
        assert await store.get(authority.key) == authority.owner_token

    async def test_overwritten_lock_is_lost(
        self, make_authority: AuthorityFactory, store: CountingStore
    ) -> None:
        """A write naming another owner clears the held belief."""
        authority = make_authority()
        await authority.ready()

        lost = authority.next_event("lost")
        await store.write(authority.key, "intruder")

        (info,) = await asyncio.wait_for(lost, timeout=1)
        assert info.reason is LostReason.OVERWRITTEN
        assert not authority.is_leader

    async def test_wait_for_leadership(self, make_authority: AuthorityFactory) -> None:
        """wait_for_leadership resolves once the lock is handed over."""
        authority = make_authority()
        non_authority = make_authority()
        await authority.ready()
        await non_authority.ready()

        assert await non_authority.wait_for_leadership(timeout=0.1) is False

        waiting = asyncio.ensure_future(non_authority.wait_for_leadership(timeout=1))
        await asyncio.sleep(0)
        await authority.release()

        assert await waiting is True
        assert await authority.wait_for_leadership(timeout=0.05) is False

    async def test_wait_for_leadership_timeouts_leave_no_waiters(
        self, make_authority: AuthorityFactory
    ) -> None:
        """Polling with a short timeout does not pile up pending waiters."""
        authority = make_authority()
        non_authority = make_authority()
        await authority.ready()
        await non_authority.ready()

        for _ in range(50):
            assert await non_authority.wait_for_leadership(timeout=0.001) is False
        await asyncio.sleep(0)

        assert non_authority.notifier.waiter_count("acquired") == 0


class TestRelease:
    """Tests for release()."""

    async def test_release_frees_key(
        self, make_authority: AuthorityFactory, store: CountingStore
    ) -> None:
        """Release deletes the key guarded by the owner token."""
        authority = make_authority()
        await authority.ready()

        await authority.release()

        assert store.deletes == [{"key": authority.key, "require_value": authority.owner_token}]
        assert await store.get(authority.key) is None
        assert authority.state is AuthorityState.IDLE

    async def test_release_without_lock_issues_no_mutation(
        self, make_authority: AuthorityFactory, store: CountingStore
    ) -> None:
        """Releasing an instance that never acquired touches nothing."""
        holder = make_authority()
        never_started = make_authority()
        loser = make_authority()
        await holder.ready()
        await loser.ready()
        store.reset_calls()

        await never_started.release()
        await loser.release()
        await loser.release()

        assert store.writes == []
        assert store.deletes == []
        assert not loser.is_ready

    async def test_voluntary_release_is_reported_as_lost(
        self, make_authority: AuthorityFactory
    ) -> None:
        """The removal event of our own release emits lost once, marked released."""
        authority = make_authority()
        lost: list[LostInfo] = []
        authority.on("lost", lost.append)
        await authority.ready()

        await authority.release()
        await settle()
        await authority.release()
        await settle()

        assert [info.reason for info in lost] == [LostReason.RELEASED]
        assert not lost[0].expired
        assert not authority.is_ready

    async def test_release_without_lock_reports_nothing(
        self, make_authority: AuthorityFactory
    ) -> None:
        """A waiter that releases never held anything to lose."""
        holder = make_authority()
        waiter = make_authority()
        lost: list[LostInfo] = []
        waiter.on("lost", lost.append)
        await holder.ready()
        await waiter.ready()

        await waiter.release()
        await holder.release()
        await settle()

        assert lost == []
        assert not waiter.is_leader

    async def test_release_after_lease_already_gone(
        self, make_authority: AuthorityFactory, store: CountingStore
    ) -> None:
        """A failed release guard means the lease is already gone; no error."""
        authority = make_authority()
        await authority.ready()
        await authority.watcher.stop()
        await store.delete(authority.key)

        await authority.release()

        assert not authority.is_leader

    async def test_reacquire_right_after_release(self, make_authority: AuthorityFactory) -> None:
        """Events from before a fresh acquisition do not undo it."""
        authority = make_authority()
        lost: list[LostInfo] = []
        authority.on("lost", lost.append)

        await authority.ready()
        await authority.release()
        assert await authority.ready() is True
        await settle()

        assert authority.is_leader
        assert all(info.reason is LostReason.RELEASED for info in lost)


class TestExtend:
    """Tests for extend() and heartbeat()."""

    async def test_extend_bootstraps_ready(self, make_authority: AuthorityFactory) -> None:
        """extend() on an idle instance starts contending."""
        authority = make_authority()

        assert await authority.extend() is True
        assert authority.is_ready
        assert authority.is_leader

    async def test_extend_when_not_holding_is_noop(
        self, make_authority: AuthorityFactory, store: CountingStore
    ) -> None:
        """A ready non-holder does not touch the store on extend()."""
        holder = make_authority()
        waiter = make_authority()
        await holder.ready()
        await waiter.ready()
        store.reset_calls()

        assert await waiter.extend() is False
        assert store.writes == []

    async def test_extend_renews_with_owner_guard(
        self, make_authority: AuthorityFactory, store: CountingStore
    ) -> None:
        """Renewal is a conditional update guarded by the owner token."""
        authority = make_authority(ttl=4)
        await authority.ready()
        store.reset_calls()

        assert await authority.extend() is True
        assert store.renewals == [
            {
                "key": authority.key,
                "value": authority.owner_token,
                "ttl": 4,
                "require_absent": False,
                "require_value": authority.owner_token,
            }
        ]

    @pytest.mark.timing
    async def test_extend_relocks_expired_lock(self, make_authority: AuthorityFactory) -> None:
        """After its own expiry, extend() contends again."""
        authority = make_authority(ttl=1)
        await authority.ready()
        await asyncio.wait_for(authority.next_event("lost"), timeout=1.5)

        assert await authority.extend() is True
        assert authority.is_leader

    async def test_extend_recovers_unknowingly_lost_key(
        self, make_authority: AuthorityFactory, store: CountingStore
    ) -> None:
        """A missed deletion is detected by the renewal guard and recovered."""
        authority = make_authority()
        lost: list[LostInfo] = []
        authority.on("lost", lost.append)
        await authority.ready()

        await authority.watcher.stop()
        await store.delete(authority.key)

        assert await authority.extend() is True
        assert [info.reason for info in lost] == [LostReason.MISSED]
        assert await store.get(authority.key) == authority.owner_token

    async def test_extend_recovers_unknowingly_stolen_key(
        self, make_authority: AuthorityFactory, store: CountingStore
    ) -> None:
        """A missed takeover clears the held belief instead of reporting success."""
        authority = make_authority()
        await authority.ready()

        await authority.watcher.stop()
        await store.write(authority.key, "....", ttl=1)
        taken = authority.next_event("taken")

        assert await authority.extend() is False
        assert taken.done()
        assert not authority.is_leader
        assert await authority.extend() is False

    async def test_heartbeat_coalesces_calls(
        self, make_authority: AuthorityFactory, store: CountingStore
    ) -> None:
        """Many heartbeats within one interval renew at most once."""
        authority = make_authority(heartbeat_interval=10)
        await authority.ready()
        store.reset_calls()

        tasks = [authority.heartbeat() for _ in range(25)]
        started = [task for task in tasks if task is not None]
        await asyncio.gather(*started)

        assert len(started) == 1
        assert len(store.renewals) == 1

    @pytest.mark.timing
    async def test_start_keeps_lock_alive(
        self, make_authority: AuthorityFactory, store: CountingStore
    ) -> None:
        """Continuous mode renews in the background until stopped."""
        authority = make_authority(ttl=1, heartbeat_interval=0.2)
        lost: list[LostInfo] = []
        authority.on("lost", lost.append)

        assert await authority.start() is True
        await asyncio.sleep(1.5)

        assert authority.is_leader
        assert lost == []

        await authority.stop()
        assert await store.get(authority.key) is None
        assert not authority.is_leader


class TestReconciliationErrors:
    """Tests for failures with no caller to report to."""

    async def test_error_in_watch_handler_is_emitted(self, flaky_store: Any) -> None:
        """A failed re-attempt triggered by a watch event becomes an error notification."""
        store = flaky_store
        holder = Authority("test_key", store=store)
        waiter = Authority("test_key", store=store)
        await holder.ready()
        await waiter.ready()

        store.failing_owners.add(waiter.owner_token)
        error = waiter.next_event("error")
        await holder.release()

        (exc,) = await asyncio.wait_for(error, timeout=1)
        assert isinstance(exc, StoreUnavailableError)
        assert not waiter.is_leader

        store.failing_owners.clear()
        assert await waiter.ready() is True

        await holder.close()
        await waiter.close()


class TestWatchTermination:
    """Tests for a watch subscription that cannot be re-established."""

    async def test_disconnected_gives_up_authority(
        self, make_authority: AuthorityFactory, store: CountingStore
    ) -> None:
        """The holder emits lost and disconnected, releases and refuses further work."""
        authority = make_authority()
        await authority.ready()
        lost = authority.next_event("lost")
        disconnected = authority.next_event("disconnected")

        assert store.kill_watchers(authority.key) == 1

        await asyncio.wait_for(disconnected, timeout=1)
        (info,) = lost.result()
        assert info.reason is LostReason.DISCONNECTED
        assert authority.state is AuthorityState.DISCONNECTED
        assert not authority.is_leader
        assert await store.get(authority.key) is None

        with pytest.raises(AuthorityDisconnectedError):
            await authority.ready()
        with pytest.raises(AuthorityDisconnectedError):
            await authority.extend()
        await authority.release()


class TestLifecycle:
    """Tests for context manager use and teardown."""

    async def test_context_manager(self, store: CountingStore) -> None:
        """Entering contends once, exiting releases."""
        async with Authority("test_key", store=store) as authority:
            assert authority.is_leader
            key = authority.key

        assert await store.get(key) is None

    async def test_close_is_idempotent(self, make_authority: AuthorityFactory) -> None:
        """Closing twice is safe, and release after close resolves."""
        authority = make_authority()
        await authority.ready()

        await authority.close()
        await authority.close()
        await authority.release()

        with pytest.raises(AuthoritahError, match="closed"):
            await authority.ready()
