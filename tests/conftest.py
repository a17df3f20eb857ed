"""Global pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from authoritah import Authority, MemoryStore, StoreUnavailableError


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "timing: test waits on real lease expiry (about one second)"
    )


class CountingStore(MemoryStore):
    """MemoryStore that records every mutating call."""

    def __init__(self) -> None:
        super().__init__()
        self.writes: list[dict[str, Any]] = []
        self.deletes: list[dict[str, Any]] = []

    async def write(self, key, value, ttl=None, *, require_absent=False, require_value=None):
        self.writes.append(
            {
                "key": key,
                "value": value,
                "ttl": ttl,
                "require_absent": require_absent,
                "require_value": require_value,
            }
        )
        return await super().write(
            key, value, ttl, require_absent=require_absent, require_value=require_value
        )

    async def delete(self, key, *, require_value=None):
        self.deletes.append({"key": key, "require_value": require_value})
        return await super().delete(key, require_value=require_value)

    @property
    def renewals(self) -> list[dict[str, Any]]:
        return [call for call in self.writes if call["require_value"] is not None]

    def reset_calls(self) -> None:
        self.writes.clear()
        self.deletes.clear()


@pytest.fixture
def store() -> CountingStore:
    """Create a fresh in-memory store."""
    return CountingStore()


@pytest.fixture
async def make_authority(store: CountingStore) -> AsyncIterator[Callable[..., Authority]]:
    """Factory for authorities on the shared store, closed after the test."""
    created: list[Authority] = []

    def factory(name: str = "test_key", **kwargs: Any) -> Authority:
        kwargs.setdefault("store", store)
        authority = Authority(name, **kwargs)
        created.append(authority)
        return authority

    yield factory

    for authority in created:
        await authority.close()
    await store.close()


class FlakyStore(CountingStore):
    """CountingStore whose writes fail for selected owner tokens, or for everyone."""

    def __init__(self) -> None:
        super().__init__()
        self.failing_owners: set[str] = set()
        self.fail_all = False

    async def write(self, key, value, ttl=None, *, require_absent=False, require_value=None):
        if self.fail_all or value in self.failing_owners:
            raise StoreUnavailableError(key, "connection refused")
        return await super().write(
            key, value, ttl, require_absent=require_absent, require_value=require_value
        )


@pytest.fixture
def flaky_store() -> FlakyStore:
    """Create an in-memory store with injectable write failures."""
    return FlakyStore()
