"""Coordination store contract.

The lock state machine only needs four primitives from a store:
conditional create, conditional renew, conditional delete and a change
stream for one key. Everything else (connections, retries, encoding) is
the store's business.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum


class WatchAction(str, Enum):
    """Change actions delivered by a watch stream."""

    CREATE = "create"
    SET = "set"
    COMPARE_AND_SWAP = "compareAndSwap"
    DELETE = "delete"
    COMPARE_AND_DELETE = "compareAndDelete"
    EXPIRE = "expire"


@dataclass(frozen=True)
class WatchEvent:
    """A single change to a watched key.

    ``value`` is the value after the change (None for removals) and
    ``prev_value`` the value immediately before it. ``revision`` increases
    monotonically across all changes made through one store.
    """

    action: WatchAction
    key: str
    value: str | None = None
    prev_value: str | None = None
    revision: int = 0

    @property
    def is_removal(self) -> bool:
        return self.action in (
            WatchAction.DELETE,
            WatchAction.COMPARE_AND_DELETE,
            WatchAction.EXPIRE,
        )


class WatchStream(ABC):
    """Async iterator over the changes of one key.

    Iteration raises :class:`~authoritah.errors.WatchTerminatedError` when the
    underlying subscription is permanently gone, and stops cleanly after
    :meth:`aclose`.
    """

    def __aiter__(self) -> AsyncIterator[WatchEvent]:
        return self

    @abstractmethod
    async def __anext__(self) -> WatchEvent:
        pass

    @abstractmethod
    async def aclose(self) -> None:
        pass


class CoordinationStore(ABC):
    """Abstract watchable, TTL-capable key-value store."""

    @abstractmethod
    async def write(
        self,
        key: str,
        value: str,
        ttl: int | None = None,
        *,
        require_absent: bool = False,
        require_value: str | None = None,
    ) -> int:
        """Write ``value`` to ``key`` and return the change revision.

        Raises:
            KeyExistsError: ``require_absent`` and the key exists.
            CompareFailedError: ``require_value`` does not match the current value.
            StoreUnavailableError: The store could not be reached.
        """

    @abstractmethod
    async def delete(self, key: str, *, require_value: str | None = None) -> int:
        """Delete ``key`` and return the change revision.

        Raises:
            CompareFailedError: ``require_value`` does not match the current value.
            KeyNotFoundError: Unconditional delete of an absent key.
            StoreUnavailableError: The store could not be reached.
        """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the current value of ``key``."""

    @abstractmethod
    async def watch(self, key: str) -> WatchStream:
        """Subscribe to changes of ``key``.

        The subscription is active once the returned coroutine completes,
        so no change made afterwards is missed.
        """

    async def close(self) -> None:
        """Release store resources."""
        return None
