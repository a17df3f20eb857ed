"""Exception hierarchy for authoritah.

A conflict on acquisition is not an error for callers of the lock: it is
reported as the ``taken`` notification and a ``False`` result. The store
layer still raises :class:`KeyExistsError` so the state machine can tell a
lost race apart from a broken connection.
"""

from __future__ import annotations


class AuthoritahError(Exception):
    """Base class for all authoritah errors."""


class StoreError(AuthoritahError):
    """Raised by a coordination store."""

    def __init__(self, key: str, message: str | None = None):
        self.key = key
        super().__init__(message or f"Store operation failed for '{key}'")


class StoreUnavailableError(StoreError):
    """The store could not be reached or returned a malformed response."""


class KeyExistsError(StoreError):
    """A create found the key already present."""

    def __init__(self, key: str, current_value: str | None = None):
        self.current_value = current_value
        super().__init__(key, f"Key '{key}' already exists")


class CompareFailedError(StoreError):
    """A conditional write or delete found a different (or no) current value."""

    def __init__(self, key: str, expected: str, current_value: str | None = None):
        self.expected = expected
        self.current_value = current_value
        super().__init__(key, f"Value of '{key}' does not match expected owner")


class KeyNotFoundError(StoreError):
    """An unconditional delete found no key."""

    def __init__(self, key: str):
        super().__init__(key, f"Key '{key}' not found")


class WatchTerminatedError(StoreError):
    """The watch subscription died and could not be re-established."""


class AuthorityDisconnectedError(AuthoritahError):
    """Raised by lock operations once the watch subscription has terminated."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Authority '{name}' lost its watch subscription")
