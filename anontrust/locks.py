"""Keyed serialisation points.

One lock per key (identity id, role target, moderation item id). Waiting for a
lock is always bounded; a timeout surfaces as ``StorageUnavailable`` so no
caller hangs. A key's lock is dropped once nobody holds or waits for it.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from anontrust.errors import StorageUnavailable


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class KeyedLocks:
    """A registry of re-entrant locks created on first use per key."""

    def __init__(self, timeout: float, name: str = "lock") -> None:
        self._timeout = timeout
        self._name = name
        self._guard = threading.Lock()
        self._locks: dict[str, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _Entry()
                self._locks[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=self._timeout):
                raise StorageUnavailable(
                    f"Timed out after {self._timeout}s waiting for {self._name} '{key[:8]}'"
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)
