"""
Per-connection mutual exclusion.

Provider refresh tokens are single-use, so two tasks must never refresh the
same connection at once, and two sync runs must never import into the same
connection concurrently. Locks are keyed by (purpose, connection id). The
registry only holds weak references: an entry disappears once no task holds
or waits on its lock, so disconnected connections do not accumulate.
"""

import asyncio
import weakref
from typing import Tuple


class ConnectionLocks:
    """Registry of asyncio locks, one per connection and purpose."""

    SYNC = "sync"
    REFRESH = "refresh"

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[Tuple[str, int], asyncio.Lock]" = weakref.WeakValueDictionary()

    def _get(self, key: Tuple[str, int]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def for_sync(self, connection_id: int) -> asyncio.Lock:
        return self._get((self.SYNC, connection_id))

    def for_refresh(self, connection_id: int) -> asyncio.Lock:
        return self._get((self.REFRESH, connection_id))

    def __len__(self) -> int:
        return len(self._locks)


connection_locks = ConnectionLocks()
