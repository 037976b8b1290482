"""Per-key in-memory locks.

ContainerManager serializes actions on the same container with one
``KeyedLocks`` instance shared across requests, so that e.g. a stop and a
restart of one container never interleave their inspect/act/poll steps.

Note: These locks only work within a single process/instance.
"""

from __future__ import annotations

import asyncio


class KeyedLocks:
    """Lazily created ``asyncio.Lock`` per key."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def get(self, key: str) -> asyncio.Lock:
        """Get or create the lock for ``key``."""
        async with self._locks_lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    async def discard(self, key: str) -> None:
        """Forget the lock for a deleted object."""
        async with self._locks_lock:
            self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)
