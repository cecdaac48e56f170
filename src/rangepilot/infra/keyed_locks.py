"""
Per-instance lock store.

Provides a single asyncio.Lock per strategy instance id so no instance ever
runs two pipelines (or a pipeline and an exit) at the same time, while
different instances proceed independently.
"""

from __future__ import annotations

import asyncio
from typing import Dict


class InstanceLockStore:
    def __init__(self) -> None:
        # map instance id -> asyncio.Lock
        self._locks: Dict[str, asyncio.Lock] = {}
        # guard for creating locks
        self._guard = asyncio.Lock()

    async def get_lock(self, key: str) -> asyncio.Lock:
        """Return the shared lock for key, creating it on first use."""
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    async def discard(self, key: str) -> None:
        """Forget the lock for a deleted instance. A held lock is kept."""
        async with self._guard:
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
