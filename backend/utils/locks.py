"""Per-key asyncio locks.

Serializes work on one key (e.g. a subscriber id) inside this process while
different keys proceed in parallel. Entries are dropped once no task holds or
waits on them. Cross-process safety comes from the version-guarded update on
the mirror document, not from this lock.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class KeyedLock:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)


# Shared by the reconciler and the lifecycle scheduler
subscriber_locks = KeyedLock()
