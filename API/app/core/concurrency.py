"""Per-key asyncio locks: one critical section per student, none shared across students."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager


class KeyedLock:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._waiters[key] - 1
            if remaining:
                self._waiters[key] = remaining
            else:
                # nobody holds or awaits it any more
                del self._waiters[key]
                del self._locks[key]

    def active_keys(self) -> list[str]:
        return list(self._locks)
