"""
Per-phone serialization.

Events for one phone are processed one at a time; different phones run
concurrently. Locks are dropped once nobody holds or waits on them.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class PhoneLocks:

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, phone: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(phone, asyncio.Lock())
        self._users[phone] = self._users.get(phone, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[phone] -= 1
            if self._users[phone] == 0:
                del self._users[phone]
                del self._locks[phone]

    def __len__(self) -> int:
        return len(self._locks)
