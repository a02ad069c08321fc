from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Tuple


class ItemLocks:
    """One asyncio.Lock per (user_id, item_id), created on demand.

    Serialises every state-changing step for an item inside this process so a
    reprice cannot race a delist or a second reprice for the same listing.
    Locks are dropped again once nobody holds or waits for them.
    """

    def __init__(self) -> None:
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._users: Dict[Tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str, item_id: Optional[str]) -> AsyncIterator[None]:
        # Actions without an item (e.g. offers on unknown items) still
        # serialise per user.
        key = (user_id, item_id or "*")
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def is_locked(self, user_id: str, item_id: Optional[str]) -> bool:
        lock = self._locks.get((user_id, item_id or "*"))
        return bool(lock and lock.locked())


item_locks = ItemLocks()
