"""Per-user serialization for sync passes and snooze expiry."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class UserLockRegistry:
    """Hands out one asyncio.Lock per user id, created on demand.

    Every writer of a user's cursor or item statuses (sync orchestrator, snooze
    sweeper, watch manager) goes through the same registry, so work for one user
    is totally ordered while different users proceed in parallel. Locks are
    dropped once nobody holds or waits on them.

    Usage::

        locks = UserLockRegistry()
        async with locks.hold("u1"):
            ...
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._users[user_id] = self._users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[user_id] -= 1
            if self._users[user_id] == 0:
                del self._users[user_id]
                del self._locks[user_id]

    def is_locked(self, user_id: str) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
