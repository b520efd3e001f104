from __future__ import annotations

from asyncio import Lock
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager


class PlayerLockRegistry:
    """In-process exclusive locks keyed by player id.

    Reward application and cleanup both hold the locks of every player they
    touch. Locks are always taken in sorted id order so two writers sharing
    players cannot deadlock. Database row locks (``SELECT ... FOR UPDATE``)
    and the bucket version column cover writers in other processes.

    A lock lives only while some writer holds or waits for it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _checkout(self, player_id: str) -> Lock:
        lock = self._locks.get(player_id)
        if lock is None:
            lock = self._locks[player_id] = Lock()
        self._users[player_id] = self._users.get(player_id, 0) + 1
        return lock

    def _checkin(self, player_id: str) -> None:
        remaining = self._users[player_id] - 1
        if remaining:
            self._users[player_id] = remaining
        else:
            del self._users[player_id]
            del self._locks[player_id]

    def is_locked(self, player_id: str) -> bool:
        lock = self._locks.get(player_id)
        return lock is not None and lock.locked()

    def clear(self) -> None:
        self._locks.clear()
        self._users.clear()

    @asynccontextmanager
    async def hold(self, player_ids: Iterable[str]) -> AsyncIterator[None]:
        ordered = sorted({pid for pid in player_ids if pid})
        locks = [self._checkout(pid) for pid in ordered]
        acquired: list[Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for pid in ordered:
                self._checkin(pid)


player_locks = PlayerLockRegistry()
