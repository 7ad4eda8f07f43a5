"""
PaySettle - Keyed Locks

Process-wide exclusive sections keyed by an arbitrary hashable value, such as
an obligation id or a (month, year) payroll period. Row locks taken with
SELECT ... FOR UPDATE cover other processes; these locks serialize coroutines
inside one process, which is the only protection SQLite gets.
"""

import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator, Dict, Hashable, Iterable, Optional

from paysettle.config import settings
from paysettle.utils.error_handling import LockAcquisitionTimeout

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "users", "owner")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0
        self.owner: Optional[asyncio.Task] = None


class KeyedLock:
    """
    A registry of asyncio locks, one per key.

    Entries are dropped once no coroutine holds or waits on them, so the
    registry does not grow with the number of keys ever seen.
    """

    def __init__(self, name: str, timeout: Optional[float] = None):
        self.name = name
        self.timeout = timeout
        self._entries: Dict[Hashable, _Entry] = {}

    def locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def held_by_current_task(self, key: Hashable) -> bool:
        """True only when the calling task is the one holding ``key``."""
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked() and entry.owner is asyncio.current_task()

    @asynccontextmanager
    async def hold(self, key: Hashable, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """Hold the lock for ``key``; raises LockAcquisitionTimeout on expiry."""
        wait = timeout or self.timeout or settings.lock_timeout_seconds
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout=wait)
            except asyncio.TimeoutError:
                logger.warning(f"{self.name}: lock wait for {key!r} exceeded {wait}s")
                raise LockAcquisitionTimeout(key, wait)
            entry.owner = asyncio.current_task()
            try:
                yield
            finally:
                entry.owner = None
                entry.lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[Hashable], timeout: Optional[float] = None) -> AsyncIterator[None]:
        """
        Hold several keys at once.

        Keys are taken in sorted order so two callers locking overlapping sets
        cannot deadlock.
        """
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys), key=repr):
                await stack.enter_async_context(self.hold(key, timeout))
            yield

    def __len__(self) -> int:
        return len(self._entries)


def obligation_key(kind: str, obligation_id: Any) -> str:
    return f"{kind}:{obligation_id}"


def period_key(month: int, year: int) -> str:
    return f"pay_run:{year}-{month:02d}"


# Shared registries
obligation_locks = KeyedLock("obligations")
period_locks = KeyedLock("pay-run-periods")
