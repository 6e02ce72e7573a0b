"""In-process lock backend for single-instance deployments."""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Callable

from .base import LockBackend, LockInfo, wall_clock_ms

logger = logging.getLogger(__name__)


class MemoryLockBackend(LockBackend):
    """Bounded in-memory lock map.

    Only coordinates callers within one process. When the map is full,
    expired locks are evicted first, then the oldest acquired one.
    """

    name = "memory"

    def __init__(
        self,
        max_locks: int = 1000,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._locks: OrderedDict[str, LockInfo] = OrderedDict()
        self._max_locks = max_locks
        self._clock = clock or wall_clock_ms

    async def acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        now = self._clock()
        current = self._locks.get(key)
        if current is not None and current.expires_at_ms > now and current.token != token:
            return False

        if current is None:
            self._make_room(now)
        else:
            del self._locks[key]
        self._locks[key] = LockInfo(key=key, token=token, expires_at_ms=now + ttl_ms)
        return True

    async def release(self, key: str, token: str) -> bool:
        current = self._locks.get(key)
        if current is None or current.token != token:
            return False
        del self._locks[key]
        return True

    async def extend(self, key: str, token: str, ttl_ms: int) -> bool:
        now = self._clock()
        current = self._locks.get(key)
        if current is None or current.token != token or current.expires_at_ms <= now:
            return False
        self._locks[key] = LockInfo(key=key, token=token, expires_at_ms=now + ttl_ms)
        return True

    async def get(self, key: str) -> LockInfo | None:
        current = self._locks.get(key)
        if current is None or current.expires_at_ms <= self._clock():
            return None
        return current

    async def cleanup(self) -> int:
        now = self._clock()
        expired = [key for key, info in self._locks.items() if info.expires_at_ms <= now]
        for key in expired:
            del self._locks[key]
        return len(expired)

    async def active_locks(self) -> list[LockInfo]:
        now = self._clock()
        return [info for info in self._locks.values() if info.expires_at_ms > now]

    def _make_room(self, now: float) -> None:
        if len(self._locks) < self._max_locks:
            return
        for key, info in self._locks.items():
            if info.expires_at_ms <= now:
                del self._locks[key]
                return
        key, info = self._locks.popitem(last=False)
        logger.warning("Lock map full, evicted oldest lock %s (token %s)", key, info.token)
