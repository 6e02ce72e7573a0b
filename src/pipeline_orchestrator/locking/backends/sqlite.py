"""Shared lock backend on top of the pipeline database.

Processes pointing at the same SQLite file coordinate through the
``pipeline_locks`` table. Each operation is one conditional statement.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from .base import LockBackend, LockInfo, wall_clock_ms

if TYPE_CHECKING:
    from ...database import PipelineDB


class SqliteLockBackend(LockBackend):
    """Lock backend persisting rows in :class:`PipelineDB`."""

    name = "sqlite"

    def __init__(self, db: PipelineDB, clock: Callable[[], float] | None = None) -> None:
        self._db = db
        self._clock = clock or wall_clock_ms

    def _now(self) -> int:
        return int(self._clock())

    async def acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        now = self._now()
        return await self._db.try_acquire_lock(key, token, now, now + ttl_ms)

    async def release(self, key: str, token: str) -> bool:
        return await self._db.release_lock(key, token)

    async def extend(self, key: str, token: str, ttl_ms: int) -> bool:
        now = self._now()
        return await self._db.extend_lock(key, token, now, now + ttl_ms)

    async def get(self, key: str) -> LockInfo | None:
        row = await self._db.get_lock(key, self._now())
        if row is None:
            return None
        return LockInfo(key=row["lock_key"], token=row["token"], expires_at_ms=row["expires_at"])

    async def cleanup(self) -> int:
        return await self._db.delete_expired_locks(self._now())

    async def active_locks(self) -> list[LockInfo]:
        rows = await self._db.list_locks(self._now())
        return [
            LockInfo(key=row["lock_key"], token=row["token"], expires_at_ms=row["expires_at"])
            for row in rows
        ]
