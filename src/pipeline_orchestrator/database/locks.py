"""Distributed lock rows.

Provides the LocksMixin. Every operation is a single conditional statement
so that processes sharing the database file never interleave a read and a
write on the same lock row. Times are epoch milliseconds passed in by the
caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)


class LocksMixin:
    """Mixin providing token-owned lock rows with expiry."""

    _conn: aiosqlite.Connection | None
    _write_lock: asyncio.Lock

    async def _ensure_connected(self) -> None: ...

    async def try_acquire_lock(
        self,
        lock_key: str,
        token: str,
        now_ms: int,
        expires_at_ms: int,
    ) -> bool:
        """Insert the lock row, or take it over if it expired or is ours.

        Args:
            lock_key: Lock key.
            token: Caller's ownership token.
            now_ms: Current time in epoch milliseconds.
            expires_at_ms: Expiry to store on success.

        Returns:
            True if the caller now holds the lock.
        """
        await self._ensure_connected()
        if not self._conn:
            return False

        async with self._write_lock:
            cursor = await self._conn.execute(
                """
                INSERT INTO pipeline_locks (lock_key, token, expires_at, acquired_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(lock_key) DO UPDATE SET
                    token = excluded.token,
                    expires_at = excluded.expires_at,
                    acquired_at = excluded.acquired_at
                WHERE pipeline_locks.expires_at <= ?
                   OR pipeline_locks.token = excluded.token
                RETURNING lock_key
                """,
                (lock_key, token, expires_at_ms, now_ms, now_ms),
            )
            row = await cursor.fetchone()
            await self._conn.commit()
            return row is not None

    async def release_lock(self, lock_key: str, token: str) -> bool:
        """Delete the lock row if *token* still owns it.

        Returns:
            True if the row was deleted.
        """
        await self._ensure_connected()
        if not self._conn:
            return False

        async with self._write_lock:
            cursor = await self._conn.execute(
                "DELETE FROM pipeline_locks WHERE lock_key = ? AND token = ?",
                (lock_key, token),
            )
            await self._conn.commit()
            return cursor.rowcount > 0

    async def extend_lock(
        self,
        lock_key: str,
        token: str,
        now_ms: int,
        expires_at_ms: int,
    ) -> bool:
        """Push the expiry forward if *token* owns an unexpired lock.

        Returns:
            True if the expiry was rewritten.
        """
        await self._ensure_connected()
        if not self._conn:
            return False

        async with self._write_lock:
            cursor = await self._conn.execute(
                """
                UPDATE pipeline_locks
                SET expires_at = ?
                WHERE lock_key = ? AND token = ? AND expires_at > ?
                """,
                (expires_at_ms, lock_key, token, now_ms),
            )
            await self._conn.commit()
            return cursor.rowcount > 0

    async def get_lock(self, lock_key: str, now_ms: int) -> dict[str, Any] | None:
        """Return the unexpired lock row for *lock_key*, if any."""
        await self._ensure_connected()
        if not self._conn:
            return None

        async with self._conn.execute(
            """
            SELECT lock_key, token, expires_at, acquired_at
            FROM pipeline_locks
            WHERE lock_key = ? AND expires_at > ?
            """,
            (lock_key, now_ms),
        ) as cursor:
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def list_locks(self, now_ms: int) -> list[dict[str, Any]]:
        """Return every unexpired lock row ordered by key."""
        await self._ensure_connected()
        if not self._conn:
            return []

        async with self._conn.execute(
            """
            SELECT lock_key, token, expires_at, acquired_at
            FROM pipeline_locks
            WHERE expires_at > ?
            ORDER BY lock_key
            """,
            (now_ms,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def delete_expired_locks(self, now_ms: int) -> int:
        """Remove expired lock rows.

        Returns:
            Number of rows removed.
        """
        await self._ensure_connected()
        if not self._conn:
            return 0

        async with self._write_lock:
            cursor = await self._conn.execute(
                "DELETE FROM pipeline_locks WHERE expires_at <= ?",
                (now_ms,),
            )
            await self._conn.commit()
            removed = cursor.rowcount
        if removed:
            logger.debug("Removed %d expired locks", removed)
        return removed
