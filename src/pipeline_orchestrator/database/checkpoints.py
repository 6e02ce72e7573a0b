"""Checkpoint snapshot persistence.

Provides the CheckpointsMixin storing one JSON snapshot per pipeline id.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)


class CheckpointsMixin:
    """Mixin providing per-pipeline checkpoint snapshots."""

    _conn: aiosqlite.Connection | None
    _write_lock: asyncio.Lock

    async def _ensure_connected(self) -> None: ...

    async def get_checkpoint(self, pipeline_id: str) -> dict[str, Any] | None:
        """Load the checkpoint snapshot for a pipeline.

        Args:
            pipeline_id: Pipeline identifier.

        Returns:
            The decoded snapshot, or None if no checkpoint exists.
        """
        await self._ensure_connected()
        if not self._conn:
            return None

        async with self._conn.execute(
            "SELECT snapshot FROM pipeline_checkpoints WHERE pipeline_id = ?",
            (pipeline_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        snapshot = json.loads(row["snapshot"])
        return snapshot if isinstance(snapshot, dict) else {}

    async def get_checkpoint_raw(self, pipeline_id: str) -> str | None:
        """Return the stored JSON text for a pipeline checkpoint, undecoded."""
        await self._ensure_connected()
        if not self._conn:
            return None

        async with self._conn.execute(
            "SELECT snapshot FROM pipeline_checkpoints WHERE pipeline_id = ?",
            (pipeline_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return str(row["snapshot"]) if row else None

    async def set_checkpoint(self, pipeline_id: str, snapshot: dict[str, Any]) -> None:
        """Replace the checkpoint snapshot for a pipeline.

        Args:
            pipeline_id: Pipeline identifier.
            snapshot: JSON-serializable mapping of step key to value.
        """
        await self._ensure_connected()
        if not self._conn:
            return

        payload = json.dumps(snapshot, sort_keys=True, default=str)
        async with self._write_lock:
            await self._conn.execute(
                """
                INSERT INTO pipeline_checkpoints (pipeline_id, snapshot, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(pipeline_id) DO UPDATE SET
                    snapshot = excluded.snapshot,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (pipeline_id, payload),
            )
            await self._conn.commit()
        logger.debug("Saved checkpoint for pipeline %s (%d keys)", pipeline_id, len(snapshot))

    async def clear_checkpoint(self, pipeline_id: str) -> bool:
        """Delete the checkpoint for a pipeline.

        Returns:
            True if a checkpoint existed.
        """
        await self._ensure_connected()
        if not self._conn:
            return False

        async with self._write_lock:
            cursor = await self._conn.execute(
                "DELETE FROM pipeline_checkpoints WHERE pipeline_id = ?",
                (pipeline_id,),
            )
            await self._conn.commit()
            return cursor.rowcount > 0
