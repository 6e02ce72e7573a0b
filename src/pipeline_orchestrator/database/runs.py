"""Pipeline run records.

Provides the RunsMixin storing run lifecycle rows (status, error, paused
gate and metrics).
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)


class RunsMixin:
    """Mixin providing pipeline run persistence."""

    _conn: aiosqlite.Connection | None
    _write_lock: asyncio.Lock

    async def _ensure_connected(self) -> None: ...

    async def upsert_run(
        self,
        run_id: str,
        pipeline_id: str | None,
        status: str,
        error: str | None,
        paused_at_step: str | None,
        metrics: dict[str, Any],
        created_at: str,
        updated_at: str,
    ) -> None:
        """Insert a run row or overwrite its mutable columns.

        Args:
            run_id: Run identifier.
            pipeline_id: Owning pipeline, if any.
            status: RunStatus value.
            error: Terminating error message.
            paused_at_step: Gate step awaiting approval.
            metrics: Counters stored as JSON.
            created_at: ISO timestamp of creation.
            updated_at: ISO timestamp of the last change.
        """
        await self._ensure_connected()
        if not self._conn:
            return

        async with self._write_lock:
            await self._conn.execute(
                """
                INSERT INTO pipeline_runs (
                    run_id, pipeline_id, status, error, paused_at_step,
                    metrics, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    status = excluded.status,
                    error = excluded.error,
                    paused_at_step = excluded.paused_at_step,
                    metrics = excluded.metrics,
                    updated_at = excluded.updated_at
                """,
                (
                    run_id,
                    pipeline_id,
                    status,
                    error,
                    paused_at_step,
                    json.dumps(metrics, sort_keys=True),
                    created_at,
                    updated_at,
                ),
            )
            await self._conn.commit()

    async def get_run(self, run_id: str) -> dict[str, Any] | None:
        """Fetch one run row with metrics decoded.

        Returns:
            Run row as a dict, or None if not found.
        """
        await self._ensure_connected()
        if not self._conn:
            return None

        async with self._conn.execute(
            "SELECT * FROM pipeline_runs WHERE run_id = ?",
            (run_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        result = dict(row)
        result["metrics"] = json.loads(result["metrics"] or "{}")
        return result

    async def get_run_status(self, run_id: str) -> str | None:
        """Return only the status column of a run."""
        await self._ensure_connected()
        if not self._conn:
            return None

        async with self._conn.execute(
            "SELECT status FROM pipeline_runs WHERE run_id = ?",
            (run_id,),
        ) as cursor:
            row = await cursor.fetchone()
            return str(row["status"]) if row else None

    async def list_runs(
        self,
        pipeline_id: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """List runs, newest first, with optional filters.

        Args:
            pipeline_id: Only runs of this pipeline.
            status: Only runs in this status.
            limit: Maximum rows to return.

        Returns:
            Run rows with metrics decoded.
        """
        await self._ensure_connected()
        if not self._conn:
            return []

        query = "SELECT * FROM pipeline_runs WHERE 1=1"
        params: list[Any] = []

        if pipeline_id is not None:
            query += " AND pipeline_id = ?"
            params.append(pipeline_id)

        if status is not None:
            query += " AND status = ?"
            params.append(status)

        query += " ORDER BY created_at DESC"

        if limit is not None:
            if limit <= 0:
                return []
            query += " LIMIT ?"
            params.append(limit)

        async with self._conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        results = []
        for row in rows:
            item = dict(row)
            item["metrics"] = json.loads(item["metrics"] or "{}")
            results.append(item)
        return results
