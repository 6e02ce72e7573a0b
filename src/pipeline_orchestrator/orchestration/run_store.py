"""Run record persistence."""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ..models import Run, RunStatus

if TYPE_CHECKING:
    from ..database import PipelineDB


class RunStore(ABC):
    """Storage contract for :class:`Run` records."""

    @abstractmethod
    async def save(self, run: Run) -> None:
        """Insert or overwrite *run*."""

    @abstractmethod
    async def get(self, run_id: str) -> Run | None:
        """Return the run, or None if unknown."""

    @abstractmethod
    async def list_runs(self, pipeline_id: str | None = None) -> list[Run]:
        """Return runs, newest first, optionally for one pipeline."""


class MemoryRunStore(RunStore):
    """Process-local run store. Runs are copied in and out."""

    def __init__(self) -> None:
        self._runs: dict[str, Run] = {}

    async def save(self, run: Run) -> None:
        self._runs[run.run_id] = copy.deepcopy(run)

    async def get(self, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        return copy.deepcopy(run) if run is not None else None

    async def list_runs(self, pipeline_id: str | None = None) -> list[Run]:
        runs = [
            copy.deepcopy(run)
            for run in self._runs.values()
            if pipeline_id is None or run.pipeline_id == pipeline_id
        ]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)


class SqliteRunStore(RunStore):
    """Run store backed by the ``pipeline_runs`` table."""

    def __init__(self, db: PipelineDB) -> None:
        self._db = db

    async def save(self, run: Run) -> None:
        await self._db.upsert_run(
            run_id=run.run_id,
            pipeline_id=run.pipeline_id,
            status=run.status.value,
            error=run.error,
            paused_at_step=run.paused_at_step,
            metrics=run.metrics,
            created_at=run.created_at.isoformat(),
            updated_at=run.updated_at.isoformat(),
        )

    async def get(self, run_id: str) -> Run | None:
        row = await self._db.get_run(run_id)
        return _row_to_run(row) if row else None

    async def list_runs(self, pipeline_id: str | None = None) -> list[Run]:
        rows = await self._db.list_runs(pipeline_id=pipeline_id)
        return [_row_to_run(row) for row in rows]


def _row_to_run(row: dict[str, Any]) -> Run:
    return Run(
        run_id=row["run_id"],
        pipeline_id=row["pipeline_id"],
        status=RunStatus(row["status"]),
        error=row["error"],
        paused_at_step=row["paused_at_step"],
        metrics=dict(row["metrics"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
