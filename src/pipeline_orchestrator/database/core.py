"""PipelineDB: the mixins composed into one database class."""

from __future__ import annotations

from typing import Any

from .checkpoints import CheckpointsMixin
from .connection import ConnectionMixin
from .locks import LocksMixin
from .runs import RunsMixin


class PipelineDB(ConnectionMixin, CheckpointsMixin, LocksMixin, RunsMixin):
    """Async SQLite database for pipeline orchestration state.

    Holds checkpoint snapshots, distributed lock rows and run records.
    Several processes may share one database file; lock rows are then the
    coordination point between them.

    Usage:
        async with PipelineDB(".pipeline/pipeline.db") as db:
            snapshot = await db.get_checkpoint("orders-sync")
            await db.set_checkpoint("orders-sync", {"extract": {"cursor": "abc"}})
    """

    async def __aenter__(self) -> PipelineDB:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
