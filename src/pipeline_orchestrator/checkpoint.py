"""Checkpoint stores and the per-run executor context.

A checkpoint maps step keys to arbitrary JSON-like values (pagination
cursors, last-seen ids, gate approval flags). It is keyed by pipeline id so
that it survives across runs of the same pipeline.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .database import PipelineDB
    from .definition import CheckpointingPolicy, ErrorHandlingPolicy, PipelineContext

logger = logging.getLogger(__name__)

GATE_APPROVED_PREFIX = "__gateApproved:"
GATE_PENDING_PREFIX = "__gate:"
GATE_TIMEOUT_PREFIX = "__gateTimeout:"


def gate_approval_key(step_key: str) -> str:
    """Checkpoint key holding the approval flag of a gate."""
    return f"{GATE_APPROVED_PREFIX}{step_key}"


def gate_pending_key(step_key: str) -> str:
    """Checkpoint key holding the pending-records snapshot of a gate."""
    return f"{GATE_PENDING_PREFIX}{step_key}"


def gate_timeout_key(step_key: str) -> str:
    """Checkpoint key holding the auto-approval deadline of a TIMEOUT gate."""
    return f"{GATE_TIMEOUT_PREFIX}{step_key}"


# =========================================================================
# Stores
# =========================================================================


class CheckpointStore(ABC):
    """Persistence contract for per-pipeline checkpoint snapshots."""

    @abstractmethod
    async def get(self, pipeline_id: str) -> dict[str, Any] | None:
        """Return the snapshot for *pipeline_id*, or None if there is none."""

    @abstractmethod
    async def set(self, pipeline_id: str, snapshot: dict[str, Any]) -> None:
        """Replace the snapshot for *pipeline_id*."""

    @abstractmethod
    async def clear(self, pipeline_id: str) -> None:
        """Delete the snapshot for *pipeline_id*."""


class MemoryCheckpointStore(CheckpointStore):
    """Process-local store. Snapshots are deep-copied in and out."""

    def __init__(self, initial: dict[str, dict[str, Any]] | None = None) -> None:
        self._snapshots: dict[str, dict[str, Any]] = copy.deepcopy(initial or {})
        self.writes = 0

    async def get(self, pipeline_id: str) -> dict[str, Any] | None:
        snapshot = self._snapshots.get(pipeline_id)
        return copy.deepcopy(snapshot) if snapshot is not None else None

    async def set(self, pipeline_id: str, snapshot: dict[str, Any]) -> None:
        self._snapshots[pipeline_id] = copy.deepcopy(snapshot)
        self.writes += 1

    async def clear(self, pipeline_id: str) -> None:
        self._snapshots.pop(pipeline_id, None)


class SqliteCheckpointStore(CheckpointStore):
    """Store backed by the ``pipeline_checkpoints`` table."""

    def __init__(self, db: PipelineDB) -> None:
        self._db = db

    async def get(self, pipeline_id: str) -> dict[str, Any] | None:
        return await self._db.get_checkpoint(pipeline_id)

    async def set(self, pipeline_id: str, snapshot: dict[str, Any]) -> None:
        await self._db.set_checkpoint(pipeline_id, snapshot)

    async def clear(self, pipeline_id: str) -> None:
        await self._db.clear_checkpoint(pipeline_id)


# =========================================================================
# Executor context
# =========================================================================


@dataclass
class ExecutorContext:
    """Per-run state shared by reference with every executor call.

    Checkpoint writes made by one step are visible to the next step of the
    same run because every call receives this same instance.

    Attributes:
        checkpoint: Live checkpoint mapping for the run.
        pipeline_id: Owning pipeline, None for ad hoc runs.
        run_id: Current run, if any.
        error_handling: Retry policy from the definition context.
        checkpointing: Checkpointing policy from the definition context.
        dry_run: When True, ``mark_dirty`` is ignored and nothing persists.
        dirty: Set by ``mark_dirty``; the orchestrator saves iff True.
        stats: Running processed/succeeded/failed totals for the run.
    """

    checkpoint: dict[str, Any] = field(default_factory=dict)
    pipeline_id: str | None = None
    run_id: str | None = None
    error_handling: ErrorHandlingPolicy | None = None
    checkpointing: CheckpointingPolicy | None = None
    dry_run: bool = False
    dirty: bool = False
    stats: dict[str, int] = field(
        default_factory=lambda: {"processed": 0, "succeeded": 0, "failed": 0}
    )

    @classmethod
    def for_run(
        cls,
        checkpoint: dict[str, Any],
        context: PipelineContext | None = None,
        pipeline_id: str | None = None,
        run_id: str | None = None,
    ) -> ExecutorContext:
        return cls(
            checkpoint=checkpoint,
            pipeline_id=pipeline_id,
            run_id=run_id,
            error_handling=context.error_handling if context else None,
            checkpointing=context.checkpointing if context else None,
        )

    @classmethod
    def for_dry_run(cls, context: PipelineContext | None = None) -> ExecutorContext:
        """Throwaway context: empty checkpoint, writes never persisted."""
        return cls(
            checkpoint={},
            error_handling=context.error_handling if context else None,
            checkpointing=context.checkpointing if context else None,
            dry_run=True,
        )

    def mark_dirty(self) -> None:
        if self.dry_run:
            return
        self.dirty = True

    def get(self, step_key: str, default: Any = None) -> Any:
        return self.checkpoint.get(step_key, default)

    def set(self, step_key: str, value: Any) -> None:
        """Write a checkpoint value and mark the context dirty."""
        self.checkpoint[step_key] = value
        self.mark_dirty()

    def remove(self, step_key: str) -> None:
        if step_key in self.checkpoint:
            del self.checkpoint[step_key]
            self.mark_dirty()

    def is_gate_approved(self, step_key: str) -> bool:
        return self.checkpoint.get(gate_approval_key(step_key)) is True

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self.checkpoint)
