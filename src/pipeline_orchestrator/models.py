"""Domain models for pipeline execution.

This module defines the enumerations and result dataclasses shared by the
orchestrator, the step executors and the persistence layer.

A run follows this lifecycle:
    PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED | PAUSED

PAUSED is only reached at a GATE step and returns to RUNNING on approval
(or to CANCELLED on rejection). CANCEL_REQUESTED is set by an external
caller and observed between steps.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .exceptions import InvalidRunTransitionError

# A record flowing through the pipeline. Values are JSON-like.
Record = dict[str, Any]


class StepType(str, Enum):
    """Step type tags governing each step's execution contract."""

    TRIGGER = "TRIGGER"
    EXTRACT = "EXTRACT"
    TRANSFORM = "TRANSFORM"
    VALIDATE = "VALIDATE"
    LOAD = "LOAD"
    ENRICH = "ENRICH"
    ROUTE = "ROUTE"
    EXPORT = "EXPORT"
    FEED = "FEED"
    SINK = "SINK"
    GATE = "GATE"


# Steps that replace the in-flight record set with their output.
OPERATOR_STEP_TYPES = frozenset({StepType.TRANSFORM, StepType.VALIDATE, StepType.ENRICH})

# Destination steps. They tally ok/fail and leave the record set untouched.
LOAD_CLASS_STEP_TYPES = frozenset(
    {StepType.LOAD, StepType.EXPORT, StepType.FEED, StepType.SINK}
)

# Destination steps whose calls are guarded by the circuit breaker.
NETWORK_STEP_TYPES = frozenset({StepType.EXPORT, StepType.SINK})


class RunStatus(str, Enum):
    """Lifecycle states of a pipeline run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    PAUSED = "PAUSED"
    CANCEL_REQUESTED = "CANCEL_REQUESTED"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})

_ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset(
        {
            RunStatus.COMPLETED,
            RunStatus.FAILED,
            RunStatus.CANCELLED,
            RunStatus.PAUSED,
            RunStatus.CANCEL_REQUESTED,
        }
    ),
    RunStatus.CANCEL_REQUESTED: frozenset(
        {RunStatus.CANCELLED, RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.PAUSED}
    ),
    RunStatus.PAUSED: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Run:
    """One execution attempt of a pipeline definition.

    Attributes:
        run_id: Unique run identifier.
        pipeline_id: Pipeline the run belongs to. Checkpoints are keyed by
            this id, not by run id, so they survive across runs.
        status: Current lifecycle state.
        error: Terminating error message for FAILED runs.
        paused_at_step: Gate step key awaiting approval for PAUSED runs.
        metrics: Partial or final processed/succeeded/failed counters.
    """

    pipeline_id: str | None = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RunStatus = RunStatus.PENDING
    error: str | None = None
    paused_at_step: str | None = None
    metrics: dict[str, int] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        """Check if the run reached a final state."""
        return self.status in TERMINAL_STATUSES

    def can_transition(self, new_status: RunStatus) -> bool:
        """Check whether the lifecycle allows moving to *new_status*."""
        return new_status in _ALLOWED_TRANSITIONS[self.status]

    def transition(self, new_status: RunStatus) -> None:
        """Move the run to *new_status*.

        Raises:
            InvalidRunTransitionError: If the lifecycle forbids the change.
        """
        if not self.can_transition(new_status):
            raise InvalidRunTransitionError(self.run_id, self.status.value, new_status.value)
        self.status = new_status
        self.updated_at = _utcnow()
        if new_status != RunStatus.PAUSED:
            self.paused_at_step = None


@dataclass
class ExecutionResult:
    """Outcome of a LOAD-class executor call."""

    ok: int = 0
    fail: int = 0


@dataclass
class RouteOutput:
    """Output of a ROUTE step: records grouped by branch name."""

    branches: dict[str, list[Record]] = field(default_factory=dict)

    def all_records(self) -> list[Record]:
        """Concatenate every branch, in branch insertion order."""
        merged: list[Record] = []
        for records in self.branches.values():
            merged.extend(records)
        return merged

    def matched(self, branch: str) -> bool:
        """A branch matches when at least one record was routed to it."""
        return bool(self.branches.get(branch))


@dataclass
class SamplePair:
    """Before/after record pair captured during a dry run."""

    step: str
    before: Record
    after: Record


@dataclass
class RunResult:
    """Result of one orchestrator execution pass.

    Attributes:
        status: Terminal (or PAUSED) status reached by the pass.
        processed: Records that entered the pipeline.
        succeeded: Records accepted by LOAD-class steps.
        failed: Records rejected by LOAD-class steps or reported through
            the record error sink by other steps.
        paused: True when a GATE suspended the run.
        paused_at_step: The gate step key when paused.
        error: Terminating error message for FAILED results.
        details: One entry per step with type, counts and duration.
        counters: Per-category record counters (extracted, loaded, ...).
        run_id: Run the result belongs to, when executed as a tracked run.
    """

    status: RunStatus
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    paused: bool = False
    paused_at_step: str | None = None
    error: str | None = None
    details: list[dict[str, Any]] = field(default_factory=list)
    counters: dict[str, int] = field(default_factory=dict)
    run_id: str | None = None

    def metrics(self) -> dict[str, int]:
        """Return the processed/succeeded/failed triple as a dict."""
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }


@dataclass
class DryRunReport:
    """Result of a dry run simulation."""

    metrics: dict[str, Any] = field(default_factory=dict)
    sample_records: list[SamplePair] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
