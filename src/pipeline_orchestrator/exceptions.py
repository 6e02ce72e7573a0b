"""Exception hierarchy for the pipeline orchestrator.

Fatal errors (definition problems) unwind to the run and mark it FAILED.
Record and adapter errors are absorbed locally and only show up in the
counters and the record error sink. Lock errors are left to the caller.
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base exception for all orchestrator errors."""

    pass


class DefinitionError(PipelineError):
    """Raised when a pipeline definition cannot be executed.

    This covers schema violations, duplicate step keys, edges that
    reference unknown steps, cyclic graphs and step types that have no
    registered executor. Always raised before any step executes.
    """

    pass


class PipelineNotFoundError(DefinitionError):
    """Raised when a pipeline or run referenced by id does not exist."""

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(f"Pipeline or run not found: {identifier}")


class RecordError(PipelineError):
    """A failure scoped to a single record in a single step."""

    def __init__(
        self,
        step_key: str,
        message: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.step_key = step_key
        self.payload = payload or {}
        super().__init__(message)


class AdapterError(PipelineError):
    """Raised by a step executor when its underlying call fails.

    Attributes:
        retryable: True for transient failures (timeouts, 5xx, connection
            resets) that the throughput controller may retry with backoff.
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)


class LockUnavailableError(PipelineError):
    """Raised when a distributed lock could not be acquired."""

    def __init__(self, key: str, current_owner: str | None = None) -> None:
        self.key = key
        self.current_owner = current_owner
        held_by = f" (held by {current_owner})" if current_owner else ""
        super().__init__(f"Failed to acquire lock for: {key}{held_by}")


class InvalidRunTransitionError(PipelineError):
    """Raised when a run is moved to a state its lifecycle does not allow."""

    def __init__(self, run_id: str, from_status: str, to_status: str) -> None:
        self.run_id = run_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Run {run_id}: cannot transition {from_status} -> {to_status}")
