"""Test doubles shared by unit and integration tests."""

from __future__ import annotations

from typing import Any

from pipeline_orchestrator.exceptions import AdapterError
from pipeline_orchestrator.executors import (
    ExecutorRegistry,
    ExtractExecutor,
    LoadExecutor,
    OperatorExecutor,
)
from pipeline_orchestrator.models import ExecutionResult, StepType


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class SleepRecorder:
    """Awaitable sleep that records requested delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class StaticExtractor(ExtractExecutor):
    """Returns a fixed record list and counts invocations."""

    def __init__(self, records: list[dict[str, Any]]) -> None:
        self.records = records
        self.calls = 0

    async def execute(self, step, records, ctx, on_record_error):
        self.calls += 1
        return [dict(r) for r in self.records]


class RecordingOperator(OperatorExecutor):
    """Adds ``seen_by_<key>`` to each record and remembers its inputs per step."""

    def __init__(self) -> None:
        self.inputs: dict[str, list[dict[str, Any]]] = {}
        self.order: list[str] = []

    async def execute(self, step, records, ctx, on_record_error):
        self.order.append(step.key)
        self.inputs[step.key] = [dict(r) for r in records]
        return [{**r, f"seen_by_{step.key}": True} for r in records]


class ExplodingOperator(OperatorExecutor):
    """Raises on every call."""

    async def execute(self, step, records, ctx, on_record_error):
        raise RuntimeError(f"boom in {step.key}")


class FlakyLoader(LoadExecutor):
    """Raises queued errors first, then accepts every record.

    Attributes:
        batches: Every batch that reached ``execute`` (including failed ones).
    """

    def __init__(self, errors: list[Exception] | None = None) -> None:
        self.errors = list(errors or [])
        self.batches: list[list[dict[str, Any]]] = []

    async def execute(self, step, records, ctx, on_record_error):
        self.batches.append(list(records))
        if self.errors:
            raise self.errors.pop(0)
        return ExecutionResult(ok=len(records), fail=0)


class RejectingLoader(LoadExecutor):
    """Rejects every record it receives."""

    async def execute(self, step, records, ctx, on_record_error):
        for record in records:
            await on_record_error(step.key, "rejected", record)
        return ExecutionResult(ok=0, fail=len(records))


def transient(message: str = "temporarily unavailable") -> AdapterError:
    return AdapterError(message, retryable=True)


def build_registry(
    extractor: ExtractExecutor | None = None,
    operator: OperatorExecutor | None = None,
    loader: LoadExecutor | None = None,
) -> ExecutorRegistry:
    """Registry wiring the given doubles to every compatible step type."""
    registry = ExecutorRegistry()
    if extractor is not None:
        registry.register(StepType.EXTRACT, extractor)
    if operator is not None:
        for step_type in (StepType.TRANSFORM, StepType.VALIDATE, StepType.ENRICH):
            registry.register(step_type, operator)
    if loader is not None:
        for step_type in (StepType.LOAD, StepType.EXPORT, StepType.FEED, StepType.SINK):
            registry.register(step_type, loader)
    return registry


def linear_definition(*steps: dict[str, Any], **extra: Any) -> dict[str, Any]:
    """Raw definition dict with the given steps and optional context/edges."""
    return {"steps": list(steps), **extra}


def records(count: int) -> list[dict[str, Any]]:
    return [{"id": i, "name": f"item-{i}"} for i in range(1, count + 1)]
