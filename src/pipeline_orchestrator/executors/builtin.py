"""Built-in executors driven entirely by step config.

These need no external systems, which makes them suitable for the CLI,
local experiments and tests. Config fields are read from the step's
adapter-specific extras:

- EXTRACT ``records``: inline list of records; optional ``cursorField``
  makes extraction incremental through the checkpoint.
- TRANSFORM/ENRICH ``mapping`` (target -> source field) and ``set``
  (field -> constant).
- VALIDATE ``required``: fields every record must carry.
- ROUTE ``field`` and ``branches`` (branch name -> expected value).
- LOAD/EXPORT/FEED/SINK ``failWhen`` (field -> value marking a record as
  rejected by the destination).
"""

from __future__ import annotations

import copy
import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from ..models import ExecutionResult, Record, RouteOutput, StepType
from .base import ExtractExecutor, LoadExecutor, OnRecordError, OperatorExecutor, RouteExecutor
from .registry import ExecutorRegistry

if TYPE_CHECKING:
    from ..checkpoint import ExecutorContext
    from ..definition import PipelineStep

logger = logging.getLogger(__name__)


class InlineRecordsExtractor(ExtractExecutor):
    """Extract records listed inline in the step config."""

    async def execute(
        self,
        step: PipelineStep,
        records: list[Record],
        ctx: ExecutorContext,
        on_record_error: OnRecordError,
    ) -> list[Record]:
        source = step.config.extra("records", [])
        extracted = [copy.deepcopy(r) for r in source if isinstance(r, dict)]

        cursor_field = step.config.extra("cursorField")
        if not cursor_field:
            return extracted

        # Incremental mode: only records past the stored cursor
        state = ctx.get(step.key) or {}
        cursor = state.get("cursor")
        if cursor is not None:
            extracted = [r for r in extracted if r.get(cursor_field, cursor) > cursor]
        values = [r[cursor_field] for r in extracted if cursor_field in r]
        if values:
            ctx.set(step.key, {"cursor": max(values)})
        return extracted


class FieldMappingTransform(OperatorExecutor):
    """Copy fields under new names and set constant fields."""

    async def execute(
        self,
        step: PipelineStep,
        records: list[Record],
        ctx: ExecutorContext,
        on_record_error: OnRecordError,
    ) -> list[Record]:
        mapping: dict[str, str] = step.config.extra("mapping", {}) or {}
        constants: dict[str, Any] = step.config.extra("set", {}) or {}

        output: list[Record] = []
        for record in records:
            updated = dict(record)
            for target, source in mapping.items():
                if source in record:
                    updated[target] = record[source]
            updated.update(constants)
            output.append(updated)
        return output


class RequiredFieldsValidator(OperatorExecutor):
    """Drop records missing required fields, reporting each one."""

    async def execute(
        self,
        step: PipelineStep,
        records: list[Record],
        ctx: ExecutorContext,
        on_record_error: OnRecordError,
    ) -> list[Record]:
        required: list[str] = step.config.extra("required", []) or []
        valid: list[Record] = []
        for record in records:
            missing = [name for name in required if record.get(name) is None]
            if missing:
                await on_record_error(
                    step.key,
                    f"missing required field(s): {', '.join(missing)}",
                    record,
                )
                continue
            valid.append(record)
        return valid


class FieldEqualityRouter(RouteExecutor):
    """Route each record to the first branch whose value equals its field."""

    async def execute(
        self,
        step: PipelineStep,
        records: list[Record],
        ctx: ExecutorContext,
        on_record_error: OnRecordError,
    ) -> RouteOutput:
        field_name = step.config.extra("field")
        branches: dict[str, Any] = step.config.extra("branches", {}) or {}
        default_branch = getattr(step.config, "default_branch", None)

        routed: dict[str, list[Record]] = defaultdict(list)
        for record in records:
            value = record.get(field_name) if field_name else None
            target = next(
                (name for name, expected in branches.items() if expected == value),
                default_branch,
            )
            if target is None:
                logger.debug("Step %s: record matched no branch", step.key)
                continue
            routed[target].append(record)
        return RouteOutput(branches=dict(routed))


class MemoryLoader(LoadExecutor):
    """Collect delivered records in memory, keyed by step.

    Attributes:
        delivered: step key -> records accepted so far.
        calls: Number of execute calls (one per batch).
    """

    def __init__(self) -> None:
        self.delivered: dict[str, list[Record]] = defaultdict(list)
        self.calls = 0

    async def execute(
        self,
        step: PipelineStep,
        records: list[Record],
        ctx: ExecutorContext,
        on_record_error: OnRecordError,
    ) -> ExecutionResult:
        self.calls += 1
        fail_when: dict[str, Any] = step.config.extra("failWhen", {}) or {}
        result = ExecutionResult()
        for record in records:
            if fail_when and all(record.get(k) == v for k, v in fail_when.items()):
                result.fail += 1
                await on_record_error(step.key, "rejected by destination", record)
                continue
            self.delivered[step.key].append(record)
            result.ok += 1
        return result

    async def simulate(self, step: PipelineStep, records: list[Record]) -> dict[str, Any]:
        return {
            "step": step.key,
            "type": step.step_type.value,
            "destination": getattr(step.config, "endpoint", "") or "memory",
            "wouldDeliver": len(records),
        }


def default_registry(loader: MemoryLoader | None = None) -> ExecutorRegistry:
    """Registry wiring every executable step type to a built-in executor."""
    registry = ExecutorRegistry()
    sink = loader or MemoryLoader()
    registry.register(StepType.EXTRACT, InlineRecordsExtractor())
    mapper = FieldMappingTransform()
    registry.register(StepType.TRANSFORM, mapper)
    registry.register(StepType.ENRICH, mapper)
    registry.register(StepType.VALIDATE, RequiredFieldsValidator())
    registry.register(StepType.ROUTE, FieldEqualityRouter())
    for step_type in (StepType.LOAD, StepType.EXPORT, StepType.FEED, StepType.SINK):
        registry.register(step_type, sink)
    return registry
