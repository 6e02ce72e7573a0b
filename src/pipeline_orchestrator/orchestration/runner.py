"""Single-step dispatch shared by every execution mode.

:class:`StepRunner` owns the per-run tallies and knows how each step type
is executed. The linear, graph, replay and resume walks only decide which
step runs next and with which records.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..backoff import RetryPolicy
from ..exceptions import RecordError
from ..executors.gate import GateExecutor
from ..executors.idempotency import apply_idempotency
from ..executors.throughput import deliver_with_throughput
from ..models import (
    LOAD_CLASS_STEP_TYPES,
    OPERATOR_STEP_TYPES,
    Record,
    RouteOutput,
    RunResult,
    RunStatus,
    StepType,
)
from .events import EventPublisher, LifecycleEvent, LifecycleEventType, emit
from .hooks import HookRunner, SafeHooks

if TYPE_CHECKING:
    from ..checkpoint import ExecutorContext
    from ..circuit_breaker import CircuitBreakerService
    from ..definition import PipelineDefinition, PipelineStep
    from ..executors.registry import ExecutorRegistry

logger = logging.getLogger(__name__)

# async (step_key, message, payload) -> None
RecordErrorSink = Callable[[str, str, Any], Awaitable[None]]

_OPERATOR_COUNTERS = {
    StepType.TRANSFORM: "transformed",
    StepType.VALIDATE: "validated",
    StepType.ENRICH: "enriched",
}


@dataclass
class StepOutcome:
    """What one step produced.

    Attributes:
        records: Records flowing to the next step (input pass-through for
            LOAD-class and approved GATE steps).
        route: Branch grouping for ROUTE steps.
        paused: True when a GATE suspended the run.
        skipped: True for TRIGGER steps.
    """

    records: list[Record]
    route: RouteOutput | None = None
    paused: bool = False
    skipped: bool = False


class StepRunner:
    """Executes individual steps and accumulates run metrics."""

    def __init__(
        self,
        definition: PipelineDefinition,
        registry: ExecutorRegistry,
        ctx: ExecutorContext,
        *,
        events: EventPublisher | None = None,
        hooks: HookRunner | None = None,
        gate: GateExecutor | None = None,
        breaker: CircuitBreakerService | None = None,
        record_error_sink: RecordErrorSink | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.definition = definition
        self.registry = registry
        self.ctx = ctx
        self.hooks = SafeHooks(hooks or HookRunner(), definition.hooks)
        self._events = events
        self._gate = gate or GateExecutor()
        self._breaker = breaker
        self._sink = record_error_sink
        self._sleep = sleep

        error_handling = definition.context.error_handling
        self._retry_policy = error_handling.retry_policy() if error_handling else retry_policy
        self._key_field = definition.context.idempotency_key_field

        self.processed = 0
        self.succeeded = 0
        self.failed = 0
        self.details: list[dict[str, Any]] = []
        self.counters: Counter[str] = Counter()
        # Replays count their seed instead of extract output
        self.count_extracted = True

    # =========================================================================
    # Results and events
    # =========================================================================

    def result(
        self,
        status: RunStatus,
        *,
        paused_at_step: str | None = None,
        error: str | None = None,
    ) -> RunResult:
        return RunResult(
            status=status,
            processed=self.processed,
            succeeded=self.succeeded,
            failed=self.failed,
            paused=status == RunStatus.PAUSED,
            paused_at_step=paused_at_step,
            error=error,
            details=list(self.details),
            counters=dict(self.counters),
            run_id=self.ctx.run_id,
        )

    async def emit(
        self,
        event_type: LifecycleEventType,
        step_key: str | None = None,
        **data: Any,
    ) -> None:
        await emit(
            self._events,
            LifecycleEvent(
                type=event_type,
                run_id=self.ctx.run_id,
                pipeline_id=self.ctx.pipeline_id,
                step_key=step_key,
                data=data,
            ),
        )

    def _sync_stats(self) -> None:
        self.ctx.stats.update(
            processed=self.processed,
            succeeded=self.succeeded,
            failed=self.failed,
        )

    def _error_sink(self, step: PipelineStep) -> Callable[[str, str, Any], Awaitable[None]]:
        # LOAD-class failures are tallied from ExecutionResult, not here
        counts = step.step_type not in LOAD_CLASS_STEP_TYPES

        async def on_record_error(step_key: str, message: str, payload: Any = None) -> None:
            if counts:
                self.failed += 1
                self.counters["record_errors"] += 1
            logger.debug("Record error in %s: %s", step_key, message)
            if self._sink is None:
                return
            try:
                await self._sink(step_key, message, payload)
            except Exception as e:
                logger.warning("Record error sink failed for %s: %s", step_key, e)

        return on_record_error

    # =========================================================================
    # Step execution
    # =========================================================================

    async def run_step(self, step: PipelineStep, records: list[Record]) -> StepOutcome:
        """Execute *step* on *records*.

        A RecordError escaping the executor is reported through the record
        error sink and the input passes through unchanged.

        Raises:
            Exception: Whatever else a non-destination executor raised; the
                caller treats it as fatal for the run.
        """
        step_type = step.step_type
        if step_type == StepType.TRIGGER:
            self.details.append({"step": step.key, "type": step_type.value, "status": "skipped"})
            return StepOutcome(records, skipped=True)

        started = time.monotonic()
        input_count = len(records)
        await self.emit(LifecycleEventType.STEP_STARTED, step.key, type=step_type.value)
        records = await self.hooks.before_step(step, records)

        try:
            outcome = await self._dispatch(step, records)
        except RecordError as exc:
            # Record-scoped: report it and let the input through unchanged
            await self._error_sink(step)(exc.step_key, str(exc), exc.payload)
            outcome = StepOutcome(records)
        except Exception as exc:
            self.details.append(
                {
                    "step": step.key,
                    "type": step_type.value,
                    "status": "failed",
                    "input": input_count,
                    "error": str(exc),
                }
            )
            self._sync_stats()
            await self.emit(LifecycleEventType.STEP_FAILED, step.key, error=str(exc))
            raise

        self._sync_stats()
        if outcome.paused:
            self.details.append(
                {
                    "step": step.key,
                    "type": step_type.value,
                    "status": "paused",
                    "input": input_count,
                }
            )
            return outcome

        outcome.records = await self.hooks.after_step(step, outcome.records)
        duration_ms = int((time.monotonic() - started) * 1000)
        self.details.append(
            {
                "step": step.key,
                "type": step_type.value,
                "status": "completed",
                "input": input_count,
                "output": len(outcome.records),
                "durationMs": duration_ms,
            }
        )
        await self.emit(
            LifecycleEventType.STEP_COMPLETED,
            step.key,
            output=len(outcome.records),
            durationMs=duration_ms,
        )
        return outcome

    async def _dispatch(self, step: PipelineStep, records: list[Record]) -> StepOutcome:
        step_type = step.step_type

        if step_type == StepType.GATE:
            decision = self._gate.evaluate(step, records, self.ctx)  # type: ignore[arg-type]
            return StepOutcome(records, paused=not decision.approved)

        executor = self.registry.resolve(step)
        on_error = self._error_sink(step)

        if step_type == StepType.EXTRACT:
            extracted = await executor.execute(step, records, self.ctx, on_error)
            if self.count_extracted:
                self.processed += len(extracted)
            self.counters["extracted"] += len(extracted)
            return StepOutcome(apply_idempotency(extracted, self._key_field))

        if step_type in OPERATOR_STEP_TYPES:
            output = await executor.execute(step, records, self.ctx, on_error)
            self.counters[_OPERATOR_COUNTERS[step_type]] += len(output)
            return StepOutcome(output)

        if step_type == StepType.ROUTE:
            route = await executor.execute(step, records, self.ctx, on_error)
            merged = route.all_records()
            self.counters["routed"] += len(merged)
            return StepOutcome(merged, route=route)

        # LOAD / EXPORT / FEED / SINK
        batch = apply_idempotency(records, self._key_field)
        result = await deliver_with_throughput(
            step,
            batch,
            executor,  # type: ignore[arg-type]
            self.ctx,
            on_error,
            throughput=step.throughput or self.definition.context.throughput,
            retry_policy=self._retry_policy,
            breaker=self._breaker,
            sleep=self._sleep,
        )
        self.succeeded += result.ok
        self.failed += result.fail
        self.counters["delivered"] += result.ok
        self.counters["rejected"] += result.fail
        return StepOutcome(records)
