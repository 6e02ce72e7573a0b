"""Dry-run simulation.

Runs every step in linear order against a throwaway executor context so no
step can observe or persist real progress. Destination steps are simulated
instead of executed, and failures are collected as diagnostics instead of
failing the run.
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

from ..checkpoint import ExecutorContext
from ..executors.base import Simulatable
from ..executors.idempotency import apply_idempotency
from ..models import (
    LOAD_CLASS_STEP_TYPES,
    OPERATOR_STEP_TYPES,
    DryRunReport,
    Record,
    SamplePair,
    StepType,
)

if TYPE_CHECKING:
    from ..definition import PipelineDefinition, PipelineStep
    from ..executors.registry import ExecutorRegistry

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_LIMIT = 5


class DryRunSimulator:
    """Simulates a pipeline without side effects.

    Usage:
        simulator = DryRunSimulator(registry)
        report = await simulator.simulate(definition)
        for pair in report.sample_records:
            print(pair.step, pair.before, pair.after)
    """

    def __init__(self, registry: ExecutorRegistry, sample_limit: int = DEFAULT_SAMPLE_LIMIT) -> None:
        self._registry = registry
        self._sample_limit = sample_limit

    async def simulate(self, definition: PipelineDefinition) -> DryRunReport:
        """Simulate *definition* and return metrics, samples and diagnostics."""
        ctx = ExecutorContext.for_dry_run(definition.context)
        errors: list[str] = []
        details: list[dict[str, Any]] = []
        samples: list[SamplePair] = []
        processed = 0
        key_field = definition.context.idempotency_key_field

        async def on_record_error(step_key: str, message: str, payload: Any = None) -> None:
            errors.append(f"[{step_key}] {message}")

        records: list[Record] = []
        for step in definition.steps:
            step_type = step.step_type
            if step_type == StepType.TRIGGER:
                continue

            if step_type == StepType.GATE:
                details.append({"stepKey": step.key, "note": "gate would pause for approval"})
                continue

            if step_type in LOAD_CLASS_STEP_TYPES:
                deliverable = apply_idempotency(records, key_field)
                await self._simulate_destination(step, deliverable, details, errors)
                continue

            before = [copy.deepcopy(r) for r in records[: self._sample_limit]]
            try:
                executor = self._registry.resolve(step)
                if step_type == StepType.ROUTE:
                    route = await executor.execute(step, records, ctx, on_record_error)
                    output = route.all_records()
                else:
                    output = await executor.execute(step, records, ctx, on_record_error)
            except Exception as e:
                logger.warning("Dry run step %s failed: %s", step.key, e)
                errors.append(f"[{step.key}] {e}")
                continue

            if step_type == StepType.EXTRACT:
                processed += len(output)
                output = apply_idempotency(output, key_field)
                samples.extend(
                    SamplePair(step=step.key, before={}, after=copy.deepcopy(r))
                    for r in output[: self._sample_limit]
                )
            elif step_type in OPERATOR_STEP_TYPES:
                samples.extend(
                    SamplePair(step=step.key, before=b, after=copy.deepcopy(a))
                    for b, a in zip(before, output[: self._sample_limit])
                )
            records = output

        return DryRunReport(
            metrics={
                "processed": processed,
                "succeeded": processed,
                "failed": len(errors),
                "details": details,
            },
            sample_records=samples,
            errors=errors,
        )

    async def _simulate_destination(
        self,
        step: PipelineStep,
        records: list[Record],
        details: list[dict[str, Any]],
        errors: list[str],
    ) -> None:
        try:
            executor = self._registry.resolve(step)
        except Exception as e:
            errors.append(f"[{step.key}] {e}")
            return

        if not isinstance(executor, Simulatable):
            details.append({"stepKey": step.key, "note": "skipped: no simulate capability"})
            return

        try:
            summary = await executor.simulate(step, records)
        except Exception as e:
            logger.warning("Dry run simulate for %s failed: %s", step.key, e)
            errors.append(f"[{step.key}] {e}")
            return

        entry: dict[str, Any] = {"stepKey": step.key}
        if step.adapter_code:
            entry["adapterCode"] = step.adapter_code
        entry.update(summary)
        details.append(entry)
