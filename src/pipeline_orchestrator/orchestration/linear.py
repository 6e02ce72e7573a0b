"""Linear execution: steps in array order over one in-flight record set."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..models import LOAD_CLASS_STEP_TYPES, Record, RunResult, RunStatus, StepType

if TYPE_CHECKING:
    from ..definition import PipelineStep
    from .cancellation import CancellationToken
    from .runner import StepRunner

logger = logging.getLogger(__name__)


async def execute_linear(
    runner: StepRunner,
    steps: list[PipelineStep],
    cancel: CancellationToken,
    seed: list[Record] | None = None,
) -> RunResult:
    """Walk *steps* in order.

    EXTRACT, operator and ROUTE steps replace the in-flight record set;
    LOAD-class steps tally outcomes and leave it untouched. A GATE without
    approval stops the walk with a PAUSED result. Cancellation is polled
    before every step.

    Args:
        runner: Step dispatcher holding the run's tallies.
        steps: Steps to execute, in order.
        cancel: Cancellation token polled between steps.
        seed: Initial record set (replay); empty for a normal run.

    Returns:
        COMPLETED, PAUSED or CANCELLED result with the metrics so far.
    """
    records: list[Record] = list(seed or [])

    for step in steps:
        if await cancel.is_cancelled():
            logger.info("Cancellation observed before step %s", step.key)
            return runner.result(RunStatus.CANCELLED)

        outcome = await runner.run_step(step, records)
        if outcome.paused:
            return runner.result(RunStatus.PAUSED, paused_at_step=step.key)

        if step.step_type not in LOAD_CLASS_STEP_TYPES and step.step_type != StepType.TRIGGER:
            records = outcome.records

    return runner.result(RunStatus.COMPLETED)
