"""Replay from a step with caller-supplied seed records.

Lets a caller resume processing after fixing upstream data without
re-running extraction: every step before ``start_step_key`` is skipped
and the seed becomes the input of ``start_step_key`` itself.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..exceptions import DefinitionError
from ..models import Record, RunResult
from .graph import execute_graph
from .linear import execute_linear
from .topology import reachable_from

if TYPE_CHECKING:
    from .cancellation import CancellationToken
    from .runner import StepRunner
    from .topology import Topology

logger = logging.getLogger(__name__)


async def replay_from_step(
    runner: StepRunner,
    start_step_key: str,
    seed: list[Record],
    cancel: CancellationToken,
    topology: Topology | None = None,
) -> RunResult:
    """Execute from *start_step_key* onwards with *seed* as its input.

    Args:
        runner: Step dispatcher holding the run's tallies.
        start_step_key: First step to execute.
        seed: Records injected as the input of the start step.
        cancel: Cancellation token polled between steps.
        topology: Validated topology for graph definitions; None for linear.

    Returns:
        The run result; ``processed`` counts the seed records.

    Raises:
        DefinitionError: If *start_step_key* is not a step of the definition.
    """
    definition = runner.definition
    keys = definition.step_keys
    if start_step_key not in keys:
        msg = f"Replay start step not found: {start_step_key}"
        raise DefinitionError(msg)

    runner.count_extracted = False
    runner.processed += len(seed)
    logger.info("Replaying from %s with %d seed records", start_step_key, len(seed))

    if topology is None:
        steps = definition.steps[keys.index(start_step_key) :]
        return await execute_linear(runner, steps, cancel, seed=seed)

    subset = reachable_from(topology, start_step_key)
    return await execute_graph(
        runner,
        topology,
        cancel,
        seeds={start_step_key: seed},
        only=subset,
    )
