"""Graph execution: topological walk with ROUTE branch pruning.

Steps run one at a time in Kahn order. A step becomes ready once every
predecessor has either executed or been pruned; it runs if at least one
incoming edge is enabled, otherwise it is pruned too. An edge is enabled
when its source executed and, for ROUTE sources, its branch received
records (an unlabeled edge out of a ROUTE needs any routed record).

A GATE without approval pauses the whole run: no further ready step is
scheduled.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING

from ..exceptions import DefinitionError
from ..models import Record, RouteOutput, RunResult, RunStatus

if TYPE_CHECKING:
    from ..definition import PipelineEdge
    from .cancellation import CancellationToken
    from .runner import StepRunner
    from .topology import Topology

logger = logging.getLogger(__name__)


class _GraphWalk:
    def __init__(self, topology: Topology, nodes: set[str]) -> None:
        self.topology = topology
        self.nodes = nodes
        # Edges from outside the walked subset (replay) are ignored
        self.incoming: dict[str, list[PipelineEdge]] = {
            key: [e for e in topology.predecessors[key] if e.from_ in nodes] for key in nodes
        }
        self.in_degree = {key: len(edges) for key, edges in self.incoming.items()}
        self.outputs: dict[str, list[Record]] = {}
        self.routes: dict[str, RouteOutput] = {}
        self.executed: set[str] = set()
        self.pruned: set[str] = set()
        self.ready: deque[str] = deque(
            key for key in topology.nodes if key in nodes and self.in_degree[key] == 0
        )

    def edge_enabled(self, edge: PipelineEdge) -> bool:
        if edge.from_ not in self.executed:
            return False
        route = self.routes.get(edge.from_)
        if route is None:
            return True
        if edge.branch is None:
            return bool(route.all_records())
        return route.matched(edge.branch)

    def edge_payload(self, edge: PipelineEdge) -> list[Record]:
        route = self.routes.get(edge.from_)
        if route is None:
            return self.outputs.get(edge.from_, [])
        if edge.branch is None:
            return route.all_records()
        return list(route.branches.get(edge.branch, []))

    def inputs_for(self, key: str) -> list[Record]:
        merged: list[Record] = []
        for edge in self.incoming[key]:
            if self.edge_enabled(edge):
                merged.extend(self.edge_payload(edge))
        return merged

    def release(self, key: str) -> None:
        """Mark *key* finished (executed or pruned) and settle successors."""
        for edge in self.topology.successors[key]:
            target = edge.to
            if target not in self.nodes:
                continue
            self.in_degree[target] -= 1
            if self.in_degree[target] == 0:
                if any(self.edge_enabled(e) for e in self.incoming[target]):
                    self.ready.append(target)
                else:
                    self.prune(target)

    def prune(self, key: str) -> None:
        logger.debug("Pruned step %s: no enabled incoming edge", key)
        self.pruned.add(key)
        self.release(key)


async def execute_graph(
    runner: StepRunner,
    topology: Topology,
    cancel: CancellationToken,
    seeds: dict[str, list[Record]] | None = None,
    only: set[str] | None = None,
) -> RunResult:
    """Walk the graph in topological order.

    Args:
        runner: Step dispatcher holding the run's tallies.
        topology: Validated topology of the definition.
        cancel: Cancellation token polled between steps.
        seeds: Replacement inputs for specific steps (replay).
        only: Restrict the walk to these steps (replay); all when None.

    Returns:
        COMPLETED, PAUSED or CANCELLED result with the metrics so far.

    Raises:
        DefinitionError: If steps remain unreachable because of a cycle.
    """
    nodes = set(only) if only is not None else set(topology.nodes)
    walk = _GraphWalk(topology, nodes)
    seeds = seeds or {}

    while walk.ready:
        key = walk.ready.popleft()
        if await cancel.is_cancelled():
            logger.info("Cancellation observed before step %s", key)
            return runner.result(RunStatus.CANCELLED)

        step = runner.definition.get_step(key)
        if step is None:
            msg = f"Unknown step in graph: {key}"
            raise DefinitionError(msg)

        records = list(seeds[key]) if key in seeds else walk.inputs_for(key)
        outcome = await runner.run_step(step, records)
        if outcome.paused:
            return runner.result(RunStatus.PAUSED, paused_at_step=key)

        walk.outputs[key] = outcome.records
        if outcome.route is not None:
            walk.routes[key] = outcome.route
        walk.executed.add(key)
        walk.release(key)

    unfinished = nodes - walk.executed - walk.pruned
    if unfinished:
        msg = f"Pipeline graph contains a cycle through: {', '.join(sorted(unfinished))}"
        raise DefinitionError(msg)

    if walk.pruned:
        runner.counters["pruned_steps"] += len(walk.pruned)
        for key in sorted(walk.pruned):
            runner.details.append({"step": key, "status": "pruned"})
    return runner.result(RunStatus.COMPLETED)
