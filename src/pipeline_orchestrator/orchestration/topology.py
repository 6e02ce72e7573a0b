"""Graph structure of a pipeline definition.

Builds adjacency from ``edges[]`` and validates it: every endpoint must be
a known step and the graph must be acyclic. Cycle detection uses Kahn's
algorithm (BFS topological sort) with a DFS pass to report the cycle.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..exceptions import DefinitionError

if TYPE_CHECKING:
    from ..definition import PipelineDefinition, PipelineEdge

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Topology:
    """Adjacency view of a pipeline graph.

    Attributes:
        nodes: Step keys in definition order.
        successors: Outgoing edges per step, in edge order.
        predecessors: Incoming edges per step, in edge order.
    """

    nodes: list[str]
    successors: dict[str, list[PipelineEdge]] = field(default_factory=dict)
    predecessors: dict[str, list[PipelineEdge]] = field(default_factory=dict)

    @property
    def roots(self) -> list[str]:
        """Steps with no incoming edges."""
        return [key for key in self.nodes if not self.predecessors[key]]

    @property
    def sinks(self) -> list[str]:
        """Steps with no outgoing edges."""
        return [key for key in self.nodes if not self.successors[key]]


def build_topology(definition: PipelineDefinition) -> Topology:
    """Build the adjacency structure for *definition*.

    Raises:
        DefinitionError: If an edge references an unknown step.
    """
    nodes = definition.step_keys
    known = set(nodes)
    successors: dict[str, list[PipelineEdge]] = {key: [] for key in nodes}
    predecessors: dict[str, list[PipelineEdge]] = {key: [] for key in nodes}

    for edge in definition.edges:
        for endpoint in (edge.from_, edge.to):
            if endpoint not in known:
                msg = f"Edge {edge.from_} -> {edge.to} references unknown step {endpoint!r}"
                raise DefinitionError(msg)
        successors[edge.from_].append(edge)
        predecessors[edge.to].append(edge)

    return Topology(nodes=nodes, successors=successors, predecessors=predecessors)


def topological_order(topology: Topology) -> tuple[list[str], set[str]]:
    """Kahn's algorithm with ties broken by definition order.

    Returns:
        ``(order, remaining)`` where *remaining* holds the steps that could
        not be ordered because they sit on or behind a cycle.
    """
    position = {key: index for index, key in enumerate(topology.nodes)}
    in_degree = {key: len(topology.predecessors[key]) for key in topology.nodes}
    queue: deque[str] = deque(key for key in topology.nodes if in_degree[key] == 0)

    order: list[str] = []
    while queue:
        node = queue.popleft()
        order.append(node)
        released = []
        for edge in topology.successors[node]:
            in_degree[edge.to] -= 1
            if in_degree[edge.to] == 0:
                released.append(edge.to)
        queue.extend(sorted(released, key=position.__getitem__))

    remaining = {key for key, degree in in_degree.items() if degree > 0}
    return order, remaining


def find_cycles(topology: Topology) -> list[str]:
    """Return one formatted ``A -> B -> A`` string per detected cycle."""
    _, remaining = topological_order(topology)
    if not remaining:
        return []

    errors: list[str] = []
    visited: set[str] = set()
    for start in sorted(remaining):
        if start in visited:
            continue

        path: list[str] = []
        path_set: set[str] = set()
        node = start
        while node not in path_set:
            path.append(node)
            path_set.add(node)
            next_node = next(
                (e.to for e in topology.successors[node] if e.to in remaining),
                None,
            )
            if next_node is None:
                break
            node = next_node

        if node in path_set:
            cycle = path[path.index(node) :]
            cycle.append(node)
            visited.update(cycle[:-1])
            errors.append(" -> ".join(cycle))

    return errors


def validate_graph(definition: PipelineDefinition) -> Topology:
    """Build and validate the topology of a graph definition.

    Raises:
        DefinitionError: On unknown edge endpoints or cycles.
    """
    topology = build_topology(definition)
    cycles = find_cycles(topology)
    if cycles:
        msg = f"Pipeline graph contains a cycle: {'; '.join(cycles)}"
        raise DefinitionError(msg)
    return topology


def reachable_from(topology: Topology, start: str) -> set[str]:
    """Return *start* and every step downstream of it."""
    seen = {start}
    queue: deque[str] = deque([start])
    while queue:
        node = queue.popleft()
        for edge in topology.successors.get(node, []):
            if edge.to not in seen:
                seen.add(edge.to)
                queue.append(edge.to)
    return seen
