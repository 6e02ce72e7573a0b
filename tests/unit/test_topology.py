"""Tests for graph topology building and cycle detection."""

from __future__ import annotations

import pytest

from pipeline_orchestrator.definition import load_definition
from pipeline_orchestrator.exceptions import DefinitionError
from pipeline_orchestrator.orchestration.topology import (
    build_topology,
    find_cycles,
    reachable_from,
    topological_order,
    validate_graph,
)


def _graph(edges: list[tuple[str, str]], keys: str = "ABCD"):
    return load_definition(
        {
            "steps": [{"key": key, "type": "TRANSFORM"} for key in keys],
            "edges": [{"from": a, "to": b} for a, b in edges],
        }
    )


DIAMOND = [("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")]


class TestTopology:
    """Adjacency, roots and sinks."""

    def test_roots_and_sinks(self) -> None:
        topology = build_topology(_graph(DIAMOND))
        assert topology.roots == ["A"]
        assert topology.sinks == ["D"]
        assert [e.to for e in topology.successors["A"]] == ["B", "C"]
        assert [e.from_ for e in topology.predecessors["D"]] == ["B", "C"]

    def test_topological_order_follows_definition_order_on_ties(self) -> None:
        order, remaining = topological_order(build_topology(_graph(DIAMOND)))
        assert order == ["A", "B", "C", "D"]
        assert remaining == set()

    def test_reachable_from(self) -> None:
        topology = build_topology(_graph(DIAMOND))
        assert reachable_from(topology, "B") == {"B", "D"}
        assert reachable_from(topology, "A") == {"A", "B", "C", "D"}


class TestCycleDetection:
    """Cycles are reported before anything runs."""

    def test_acyclic_graph_validates(self) -> None:
        topology = validate_graph(_graph(DIAMOND))
        assert topology.nodes == ["A", "B", "C", "D"]

    def test_back_edge_rejected(self) -> None:
        with pytest.raises(DefinitionError, match="Pipeline graph contains a cycle"):
            validate_graph(_graph([*DIAMOND, ("D", "A")]))

    def test_cycle_path_is_reported(self) -> None:
        cycles = find_cycles(build_topology(_graph([("A", "B"), ("B", "C"), ("C", "A")], "ABC")))
        assert cycles == ["A -> B -> C -> A"]

    def test_self_loop_rejected(self) -> None:
        with pytest.raises(DefinitionError, match="A -> A"):
            validate_graph(_graph([("A", "A")], "A"))
