"""Tests for run lifecycle and result models."""

from __future__ import annotations

import pytest

from pipeline_orchestrator.exceptions import InvalidRunTransitionError
from pipeline_orchestrator.models import RouteOutput, Run, RunResult, RunStatus


class TestRunTransitions:
    """Run state machine."""

    def test_new_run_is_pending(self) -> None:
        run = Run(pipeline_id="p")
        assert run.status == RunStatus.PENDING
        assert run.run_id

    def test_happy_path(self) -> None:
        run = Run()
        run.transition(RunStatus.RUNNING)
        run.transition(RunStatus.COMPLETED)
        assert run.is_terminal is True

    def test_pause_and_resume(self) -> None:
        run = Run()
        run.transition(RunStatus.RUNNING)
        run.transition(RunStatus.PAUSED)
        run.paused_at_step = "g1"
        run.transition(RunStatus.RUNNING)
        assert run.paused_at_step is None

    def test_cancel_requested_can_finish(self) -> None:
        run = Run()
        run.transition(RunStatus.RUNNING)
        run.transition(RunStatus.CANCEL_REQUESTED)
        run.transition(RunStatus.CANCELLED)
        assert run.status == RunStatus.CANCELLED

    @pytest.mark.parametrize(
        ("path", "target"),
        [
            ([], RunStatus.COMPLETED),
            ([RunStatus.RUNNING, RunStatus.COMPLETED], RunStatus.RUNNING),
            ([RunStatus.RUNNING, RunStatus.PAUSED], RunStatus.COMPLETED),
            ([RunStatus.CANCELLED], RunStatus.RUNNING),
        ],
    )
    def test_illegal_transitions_rejected(
        self, path: list[RunStatus], target: RunStatus
    ) -> None:
        run = Run(run_id="r1")
        for status in path:
            run.transition(status)

        with pytest.raises(InvalidRunTransitionError, match="Run r1: cannot transition"):
            run.transition(target)


class TestResults:
    """RouteOutput and RunResult helpers."""

    def test_route_output_merges_in_branch_order(self) -> None:
        route = RouteOutput(branches={"a": [{"id": 1}], "b": [{"id": 2}], "c": []})
        assert route.all_records() == [{"id": 1}, {"id": 2}]
        assert route.matched("a") is True
        assert route.matched("c") is False
        assert route.matched("missing") is False

    def test_metrics_triple(self) -> None:
        result = RunResult(status=RunStatus.COMPLETED, processed=5, succeeded=4, failed=1)
        assert result.metrics() == {"processed": 5, "succeeded": 4, "failed": 1}
