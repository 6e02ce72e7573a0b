"""Tests for GATE step evaluation."""

from __future__ import annotations

import pytest

from pipeline_orchestrator.checkpoint import (
    ExecutorContext,
    gate_approval_key,
    gate_pending_key,
    gate_timeout_key,
)
from pipeline_orchestrator.definition import GateStep, load_definition
from pipeline_orchestrator.executors import GateDecision, GateExecutor
from tests.fakes import records


def _gate(**config) -> GateStep:
    step = load_definition({"steps": [{"key": "review", "type": "GATE", "config": config}]}).steps[0]
    assert isinstance(step, GateStep)
    return step


class _EpochClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def ctx() -> ExecutorContext:
    return ExecutorContext.for_run({}, pipeline_id="orders")


class TestManualGate:
    """MANUAL gates pause until the approval flag is set."""

    def test_unapproved_gate_pauses_with_snapshot(self, ctx: ExecutorContext) -> None:
        decision = GateExecutor().evaluate(_gate(previewCount=2), records(5), ctx)

        assert decision.approved is False
        pending = ctx.checkpoint[gate_pending_key("review")]
        assert pending["stepKey"] == "review"
        assert pending["pendingRecordCount"] == 5
        assert [r["id"] for r in pending["pendingRecords"]] == [1, 2]
        assert ctx.dirty is True

    def test_approved_gate_passes_and_drops_snapshot(self, ctx: ExecutorContext) -> None:
        gate = GateExecutor()
        gate.evaluate(_gate(), records(1), ctx)
        ctx.checkpoint[gate_approval_key("review")] = True

        decision = gate.evaluate(_gate(), records(1), ctx)

        assert decision.approved is True
        assert gate_pending_key("review") not in ctx.checkpoint

    def test_only_literal_true_approves(self, ctx: ExecutorContext) -> None:
        ctx.checkpoint[gate_approval_key("review")] = "yes"
        assert GateExecutor().evaluate(_gate(), [], ctx).approved is False


class TestThresholdGate:
    """THRESHOLD gates auto-approve while the error rate stays low."""

    def test_auto_approves_below_threshold(self, ctx: ExecutorContext) -> None:
        ctx.stats.update(succeeded=99, failed=1)
        gate = _gate(approvalType="THRESHOLD", errorThresholdPercent=5)

        decision = GateExecutor().evaluate(gate, records(3), ctx)

        assert decision == GateDecision(True, "threshold")
        assert gate_pending_key("review") not in ctx.checkpoint

    def test_pauses_at_or_above_threshold(self, ctx: ExecutorContext) -> None:
        ctx.stats.update(succeeded=9, failed=1)
        gate = _gate(approvalType="THRESHOLD", errorThresholdPercent=10)

        assert GateExecutor().evaluate(gate, records(3), ctx).approved is False


class TestTimeoutGate:
    """TIMEOUT gates approve on the first visit after the deadline."""

    def test_first_visit_records_deadline(self, ctx: ExecutorContext) -> None:
        clock = _EpochClock()
        gate = _gate(approvalType="TIMEOUT", timeoutSeconds=60)

        decision = GateExecutor(clock=clock).evaluate(gate, [], ctx)

        assert decision.approved is False
        assert ctx.checkpoint[gate_timeout_key("review")] == clock.now + 60

    def test_visit_after_deadline_approves(self, ctx: ExecutorContext) -> None:
        clock = _EpochClock()
        executor = GateExecutor(clock=clock)
        gate = _gate(approvalType="TIMEOUT", timeoutSeconds=60)
        executor.evaluate(gate, [], ctx)

        clock.now += 30
        assert executor.evaluate(gate, [], ctx).approved is False

        clock.now += 30
        decision = executor.evaluate(gate, [], ctx)
        assert decision.approved is True
        assert decision.reason == "timeout"
        assert ctx.checkpoint[gate_approval_key("review")] is True
