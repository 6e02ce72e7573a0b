"""Built-in GATE step: suspend the run until approval.

Approval is a checkpoint flag under ``__gateApproved:<stepKey>``. When a
gate is reached without approval it stores a pending snapshot under
``__gate:<stepKey>`` so an operator can preview what is waiting.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ..checkpoint import gate_approval_key, gate_pending_key, gate_timeout_key
from ..models import Record

if TYPE_CHECKING:
    from ..checkpoint import ExecutorContext
    from ..definition import GateStep

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateDecision:
    """Whether a gate lets records through, and why."""

    approved: bool
    reason: str


class GateExecutor:
    """Evaluates GATE steps against the run's checkpoint.

    Approval types:
        MANUAL: pass only once the approval flag is set.
        THRESHOLD: pass automatically while the run's error rate so far is
            below ``error_threshold_percent``; otherwise behave like MANUAL.
        TIMEOUT: the first visit records a deadline ``timeout_seconds``
            ahead; a later visit after the deadline approves automatically.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        """Initialize the gate.

        Args:
            clock: Epoch-seconds clock, injectable for tests.
        """
        self._clock = clock or time.time

    def evaluate(
        self,
        step: GateStep,
        records: list[Record],
        ctx: ExecutorContext,
    ) -> GateDecision:
        """Decide whether *step* passes; persist the pending snapshot if not."""
        key = step.key
        config = step.config

        if ctx.is_gate_approved(key):
            ctx.remove(gate_pending_key(key))
            return GateDecision(True, "approved")

        if config.approval_type == "THRESHOLD" and config.error_threshold_percent is not None:
            rate = self._error_rate_percent(ctx)
            if rate < config.error_threshold_percent:
                logger.info(
                    "Gate %s auto-approved: error rate %.1f%% below %.1f%%",
                    key,
                    rate,
                    config.error_threshold_percent,
                )
                return GateDecision(True, "threshold")

        if config.approval_type == "TIMEOUT" and config.timeout_seconds is not None:
            now = self._clock()
            deadline = ctx.get(gate_timeout_key(key))
            if deadline is None:
                ctx.set(gate_timeout_key(key), now + config.timeout_seconds)
            elif now >= float(deadline):
                logger.info("Gate %s auto-approved after timeout", key)
                ctx.set(gate_approval_key(key), True)
                ctx.remove(gate_pending_key(key))
                return GateDecision(True, "timeout")

        ctx.set(
            gate_pending_key(key),
            {
                "stepKey": key,
                "approvalType": config.approval_type,
                "pendingRecordCount": len(records),
                "pendingRecords": records[: config.preview_count],
                "pausedAt": datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.info("Gate %s awaiting approval (%d records pending)", key, len(records))
        return GateDecision(False, "awaiting approval")

    @staticmethod
    def _error_rate_percent(ctx: ExecutorContext) -> float:
        succeeded = ctx.stats.get("succeeded", 0)
        failed = ctx.stats.get("failed", 0)
        total = succeeded + failed
        if total == 0:
            return 0.0
        return failed / total * 100
