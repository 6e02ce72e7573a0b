"""Hook runner contract.

Definitions carry ``hooks``: a mapping of stage name to a list of actions.
What an action does (webhooks, scripts, emails) is decided by a
:class:`HookRunner` implementation; the orchestrator only invokes it at the
stages below and around each step. Untrusted inline code must never run
inside the orchestrator process; runners that support it belong in a
separate sandboxed process.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..models import Record

if TYPE_CHECKING:
    from ..definition import PipelineStep

logger = logging.getLogger(__name__)

# Stage names recognised in ``definition.hooks``
STAGE_RUN_START = "onStart"
STAGE_RUN_COMPLETE = "onComplete"
STAGE_RUN_ERROR = "onError"
STAGE_BEFORE_STEP = "beforeStep"
STAGE_AFTER_STEP = "afterStep"

HOOK_STAGES = (
    STAGE_RUN_START,
    STAGE_RUN_COMPLETE,
    STAGE_RUN_ERROR,
    STAGE_BEFORE_STEP,
    STAGE_AFTER_STEP,
)


class HookRunner:
    """Default runner: logs stage notifications, passes records through.

    Subclasses override :meth:`run_stage` to perform the configured
    actions and :meth:`before_step` / :meth:`after_step` to intercept the
    record set around a step.
    """

    async def run_stage(
        self,
        stage: str,
        actions: list[Any],
        payload: dict[str, Any],
    ) -> None:
        if actions:
            logger.debug("Hook stage %s: %d action(s) not executed", stage, len(actions))

    async def before_step(self, step: PipelineStep, records: list[Record]) -> list[Record]:
        return records

    async def after_step(self, step: PipelineStep, records: list[Record]) -> list[Record]:
        return records


class SafeHooks:
    """Wraps a HookRunner so hook failures are logged, never fatal."""

    def __init__(self, runner: HookRunner, hooks: dict[str, list[Any]]) -> None:
        self._runner = runner
        self._hooks = hooks

    async def stage(self, stage: str, payload: dict[str, Any]) -> None:
        actions = self._hooks.get(stage, [])
        try:
            await self._runner.run_stage(stage, actions, payload)
        except Exception as e:
            logger.warning("Hook stage %s failed: %s", stage, e)

    async def before_step(self, step: PipelineStep, records: list[Record]) -> list[Record]:
        await self.stage(STAGE_BEFORE_STEP, {"stepKey": step.key, "recordCount": len(records)})
        try:
            return await self._runner.before_step(step, records)
        except Exception as e:
            logger.warning("before_step hook for %s failed: %s", step.key, e)
            return records

    async def after_step(self, step: PipelineStep, records: list[Record]) -> list[Record]:
        try:
            result = await self._runner.after_step(step, records)
        except Exception as e:
            logger.warning("after_step hook for %s failed: %s", step.key, e)
            result = records
        await self.stage(STAGE_AFTER_STEP, {"stepKey": step.key, "recordCount": len(result)})
        return result
