"""Executor lookup by step type and adapter code."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..exceptions import DefinitionError
from ..models import LOAD_CLASS_STEP_TYPES, OPERATOR_STEP_TYPES, StepType
from .base import ExtractExecutor, LoadExecutor, OperatorExecutor, RouteExecutor, StepExecutor

if TYPE_CHECKING:
    from ..definition import PipelineDefinition, PipelineStep

logger = logging.getLogger(__name__)

# Step types handled by the orchestrator itself
BUILTIN_STEP_TYPES = frozenset({StepType.TRIGGER, StepType.GATE})


def _expected_contract(step_type: StepType) -> type:
    if step_type == StepType.EXTRACT:
        return ExtractExecutor
    if step_type in OPERATOR_STEP_TYPES:
        return OperatorExecutor
    if step_type == StepType.ROUTE:
        return RouteExecutor
    if step_type in LOAD_CLASS_STEP_TYPES:
        return LoadExecutor
    msg = f"Step type {step_type.value} does not take an executor"
    raise ValueError(msg)


class ExecutorRegistry:
    """Maps ``(step type, adapter code)`` to an executor.

    Resolution tries the exact adapter code first, then the executor
    registered for the bare step type.

    Usage:
        registry = ExecutorRegistry()
        registry.register(StepType.EXTRACT, HttpExtractor(), adapter_code="http")
        registry.register(StepType.LOAD, DefaultLoader())
        executor = registry.resolve(step)
    """

    def __init__(self) -> None:
        self._by_type: dict[StepType, StepExecutor] = {}
        self._by_adapter: dict[tuple[StepType, str], StepExecutor] = {}

    def register(
        self,
        step_type: StepType | str,
        executor: StepExecutor,
        adapter_code: str | None = None,
    ) -> None:
        """Register *executor* for a step type, optionally for one adapter.

        Raises:
            ValueError: For TRIGGER/GATE, which the orchestrator runs itself.
            TypeError: If the executor does not implement the contract for
                the step type.
        """
        step_type = StepType(step_type)
        contract = _expected_contract(step_type)
        if not isinstance(executor, contract):
            msg = (
                f"{type(executor).__name__} cannot handle {step_type.value} steps; "
                f"expected a {contract.__name__}"
            )
            raise TypeError(msg)

        if adapter_code:
            self._by_adapter[(step_type, adapter_code)] = executor
        else:
            self._by_type[step_type] = executor
        logger.debug(
            "Registered %s for %s%s",
            type(executor).__name__,
            step_type.value,
            f" ({adapter_code})" if adapter_code else "",
        )

    def resolve(self, step: PipelineStep) -> StepExecutor:
        """Return the executor for *step*.

        Raises:
            DefinitionError: If no executor is registered for the step.
        """
        step_type = step.step_type
        adapter_code = step.adapter_code
        if adapter_code:
            executor = self._by_adapter.get((step_type, adapter_code))
            if executor is not None:
                return executor
        executor = self._by_type.get(step_type)
        if executor is None:
            suffix = f" with adapter {adapter_code!r}" if adapter_code else ""
            msg = f"No executor registered for {step_type.value} step {step.key!r}{suffix}"
            raise DefinitionError(msg)
        return executor

    def check_definition(self, definition: PipelineDefinition) -> None:
        """Resolve every step up front so a missing executor fails early.

        Raises:
            DefinitionError: For the first step without an executor.
        """
        for step in definition.steps:
            if step.step_type not in BUILTIN_STEP_TYPES:
                self.resolve(step)
