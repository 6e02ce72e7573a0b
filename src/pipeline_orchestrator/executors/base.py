"""Step executor contracts.

The orchestrator only knows these shapes; adapter logic (HTTP extraction,
search-engine sinks, queue publishing, webhooks) lives behind them.

Every executor receives the step, the in-flight records, the shared
:class:`ExecutorContext` and a record error callback. Per-record problems
go to the callback; raising is reserved for failures of the whole call.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol, Union, runtime_checkable

from ..models import ExecutionResult, Record, RouteOutput

if TYPE_CHECKING:
    from ..checkpoint import ExecutorContext
    from ..definition import PipelineStep

# async (step_key, message, payload) -> None
OnRecordError = Callable[[str, str, Any], Awaitable[None]]


class ExtractExecutor(ABC):
    """EXTRACT: produce the record set from a source."""

    @abstractmethod
    async def execute(
        self,
        step: PipelineStep,
        records: list[Record],
        ctx: ExecutorContext,
        on_record_error: OnRecordError,
    ) -> list[Record]:
        """Return the extracted records. *records* is empty unless replaying."""


class OperatorExecutor(ABC):
    """TRANSFORM / VALIDATE / ENRICH: map the whole record set to a new one."""

    @abstractmethod
    async def execute(
        self,
        step: PipelineStep,
        records: list[Record],
        ctx: ExecutorContext,
        on_record_error: OnRecordError,
    ) -> list[Record]:
        """Return the replacement record set."""


class RouteExecutor(ABC):
    """ROUTE: split the record set into named branches."""

    @abstractmethod
    async def execute(
        self,
        step: PipelineStep,
        records: list[Record],
        ctx: ExecutorContext,
        on_record_error: OnRecordError,
    ) -> RouteOutput:
        """Return records grouped by branch name."""


class LoadExecutor(ABC):
    """LOAD / EXPORT / FEED / SINK: deliver records to a destination."""

    @abstractmethod
    async def execute(
        self,
        step: PipelineStep,
        records: list[Record],
        ctx: ExecutorContext,
        on_record_error: OnRecordError,
    ) -> ExecutionResult:
        """Deliver *records* and return the ok/fail tally.

        Raises:
            AdapterError: When the destination call failed as a whole.
        """


@runtime_checkable
class Simulatable(Protocol):
    """Capability of destination executors used by dry runs."""

    async def simulate(self, step: PipelineStep, records: list[Record]) -> dict[str, Any]:
        """Describe the effect of delivering *records* without contacting the destination."""
        ...


StepExecutor = Union[ExtractExecutor, OperatorExecutor, RouteExecutor, LoadExecutor]
