"""Pipeline definition models with Pydantic validation.

Steps form a discriminated union keyed by ``type``. Each variant owns a
typed config model; adapter-specific fields unknown to the orchestrator
are kept as extras on the config. JSON documents may use camelCase keys
(``adapterCode``, ``idempotencyKeyField``) or snake_case.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from .backoff import RetryPolicy
from .exceptions import DefinitionError
from .models import StepType

_MODEL_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    frozen=True,
    extra="forbid",
)

# Configs keep unknown keys: they belong to the adapter, not to the core.
_OPEN_MODEL_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    frozen=True,
    extra="allow",
)


# =========================================================================
# Step configs
# =========================================================================


class StepConfig(BaseModel):
    """Base config shared by every step type."""

    model_config = _OPEN_MODEL_CONFIG

    adapter_code: str | None = None

    def extra(self, name: str, default: Any = None) -> Any:
        """Read an adapter-specific field by its JSON name."""
        extras = self.model_extra or {}
        return extras.get(name, default)


class TriggerConfig(StepConfig):
    pass


class ExtractConfig(StepConfig):
    pass


class TransformConfig(StepConfig):
    pass


class ValidateConfig(StepConfig):
    pass


class EnrichConfig(StepConfig):
    pass


class RouteConfig(StepConfig):
    """ROUTE config. Records matching no branch go to ``default_branch``."""

    default_branch: str | None = None


class DestinationConfig(StepConfig):
    """Config shared by LOAD/EXPORT/FEED/SINK steps.

    ``host`` (or ``url``) names the remote endpoint; together with the
    adapter code it forms the circuit breaker key.
    """

    host: str | None = None
    url: str | None = None

    @property
    def endpoint(self) -> str:
        return self.host or self.url or ""


class LoadConfig(DestinationConfig):
    pass


class ExportConfig(DestinationConfig):
    pass


class FeedConfig(DestinationConfig):
    pass


class SinkConfig(DestinationConfig):
    pass


class GateConfig(StepConfig):
    """Human-approval gate.

    Attributes:
        approval_type: MANUAL always pauses. THRESHOLD auto-approves while
            the run's error rate stays below ``error_threshold_percent``.
            TIMEOUT auto-approves on the first resume after
            ``timeout_seconds`` have elapsed since the pause.
        preview_count: Records kept in the pending snapshot preview.
    """

    approval_type: Literal["MANUAL", "THRESHOLD", "TIMEOUT"] = "MANUAL"
    timeout_seconds: int | None = Field(default=None, ge=1)
    error_threshold_percent: float | None = Field(default=None, ge=0, le=100)
    preview_count: int = Field(default=10, ge=0)


# =========================================================================
# Throughput and pipeline context
# =========================================================================


class PauseOnErrorRate(BaseModel):
    model_config = _MODEL_CONFIG

    threshold: float = Field(ge=0, le=1)
    interval_sec: float = Field(default=1.0, ge=0)


class ThroughputConfig(BaseModel):
    """Batching and fan-out limits for LOAD-class steps."""

    model_config = _MODEL_CONFIG

    batch_size: int | None = Field(default=None, ge=1)
    concurrency: int | None = Field(default=None, ge=1)
    rate_limit_rps: float | None = Field(default=None, ge=0)
    pause_on_error_rate: PauseOnErrorRate | None = None
    drain_strategy: Literal["backoff", "shed"] = "backoff"


class ErrorHandlingPolicy(BaseModel):
    """Retry policy applied to LOAD-class deliveries."""

    model_config = _OPEN_MODEL_CONFIG

    max_retries: int = Field(default=0, ge=0)
    retry_delay_ms: float = Field(default=1000, ge=0)
    max_retry_delay_ms: float = Field(default=30000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    jitter_factor: float = Field(default=0.0, ge=0, le=1)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_retries + 1,
            initial_delay_ms=self.retry_delay_ms,
            max_delay_ms=self.max_retry_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            jitter_factor=self.jitter_factor,
        )


class CheckpointingPolicy(BaseModel):
    model_config = _OPEN_MODEL_CONFIG

    enabled: bool = True
    strategy: str | None = None


class PipelineContext(BaseModel):
    """Pipeline-wide policies. Tenant-scoping hints are kept as extras."""

    model_config = _OPEN_MODEL_CONFIG

    error_handling: ErrorHandlingPolicy | None = None
    checkpointing: CheckpointingPolicy | None = None
    idempotency_key_field: str | None = None
    throughput: ThroughputConfig | None = None


# =========================================================================
# Steps
# =========================================================================


class _StepBase(BaseModel):
    model_config = _MODEL_CONFIG

    key: str = Field(min_length=1)
    name: str | None = None
    throughput: ThroughputConfig | None = None

    @property
    def step_type(self) -> StepType:
        return StepType(self.type)  # type: ignore[attr-defined]

    @property
    def adapter_code(self) -> str:
        return self.config.adapter_code or ""  # type: ignore[attr-defined]


class TriggerStep(_StepBase):
    type: Literal["TRIGGER"]
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class ExtractStep(_StepBase):
    type: Literal["EXTRACT"]
    config: ExtractConfig = Field(default_factory=ExtractConfig)


class TransformStep(_StepBase):
    type: Literal["TRANSFORM"]
    config: TransformConfig = Field(default_factory=TransformConfig)


class ValidateStep(_StepBase):
    type: Literal["VALIDATE"]
    config: ValidateConfig = Field(default_factory=ValidateConfig)


class EnrichStep(_StepBase):
    type: Literal["ENRICH"]
    config: EnrichConfig = Field(default_factory=EnrichConfig)


class RouteStep(_StepBase):
    type: Literal["ROUTE"]
    config: RouteConfig = Field(default_factory=RouteConfig)


class LoadStep(_StepBase):
    type: Literal["LOAD"]
    config: LoadConfig = Field(default_factory=LoadConfig)


class ExportStep(_StepBase):
    type: Literal["EXPORT"]
    config: ExportConfig = Field(default_factory=ExportConfig)


class FeedStep(_StepBase):
    type: Literal["FEED"]
    config: FeedConfig = Field(default_factory=FeedConfig)


class SinkStep(_StepBase):
    type: Literal["SINK"]
    config: SinkConfig = Field(default_factory=SinkConfig)


class GateStep(_StepBase):
    type: Literal["GATE"]
    config: GateConfig = Field(default_factory=GateConfig)


PipelineStep = Annotated[
    Union[
        TriggerStep,
        ExtractStep,
        TransformStep,
        ValidateStep,
        EnrichStep,
        RouteStep,
        LoadStep,
        ExportStep,
        FeedStep,
        SinkStep,
        GateStep,
    ],
    Field(discriminator="type"),
]


class PipelineEdge(BaseModel):
    """Directed edge between two step keys.

    ``branch`` names the ROUTE branch that enables this edge; edges leaving
    a ROUTE step without a branch receive every routed record.
    """

    model_config = _MODEL_CONFIG

    from_: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    branch: str | None = None


class PipelineDefinition(BaseModel):
    """Immutable description of one pipeline.

    The presence of any edge switches execution from linear (array order)
    to graph (topological order).
    """

    model_config = _MODEL_CONFIG

    version: int = 1
    steps: list[PipelineStep] = Field(min_length=1)
    edges: list[PipelineEdge] = Field(default_factory=list)
    context: PipelineContext = Field(default_factory=PipelineContext)
    hooks: dict[str, list[Any]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_keys(self) -> PipelineDefinition:
        seen: set[str] = set()
        for step in self.steps:
            if step.key in seen:
                raise ValueError(f"duplicate step key: {step.key}")
            seen.add(step.key)
        for edge in self.edges:
            for endpoint in (edge.from_, edge.to):
                if endpoint not in seen:
                    raise ValueError(f"edge references unknown step: {endpoint}")
        return self

    @property
    def is_graph(self) -> bool:
        return len(self.edges) > 0

    @property
    def step_keys(self) -> list[str]:
        return [step.key for step in self.steps]

    def get_step(self, key: str) -> PipelineStep | None:
        for step in self.steps:
            if step.key == key:
                return step
        return None


def load_definition(data: Mapping[str, Any] | str | bytes) -> PipelineDefinition:
    """Parse a pipeline definition from a mapping or a JSON document.

    Args:
        data: Definition as a dict or a JSON string.

    Returns:
        Validated PipelineDefinition.

    Raises:
        DefinitionError: On invalid JSON or schema violations.
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as exc:
            msg = f"Invalid JSON in pipeline definition: {exc}"
            raise DefinitionError(msg) from exc
    if not isinstance(data, Mapping):
        msg = "Pipeline definition must be a JSON object"
        raise DefinitionError(msg)

    try:
        return PipelineDefinition.model_validate(data)
    except ValidationError as exc:
        msg = f"Invalid pipeline definition: {exc}"
        raise DefinitionError(msg) from exc
