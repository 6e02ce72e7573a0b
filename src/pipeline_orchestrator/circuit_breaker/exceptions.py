"""Errors raised by the destination circuit breaker."""

from __future__ import annotations

from ..exceptions import PipelineError


class CircuitOpenError(PipelineError):
    """A call to an EXPORT/SINK destination was refused without being sent.

    Counted like an adapter failure for the batch it refused, but never
    recorded against the circuit itself.

    Attributes:
        identifier: Circuit key (``adapter:host``).
        time_until_retry: Seconds until the circuit admits a probe call.
    """

    def __init__(self, identifier: str, time_until_retry: float) -> None:
        self.identifier = identifier
        self.time_until_retry = time_until_retry
        super().__init__(
            f"Destination {identifier} refused by open circuit, probe allowed in "
            f"{time_until_retry:.1f}s"
        )
