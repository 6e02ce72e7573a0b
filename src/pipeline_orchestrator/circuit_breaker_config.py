"""Circuit breaker configuration.

Defines the circuit state enumeration and the thresholds shared by every
keyed circuit in a :class:`CircuitBreakerService`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class CircuitState(Enum):
    """Possible states for a circuit breaker."""

    CLOSED = "closed"  # Normal operation - requests allowed
    OPEN = "open"  # Circuit tripped - requests blocked
    HALF_OPEN = "half-open"  # Testing recovery - requests allowed, one failure reopens


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for keyed circuit breakers.

    Attributes:
        failure_threshold: Failures inside the sliding window that open the circuit.
        reset_timeout_ms: Time since the last failure before an open circuit
            reads as half-open.
        success_threshold: Successes recorded while half-open that close it.
        window_ms: Sliding window for counting failures.
        max_circuits: Upper bound on tracked keys before eviction.
    """

    failure_threshold: int = 5
    reset_timeout_ms: int = 30_000
    success_threshold: int = 2
    window_ms: int = 60_000
    max_circuits: int = 1000

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be at least 1")
        if self.max_circuits < 1:
            raise ValueError("max_circuits must be at least 1")


# Default configuration instance for convenience
DEFAULT_CONFIG = CircuitBreakerConfig()
