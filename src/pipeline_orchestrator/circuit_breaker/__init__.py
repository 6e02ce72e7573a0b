"""Circuit breaker for network-bound destination steps.

The circuit breaker has three states:
- CLOSED: Normal operation, failures are counted in a sliding window
- OPEN: Circuit tripped, calls are refused without touching the network
- HALF_OPEN: Testing recovery, calls allowed, one failure reopens
"""

from ..circuit_breaker_config import CircuitBreakerConfig, CircuitState
from .breaker import CircuitBreakerService, circuit_key
from .exceptions import CircuitOpenError

__all__ = [
    "CircuitBreakerConfig",
    "CircuitBreakerService",
    "CircuitOpenError",
    "CircuitState",
    "circuit_key",
]
