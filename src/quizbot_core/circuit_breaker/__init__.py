"""Failure-window circuit breaker for flaky external services.

Key behavior notes:
  - Each service key keeps the timestamps of its recent retryable failures.
    Reaching ``failure_threshold`` inside ``window_seconds`` opens the circuit
    for ``open_seconds``.
  - While open, calls fail fast with ``CircuitOpenError`` and the protected
    operation is never invoked.
  - There is no half-open trial count. A single success clears the history.
  - State is process-local and starts ``CLOSED`` on every restart.
"""

from quizbot_core.circuit_breaker.breaker import (
    BreakerRegistry,
    CircuitBreaker,
    CircuitBreakerConfig,
)
from quizbot_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from quizbot_core.circuit_breaker.metrics import BreakerListener, ServiceMetrics
from quizbot_core.circuit_breaker.state import BreakerSnapshot, CircuitState
from quizbot_core.circuit_breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
)

__all__ = [
    "AbstractBreakerStorage",
    "BreakerListener",
    "BreakerRegistry",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "InMemoryBreakerStorage",
    "ServiceMetrics",
]
