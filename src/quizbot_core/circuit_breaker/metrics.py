"""Observability hooks for circuit breakers and the services around them."""

from dataclasses import asdict, dataclass
from typing import Protocol

from quizbot_core.circuit_breaker.state import CircuitState


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events."""

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, name: str) -> None:
        """Handle call rejection while the circuit is open."""

    async def on_call_succeeded(self, name: str) -> None:
        """Handle successful protected call completion."""

    async def on_call_failed(self, name: str, exc: BaseException) -> None:
        """Handle a retryable failure recorded against the circuit."""


@dataclass
class ServiceMetrics:
    """Process-local counters for the AI dependency and deferred work.

    Doubles as a :class:`BreakerListener` so rejected calls are counted
    without the caller touching the counters directly.
    """

    attempts: int = 0
    retries: int = 0
    circuit_open: int = 0
    fallback_served: int = 0
    queued_requests: int = 0
    queue_drops: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        _ = (name, old, new)

    async def on_call_rejected(self, name: str) -> None:
        _ = name
        self.circuit_open += 1

    async def on_call_succeeded(self, name: str) -> None:
        _ = name

    async def on_call_failed(self, name: str, exc: BaseException) -> None:
        _ = (name, exc)
