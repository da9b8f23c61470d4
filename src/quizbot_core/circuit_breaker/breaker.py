"""Core circuit breaker implementation."""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from quizbot_core.circuit_breaker.exceptions import CircuitOpenError
from quizbot_core.circuit_breaker.metrics import BreakerListener
from quizbot_core.circuit_breaker.state import BreakerSnapshot, CircuitState
from quizbot_core.circuit_breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Failures inside the window that open the circuit.
        window_seconds: Rolling window for counting failures.
        open_seconds: Cool-down during which calls fail fast.
    """

    failure_threshold: int = 5
    window_seconds: float = 120.0
    open_seconds: float = 120.0

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if self.open_seconds < 0:
            raise ValueError("open_seconds must be >= 0")


class CircuitBreaker:
    """Failure-window breaker for one external service key.

    There is no half-open trial call: once the cool-down elapses calls flow again,
    and a single success clears the failure history.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        storage: AbstractBreakerStorage | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Service key used for storage and metrics.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            storage: State storage backend. Defaults to in-memory storage.
            listeners: Optional listener hooks for breaker events.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._storage = InMemoryBreakerStorage() if storage is None else storage
        self._listeners = tuple(listeners) if listeners is not None else ()

    async def _emit_state_change(self, old: CircuitState, new: CircuitState) -> None:
        for listener in self._listeners:
            try:
                await listener.on_state_change(self.name, old, new)
            except Exception:
                continue

    async def _emit_call_rejected(self) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_rejected(self.name)
            except Exception:
                continue

    async def _emit_call_succeeded(self) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_succeeded(self.name)
            except Exception:
                continue

    async def _emit_call_failed(self, exc: BaseException) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_failed(self.name, exc)
            except Exception:
                continue

    async def snapshot(self) -> BreakerSnapshot:
        return await self._storage.get_state(self.name)

    async def is_open(self) -> bool:
        snapshot = await self._storage.get_state(self.name)
        return snapshot.state_at(_utcnow()) == CircuitState.OPEN

    async def ensure_closed(self) -> None:
        """Fail fast when the circuit is open.

        Raises:
            CircuitOpenError: While the cool-down has not elapsed.
        """
        snapshot = await self._storage.get_state(self.name)
        now = _utcnow()
        if snapshot.state_at(now) == CircuitState.OPEN:
            await self._emit_call_rejected()
            raise CircuitOpenError(self.name, retry_after=snapshot.retry_after(now))

    async def record_failure(self, exc: BaseException) -> bool:
        """Record one retryable failure, opening the circuit at the threshold.

        Returns:
            True when this failure tripped the breaker open.
        """
        await self._emit_call_failed(exc)
        snapshot = await self._storage.record_failure(
            self.name, window=self.config.window_seconds
        )
        if snapshot.failure_count < self.config.failure_threshold:
            return False

        await self._storage.force_open(self.name, duration=self.config.open_seconds)
        await self._emit_state_change(CircuitState.CLOSED, CircuitState.OPEN)
        return True

    async def record_success(self) -> None:
        """Treat one success as full recovery."""
        await self._storage.reset(self.name)
        await self._emit_call_succeeded()


class BreakerRegistry:
    """Process-wide breaker table keyed by service key.

    Owned by the application context and passed by reference into every
    component that calls an external service.
    """

    def __init__(
        self,
        *,
        config: CircuitBreakerConfig | None = None,
        storage: AbstractBreakerStorage | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        self.config = CircuitBreakerConfig() if config is None else config
        self._storage = InMemoryBreakerStorage() if storage is None else storage
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, service_key: str) -> CircuitBreaker:
        breaker = self._breakers.get(service_key)
        if breaker is None:
            breaker = CircuitBreaker(
                service_key,
                config=self.config,
                storage=self._storage,
                listeners=self._listeners,
            )
            self._breakers[service_key] = breaker
        return breaker
