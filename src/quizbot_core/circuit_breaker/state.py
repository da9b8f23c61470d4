"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of one service key's breaker.

    Attributes:
        name: Service key the breaker guards.
        failures: Timestamps of recent retryable failures, oldest first,
            already pruned to the rolling window.
        open_until: Instant before which calls fail fast, if ever opened.
    """

    name: str
    failures: tuple[datetime, ...] = ()
    open_until: datetime | None = None

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    def state_at(self, now: datetime) -> CircuitState:
        """Return ``OPEN`` while ``now`` precedes ``open_until``."""
        if self.open_until is not None and now < self.open_until:
            return CircuitState.OPEN
        return CircuitState.CLOSED

    def retry_after(self, now: datetime) -> float:
        """Seconds left in the cool-down, ``0.0`` when closed."""
        if self.open_until is None:
            return 0.0
        return max((self.open_until - now).total_seconds(), 0.0)
