"""State storage for circuit breakers.

Storage is decoupled from breaker logic. Breaker state is process-local and is
never written to the durable store: a restart always begins ``CLOSED``.

Every mutation is a read-modify-write performed under the per-name lock so no
update to a failure list is split across an ``await`` boundary.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from quizbot_core.circuit_breaker.state import BreakerSnapshot


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AbstractBreakerStorage(ABC):
    """Abstract breaker storage interface."""

    @abstractmethod
    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current breaker snapshot for ``name``."""

    @abstractmethod
    async def record_failure(self, name: str, *, window: float) -> BreakerSnapshot:
        """Append a failure, prune entries older than ``window`` seconds."""

    @abstractmethod
    async def force_open(self, name: str, *, duration: float) -> BreakerSnapshot:
        """Open breaker ``name`` for ``duration`` seconds from now."""

    @abstractmethod
    async def reset(self, name: str) -> BreakerSnapshot:
        """Clear the failure history of breaker ``name``."""


class InMemoryBreakerStorage(AbstractBreakerStorage):
    """In-memory breaker table with one cooperative lock per service key."""

    def __init__(self) -> None:
        """Initialize in-memory snapshot and lock registries."""
        self._snapshots: dict[str, BreakerSnapshot] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def _locked(self, name: str) -> AsyncIterator[BreakerSnapshot]:
        async with self._locks[name]:
            yield self._snapshots.get(name, BreakerSnapshot(name=name))

    def names(self) -> tuple[str, ...]:
        """Return every service key seen so far."""
        return tuple(self._snapshots)

    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current snapshot, creating a default one if missing."""
        async with self._locked(name) as snapshot:
            self._snapshots[name] = snapshot
            return snapshot

    async def record_failure(self, name: str, *, window: float) -> BreakerSnapshot:
        """Record one failure timestamp and drop those outside the window."""
        async with self._locked(name) as snapshot:
            now = _utcnow()
            horizon = now - timedelta(seconds=window)
            failures = tuple(ts for ts in snapshot.failures if ts > horizon)
            updated = BreakerSnapshot(
                name=name,
                failures=(*failures, now),
                open_until=snapshot.open_until,
            )
            self._snapshots[name] = updated
            return updated

    async def force_open(self, name: str, *, duration: float) -> BreakerSnapshot:
        """Open the circuit and restart the cool-down window."""
        async with self._locked(name) as snapshot:
            updated = BreakerSnapshot(
                name=name,
                failures=snapshot.failures,
                open_until=_utcnow() + timedelta(seconds=duration),
            )
            self._snapshots[name] = updated
            return updated

    async def reset(self, name: str) -> BreakerSnapshot:
        """Forget recorded failures.

        Already-healthy snapshots are returned unchanged to avoid hot-path
        writes after every success.
        """
        async with self._locked(name) as snapshot:
            if not snapshot.failures:
                self._snapshots[name] = snapshot
                return snapshot
            updated = BreakerSnapshot(
                name=name,
                failures=(),
                open_until=snapshot.open_until,
            )
            self._snapshots[name] = updated
            return updated
