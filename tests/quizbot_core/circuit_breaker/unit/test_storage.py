from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

import quizbot_core.circuit_breaker.storage as storage_mod
from quizbot_core.circuit_breaker import (
    BreakerSnapshot,
    CircuitState,
    InMemoryBreakerStorage,
)

pytestmark = pytest.mark.asyncio

_START = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


async def test_get_state_creates_default_snapshot() -> None:
    storage = InMemoryBreakerStorage()

    snapshot = await storage.get_state("gemini")

    assert snapshot == BreakerSnapshot(name="gemini")
    assert snapshot.state_at(_START) == CircuitState.CLOSED
    assert snapshot.retry_after(_START) == 0.0
    assert storage.names() == ("gemini",)


async def test_record_failure_prunes_entries_outside_window(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    now = _START
    monkeypatch.setattr(storage_mod, "_utcnow", lambda: now)
    storage = InMemoryBreakerStorage()

    await storage.record_failure("gemini", window=60)
    now = _START + timedelta(seconds=30)
    await storage.record_failure("gemini", window=60)
    now = _START + timedelta(seconds=61)
    snapshot = await storage.record_failure("gemini", window=60)

    assert snapshot.failures == (
        _START + timedelta(seconds=30),
        _START + timedelta(seconds=61),
    )


async def test_force_open_sets_cool_down_and_keeps_failures(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(storage_mod, "_utcnow", lambda: _START)
    storage = InMemoryBreakerStorage()
    await storage.record_failure("gemini", window=120)

    snapshot = await storage.force_open("gemini", duration=120)

    assert snapshot.open_until == _START + timedelta(seconds=120)
    assert snapshot.failure_count == 1
    assert snapshot.state_at(_START + timedelta(seconds=119)) == CircuitState.OPEN
    assert snapshot.state_at(_START + timedelta(seconds=120)) == CircuitState.CLOSED
    assert snapshot.retry_after(_START + timedelta(seconds=100)) == pytest.approx(20)


async def test_reset_clears_failures_but_not_open_window() -> None:
    storage = InMemoryBreakerStorage()
    await storage.record_failure("gemini", window=120)
    opened = await storage.force_open("gemini", duration=120)

    snapshot = await storage.reset("gemini")

    assert snapshot.failures == ()
    assert snapshot.open_until == opened.open_until


async def test_reset_of_healthy_snapshot_returns_it_unchanged() -> None:
    storage = InMemoryBreakerStorage()
    healthy = await storage.get_state("gemini")

    assert await storage.reset("gemini") is healthy


async def test_concurrent_failures_are_all_recorded() -> None:
    storage = InMemoryBreakerStorage()

    await asyncio.gather(
        *(storage.record_failure("gemini", window=120) for _ in range(10))
    )

    snapshot = await storage.get_state("gemini")
    assert snapshot.failure_count == 10
