from __future__ import annotations

import pytest

from quizbot_core.circuit_breaker import BreakerRegistry, ServiceMetrics
from quizbot_core.resilience import ResilientCaller
from quizbot_core.state import CommunityStateManager
from tests.quizbot_core.support.fakes import (
    FailingStore,
    FakeGenerator,
    FakeLogger,
    FakePlatform,
)


async def _no_sleep(delay: float) -> None:
    _ = delay


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def platform() -> FakePlatform:
    """Provide a platform with one target channel in community ``guild-1``."""
    fake = FakePlatform()
    fake.add_channel("chan-1", "guild-1")
    return fake


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def store() -> FailingStore:
    """Provide an in-memory store that can be told to fail per method."""
    return FailingStore()


@pytest.fixture
def state_manager(
    store: FailingStore, fake_logger: FakeLogger
) -> CommunityStateManager:
    return CommunityStateManager(store, logger=fake_logger)


@pytest.fixture
def metrics() -> ServiceMetrics:
    return ServiceMetrics()


@pytest.fixture
def caller(metrics: ServiceMetrics, fake_logger: FakeLogger) -> ResilientCaller:
    """Provide a resilient caller whose backoff never really sleeps."""
    return ResilientCaller(
        breakers=BreakerRegistry(listeners=[metrics]),
        metrics=metrics,
        sleep=_no_sleep,
        logger=fake_logger,
    )
