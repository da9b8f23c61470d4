from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

import quizbot_core.deferred_queue as queue_mod
from quizbot_core.ai import ChatTurn
from quizbot_core.circuit_breaker import ServiceMetrics
from quizbot_core.deferred_queue import (
    FAILURE_NOTICE,
    DeferredRequestQueue,
    DrainStatus,
    QueuedJob,
    requester_key,
)
from quizbot_core.errors import PermissionDenied, TransientServiceFailure
from quizbot_core.resilience import ResilientCaller
from tests.quizbot_core.support.fakes import FakeGenerator, FakeLogger, FakePlatform

pytestmark = pytest.mark.asyncio

_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _job(
    message_id: str = "m-1",
    *,
    author_id: str = "user-1",
    channel_id: str = "chan-1",
    enqueued_at: datetime = _NOW,
    prompt: str = "what is a transformer?",
) -> QueuedJob:
    return QueuedJob(
        message_id=message_id,
        channel_id=channel_id,
        community_id="guild-1",
        author_id=author_id,
        prompt=prompt,
        system_instruction="be brief",
        history=(ChatTurn("user", "hi"), ChatTurn("model", "hello")),
        enqueued_at=enqueued_at,
    )


@pytest.fixture(autouse=True)
def frozen_clock(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(queue_mod, "_utcnow", lambda: _NOW)


@pytest.fixture
def queue(
    caller: ResilientCaller,
    generator: FakeGenerator,
    platform: FakePlatform,
    fake_logger: FakeLogger,
) -> DeferredRequestQueue:
    return DeferredRequestQueue(
        caller=caller,
        generator=generator,
        platform=platform,
        logger=fake_logger,
    )


async def test_enqueue_returns_position_per_requester(
    queue: DeferredRequestQueue, metrics: ServiceMetrics
) -> None:
    assert queue.enqueue(_job("m-1")) == 1
    assert queue.enqueue(_job("m-2")) == 2
    assert queue.enqueue(_job("m-3", author_id="user-2")) == 1

    assert len(queue) == 3
    assert queue.pending(requester_key("chan-1", "user-1")) == 2
    assert queue.keys() == ["chan-1-user-1", "chan-1-user-2"]
    assert metrics.queued_requests == 3


async def test_enqueue_rejects_when_requester_queue_is_full(
    queue: DeferredRequestQueue, metrics: ServiceMetrics, fake_logger: FakeLogger
) -> None:
    for index in range(5):
        assert queue.enqueue(_job(f"m-{index}")) == index + 1

    assert queue.enqueue(_job("m-overflow")) is None
    assert queue.enqueue(_job("m-other", author_id="user-2")) == 1
    assert metrics.queue_drops == 1
    assert "queue_full" in fake_logger.events


async def test_drain_replies_with_lowercased_answer(
    queue: DeferredRequestQueue,
    generator: FakeGenerator,
    platform: FakePlatform,
) -> None:
    generator.chat_responses = ["  A Transformer Is A Model  "]
    queue.enqueue(_job())

    result = await queue.drain_once()

    assert result.status == DrainStatus.REPLIED
    assert result.job is not None and result.job.message_id == "m-1"
    assert platform.sent_messages[-1]["content"] == "a transformer is a model"
    assert platform.sent_messages[-1]["reply_to"] == "m-1"
    call = generator.chat_calls[-1]
    assert call["message"] == "what is a transformer?"
    assert call["system_instruction"] == "be brief"
    assert call["history"] == (ChatTurn("user", "hi"), ChatTurn("model", "hello"))
    assert len(queue) == 0


async def test_drain_sends_failure_notice_and_does_not_requeue(
    queue: DeferredRequestQueue,
    generator: FakeGenerator,
    platform: FakePlatform,
) -> None:
    generator.chat_responses = [TransientServiceFailure("overloaded")]
    queue.enqueue(_job())

    result = await queue.drain_once()

    assert result.status == DrainStatus.FAILURE_NOTICE
    assert platform.sent_messages[-1]["content"] == FAILURE_NOTICE
    assert len(generator.chat_calls) == 4
    assert len(queue) == 0


async def test_drain_runs_one_job_per_tick_in_key_order(
    queue: DeferredRequestQueue, platform: FakePlatform
) -> None:
    queue.enqueue(_job("a-1", author_id="alice"))
    queue.enqueue(_job("b-1", author_id="bob"))
    queue.enqueue(_job("a-2", author_id="alice"))

    first = await queue.drain_once()
    second = await queue.drain_once()
    third = await queue.drain_once()
    idle = await queue.drain_once()

    assert first.job is not None and first.job.message_id == "a-1"
    assert second.job is not None and second.job.message_id == "a-2"
    assert third.job is not None and third.job.message_id == "b-1"
    assert idle.status == DrainStatus.IDLE
    assert [message["reply_to"] for message in platform.sent_messages] == [
        "a-1",
        "a-2",
        "b-1",
    ]


async def test_expired_jobs_are_dropped_without_running(
    queue: DeferredRequestQueue,
    generator: FakeGenerator,
    platform: FakePlatform,
    fake_logger: FakeLogger,
) -> None:
    queue.enqueue(_job("old", enqueued_at=_NOW - timedelta(seconds=181)))
    cutoff = _NOW - timedelta(seconds=180)
    queue.enqueue(_job("stale", author_id="user-2", enqueued_at=cutoff))
    fresh_at = _NOW - timedelta(seconds=10)
    queue.enqueue(_job("fresh", author_id="user-3", enqueued_at=fresh_at))

    result = await queue.drain_once()

    assert result.expired == 2
    assert result.job is not None and result.job.message_id == "fresh"
    assert len(generator.chat_calls) == 1
    assert [message["reply_to"] for message in platform.sent_messages] == ["fresh"]
    assert queue.keys() == []
    assert fake_logger.fields("queue_jobs_expired")["count"] == 2


async def test_delivery_failure_is_reported_not_raised(
    queue: DeferredRequestQueue, platform: FakePlatform, fake_logger: FakeLogger
) -> None:
    platform.errors["send_message"] = PermissionDenied("cannot send")
    queue.enqueue(_job())

    result = await queue.drain_once()

    assert result.status == DrainStatus.DELIVERY_FAILED
    assert "queue_job_delivery_failed" in fake_logger.events
    assert len(queue) == 0


async def test_worker_drains_until_stop_event(
    queue: DeferredRequestQueue, platform: FakePlatform
) -> None:
    stop_event = asyncio.Event()
    queue.enqueue(_job("m-1"))
    queue.enqueue(_job("m-2", author_id="user-2"))

    worker = asyncio.create_task(queue.run_worker(stop_event, interval_seconds=0.0))
    for _ in range(200):
        if len(platform.sent_messages) == 2:
            break
        await asyncio.sleep(0)
    stop_event.set()
    await asyncio.wait_for(worker, timeout=1.0)

    assert [message["reply_to"] for message in platform.sent_messages] == [
        "m-1",
        "m-2",
    ]


async def test_worker_survives_unexpected_tick_errors(
    queue: DeferredRequestQueue,
    monkeypatch: pytest.MonkeyPatch,
    fake_logger: FakeLogger,
) -> None:
    stop_event = asyncio.Event()
    ticks = 0

    async def _exploding_drain() -> None:
        nonlocal ticks
        ticks += 1
        if ticks >= 2:
            stop_event.set()
        raise RuntimeError("boom")

    monkeypatch.setattr(queue, "drain_once", _exploding_drain)

    await asyncio.wait_for(
        queue.run_worker(stop_event, interval_seconds=0.0), timeout=1.0
    )

    assert ticks == 2
    assert fake_logger.events.count("queue_worker_tick_failed") == 2


async def test_queue_rejects_invalid_limits(
    caller: ResilientCaller, generator: FakeGenerator, platform: FakePlatform
) -> None:
    with pytest.raises(ValueError, match="max_per_key"):
        DeferredRequestQueue(
            caller=caller, generator=generator, platform=platform, max_per_key=0
        )
    with pytest.raises(ValueError, match="ttl_seconds"):
        DeferredRequestQueue(
            caller=caller, generator=generator, platform=platform, ttl_seconds=0
        )
