from __future__ import annotations

import asyncio

import pytest
from tenacity import AsyncRetrying, RetryCallState
from tenacity.retry import retry_if_exception_type

from quizbot_core.retry import (
    RetryBackoffPolicy,
    build_exponential_jitter_retrying,
    build_interruptible_sleep,
)

pytestmark = pytest.mark.asyncio


@pytest.mark.parametrize(
    ("attempts", "initial_seconds", "max_seconds", "jitter", "message"),
    [
        (0, 0.0, 1.0, None, "attempts must be >= 1"),
        (1, -0.1, 1.0, None, "initial_seconds must be >= 0"),
        (1, 0.0, -0.1, None, "max_seconds must be >= 0"),
        (1, 2.0, 1.0, None, "max_seconds must be >= initial_seconds"),
        (1, 1.0, 2.0, -0.5, "jitter_seconds must be >= 0"),
    ],
)
async def test_retry_backoff_policy_validation(
    attempts: int,
    initial_seconds: float,
    max_seconds: float,
    jitter: float | None,
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        RetryBackoffPolicy(
            attempts=attempts,
            initial_seconds=initial_seconds,
            max_seconds=max_seconds,
            jitter_seconds=jitter,
        )


async def test_jitter_defaults_to_a_fifth_of_the_initial_delay() -> None:
    policy = RetryBackoffPolicy(attempts=4, initial_seconds=1.0, max_seconds=15.0)

    assert policy.resolved_jitter_seconds == pytest.approx(0.2)
    explicit = RetryBackoffPolicy(
        attempts=4, initial_seconds=1.0, max_seconds=15.0, jitter_seconds=0.0
    )
    assert explicit.resolved_jitter_seconds == 0.0


async def test_interruptible_sleep_returns_immediately_when_stop_event_is_set() -> None:
    stop_event = asyncio.Event()
    stop_event.set()
    sleep = build_interruptible_sleep(stop_event)

    await asyncio.wait_for(sleep(30.0), timeout=0.1)


async def test_interruptible_sleep_waits_for_delay_when_not_interrupted() -> None:
    stop_event = asyncio.Event()
    sleep = build_interruptible_sleep(stop_event)

    await asyncio.wait_for(sleep(0.01), timeout=0.2)


async def test_interruptible_sleep_wakes_when_stop_event_is_set_midway() -> None:
    stop_event = asyncio.Event()
    sleep = build_interruptible_sleep(stop_event)

    task = asyncio.create_task(sleep(30.0))
    await asyncio.sleep(0)
    stop_event.set()

    await asyncio.wait_for(task, timeout=0.2)


async def test_build_retrying_without_optional_hooks() -> None:
    retrying = build_exponential_jitter_retrying(
        retry=retry_if_exception_type(ValueError),
        policy=RetryBackoffPolicy(attempts=2, initial_seconds=0.0, max_seconds=0.0),
    )

    assert isinstance(retrying, AsyncRetrying)


async def test_build_retrying_reraises_last_error_after_budget() -> None:
    before_sleep_calls: list[int] = []
    sleep_calls: list[float] = []

    async def _sleep(delay: float) -> None:
        sleep_calls.append(delay)

    def _before_sleep(state: RetryCallState) -> None:
        before_sleep_calls.append(state.attempt_number)

    retrying = build_exponential_jitter_retrying(
        retry=retry_if_exception_type(ValueError),
        policy=RetryBackoffPolicy(attempts=3, initial_seconds=0.0, max_seconds=0.0),
        sleep=_sleep,
        before_sleep=_before_sleep,
    )

    attempts = 0
    with pytest.raises(ValueError, match="boom 3"):
        async for attempt in retrying:
            with attempt:
                attempts += 1
                raise ValueError(f"boom {attempts}")

    assert attempts == 3
    assert before_sleep_calls == [1, 2]
    assert sleep_calls == [0.0, 0.0]


async def test_build_retrying_delays_grow_exponentially_and_are_capped() -> None:
    sleep_calls: list[float] = []

    async def _sleep(delay: float) -> None:
        sleep_calls.append(delay)

    retrying = build_exponential_jitter_retrying(
        retry=retry_if_exception_type(ValueError),
        policy=RetryBackoffPolicy(
            attempts=5, initial_seconds=1.0, max_seconds=5.0, jitter_seconds=0.0
        ),
        sleep=_sleep,
    )

    with pytest.raises(ValueError):
        async for attempt in retrying:
            with attempt:
                raise ValueError("retry")

    assert sleep_calls == [1.0, 2.0, 4.0, 5.0]


async def test_build_retrying_does_not_retry_other_exceptions() -> None:
    retrying = build_exponential_jitter_retrying(
        retry=retry_if_exception_type(ValueError),
        policy=RetryBackoffPolicy(attempts=3, initial_seconds=0.0, max_seconds=0.0),
    )

    attempts = 0
    with pytest.raises(KeyError):
        async for attempt in retrying:
            with attempt:
                attempts += 1
                raise KeyError("permanent")

    assert attempts == 1
