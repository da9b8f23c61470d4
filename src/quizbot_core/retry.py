from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.retry import retry_base

DEFAULT_JITTER_RATIO = 0.2


@dataclass(frozen=True)
class RetryBackoffPolicy:
    """Attempt budget and exponential backoff bounds for one wrapped call.

    Attributes:
        attempts: Total attempts including the first one.
        initial_seconds: Delay before the second attempt.
        max_seconds: Upper bound for any single delay, jitter included.
        jitter_seconds: Random extra delay added to each wait. Defaults to
            20% of ``initial_seconds``.
    """

    attempts: int
    initial_seconds: float
    max_seconds: float
    jitter_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.initial_seconds < 0:
            raise ValueError("initial_seconds must be >= 0")
        if self.max_seconds < 0:
            raise ValueError("max_seconds must be >= 0")
        if self.max_seconds < self.initial_seconds:
            raise ValueError("max_seconds must be >= initial_seconds")
        if self.jitter_seconds is not None and self.jitter_seconds < 0:
            raise ValueError("jitter_seconds must be >= 0")

    @property
    def resolved_jitter_seconds(self) -> float:
        if self.jitter_seconds is None:
            return self.initial_seconds * DEFAULT_JITTER_RATIO
        return self.jitter_seconds


def build_interruptible_sleep(
    stop_event: asyncio.Event,
) -> Callable[[float], Awaitable[None]]:
    """Build an async sleep that exits early when shutdown is requested."""

    async def _interruptible_sleep(delay: float) -> None:
        if stop_event.is_set():
            return

        bounded_delay = max(delay, 0.0)
        with suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=bounded_delay)

    return _interruptible_sleep


def build_exponential_jitter_retrying(
    *,
    retry: retry_base,
    policy: RetryBackoffPolicy,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` that re-raises the last attempt's error.

    Delays grow as ``initial * 2 ** (attempt - 1)`` plus jitter and are capped
    at ``policy.max_seconds``.
    """
    options: dict[str, Any] = {
        "retry": retry,
        "wait": wait_exponential_jitter(
            initial=policy.initial_seconds,
            max=policy.max_seconds,
            jitter=policy.resolved_jitter_seconds,
        ),
        "stop": stop_after_attempt(policy.attempts),
        "reraise": True,
    }
    if sleep is not None:
        options["sleep"] = sleep
    if before_sleep is not None:
        options["before_sleep"] = before_sleep
    return AsyncRetrying(**options)
