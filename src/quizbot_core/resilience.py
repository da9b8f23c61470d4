"""Retrying, timeout-bounded, circuit-protected calls to external services.

Every caller receives a :data:`RetryOutcome` instead of an exception:

  - :class:`Success` carries the operation's result.
  - :class:`Failure` carries the taxonomy error. ``permanent`` is true for
    non-retryable failures and false when the retry budget ran out.
  - :class:`CircuitOpened` means the service key's breaker is open, either
    before the call started or because this call's failures tripped it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import ClassVar, Generic, TypeVar

from tenacity import RetryCallState
from tenacity.retry import retry_if_exception_type

from quizbot_core.circuit_breaker import (
    BreakerRegistry,
    CircuitBreaker,
    CircuitOpenError,
    ServiceMetrics,
)
from quizbot_core.errors import (
    PermanentServiceFailure,
    ServiceError,
    TransientServiceFailure,
)
from quizbot_core.logging import (
    StructuredLogger,
    get_logger,
    log_error,
    log_warning,
)
from quizbot_core.retry import RetryBackoffPolicy, build_exponential_jitter_retrying

T = TypeVar("T")

_RETRYABLE_MESSAGES = (
    "timeout",
    "timed out",
    "overloaded",
    "econnreset",
    "socket hang up",
)
_RETRYABLE_STATUS_CODES = ("429", "500", "502", "503")


class OutcomeStatus(StrEnum):
    """Tag of a :data:`RetryOutcome`."""

    SUCCESS = "success"
    ERROR = "error"
    CIRCUIT_OPEN = "circuit_open"


@dataclass(frozen=True)
class Success(Generic[T]):
    data: T
    status: ClassVar[OutcomeStatus] = OutcomeStatus.SUCCESS


@dataclass(frozen=True)
class Failure:
    error: ServiceError
    permanent: bool
    status: ClassVar[OutcomeStatus] = OutcomeStatus.ERROR


@dataclass(frozen=True)
class CircuitOpened:
    service_key: str
    retry_after: float
    status: ClassVar[OutcomeStatus] = OutcomeStatus.CIRCUIT_OPEN


RetryOutcome = Success[T] | Failure | CircuitOpened


def is_retryable_error(exc: BaseException) -> bool:
    """Return true for timeouts, overload signals and connection resets."""
    if isinstance(exc, TransientServiceFailure):
        return True
    if isinstance(exc, PermanentServiceFailure):
        return False
    if isinstance(exc, (TimeoutError, ConnectionResetError)):
        return True
    if isinstance(exc, ServiceError) and exc.http_status is not None:
        return str(exc.http_status) in _RETRYABLE_STATUS_CODES

    message = str(exc).lower()
    if any(fragment in message for fragment in _RETRYABLE_MESSAGES):
        return True
    return any(code in message for code in _RETRYABLE_STATUS_CODES)


@dataclass(frozen=True)
class CallOptions:
    """Per-call retry budget. Defaults match the chat-model service."""

    service_key: str = "gemini"
    max_attempts: int = 4
    initial_delay: float = 1.0
    max_delay: float = 15.0
    timeout: float = 15.0

    def backoff_policy(self) -> RetryBackoffPolicy:
        return RetryBackoffPolicy(
            attempts=self.max_attempts,
            initial_seconds=self.initial_delay,
            max_seconds=self.max_delay,
        )


class ResilientCaller:
    """Wraps external calls with a breaker check, timeout and backoff retries."""

    def __init__(
        self,
        *,
        breakers: BreakerRegistry,
        metrics: ServiceMetrics | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create a caller sharing one breaker table.

        Args:
            breakers: Process-wide breaker table keyed by service key.
            metrics: Counters updated for attempts and retries.
            sleep: Backoff sleep override, mainly for tests.
            logger: Structured logger override.
        """
        self._breakers = breakers
        self.metrics = ServiceMetrics() if metrics is None else metrics
        self._sleep = sleep
        self._logger = get_logger(__name__) if logger is None else logger

    async def call_with_retries(
        self,
        operation: Callable[[], Awaitable[T]],
        options: CallOptions | None = None,
    ) -> RetryOutcome[T]:
        """Run ``operation`` under the breaker for ``options.service_key``.

        A timed-out attempt counts as a retryable failure even if the
        underlying operation later completes; its result is discarded.
        """
        options = CallOptions() if options is None else options
        breaker = self._breakers.get(options.service_key)
        try:
            await breaker.ensure_closed()
        except CircuitOpenError as exc:
            log_warning(
                self._logger,
                "service_call_rejected",
                service_key=options.service_key,
                retry_after=exc.retry_after,
            )
            return CircuitOpened(options.service_key, exc.retry_after)

        self.metrics.attempts += 1
        retrying = build_exponential_jitter_retrying(
            retry=retry_if_exception_type(TransientServiceFailure),
            policy=options.backoff_policy(),
            sleep=self._sleep,
            before_sleep=self._build_before_sleep(options),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    result = await self._attempt_once(operation, breaker, options)
                    return Success(result)
        except CircuitOpenError as exc:
            log_error(
                self._logger,
                "circuit_opened",
                service_key=options.service_key,
                open_seconds=exc.retry_after,
                failure_threshold=breaker.config.failure_threshold,
            )
            return CircuitOpened(options.service_key, exc.retry_after)
        except PermanentServiceFailure as exc:
            log_error(
                self._logger,
                "service_call_failed_permanently",
                service_key=options.service_key,
                error=str(exc),
            )
            return Failure(exc, permanent=True)
        except TransientServiceFailure as exc:
            log_error(
                self._logger,
                "service_call_retries_exhausted",
                service_key=options.service_key,
                attempts=options.max_attempts,
                error=str(exc),
            )
            return Failure(exc, permanent=False)

        raise RuntimeError("Retry loop exited unexpectedly.")

    async def _attempt_once(
        self,
        operation: Callable[[], Awaitable[T]],
        breaker: CircuitBreaker,
        options: CallOptions,
    ) -> T:
        try:
            result = await asyncio.wait_for(operation(), timeout=options.timeout)
        except PermanentServiceFailure:
            raise
        except Exception as exc:
            if not is_retryable_error(exc):
                raise PermanentServiceFailure(
                    f"{exc.__class__.__name__}: {exc}"
                ) from exc

            if await breaker.record_failure(exc):
                raise CircuitOpenError(
                    breaker.name,
                    retry_after=breaker.config.open_seconds,
                    tripped=True,
                ) from exc
            if isinstance(exc, TransientServiceFailure):
                raise
            raise TransientServiceFailure(
                f"{exc.__class__.__name__}: {exc}"
            ) from exc

        await breaker.record_success()
        return result

    def _build_before_sleep(
        self, options: CallOptions
    ) -> Callable[[RetryCallState], None]:
        def _before_sleep(state: RetryCallState) -> None:
            self.metrics.retries += 1
            delay = state.next_action.sleep if state.next_action is not None else 0.0
            log_warning(
                self._logger,
                "service_call_retry_scheduled",
                service_key=options.service_key,
                attempt=state.attempt_number,
                max_attempts=options.max_attempts,
                delay_seconds=round(delay, 2),
            )

        return _before_sleep
