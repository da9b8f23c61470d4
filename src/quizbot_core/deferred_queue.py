"""Per-requester FIFO of deferred chat replies, drained one job per tick.

Key behavior notes:
  - Capacity is bounded per requester key (channel + author), not globally.
  - Jobs older than the TTL are dropped on the next drain without running.
  - Each drain runs at most one job, picked from the first non-empty key in
    insertion order. Failed jobs get a failure notice and are never
    re-enqueued.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from quizbot_core.ai.gemini import ChatTurn, TextGenerator
from quizbot_core.circuit_breaker import ServiceMetrics
from quizbot_core.errors import PlatformError
from quizbot_core.logging import (
    StructuredLogger,
    get_logger,
    log_exception,
    log_info,
    log_warning,
)
from quizbot_core.platform import PlatformClient
from quizbot_core.resilience import CallOptions, ResilientCaller, Success
from quizbot_core.retry import build_interruptible_sleep

FAILURE_NOTICE = (
    "i tried processing your queued request, but something went wrong and i "
    "couldn't get an answer. please try asking again!"
)
QUEUED_CALL_OPTIONS = CallOptions(service_key="gemini_chat")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def requester_key(channel_id: str, author_id: str) -> str:
    return f"{channel_id}-{author_id}"


@dataclass(frozen=True)
class QueuedJob:
    """A chat request captured at deferral time, replayed verbatim later."""

    message_id: str
    channel_id: str
    community_id: str
    author_id: str
    prompt: str
    system_instruction: str
    history: tuple[ChatTurn, ...] = ()
    enqueued_at: datetime = field(default_factory=_utcnow)

    @property
    def requester_key(self) -> str:
        return requester_key(self.channel_id, self.author_id)


class DrainStatus(StrEnum):
    IDLE = "idle"
    REPLIED = "replied"
    FAILURE_NOTICE = "failure_notice"
    DELIVERY_FAILED = "delivery_failed"


@dataclass(frozen=True)
class DrainResult:
    status: DrainStatus
    expired: int = 0
    job: QueuedJob | None = None


class DeferredRequestQueue:
    """Bounded per-requester queue replayed through the resilient caller."""

    def __init__(
        self,
        *,
        caller: ResilientCaller,
        generator: TextGenerator,
        platform: PlatformClient,
        max_per_key: int = 5,
        ttl_seconds: float = 180.0,
        metrics: ServiceMetrics | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create an empty queue.

        Args:
            caller: Resilient caller used to replay each job.
            generator: Model client that answers the replayed prompt.
            platform: Client used to deliver the reply.
            max_per_key: Pending jobs allowed per requester key.
            ttl_seconds: Age after which a pending job is discarded.
            metrics: Counters for queued and dropped requests. Defaults to the
                caller's metrics.
            logger: Structured logger override.
        """
        if max_per_key < 1:
            raise ValueError("max_per_key must be >= 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._caller = caller
        self._generator = generator
        self._platform = platform
        self._max_per_key = max_per_key
        self._ttl = timedelta(seconds=ttl_seconds)
        self._metrics = caller.metrics if metrics is None else metrics
        self._logger = get_logger(__name__) if logger is None else logger
        self._queues: dict[str, deque[QueuedJob]] = {}

    def __len__(self) -> int:
        return sum(len(jobs) for jobs in self._queues.values())

    def pending(self, key: str) -> int:
        jobs = self._queues.get(key)
        return 0 if jobs is None else len(jobs)

    def keys(self) -> list[str]:
        return list(self._queues)

    def enqueue(self, job: QueuedJob) -> int | None:
        """Append ``job`` to its requester's queue.

        Returns:
            The 1-based position in that requester's queue, or ``None`` when
            the requester already has ``max_per_key`` pending jobs.
        """
        key = job.requester_key
        jobs = self._queues.setdefault(key, deque())
        if len(jobs) >= self._max_per_key:
            self._metrics.queue_drops += 1
            log_warning(self._logger, "queue_full", requester_key=key)
            if not jobs:
                del self._queues[key]
            return None

        jobs.append(job)
        self._metrics.queued_requests += 1
        log_info(
            self._logger,
            "queue_job_enqueued",
            requester_key=key,
            queue_length=len(jobs),
        )
        return len(jobs)

    def purge_expired(self) -> int:
        """Drop jobs older than the TTL and remove keys left empty."""
        cutoff = _utcnow() - self._ttl
        expired = 0
        for key in list(self._queues):
            jobs = self._queues[key]
            fresh = [job for job in jobs if job.enqueued_at > cutoff]
            expired += len(jobs) - len(fresh)
            if fresh:
                self._queues[key] = deque(fresh)
            else:
                del self._queues[key]
        if expired:
            log_info(self._logger, "queue_jobs_expired", count=expired)
        return expired

    async def drain_once(self) -> DrainResult:
        """Purge stale jobs, then run and deliver at most one job."""
        expired = self.purge_expired()
        job = self._pop_next()
        if job is None:
            return DrainResult(DrainStatus.IDLE, expired=expired)

        log_info(self._logger, "queue_job_started", requester_key=job.requester_key)
        outcome = await self._caller.call_with_retries(
            lambda: self._generator.chat(
                job.prompt,
                history=job.history,
                system_instruction=job.system_instruction,
            ),
            QUEUED_CALL_OPTIONS,
        )
        if isinstance(outcome, Success):
            content = outcome.data.strip().lower()
            status = DrainStatus.REPLIED
        else:
            content = FAILURE_NOTICE
            status = DrainStatus.FAILURE_NOTICE

        try:
            await self._platform.send_message(
                job.channel_id, content, reply_to=job.message_id
            )
        except PlatformError:
            log_exception(
                self._logger,
                "queue_job_delivery_failed",
                requester_key=job.requester_key,
                channel_id=job.channel_id,
            )
            return DrainResult(DrainStatus.DELIVERY_FAILED, expired=expired, job=job)
        return DrainResult(status, expired=expired, job=job)

    async def run_worker(
        self,
        stop_event: asyncio.Event,
        *,
        interval_seconds: float = 4.0,
    ) -> None:
        """Drain one job per ``interval_seconds`` until ``stop_event`` is set."""
        sleep = build_interruptible_sleep(stop_event)
        log_info(
            self._logger, "queue_worker_started", interval_seconds=interval_seconds
        )
        while not stop_event.is_set():
            try:
                await self.drain_once()
            except Exception:
                log_exception(self._logger, "queue_worker_tick_failed")
            await sleep(interval_seconds)
        log_info(self._logger, "queue_worker_stopped")

    def _pop_next(self) -> QueuedJob | None:
        for key in list(self._queues):
            jobs = self._queues[key]
            if not jobs:
                del self._queues[key]
                continue
            job = jobs.popleft()
            if not jobs:
                del self._queues[key]
            return job
        return None
