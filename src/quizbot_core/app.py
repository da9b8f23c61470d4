"""Application context: one shared breaker table, queue and poll lifecycle.

The platform adapter builds a :class:`BotContext` once at startup and routes
gateway events into ``conversation``, ``admin`` and ``invites``. Scheduled
work runs on an APScheduler ``AsyncIOScheduler`` in the configured timezone.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from quizbot_core.ai import GeminiClient, TextGenerator, TriviaGenerator
from quizbot_core.circuit_breaker import BreakerRegistry, ServiceMetrics
from quizbot_core.conversation import ConversationService
from quizbot_core.deferred_queue import DeferredRequestQueue
from quizbot_core.invites import InviteTracker
from quizbot_core.logging import (
    StructuredLogger,
    configure_structlog,
    get_logger,
    log_exception,
    log_info,
)
from quizbot_core.platform import PlatformClient
from quizbot_core.polls import (
    AdminCommands,
    MissedScheduleChecker,
    PollLifecycle,
    format_slot_label,
)
from quizbot_core.resilience import ResilientCaller
from quizbot_core.settings import BotSettings
from quizbot_core.state import AbstractStore, CommunityStateManager, SqliteStore

DAILY_MISFIRE_GRACE_SECONDS = 3600
WEEKLY_MISFIRE_GRACE_SECONDS = 7200


def daily_job_id(channel_id: str) -> str:
    return f"daily_poll_{channel_id}"


def weekly_job_id(channel_id: str) -> str:
    return f"weekly_summary_{channel_id}"


class BotContext:
    """Owns every long-lived component and the background tasks around them."""

    def __init__(
        self,
        *,
        settings: BotSettings,
        platform: PlatformClient,
        generator: TextGenerator,
        store: AbstractStore,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.settings = settings
        self.platform = platform
        self.generator = generator
        self.store = store
        self._logger = get_logger(__name__) if logger is None else logger

        self.metrics = ServiceMetrics()
        self.breakers = BreakerRegistry(
            config=settings.breaker_config(), listeners=[self.metrics]
        )
        self.caller = ResilientCaller(breakers=self.breakers, metrics=self.metrics)
        self.state = CommunityStateManager(store)
        self.trivia = TriviaGenerator(generator=generator, caller=self.caller)
        self.queue = DeferredRequestQueue(
            caller=self.caller,
            generator=generator,
            platform=platform,
            max_per_key=settings.queue_max_per_key,
            ttl_seconds=settings.queue_ttl_seconds,
            metrics=self.metrics,
        )
        self.lifecycle = PollLifecycle(
            platform=platform,
            state=self.state,
            trivia=self.trivia,
            metrics=self.metrics,
            slot_label=format_slot_label(
                settings.daily_post_hour, settings.daily_post_minute
            ),
        )
        self.checker = MissedScheduleChecker(
            lifecycle=self.lifecycle,
            state=self.state,
            platform=platform,
            timezone=settings.timezone,
            post_hour=settings.daily_post_hour,
            post_minute=settings.daily_post_minute,
            settle_seconds=settings.startup_settle_seconds,
            sleep=sleep,
        )
        self.admin = AdminCommands(
            lifecycle=self.lifecycle, state=self.state, platform=platform
        )
        self.conversation = ConversationService(
            caller=self.caller,
            generator=generator,
            platform=platform,
            state=self.state,
            queue=self.queue,
            creator_username=settings.creator_username,
            user_cooldown_seconds=settings.user_cooldown_seconds,
            overload_cooldown_seconds=settings.overload_cooldown_seconds,
        )
        self.invites = InviteTracker(platform=platform, store=store)
        self.scheduler = build_scheduler(self)

        self._stop_event = asyncio.Event()
        self._worker_task: asyncio.Task[None] | None = None
        self._catch_up_task: asyncio.Task[None] | None = None

    @classmethod
    async def from_settings(
        cls,
        settings: BotSettings,
        *,
        platform: PlatformClient,
        http_client: httpx.AsyncClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> BotContext:
        """Build the production context: logging, Gemini client and SQLite store.

        ``http_client`` stays owned by the caller and must outlive the context.
        """
        configure_structlog(log_level=settings.log_level)
        generator = GeminiClient(
            client=http_client,
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
        )
        store = SqliteStore(settings.database_path)
        await store.init()
        return cls(
            settings=settings,
            platform=platform,
            generator=generator,
            store=store,
            sleep=sleep,
        )

    @property
    def running(self) -> bool:
        return self._worker_task is not None

    async def start(self) -> None:
        """Start the scheduler, the queue worker and the startup catch-up check."""
        if self.running:
            raise RuntimeError("BotContext is already running")

        self._stop_event.clear()
        self.scheduler.start()
        self._worker_task = asyncio.create_task(
            self.queue.run_worker(
                self._stop_event,
                interval_seconds=self.settings.queue_drain_interval_seconds,
            ),
            name="deferred_queue_worker",
        )
        self._catch_up_task = asyncio.create_task(
            self._check_for_missed_polls(), name="missed_poll_check"
        )
        log_info(
            self._logger,
            "bot_context_started",
            channels=len(self.settings.target_channel_ids),
            timezone=self.settings.schedule_timezone,
        )

    async def stop(self) -> None:
        """Stop scheduling, let the worker finish its tick, cancel the catch-up."""
        self._stop_event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        catch_up, self._catch_up_task = self._catch_up_task, None
        if catch_up is not None and not catch_up.done():
            catch_up.cancel()
            with suppress(asyncio.CancelledError):
                await catch_up

        worker, self._worker_task = self._worker_task, None
        if worker is not None:
            await worker
        log_info(self._logger, "bot_context_stopped")

    async def _check_for_missed_polls(self) -> None:
        try:
            await self.checker.check_for_missed_polls(self.settings.target_channel_ids)
        except Exception:
            log_exception(self._logger, "missed_poll_check_crashed")


def build_scheduler(context: BotContext) -> AsyncIOScheduler:
    """Register one daily poll job and one weekly summary job per channel.

    ``max_instances=1`` and ``coalesce=True`` keep a slow cycle from
    overlapping the next trigger. The lifecycle's own claim still guards
    against operator commands running alongside a scheduled cycle.
    """
    settings = context.settings
    timezone = settings.timezone
    scheduler = AsyncIOScheduler(timezone=timezone)
    for channel_id in settings.target_channel_ids:
        scheduler.add_job(
            context.lifecycle.perform_daily_post,
            CronTrigger(
                hour=settings.daily_post_hour,
                minute=settings.daily_post_minute,
                timezone=timezone,
            ),
            args=[channel_id],
            id=daily_job_id(channel_id),
            max_instances=1,
            misfire_grace_time=DAILY_MISFIRE_GRACE_SECONDS,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            context.lifecycle.post_weekly_summary,
            CronTrigger(
                day_of_week=settings.weekly_summary_day,
                hour=settings.weekly_summary_hour,
                minute=0,
                timezone=timezone,
            ),
            args=[channel_id],
            id=weekly_job_id(channel_id),
            max_instances=1,
            misfire_grace_time=WEEKLY_MISFIRE_GRACE_SECONDS,
            coalesce=True,
            replace_existing=True,
        )
    return scheduler
