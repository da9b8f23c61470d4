"""Startup reconciliation of the daily poll slot.

Both sides of every comparison are converted to calendar dates in the single
scheduling timezone. Raw UTC instants are never compared, so a poll posted
late in the evening local time is not mistaken for "today" after midnight UTC.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, date, datetime, time
from enum import StrEnum
from zoneinfo import ZoneInfo

from quizbot_core.errors import PersistenceFailure, PlatformError, categorize
from quizbot_core.logging import (
    StructuredLogger,
    get_logger,
    log_error,
    log_exception,
    log_info,
)
from quizbot_core.platform import PlatformClient
from quizbot_core.polls.lifecycle import DailyPostStatus, PollLifecycle
from quizbot_core.state import CommunityStateManager


def _utcnow() -> datetime:
    return datetime.now(UTC)


def local_date(moment: datetime, tz: ZoneInfo) -> date:
    """Calendar date of ``moment`` in ``tz``. Naive values are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(tz).date()


def slot_reached(now: datetime, tz: ZoneInfo, hour: int, minute: int = 0) -> bool:
    """Return true once the local time of day is at or past the daily slot."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    local = now.astimezone(tz)
    return local.time() >= time(hour, minute)


def needs_catch_up(created_at: datetime | None, now: datetime, tz: ZoneInfo) -> bool:
    """Return true when the last poll was not posted on today's local date."""
    if created_at is None:
        return True
    return local_date(created_at, tz) != local_date(now, tz)


def format_slot_label(hour: int, minute: int = 0) -> str:
    """Format a 24h slot as ``6 AM`` or ``6:30 PM``."""
    suffix = "AM" if hour < 12 else "PM"
    display_hour = hour % 12 or 12
    if minute:
        return f"{display_hour}:{minute:02d} {suffix}"
    return f"{display_hour} {suffix}"


class CatchUpDecision(StrEnum):
    BEFORE_SLOT = "before_slot"
    ALREADY_POSTED = "already_posted"
    CAUGHT_UP = "caught_up"
    FAILED = "failed"


class MissedScheduleChecker:
    """Posts a catch-up poll for channels whose daily slot was missed."""

    def __init__(
        self,
        *,
        lifecycle: PollLifecycle,
        state: CommunityStateManager,
        platform: PlatformClient,
        timezone: ZoneInfo,
        post_hour: int = 6,
        post_minute: int = 0,
        settle_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._state = state
        self._platform = platform
        self._timezone = timezone
        self._post_hour = post_hour
        self._post_minute = post_minute
        self._settle_seconds = settle_seconds
        self._sleep = sleep
        self._logger = get_logger(__name__) if logger is None else logger

    async def check_for_missed_polls(
        self, channel_ids: Sequence[str]
    ) -> dict[str, CatchUpDecision]:
        """Wait for the settle delay, then check every channel concurrently."""
        if self._settle_seconds > 0:
            await self._sleep(self._settle_seconds)

        now = _utcnow()
        if not slot_reached(now, self._timezone, self._post_hour, self._post_minute):
            log_info(
                self._logger,
                "missed_poll_check_skipped",
                reason="before_daily_slot",
                timezone=self._timezone.key,
            )
            return dict.fromkeys(channel_ids, CatchUpDecision.BEFORE_SLOT)

        decisions = await asyncio.gather(
            *(self.check_channel(channel_id, now=now) for channel_id in channel_ids)
        )
        log_info(self._logger, "missed_poll_check_completed", channels=len(channel_ids))
        return dict(zip(channel_ids, decisions, strict=True))

    async def check_channel(
        self, channel_id: str, *, now: datetime | None = None
    ) -> CatchUpDecision:
        """Run one catch-up cycle for ``channel_id`` if today's slot was missed."""
        now = _utcnow() if now is None else now
        try:
            channel = await self._platform.fetch_channel(channel_id)
            state = await self._state.get(channel.community_id)
        except (PlatformError, PersistenceFailure) as error:
            log_error(
                self._logger,
                "missed_poll_check_failed",
                channel_id=channel_id,
                category=str(categorize(error)),
                error=str(error),
            )
            return CatchUpDecision.FAILED

        record = state.last_poll_data
        created_at = None if record is None else record.created_at
        if not needs_catch_up(created_at, now, self._timezone):
            log_info(
                self._logger,
                "missed_poll_check_already_posted",
                channel_id=channel_id,
                local_date=local_date(now, self._timezone).isoformat(),
            )
            return CatchUpDecision.ALREADY_POSTED

        log_info(
            self._logger,
            "missed_poll_catch_up_started",
            channel_id=channel_id,
            last_poll_date=(
                None
                if created_at is None
                else local_date(created_at, self._timezone).isoformat()
            ),
        )
        try:
            result = await self._lifecycle.perform_daily_post(channel_id, catch_up=True)
        except Exception:
            log_exception(
                self._logger, "missed_poll_catch_up_crashed", channel_id=channel_id
            )
            return CatchUpDecision.FAILED
        if result.status == DailyPostStatus.FAILED:
            return CatchUpDecision.FAILED
        return CatchUpDecision.CAUGHT_UP
