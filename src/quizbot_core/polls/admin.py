"""Operator command surface.

Each command returns an :class:`AdminReply`. The failure category is part of
the reply, so the platform layer can say "couldn't find that message" rather
than "something went wrong".
"""

from __future__ import annotations

from dataclasses import dataclass

from quizbot_core.errors import (
    ErrorCategory,
    PersistenceFailure,
    PlatformError,
    categorize,
)
from quizbot_core.logging import StructuredLogger, get_logger, log_info
from quizbot_core.platform import PlatformClient
from quizbot_core.polls.lifecycle import (
    DailyPostStatus,
    PollLifecycle,
    ResolutionStatus,
    StepResult,
)
from quizbot_core.state import (
    CommunityStateManager,
    KnowledgeUpdated,
    ScoreAdjusted,
    ScoreMode,
)

KNOWLEDGE_KEY = "main-info"

_CATEGORY_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.EXTERNAL_STATE_MISSING: "I couldn't find that message.",
    ErrorCategory.PERMISSION_DENIED: "I'm missing permissions in this channel.",
    ErrorCategory.PERSISTENCE: "A database error occurred.",
    ErrorCategory.CIRCUIT_OPEN: "The AI service is cooling down. Try again later.",
    ErrorCategory.TRANSIENT: "The AI service is overloaded. Try again later.",
    ErrorCategory.PERMANENT: "The AI service returned an unusable answer.",
}


@dataclass(frozen=True)
class AdminReply:
    ok: bool
    message: str
    category: ErrorCategory | None = None

    @classmethod
    def from_step(cls, result: StepResult) -> AdminReply:
        return cls(result.ok, result.message, result.category)

    @classmethod
    def failed(cls, category: ErrorCategory, message: str | None = None) -> AdminReply:
        text = message or _CATEGORY_MESSAGES.get(category, "Something went wrong.")
        return cls(False, text, category)


class AdminCommands:
    """Thin operator triggers over the poll lifecycle and community state."""

    def __init__(
        self,
        *,
        lifecycle: PollLifecycle,
        state: CommunityStateManager,
        platform: PlatformClient,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._state = state
        self._platform = platform
        self._logger = get_logger(__name__) if logger is None else logger

    async def ask_now(self, channel_id: str, topic: str = "") -> AdminReply:
        return AdminReply.from_step(
            await self._lifecycle.start_on_demand(channel_id, topic.strip())
        )

    async def reveal(self, channel_id: str) -> AdminReply:
        return AdminReply.from_step(await self._lifecycle.reveal_on_demand(channel_id))

    async def post_daily(self, channel_id: str) -> AdminReply:
        """Run the daily cycle now, framed as a catch-up post."""
        result = await self._lifecycle.perform_daily_post(channel_id, catch_up=True)
        if result.status == DailyPostStatus.SKIPPED_BUSY:
            return AdminReply(
                False,
                "A daily poll cycle is already running.",
                ErrorCategory.INVALID_REQUEST,
            )
        if result.status == DailyPostStatus.FAILED:
            return AdminReply.failed(result.category or ErrorCategory.UNEXPECTED)
        message = "Daily poll posted."
        if result.record is not None and result.record.is_fallback:
            message = "Daily poll posted using fallback content."
        return AdminReply(True, message, result.category)

    async def relink_poll(
        self, channel_id: str, message_id: str, correct_option: int
    ) -> AdminReply:
        return AdminReply.from_step(
            await self._lifecycle.relink_poll(channel_id, message_id, correct_option)
        )

    async def resolve(self, channel_id: str) -> AdminReply:
        """Force-resolve the last poll and clear it from state."""
        try:
            channel = await self._platform.fetch_channel(channel_id)
            state = await self._state.get(channel.community_id)
        except (PlatformError, PersistenceFailure) as error:
            return AdminReply.failed(categorize(error))
        if state.last_poll_data is None:
            return AdminReply(
                False,
                "There is no poll in memory to resolve.",
                ErrorCategory.INVALID_REQUEST,
            )

        result = await self._lifecycle.force_resolve(channel_id)
        if result.status == ResolutionStatus.BUSY:
            return AdminReply(
                False,
                "A daily poll cycle is running. Try again in a moment.",
                ErrorCategory.INVALID_REQUEST,
            )
        if not result.ok:
            category = result.category or ErrorCategory.UNEXPECTED
            return AdminReply.failed(category, result.hint)
        if not result.persisted:
            return AdminReply.failed(
                result.category or ErrorCategory.PERSISTENCE,
                f"The poll was resolved and {len(result.winners)} member(s) were "
                "awarded a point, but saving to the database failed.",
            )
        return AdminReply(
            True,
            f"Last poll has been resolved and cleared. "
            f"{len(result.winners)} member(s) were awarded a point.",
        )

    async def adjust_points(
        self,
        channel_id: str,
        user_id: str,
        mode: ScoreMode,
        amount: int,
    ) -> AdminReply:
        """Add, remove (floored at zero) or set one member's score."""
        if amount < 0:
            return AdminReply(
                False, "Amount must not be negative.", ErrorCategory.INVALID_REQUEST
            )
        try:
            channel = await self._platform.fetch_channel(channel_id)
            result = await self._state.apply(
                channel.community_id, ScoreAdjusted(user_id, mode, amount)
            )
        except (PlatformError, PersistenceFailure) as error:
            return AdminReply.failed(categorize(error))
        if not result.persisted:
            return AdminReply.failed(result.error or ErrorCategory.PERSISTENCE)

        log_info(
            self._logger,
            "score_adjusted",
            community_id=channel.community_id,
            user_id=user_id,
            mode=mode,
            amount=amount,
            score=result.score,
        )
        return AdminReply(True, f"Success! <@{user_id}>'s score is now {result.score}.")

    async def update_knowledge(self, channel_id: str, text: str) -> AdminReply:
        content = text.strip()
        if not content:
            return AdminReply(
                False,
                "Knowledge text must not be empty.",
                ErrorCategory.INVALID_REQUEST,
            )
        try:
            channel = await self._platform.fetch_channel(channel_id)
            result = await self._state.apply(
                channel.community_id, KnowledgeUpdated(KNOWLEDGE_KEY, content)
            )
        except (PlatformError, PersistenceFailure) as error:
            return AdminReply.failed(categorize(error))
        if not result.persisted:
            return AdminReply.failed(result.error or ErrorCategory.PERSISTENCE)
        return AdminReply(True, "Knowledge base updated.")
