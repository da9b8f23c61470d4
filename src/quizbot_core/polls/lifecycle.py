"""Daily poll cycle, resolution, operator repairs and on-demand polls.

Key behavior notes:
  - The daily cycle, relink and force-resolve share one in-flight claim per
    community. A second trigger while one runs is a no-op, not queued.
  - Resolving the previous poll never aborts posting the next one. Each step
    returns a result carrying an :class:`~quizbot_core.errors.ErrorCategory`
    instead of raising taxonomy errors.
  - Fallback content is tagged ``is_fallback`` and never written to the
    question history or ``lastSuccessfulPoll``.
  - On-demand polls are a separate single slot and never touch scores.
"""

from __future__ import annotations

import random
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import ValidationError

from quizbot_core.ai.generation import TriviaGenerator
from quizbot_core.circuit_breaker import ServiceMetrics
from quizbot_core.errors import (
    ErrorCategory,
    ExternalStateMissing,
    PersistenceFailure,
    PlatformError,
    categorize,
)
from quizbot_core.logging import (
    StructuredLogger,
    community_log_context,
    get_logger,
    log_error,
    log_info,
    log_warning,
)
from quizbot_core.platform import ChannelInfo, Embed, EmbedField, PlatformClient
from quizbot_core.polls.fallbacks import FALLBACK_POLLS, pick_fallback
from quizbot_core.resilience import CircuitOpened, Failure, RetryOutcome, Success
from quizbot_core.state import (
    CommunityStateManager,
    InvalidTransition,
    OnDemandCleared,
    OnDemandPoll,
    OnDemandStarted,
    PollCleared,
    PollPosted,
    PollRecord,
    PollRelinked,
    ScoresAwarded,
    TriviaPoll,
)

DAILY_INTRO = "@everyone **Today's AI Poll!** 🧠"
CATCH_UP_INTRO = (
    "Oops, I missed the {slot} slot (likely due to downtime)! "
    "Here is today's poll! 😅"
)
FALLBACK_NOTE = "*(posted using fallback because the AI service was unavailable)*"
ON_DEMAND_INTRO = "**Special On-Demand Poll!** ✨"
SUMMARY_FALLBACK = (
    "Here's a look at this week's top contenders! Great job, everyone."
)
RELINK_HINT = "Message was deleted. Use relink_poll to repoint the record."
WEEKLY_TOP_N = 10

_POLL_FIELDS = {"type", "question", "options", "correct_answer_index", "explanation"}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ResolutionStatus(StrEnum):
    NOTHING_TO_RESOLVE = "nothing_to_resolve"
    RESOLVED = "resolved"
    FAILED = "failed"
    BUSY = "busy"


@dataclass(frozen=True)
class ResolutionResult:
    """Outcome of tallying the last scoring poll.

    Attributes:
        status: What happened.
        winners: Distinct non-bot users awarded a point.
        announced: False when the answer message could not be sent.
        category: Failure category when ``status`` is ``FAILED``.
        hint: Operator remediation hint for the failure.
        persisted: False when awarded scores or the cleared record were not
            written to the store. ``category`` then holds the store failure.
    """

    status: ResolutionStatus
    winners: tuple[str, ...] = ()
    announced: bool = False
    category: ErrorCategory | None = None
    hint: str | None = None
    persisted: bool = True

    @property
    def ok(self) -> bool:
        return self.status in (
            ResolutionStatus.NOTHING_TO_RESOLVE,
            ResolutionStatus.RESOLVED,
        )


@dataclass(frozen=True)
class StepResult:
    """Outcome of one operator-triggered step, with a user-facing message."""

    ok: bool
    message: str = ""
    category: ErrorCategory | None = None


class DailyPostStatus(StrEnum):
    POSTED = "posted"
    SKIPPED_BUSY = "skipped_busy"
    FAILED = "failed"


@dataclass(frozen=True)
class DailyPostResult:
    status: DailyPostStatus
    record: PollRecord | None = None
    resolution: ResolutionResult | None = None
    category: ErrorCategory | None = None


def outcome_category(outcome: RetryOutcome[object]) -> ErrorCategory | None:
    """Return the error category of a non-success outcome."""
    if isinstance(outcome, CircuitOpened):
        return ErrorCategory.CIRCUIT_OPEN
    if isinstance(outcome, Failure):
        return categorize(outcome.error)
    return None


def build_poll_record(
    poll: TriviaPoll,
    *,
    message_id: str,
    created_at: datetime | None,
    is_fallback: bool,
) -> PollRecord:
    return PollRecord(
        **poll.model_dump(include=_POLL_FIELDS),
        poll_message_id=message_id,
        created_at=created_at,
        is_fallback=is_fallback,
    )


class PollLifecycle:
    """Per-community poll state machine driven by the scheduler and operators."""

    def __init__(
        self,
        *,
        platform: PlatformClient,
        state: CommunityStateManager,
        trivia: TriviaGenerator,
        metrics: ServiceMetrics | None = None,
        fallback_picker: Callable[[Sequence[TriviaPoll]], TriviaPoll] = random.choice,
        slot_label: str = "6 AM",
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create the lifecycle.

        Args:
            platform: Chat-platform client.
            state: Shared community state manager.
            trivia: Generator for new polls and free text.
            metrics: Counters; ``fallback_served`` is incremented here.
            fallback_picker: Chooses from the static pool. Random by default.
            slot_label: Human-readable daily slot used in catch-up posts.
            logger: Structured logger override.
        """
        self._platform = platform
        self._state = state
        self._trivia = trivia
        self._metrics = ServiceMetrics() if metrics is None else metrics
        self._fallback_picker = fallback_picker
        self._slot_label = slot_label
        self._logger = get_logger(__name__) if logger is None else logger
        self._cycle_claims: set[str] = set()
        self._on_demand_claims: set[str] = set()

    def is_cycle_running(self, community_id: str) -> bool:
        return community_id in self._cycle_claims

    def intro_text(self, *, catch_up: bool, used_fallback: bool) -> str:
        intro = DAILY_INTRO
        if catch_up:
            intro = CATCH_UP_INTRO.format(slot=self._slot_label)
        if used_fallback:
            intro += f"\n{FALLBACK_NOTE}"
        return intro

    async def perform_daily_post(
        self, channel_id: str, *, catch_up: bool = False
    ) -> DailyPostResult:
        """Resolve the previous poll, then generate, post and persist a new one."""
        try:
            channel = await self._platform.fetch_channel(channel_id)
        except PlatformError as error:
            log_error(
                self._logger,
                "daily_post_channel_unavailable",
                channel_id=channel_id,
                category=str(categorize(error)),
                error=str(error),
            )
            return DailyPostResult(DailyPostStatus.FAILED, category=categorize(error))

        with self._claim(self._cycle_claims, channel.community_id) as claimed:
            if not claimed:
                log_warning(
                    self._logger,
                    "daily_post_skipped_in_progress",
                    community_id=channel.community_id,
                    channel_id=channel.id,
                )
                return DailyPostResult(DailyPostStatus.SKIPPED_BUSY)
            with community_log_context(
                community_id=channel.community_id, channel_id=channel.id
            ):
                return await self._run_daily_cycle(channel, catch_up=catch_up)

    async def resolve_last_poll(self, channel: ChannelInfo) -> ResolutionResult:
        """Award one point per distinct non-bot correct voter and announce it.

        A missing or non-trivia record is a successful no-op. Platform and
        store failures are reported in the result, never raised.
        """
        community_id = channel.community_id
        try:
            state = await self._state.get(community_id)
        except PersistenceFailure as error:
            return self._resolution_failed(channel, None, error)

        record = state.last_poll_data
        if record is None or record.type != "trivia" or not record.poll_message_id:
            log_info(
                self._logger,
                "poll_resolution_skipped",
                community_id=community_id,
                reason="no_trivia_poll_recorded",
            )
            return ResolutionResult(ResolutionStatus.NOTHING_TO_RESOLVE)

        try:
            voters = await self._platform.fetch_voters(
                channel.id, record.poll_message_id, record.correct_answer_index
            )
        except PlatformError as error:
            return self._resolution_failed(channel, record.poll_message_id, error)

        winners = tuple(dict.fromkeys(voter.id for voter in voters if not voter.is_bot))
        store_error: ErrorCategory | None = None
        if winners:
            awarded = await self._state.apply(community_id, ScoresAwarded(winners))
            store_error = None if awarded.persisted else awarded.error

        announced = await self._send_embed(
            channel, self._answer_embed(record, len(winners)), event="poll_answer"
        )
        log_info(
            self._logger,
            "poll_resolved",
            community_id=community_id,
            poll_message_id=record.poll_message_id,
            winners=len(winners),
        )
        return ResolutionResult(
            ResolutionStatus.RESOLVED,
            winners=winners,
            announced=announced,
            category=store_error,
            persisted=store_error is None,
        )

    async def relink_poll(
        self, channel_id: str, message_id: str, correct_option_number: int
    ) -> StepResult:
        """Point ``lastPollData`` at a live poll message chosen by an operator.

        ``correct_option_number`` is 1-based. The explanation is regenerated;
        if generation fails the relink is aborted and state is untouched.
        """
        try:
            channel = await self._platform.fetch_channel(channel_id)
            snapshot = await self._platform.fetch_poll(channel_id, message_id)
        except ExternalStateMissing:
            return StepResult(
                False,
                "I couldn't find a message with that ID in this channel.",
                ErrorCategory.EXTERNAL_STATE_MISSING,
            )
        except PlatformError as error:
            return StepResult(
                False, "I can't read that message here.", categorize(error)
            )

        invalid = StepResult(
            False,
            "Invalid message ID or option number.",
            ErrorCategory.INVALID_REQUEST,
        )
        index = correct_option_number - 1
        if len(snapshot.options) < 2 or not snapshot.question.strip():
            return invalid
        if not 0 <= index < len(snapshot.options):
            return invalid

        with self._claim(self._cycle_claims, channel.community_id) as claimed:
            if not claimed:
                return StepResult(
                    False,
                    "A daily poll cycle is running. Try again in a moment.",
                    ErrorCategory.INVALID_REQUEST,
                )
            prompt = (
                f'The trivia question is: "{snapshot.question}". The correct '
                f'answer is "{snapshot.options[index]}". Please provide a '
                "concise, engaging explanation for why this is the correct answer."
            )
            explanation = await self._trivia.generate_text(
                prompt, service_key="gemini_relink"
            )
            if explanation is None:
                return StepResult(
                    False,
                    "Sorry, the AI is overloaded. The relink has been aborted.",
                    ErrorCategory.TRANSIENT,
                )

            try:
                record = PollRecord(
                    question=snapshot.question,
                    options=snapshot.options,
                    correct_answer_index=index,
                    explanation=explanation,
                    poll_message_id=snapshot.message_id,
                    created_at=snapshot.created_at,
                )
            except ValidationError:
                return invalid
            result = await self._state.apply(channel.community_id, PollRelinked(record))

        log_info(
            self._logger,
            "poll_relinked",
            community_id=channel.community_id,
            poll_message_id=snapshot.message_id,
            persisted=result.persisted,
        )
        if not result.persisted:
            return StepResult(
                False,
                "Relinked in memory, but saving to the database failed.",
                result.error,
            )
        return StepResult(True, f"Relinked to poll: *{snapshot.question}*")

    async def force_resolve(self, channel_id: str) -> ResolutionResult:
        """Resolve the last poll now and clear it when resolution succeeds."""
        try:
            channel = await self._platform.fetch_channel(channel_id)
        except PlatformError as error:
            return ResolutionResult(ResolutionStatus.FAILED, category=categorize(error))

        with self._claim(self._cycle_claims, channel.community_id) as claimed:
            if not claimed:
                return ResolutionResult(ResolutionStatus.BUSY)
            result = await self.resolve_last_poll(channel)
            if not result.ok:
                return result
            cleared = await self._state.apply(channel.community_id, PollCleared())
        if not cleared.persisted:
            log_error(
                self._logger,
                "poll_clear_not_persisted",
                community_id=channel.community_id,
                category=str(cleared.error),
            )
            return replace(result, persisted=False, category=cleared.error)
        return result

    async def start_on_demand(self, channel_id: str, topic: str = "") -> StepResult:
        """Post a non-scoring poll unless one is already active."""
        try:
            channel = await self._platform.fetch_channel(channel_id)
            state = await self._state.get(channel.community_id)
        except (PlatformError, PersistenceFailure) as error:
            return StepResult(False, "Could not start the poll.", categorize(error))

        busy = StepResult(
            False,
            "There's already an active on-demand poll. Use reveal to end it.",
            ErrorCategory.INVALID_REQUEST,
        )
        if state.active_on_demand_poll is not None:
            return busy

        with self._claim(self._on_demand_claims, channel.community_id) as claimed:
            if not claimed:
                return busy
            outcome = await self._trivia.generate_trivia(topic, ())
            if not isinstance(outcome, Success):
                return StepResult(
                    False,
                    "i'm overloaded, please try again in a few minutes.",
                    outcome_category(outcome),
                )
            try:
                posted = await self._platform.send_poll(
                    channel.id,
                    question=outcome.data.question,
                    options=outcome.data.options,
                    content=ON_DEMAND_INTRO,
                )
            except PlatformError as error:
                return StepResult(False, "Could not post the poll.", categorize(error))

            poll = OnDemandPoll(
                **outcome.data.model_dump(include=_POLL_FIELDS), message_id=posted.id
            )
            try:
                result = await self._state.apply(
                    channel.community_id, OnDemandStarted(poll)
                )
            except InvalidTransition:
                return busy

        if not result.persisted:
            return StepResult(
                False, "Poll posted, but saving it failed.", result.error
            )
        return StepResult(True, "Poll generated successfully!")

    async def reveal_on_demand(self, channel_id: str) -> StepResult:
        """Post the active on-demand answer and free the slot."""
        try:
            channel = await self._platform.fetch_channel(channel_id)
            state = await self._state.get(channel.community_id)
        except (PlatformError, PersistenceFailure) as error:
            return StepResult(False, "Could not reveal the poll.", categorize(error))

        poll = state.active_on_demand_poll
        if poll is None:
            return StepResult(
                False,
                "There is no active on-demand poll to reveal.",
                ErrorCategory.INVALID_REQUEST,
            )

        embed = Embed(
            title="Answer & Explanation 🧐",
            description=f"**Q: {poll.question}**",
            fields=(
                EmbedField(
                    "Correct Answer",
                    f"**{poll.correct_letter}: {poll.correct_option}**",
                ),
                EmbedField("Explanation", poll.explanation or "-"),
            ),
            footer="On-demand polls do not award points.",
            color=0x2ECC71,
        )
        try:
            await self._platform.send_message(channel.id, embed=embed)
        except PlatformError as error:
            return StepResult(False, "Could not post the answer.", categorize(error))

        result = await self._state.apply(channel.community_id, OnDemandCleared())
        if not result.persisted:
            return StepResult(
                False, "Answer revealed, but clearing it failed.", result.error
            )
        return StepResult(True, "Answer revealed.")

    async def post_weekly_summary(self, channel_id: str) -> StepResult:
        """Post the top of the leaderboard with a generated blurb."""
        try:
            channel = await self._platform.fetch_channel(channel_id)
            state = await self._state.get(channel.community_id)
        except (PlatformError, PersistenceFailure) as error:
            log_error(
                self._logger,
                "weekly_summary_failed",
                channel_id=channel_id,
                category=str(categorize(error)),
            )
            return StepResult(False, "Could not post the summary.", categorize(error))

        ranked = state.ranked()[:WEEKLY_TOP_N]
        if not ranked:
            return StepResult(True, "Leaderboard is empty.")

        lines: list[str] = []
        for user_id, score in ranked:
            try:
                username = await self._platform.fetch_username(user_id)
            except PlatformError:
                username = None
            if username is None:
                continue
            lines.append(f"{len(lines) + 1}. {username} - {score} points")
        leaderboard = "\n".join(lines)

        prompt = (
            "You are a fun and engaging Discord bot. Write a short, human-like "
            "summary for the end-of-week AI poll leaderboard. Here is the data:\n"
            f"{leaderboard}\nCongratulate the winner(s), mention some other top "
            "players, encourage everyone, and say you're excited for next week. "
            "Keep it concise and positive."
        )
        summary = await self._trivia.generate_text(prompt, service_key="gemini_summary")
        embed = Embed(
            title="🏆 Weekly Poll Report 🏆",
            description=summary or SUMMARY_FALLBACK,
            fields=(
                EmbedField(
                    "Top 10 This Week", leaderboard or "No participants this week."
                ),
            ),
            footer="A new week of polls starts tomorrow!",
            color=0xFFD700,
        )
        if not await self._send_embed(channel, embed, event="weekly_summary"):
            return StepResult(
                False, "Could not post the summary.", ErrorCategory.UNEXPECTED
            )
        return StepResult(True, "Weekly summary posted.")

    async def _run_daily_cycle(
        self, channel: ChannelInfo, *, catch_up: bool
    ) -> DailyPostResult:
        community_id = channel.community_id
        log_info(self._logger, "daily_post_started", catch_up=catch_up)
        try:
            state = await self._state.get(community_id)
        except PersistenceFailure as error:
            log_error(self._logger, "daily_post_state_unavailable", error=str(error))
            return DailyPostResult(
                DailyPostStatus.FAILED, category=ErrorCategory.PERSISTENCE
            )

        resolution = await self.resolve_last_poll(channel)

        try:
            history = await self._state.recent_questions(community_id)
        except PersistenceFailure as error:
            log_warning(self._logger, "question_history_unavailable", error=str(error))
            history = []

        outcome = await self._trivia.generate_trivia("", history)
        if isinstance(outcome, Success):
            poll, used_fallback = outcome.data, False
        else:
            poll = self._select_fallback(state.last_successful_poll)
            used_fallback = True
            self._metrics.fallback_served += 1
            log_warning(
                self._logger,
                "poll_fallback_served",
                outcome=str(outcome.status),
                from_last_successful=poll is state.last_successful_poll,
            )

        try:
            posted = await self._platform.send_poll(
                channel.id,
                question=poll.question,
                options=poll.options,
                content=self.intro_text(catch_up=catch_up, used_fallback=used_fallback),
            )
        except PlatformError as error:
            log_error(
                self._logger,
                "daily_post_send_failed",
                category=str(categorize(error)),
                error=str(error),
            )
            return DailyPostResult(
                DailyPostStatus.FAILED,
                resolution=resolution,
                category=categorize(error),
            )

        record = build_poll_record(
            poll,
            message_id=posted.id,
            created_at=_utcnow(),
            is_fallback=used_fallback,
        )
        result = await self._state.apply(community_id, PollPosted(record))
        log_info(
            self._logger,
            "daily_post_completed",
            poll_message_id=posted.id,
            is_fallback=used_fallback,
            persisted=result.persisted,
        )
        return DailyPostResult(
            DailyPostStatus.POSTED,
            record=record,
            resolution=resolution,
            category=result.error,
        )

    def _select_fallback(self, last_successful: PollRecord | None) -> TriviaPoll:
        if (
            last_successful is not None
            and last_successful.type == "trivia"
            and not last_successful.is_fallback
        ):
            return last_successful
        return pick_fallback(FALLBACK_POLLS, self._fallback_picker)

    def _resolution_failed(
        self,
        channel: ChannelInfo,
        poll_message_id: str | None,
        error: Exception,
    ) -> ResolutionResult:
        category = categorize(error)
        hint = None
        if category == ErrorCategory.EXTERNAL_STATE_MISSING:
            hint = RELINK_HINT
        elif category == ErrorCategory.PERMISSION_DENIED:
            hint = "Missing permissions. Check the bot's channel permissions."
        log_error(
            self._logger,
            "poll_resolution_failed",
            community_id=channel.community_id,
            channel_id=channel.id,
            poll_message_id=poll_message_id,
            category=str(category),
            hint=hint,
            error=str(error),
        )
        return ResolutionResult(ResolutionStatus.FAILED, category=category, hint=hint)

    @staticmethod
    def _answer_embed(record: PollRecord, winner_count: int) -> Embed:
        return Embed(
            title="Yesterday's Poll Answer 🧐",
            description=(
                f'The correct answer to **"{record.question}"** was '
                f"**{record.correct_letter}: {record.correct_option}**."
                f"\n\n{record.explanation}"
            ),
            fields=(
                EmbedField(
                    "Leaderboard Update",
                    f"**{winner_count}** member(s) answered correctly and have "
                    "been awarded a point!",
                ),
            ),
            color=0x5865F2,
        )

    async def _send_embed(
        self, channel: ChannelInfo, embed: Embed, *, event: str
    ) -> bool:
        try:
            await self._platform.send_message(channel.id, embed=embed)
        except PlatformError as error:
            log_warning(
                self._logger,
                f"{event}_send_failed",
                community_id=channel.community_id,
                channel_id=channel.id,
                category=str(categorize(error)),
            )
            return False
        return True

    @staticmethod
    @contextmanager
    def _claim(claims: set[str], community_id: str) -> Iterator[bool]:
        if community_id in claims:
            yield False
            return
        claims.add(community_id)
        try:
            yield True
        finally:
            claims.discard(community_id)
