"""Poll lifecycle, startup reconciliation and operator commands."""

from quizbot_core.polls.admin import KNOWLEDGE_KEY, AdminCommands, AdminReply
from quizbot_core.polls.fallbacks import FALLBACK_POLLS, pick_fallback
from quizbot_core.polls.lifecycle import (
    CATCH_UP_INTRO,
    DAILY_INTRO,
    FALLBACK_NOTE,
    SUMMARY_FALLBACK,
    DailyPostResult,
    DailyPostStatus,
    PollLifecycle,
    ResolutionResult,
    ResolutionStatus,
    StepResult,
    build_poll_record,
    outcome_category,
)
from quizbot_core.polls.scheduling import (
    CatchUpDecision,
    MissedScheduleChecker,
    format_slot_label,
    local_date,
    needs_catch_up,
    slot_reached,
)

__all__ = [
    "CATCH_UP_INTRO",
    "DAILY_INTRO",
    "FALLBACK_NOTE",
    "FALLBACK_POLLS",
    "KNOWLEDGE_KEY",
    "SUMMARY_FALLBACK",
    "AdminCommands",
    "AdminReply",
    "CatchUpDecision",
    "DailyPostResult",
    "DailyPostStatus",
    "MissedScheduleChecker",
    "PollLifecycle",
    "ResolutionResult",
    "ResolutionStatus",
    "StepResult",
    "build_poll_record",
    "format_slot_label",
    "local_date",
    "needs_catch_up",
    "outcome_category",
    "pick_fallback",
    "slot_reached",
]
