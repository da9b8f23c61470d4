from __future__ import annotations

from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

import pytest

import quizbot_core.polls.scheduling as scheduling_mod
from quizbot_core.ai import TriviaGenerator
from quizbot_core.polls import (
    CATCH_UP_INTRO,
    CatchUpDecision,
    DailyPostResult,
    MissedScheduleChecker,
    PollLifecycle,
    format_slot_label,
    local_date,
    needs_catch_up,
    slot_reached,
)
from quizbot_core.resilience import ResilientCaller
from quizbot_core.state import CommunityStateManager, PollPosted, PollRecord
from tests.quizbot_core.support.fakes import (
    FailingStore,
    FakeGenerator,
    FakeLogger,
    FakePlatform,
    trivia_json,
)

pytestmark = pytest.mark.asyncio

_NEW_YORK = ZoneInfo("America/New_York")


def _utc(*parts: int) -> datetime:
    return datetime(*parts, tzinfo=UTC)


def _record_at(created_at: datetime | None) -> PollRecord:
    return PollRecord(
        question="Which company created AlphaGo?",
        options=("DeepMind", "OpenAI"),
        correct_answer_index=0,
        poll_message_id="poll-1",
        created_at=created_at,
    )


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleep() -> _RecordingSleep:
    return _RecordingSleep()


@pytest.fixture
def lifecycle(
    platform: FakePlatform,
    state_manager: CommunityStateManager,
    generator: FakeGenerator,
    caller: ResilientCaller,
    fake_logger: FakeLogger,
) -> PollLifecycle:
    generator.json_responses = [trivia_json("What does GPU stand for?")]
    trivia = TriviaGenerator(generator=generator, caller=caller, logger=fake_logger)
    return PollLifecycle(
        platform=platform, state=state_manager, trivia=trivia, logger=fake_logger
    )


@pytest.fixture
def checker(
    lifecycle: PollLifecycle,
    platform: FakePlatform,
    state_manager: CommunityStateManager,
    fake_logger: FakeLogger,
    sleep: _RecordingSleep,
) -> MissedScheduleChecker:
    return MissedScheduleChecker(
        lifecycle=lifecycle,
        state=state_manager,
        platform=platform,
        timezone=_NEW_YORK,
        post_hour=6,
        settle_seconds=5.0,
        sleep=sleep,
        logger=fake_logger,
    )


def _freeze(monkeypatch: pytest.MonkeyPatch, now: datetime) -> None:
    monkeypatch.setattr(scheduling_mod, "_utcnow", lambda: now)


async def test_local_date_converts_before_comparing() -> None:
    late_evening = datetime(2024, 5, 2, 1, 30, tzinfo=UTC)

    assert local_date(late_evening, _NEW_YORK) == date(2024, 5, 1)
    assert local_date(datetime(2024, 5, 2, 1, 30), _NEW_YORK) == date(2024, 5, 1)


async def test_slot_reached_uses_local_time_of_day() -> None:
    def reached(*moment: int, minute: int = 0) -> bool:
        return slot_reached(datetime(*moment, tzinfo=UTC), _NEW_YORK, 6, minute)

    assert reached(2024, 5, 1, 9, 59) is False
    assert reached(2024, 5, 1, 10, 0) is True
    assert reached(2024, 1, 15, 10, 30) is False
    assert reached(2024, 5, 1, 10, 29, minute=30) is False
    assert slot_reached(datetime(2024, 5, 1, 10, 30), _NEW_YORK, 6, 30) is True


async def test_needs_catch_up_compares_local_dates() -> None:
    now = datetime(2024, 5, 2, 1, 0, tzinfo=UTC)
    same_local_day = datetime(2024, 5, 1, 10, 5, tzinfo=UTC)
    day_before = datetime(2024, 4, 30, 23, 0, tzinfo=UTC)

    assert needs_catch_up(None, now, _NEW_YORK) is True
    assert needs_catch_up(same_local_day, now, _NEW_YORK) is False
    assert needs_catch_up(day_before, now, _NEW_YORK) is True


async def test_slot_reached_on_daylight_saving_transition_days() -> None:
    def reached(*moment: int) -> bool:
        return slot_reached(datetime(*moment, tzinfo=UTC), _NEW_YORK, 6)

    # 2024-03-10: clocks jump from 2:00 EST to 3:00 EDT, so 6 AM is 10:00 UTC.
    assert reached(2024, 3, 10, 9, 59) is False
    assert reached(2024, 3, 10, 10, 0) is True
    # 2024-11-03: clocks fall back from 2:00 EDT to 1:00 EST, so 6 AM is 11:00 UTC.
    assert reached(2024, 11, 3, 10, 30) is False
    assert reached(2024, 11, 3, 11, 0) is True


@pytest.mark.parametrize(
    ("created_at", "now", "expected"),
    [
        # 23:30 EST on Mar 9, checked at 6:00 EDT on Mar 10.
        (_utc(2024, 3, 10, 4, 30), _utc(2024, 3, 10, 10, 0), True),
        # 1:30 EST and 19:00 EDT on Mar 10.
        (_utc(2024, 3, 10, 6, 30), _utc(2024, 3, 10, 23, 0), False),
        # 23:30 EDT on Nov 2, checked at 6:00 EST on Nov 3.
        (_utc(2024, 11, 3, 3, 30), _utc(2024, 11, 3, 11, 0), True),
        # 6:05 EST and 23:30 EST on Nov 3, the second after UTC midnight.
        (_utc(2024, 11, 3, 11, 5), _utc(2024, 11, 4, 4, 30), False),
    ],
)
async def test_needs_catch_up_across_daylight_saving_changes(
    created_at: datetime, now: datetime, expected: bool
) -> None:
    assert needs_catch_up(created_at, now, _NEW_YORK) is expected


@pytest.mark.parametrize(
    ("hour", "minute", "label"),
    [(6, 0, "6 AM"), (0, 0, "12 AM"), (12, 0, "12 PM"), (18, 30, "6:30 PM")],
)
async def test_format_slot_label(hour: int, minute: int, label: str) -> None:
    assert format_slot_label(hour, minute) == label


async def test_check_before_slot_does_nothing(
    checker: MissedScheduleChecker,
    platform: FakePlatform,
    sleep: _RecordingSleep,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _freeze(monkeypatch, datetime(2024, 5, 1, 9, 30, tzinfo=UTC))

    decisions = await checker.check_for_missed_polls(["chan-1"])

    assert decisions == {"chan-1": CatchUpDecision.BEFORE_SLOT}
    assert sleep.delays == [5.0]
    assert platform.sent_polls == []


async def test_poll_already_posted_today_is_left_alone(
    checker: MissedScheduleChecker,
    platform: FakePlatform,
    state_manager: CommunityStateManager,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    posted_at = datetime(2024, 5, 1, 10, 5, tzinfo=UTC)
    await state_manager.apply("guild-1", PollPosted(_record_at(posted_at)))
    _freeze(monkeypatch, datetime(2024, 5, 2, 1, 0, tzinfo=UTC))

    decisions = await checker.check_for_missed_polls(["chan-1"])

    assert decisions == {"chan-1": CatchUpDecision.ALREADY_POSTED}
    assert platform.sent_polls == []


async def test_yesterday_evening_post_triggers_catch_up_after_utc_midnight(
    checker: MissedScheduleChecker,
    platform: FakePlatform,
    state_manager: CommunityStateManager,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    evening_before = datetime(2024, 5, 1, 1, 30, tzinfo=UTC)
    await state_manager.apply("guild-1", PollPosted(_record_at(evening_before)))
    _freeze(monkeypatch, datetime(2024, 5, 1, 12, 0, tzinfo=UTC))

    decisions = await checker.check_for_missed_polls(["chan-1"])

    assert decisions == {"chan-1": CatchUpDecision.CAUGHT_UP}
    assert platform.sent_polls[-1]["content"] == CATCH_UP_INTRO.format(slot="6 AM")


async def test_missing_record_triggers_catch_up(
    checker: MissedScheduleChecker,
    platform: FakePlatform,
    fake_logger: FakeLogger,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _freeze(monkeypatch, datetime(2024, 5, 1, 12, 0, tzinfo=UTC))

    decision = await checker.check_channel("chan-1")

    assert decision == CatchUpDecision.CAUGHT_UP
    assert len(platform.sent_polls) == 1
    assert fake_logger.fields("missed_poll_catch_up_started")["last_poll_date"] is None


async def test_record_without_timestamp_triggers_catch_up(
    checker: MissedScheduleChecker,
    platform: FakePlatform,
    state_manager: CommunityStateManager,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    await state_manager.apply("guild-1", PollPosted(_record_at(None)))
    _freeze(monkeypatch, datetime(2024, 5, 1, 12, 0, tzinfo=UTC))

    assert await checker.check_channel("chan-1") == CatchUpDecision.CAUGHT_UP
    assert len(platform.sent_polls) == 1


async def test_failures_are_reported_per_channel(
    checker: MissedScheduleChecker,
    platform: FakePlatform,
    store: FailingStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    platform.add_channel("chan-2", "guild-2")
    store.failing.add("load_state")
    _freeze(monkeypatch, datetime(2024, 5, 1, 12, 0, tzinfo=UTC))

    decisions = await checker.check_for_missed_polls(["missing", "chan-2"])

    assert decisions == {
        "missing": CatchUpDecision.FAILED,
        "chan-2": CatchUpDecision.FAILED,
    }
    assert platform.sent_polls == []


async def test_zero_settle_delay_skips_sleep(
    lifecycle: PollLifecycle,
    platform: FakePlatform,
    state_manager: CommunityStateManager,
    sleep: _RecordingSleep,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    immediate = MissedScheduleChecker(
        lifecycle=lifecycle,
        state=state_manager,
        platform=platform,
        timezone=_NEW_YORK,
        settle_seconds=0,
        sleep=sleep,
    )
    _freeze(monkeypatch, datetime(2024, 5, 1, 9, 0, tzinfo=UTC))

    await immediate.check_for_missed_polls(["chan-1"])

    assert sleep.delays == []


async def test_evening_poll_before_spring_forward_is_caught_up(
    checker: MissedScheduleChecker,
    platform: FakePlatform,
    state_manager: CommunityStateManager,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    await state_manager.apply(
        "guild-1", PollPosted(_record_at(_utc(2024, 3, 10, 4, 30)))
    )
    _freeze(monkeypatch, _utc(2024, 3, 10, 10, 0))

    decisions = await checker.check_for_missed_polls(["chan-1"])

    assert decisions == {"chan-1": CatchUpDecision.CAUGHT_UP}
    assert len(platform.sent_polls) == 1


async def test_late_post_after_fall_back_counts_as_today(
    checker: MissedScheduleChecker,
    platform: FakePlatform,
    state_manager: CommunityStateManager,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    await state_manager.apply(
        "guild-1", PollPosted(_record_at(_utc(2024, 11, 3, 11, 5)))
    )
    _freeze(monkeypatch, _utc(2024, 11, 4, 4, 30))

    decisions = await checker.check_for_missed_polls(["chan-1"])

    assert decisions == {"chan-1": CatchUpDecision.ALREADY_POSTED}
    assert platform.sent_polls == []


async def test_crashing_catch_up_only_fails_its_own_channel(
    checker: MissedScheduleChecker,
    lifecycle: PollLifecycle,
    platform: FakePlatform,
    fake_logger: FakeLogger,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    platform.add_channel("chan-2", "guild-2")
    original = lifecycle.perform_daily_post

    async def _crash_on_first_channel(
        channel_id: str, *, catch_up: bool = False
    ) -> DailyPostResult:
        if channel_id == "chan-1":
            raise KeyError("options")
        return await original(channel_id, catch_up=catch_up)

    monkeypatch.setattr(lifecycle, "perform_daily_post", _crash_on_first_channel)
    _freeze(monkeypatch, _utc(2024, 5, 1, 12, 0))

    decisions = await checker.check_for_missed_polls(["chan-1", "chan-2"])

    assert decisions == {
        "chan-1": CatchUpDecision.FAILED,
        "chan-2": CatchUpDecision.CAUGHT_UP,
    }
    assert len(platform.sent_polls) == 1
    assert fake_logger.fields("missed_poll_catch_up_crashed")["channel_id"] == "chan-1"
