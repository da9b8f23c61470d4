"""Per-community state cache with one enumerable transition entry point.

Every mutation goes through :meth:`CommunityStateManager.apply`. The cache is
updated first, then mirrored to the store. A store failure is logged and
reported in the returned :class:`TransitionResult`; the cache is not rolled
back, so a retried transition must be safe to apply twice.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Literal

from quizbot_core.errors import ErrorCategory, PersistenceFailure
from quizbot_core.logging import (
    StructuredLogger,
    get_logger,
    log_error,
    log_warning,
)
from quizbot_core.state.models import (
    HISTORY_LIMIT,
    CommunityState,
    ModelT,
    OnDemandPoll,
    PollRecord,
    StateKey,
    decode_poll_record,
    encode_poll_record,
)
from quizbot_core.state.store import AbstractStore

ScoreMode = Literal["add", "remove", "set"]


class InvalidTransition(RuntimeError):
    """Raised when a transition would break a per-community invariant."""


@dataclass(frozen=True)
class PollPosted:
    """A new scoring poll went out. Non-fallback polls also feed history."""

    record: PollRecord


@dataclass(frozen=True)
class PollRelinked:
    record: PollRecord


@dataclass(frozen=True)
class PollCleared:
    pass


@dataclass(frozen=True)
class OnDemandStarted:
    poll: OnDemandPoll


@dataclass(frozen=True)
class OnDemandCleared:
    pass


@dataclass(frozen=True)
class ScoresAwarded:
    user_ids: tuple[str, ...]


@dataclass(frozen=True)
class ScoreAdjusted:
    user_id: str
    mode: ScoreMode
    amount: int


@dataclass(frozen=True)
class KnowledgeUpdated:
    key: str
    value: str


Transition = (
    PollPosted
    | PollRelinked
    | PollCleared
    | OnDemandStarted
    | OnDemandCleared
    | ScoresAwarded
    | ScoreAdjusted
    | KnowledgeUpdated
)


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of one applied transition.

    Attributes:
        persisted: False when the store rejected the write.
        error: Category of the store failure, if any.
        score: New score after a :class:`ScoreAdjusted` transition.
    """

    persisted: bool
    error: ErrorCategory | None = None
    score: int | None = None


class CommunityStateManager:
    """Lazily loaded cache of :class:`CommunityState` keyed by community id."""

    def __init__(
        self,
        store: AbstractStore,
        *,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._store = store
        self._logger = get_logger(__name__) if logger is None else logger
        self._cache: dict[str, CommunityState] = {}
        self._load_locks: dict[str, asyncio.Lock] = {}

    def is_loaded(self, community_id: str) -> bool:
        return community_id in self._cache

    async def get(self, community_id: str) -> CommunityState:
        """Return the cached state, loading it from the store on first touch.

        Raises:
            PersistenceFailure: When the first load cannot reach the store.
        """
        cached = self._cache.get(community_id)
        if cached is not None:
            return cached

        lock = self._load_locks.setdefault(community_id, asyncio.Lock())
        async with lock:
            cached = self._cache.get(community_id)
            if cached is not None:
                return cached
            state = await self._load(community_id)
            self._cache[community_id] = state
            return state

    async def recent_questions(
        self, community_id: str, limit: int = HISTORY_LIMIT
    ) -> list[str]:
        return await self._store.recent_questions(community_id, limit)

    async def apply(
        self, community_id: str, transition: Transition
    ) -> TransitionResult:
        """Apply one transition to the cache and mirror it to the store.

        Raises:
            InvalidTransition: When an on-demand poll is already active.
            PersistenceFailure: When the state has never been loaded and the
                store is unreachable.
        """
        state = await self.get(community_id)
        match transition:
            case PollPosted(record=record):
                state.last_poll_data = record
                if not record.is_fallback:
                    state.last_successful_poll = record
                return await self._persist(
                    community_id, transition, self._write_posted(community_id, record)
                )
            case PollRelinked(record=record):
                state.last_poll_data = record
                return await self._persist(
                    community_id,
                    transition,
                    self._store.save_state(
                        community_id,
                        StateKey.LAST_POLL_DATA,
                        encode_poll_record(record),
                    ),
                )
            case PollCleared():
                state.last_poll_data = None
                return await self._persist(
                    community_id,
                    transition,
                    self._store.delete_state(community_id, StateKey.LAST_POLL_DATA),
                )
            case OnDemandStarted(poll=poll):
                if state.active_on_demand_poll is not None:
                    raise InvalidTransition(
                        f"community {community_id} already has an active on-demand poll"
                    )
                state.active_on_demand_poll = poll
                return await self._persist(
                    community_id,
                    transition,
                    self._store.save_state(
                        community_id,
                        StateKey.ACTIVE_ON_DEMAND_POLL,
                        encode_poll_record(poll),
                    ),
                )
            case OnDemandCleared():
                state.active_on_demand_poll = None
                return await self._persist(
                    community_id,
                    transition,
                    self._store.delete_state(
                        community_id, StateKey.ACTIVE_ON_DEMAND_POLL
                    ),
                )
            case ScoresAwarded(user_ids=user_ids):
                for user_id in user_ids:
                    state.leaderboard[user_id] = state.leaderboard.get(user_id, 0) + 1
                return await self._persist(
                    community_id,
                    transition,
                    self._store.increment_scores(community_id, user_ids),
                )
            case ScoreAdjusted():
                return await self._adjust_score(community_id, state, transition)
            case KnowledgeUpdated(key=key, value=value):
                state.knowledge_base[key] = value
                return await self._persist(
                    community_id,
                    transition,
                    self._store.save_knowledge(community_id, key, value),
                )
        raise TypeError(f"unsupported transition: {transition!r}")

    async def _load(self, community_id: str) -> CommunityState:
        rows = await self._store.load_state(community_id)
        state = CommunityState(
            community_id=community_id,
            leaderboard=await self._store.load_leaderboard(community_id),
            knowledge_base=await self._store.load_knowledge(community_id),
        )
        state.last_poll_data = self._decode_row(
            community_id, rows, StateKey.LAST_POLL_DATA, PollRecord
        )
        state.active_on_demand_poll = self._decode_row(
            community_id, rows, StateKey.ACTIVE_ON_DEMAND_POLL, OnDemandPoll
        )
        state.last_successful_poll = self._decode_row(
            community_id, rows, StateKey.LAST_SUCCESSFUL_POLL, PollRecord
        )
        return state

    def _decode_row(
        self,
        community_id: str,
        rows: dict[str, str],
        key: StateKey,
        model: type[ModelT],
    ) -> ModelT | None:
        raw = rows.get(key)
        if raw is None:
            return None
        try:
            return decode_poll_record(raw, model)
        except ValueError as error:
            log_warning(
                self._logger,
                "state_record_rejected",
                community_id=community_id,
                key=str(key),
                error=str(error),
            )
            return None

    async def _write_posted(self, community_id: str, record: PollRecord) -> None:
        encoded = encode_poll_record(record)
        await self._store.save_state(community_id, StateKey.LAST_POLL_DATA, encoded)
        if record.is_fallback:
            return
        await self._store.save_state(
            community_id, StateKey.LAST_SUCCESSFUL_POLL, encoded
        )
        await self._store.append_question(community_id, record.question)

    async def _adjust_score(
        self,
        community_id: str,
        state: CommunityState,
        transition: ScoreAdjusted,
    ) -> TransitionResult:
        current = state.leaderboard.get(transition.user_id)
        if transition.mode == "add":
            write = self._store.add_score
            expected = max(0, (current or 0) + transition.amount)
        elif transition.mode == "set":
            write = self._store.set_score
            expected = max(0, transition.amount)
        else:
            write = self._store.remove_score
            expected = max(0, (current or 0) - transition.amount)

        if transition.mode != "remove" or current is not None:
            state.leaderboard[transition.user_id] = expected
        try:
            score = await write(community_id, transition.user_id, transition.amount)
        except PersistenceFailure as error:
            self._log_persist_failure(community_id, transition, error)
            return TransitionResult(
                persisted=False, error=ErrorCategory.PERSISTENCE, score=expected
            )
        if transition.mode != "remove" or current is not None:
            state.leaderboard[transition.user_id] = score
        return TransitionResult(persisted=True, score=score)

    async def _persist(
        self,
        community_id: str,
        transition: Transition,
        write: Awaitable[None],
    ) -> TransitionResult:
        try:
            await write
        except PersistenceFailure as error:
            self._log_persist_failure(community_id, transition, error)
            return TransitionResult(persisted=False, error=ErrorCategory.PERSISTENCE)
        return TransitionResult(persisted=True)

    def _log_persist_failure(
        self,
        community_id: str,
        transition: Transition,
        error: PersistenceFailure,
    ) -> None:
        log_error(
            self._logger,
            "state_persist_failed",
            community_id=community_id,
            transition=type(transition).__name__,
            error=str(error),
        )
