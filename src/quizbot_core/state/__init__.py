"""Per-community poll, leaderboard and knowledge state.

Key behavior notes:
  - Durable storage is the source of truth; the manager keeps a lazily
    loaded in-memory mirror per community.
  - Poll records cross the storage boundary as typed models. Malformed rows
    are logged and treated as absent at load time.
  - All mutations are enumerable transitions applied through
    ``CommunityStateManager.apply``.
"""

from quizbot_core.state.manager import (
    CommunityStateManager,
    InvalidTransition,
    KnowledgeUpdated,
    OnDemandCleared,
    OnDemandStarted,
    PollCleared,
    PollPosted,
    PollRelinked,
    ScoreAdjusted,
    ScoreMode,
    ScoresAwarded,
    Transition,
    TransitionResult,
)
from quizbot_core.state.models import (
    HISTORY_LIMIT,
    CommunityState,
    InviteRecord,
    OnDemandPoll,
    PollRecord,
    PollType,
    StateKey,
    TriviaPoll,
    decode_poll_record,
    encode_poll_record,
    normalize_question,
)
from quizbot_core.state.sqlite_store import SqliteStore
from quizbot_core.state.store import AbstractStore, InMemoryStore

__all__ = [
    "HISTORY_LIMIT",
    "AbstractStore",
    "CommunityState",
    "CommunityStateManager",
    "InMemoryStore",
    "InvalidTransition",
    "InviteRecord",
    "KnowledgeUpdated",
    "OnDemandCleared",
    "OnDemandPoll",
    "OnDemandStarted",
    "PollCleared",
    "PollPosted",
    "PollRecord",
    "PollRelinked",
    "PollType",
    "ScoreAdjusted",
    "ScoreMode",
    "ScoresAwarded",
    "SqliteStore",
    "StateKey",
    "Transition",
    "TransitionResult",
    "TriviaPoll",
    "decode_poll_record",
    "encode_poll_record",
    "normalize_question",
]
