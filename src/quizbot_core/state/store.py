"""Durable store interface for per-community state.

The store is the source of truth. Implementations raise
:class:`~quizbot_core.errors.PersistenceFailure` when the backend is
unavailable or rejects a write; they never return partial results silently.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Sequence

from quizbot_core.state.models import HISTORY_LIMIT, InviteRecord


class AbstractStore(ABC):
    """Key-value state rows, leaderboard table, question log and invites."""

    @abstractmethod
    async def load_state(self, community_id: str) -> dict[str, str]:
        """Return every raw JSON state row for ``community_id`` by key."""

    @abstractmethod
    async def save_state(self, community_id: str, key: str, value: str) -> None:
        """Upsert one raw JSON state row."""

    @abstractmethod
    async def delete_state(self, community_id: str, key: str) -> None:
        """Delete one state row, succeeding when it does not exist."""

    @abstractmethod
    async def load_leaderboard(self, community_id: str) -> dict[str, int]:
        """Return ``user_id -> score`` for ``community_id``."""

    @abstractmethod
    async def increment_scores(
        self, community_id: str, user_ids: Sequence[str]
    ) -> None:
        """Add one point to every user in ``user_ids`` in a single batch."""

    @abstractmethod
    async def add_score(self, community_id: str, user_id: str, amount: int) -> int:
        """Add ``amount`` (floored at zero) and return the new score."""

    @abstractmethod
    async def set_score(self, community_id: str, user_id: str, amount: int) -> int:
        """Overwrite the score (floored at zero) and return it."""

    @abstractmethod
    async def remove_score(
        self, community_id: str, user_id: str, amount: int
    ) -> int:
        """Subtract ``amount`` floored at zero and return the new score."""

    @abstractmethod
    async def load_knowledge(self, community_id: str) -> dict[str, str]:
        """Return the knowledge-base entries for ``community_id``."""

    @abstractmethod
    async def save_knowledge(self, community_id: str, key: str, value: str) -> None:
        """Upsert one knowledge-base entry."""

    @abstractmethod
    async def recent_questions(
        self, community_id: str, limit: int = HISTORY_LIMIT
    ) -> list[str]:
        """Return up to ``limit`` asked questions, newest first."""

    @abstractmethod
    async def append_question(self, community_id: str, question: str) -> None:
        """Log one asked question and prune the log to ``HISTORY_LIMIT``."""

    @abstractmethod
    async def replace_invites(
        self, community_id: str, invites: Sequence[InviteRecord]
    ) -> None:
        """Atomically replace the stored invite snapshot."""

    @abstractmethod
    async def load_invites(self, community_id: str) -> list[InviteRecord]:
        """Return the stored invite snapshot."""


class InMemoryStore(AbstractStore):
    """Process-local store for tests and local development."""

    def __init__(self) -> None:
        self._state: dict[str, dict[str, str]] = defaultdict(dict)
        self._leaderboard: dict[str, dict[str, int]] = defaultdict(dict)
        self._knowledge: dict[str, dict[str, str]] = defaultdict(dict)
        self._questions: dict[str, list[str]] = defaultdict(list)
        self._invites: dict[str, list[InviteRecord]] = defaultdict(list)

    async def load_state(self, community_id: str) -> dict[str, str]:
        return dict(self._state[community_id])

    async def save_state(self, community_id: str, key: str, value: str) -> None:
        self._state[community_id][key] = value

    async def delete_state(self, community_id: str, key: str) -> None:
        self._state[community_id].pop(key, None)

    async def load_leaderboard(self, community_id: str) -> dict[str, int]:
        return dict(self._leaderboard[community_id])

    async def increment_scores(
        self, community_id: str, user_ids: Sequence[str]
    ) -> None:
        board = self._leaderboard[community_id]
        for user_id in user_ids:
            board[user_id] = board.get(user_id, 0) + 1

    async def add_score(self, community_id: str, user_id: str, amount: int) -> int:
        board = self._leaderboard[community_id]
        board[user_id] = max(0, board.get(user_id, 0) + amount)
        return board[user_id]

    async def set_score(self, community_id: str, user_id: str, amount: int) -> int:
        board = self._leaderboard[community_id]
        board[user_id] = max(0, amount)
        return board[user_id]

    async def remove_score(
        self, community_id: str, user_id: str, amount: int
    ) -> int:
        board = self._leaderboard[community_id]
        if user_id not in board:
            return 0
        board[user_id] = max(0, board[user_id] - amount)
        return board[user_id]

    async def load_knowledge(self, community_id: str) -> dict[str, str]:
        return dict(self._knowledge[community_id])

    async def save_knowledge(self, community_id: str, key: str, value: str) -> None:
        self._knowledge[community_id][key] = value

    async def recent_questions(
        self, community_id: str, limit: int = HISTORY_LIMIT
    ) -> list[str]:
        return list(reversed(self._questions[community_id]))[:limit]

    async def append_question(self, community_id: str, question: str) -> None:
        log = self._questions[community_id]
        log.append(question)
        del log[:-HISTORY_LIMIT]

    async def replace_invites(
        self, community_id: str, invites: Sequence[InviteRecord]
    ) -> None:
        self._invites[community_id] = list(invites)

    async def load_invites(self, community_id: str) -> list[InviteRecord]:
        return list(self._invites[community_id])
