from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from quizbot_core.errors import PersistenceFailure
from quizbot_core.state.models import HISTORY_LIMIT, InviteRecord
from quizbot_core.state.store import AbstractStore

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS state (
        guild_id TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        PRIMARY KEY (guild_id, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS leaderboard (
        guild_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        score INTEGER NOT NULL DEFAULT 0 CHECK (score >= 0),
        PRIMARY KEY (guild_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS knowledge_base (
        guild_id TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        PRIMARY KEY (guild_id, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS question_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        guild_id TEXT NOT NULL,
        question TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invites (
        guild_id TEXT NOT NULL,
        code TEXT NOT NULL,
        inviter_id TEXT NOT NULL,
        uses INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (guild_id, code)
    )
    """,
)


class SqliteStore(AbstractStore):
    """aiosqlite-backed durable store, one short-lived connection per call."""

    def __init__(self, db_path: str | Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self._busy_timeout_ms = busy_timeout_ms

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
                yield db
        except sqlite3.Error as error:
            raise PersistenceFailure(f"{operation} failed: {error}") from error

    async def init(self) -> None:
        """Create tables when missing."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connection("init") as db:
            await db.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                await db.execute(statement)
            await db.commit()

    async def load_state(self, community_id: str) -> dict[str, str]:
        async with self._connection("load_state") as db:
            async with db.execute(
                "SELECT key, value FROM state WHERE guild_id = ?",
                (community_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return {str(key): str(value) for key, value in rows}

    async def save_state(self, community_id: str, key: str, value: str) -> None:
        async with self._connection("save_state") as db:
            await db.execute(
                """
                INSERT INTO state (guild_id, key, value) VALUES (?, ?, ?)
                ON CONFLICT(guild_id, key) DO UPDATE SET value = excluded.value
                """,
                (community_id, key, value),
            )
            await db.commit()

    async def delete_state(self, community_id: str, key: str) -> None:
        async with self._connection("delete_state") as db:
            await db.execute(
                "DELETE FROM state WHERE guild_id = ? AND key = ?",
                (community_id, key),
            )
            await db.commit()

    async def load_leaderboard(self, community_id: str) -> dict[str, int]:
        async with self._connection("load_leaderboard") as db:
            async with db.execute(
                "SELECT user_id, score FROM leaderboard WHERE guild_id = ?",
                (community_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return {str(user_id): int(score) for user_id, score in rows}

    async def increment_scores(
        self, community_id: str, user_ids: Sequence[str]
    ) -> None:
        if not user_ids:
            return
        async with self._connection("increment_scores") as db:
            await db.executemany(
                """
                INSERT INTO leaderboard (guild_id, user_id, score) VALUES (?, ?, 1)
                ON CONFLICT(guild_id, user_id) DO UPDATE SET score = score + 1
                """,
                [(community_id, user_id) for user_id in user_ids],
            )
            await db.commit()

    async def add_score(self, community_id: str, user_id: str, amount: int) -> int:
        return await self._upsert_score(
            "add_score",
            """
            INSERT INTO leaderboard (guild_id, user_id, score) VALUES (?, ?, MAX(0, ?))
            ON CONFLICT(guild_id, user_id)
            DO UPDATE SET score = MAX(0, score + excluded.score)
            """,
            community_id,
            user_id,
            amount,
        )

    async def set_score(self, community_id: str, user_id: str, amount: int) -> int:
        return await self._upsert_score(
            "set_score",
            """
            INSERT INTO leaderboard (guild_id, user_id, score) VALUES (?, ?, MAX(0, ?))
            ON CONFLICT(guild_id, user_id) DO UPDATE SET score = excluded.score
            """,
            community_id,
            user_id,
            amount,
        )

    async def remove_score(
        self, community_id: str, user_id: str, amount: int
    ) -> int:
        async with self._connection("remove_score") as db:
            await db.execute(
                """
                UPDATE leaderboard SET score = MAX(0, score - ?)
                WHERE guild_id = ? AND user_id = ?
                """,
                (amount, community_id, user_id),
            )
            await db.commit()
            return await self._fetch_score(db, community_id, user_id)

    async def _upsert_score(
        self,
        operation: str,
        sql: str,
        community_id: str,
        user_id: str,
        amount: int,
    ) -> int:
        async with self._connection(operation) as db:
            await db.execute(sql, (community_id, user_id, amount))
            await db.commit()
            return await self._fetch_score(db, community_id, user_id)

    @staticmethod
    async def _fetch_score(
        db: aiosqlite.Connection, community_id: str, user_id: str
    ) -> int:
        async with db.execute(
            "SELECT score FROM leaderboard WHERE guild_id = ? AND user_id = ?",
            (community_id, user_id),
        ) as cursor:
            row = await cursor.fetchone()
        return 0 if row is None else int(row[0])

    async def load_knowledge(self, community_id: str) -> dict[str, str]:
        async with self._connection("load_knowledge") as db:
            async with db.execute(
                "SELECT key, value FROM knowledge_base WHERE guild_id = ?",
                (community_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return {str(key): str(value) for key, value in rows}

    async def save_knowledge(self, community_id: str, key: str, value: str) -> None:
        async with self._connection("save_knowledge") as db:
            await db.execute(
                """
                INSERT INTO knowledge_base (guild_id, key, value) VALUES (?, ?, ?)
                ON CONFLICT(guild_id, key) DO UPDATE SET value = excluded.value
                """,
                (community_id, key, value),
            )
            await db.commit()

    async def recent_questions(
        self, community_id: str, limit: int = HISTORY_LIMIT
    ) -> list[str]:
        async with self._connection("recent_questions") as db:
            async with db.execute(
                """
                SELECT question FROM question_history
                WHERE guild_id = ? ORDER BY id DESC LIMIT ?
                """,
                (community_id, limit),
            ) as cursor:
                rows = await cursor.fetchall()
        return [str(row[0]) for row in rows]

    async def append_question(self, community_id: str, question: str) -> None:
        async with self._connection("append_question") as db:
            await db.execute(
                "INSERT INTO question_history (guild_id, question) VALUES (?, ?)",
                (community_id, question),
            )
            await db.execute(
                """
                DELETE FROM question_history
                WHERE guild_id = ? AND id NOT IN (
                    SELECT id FROM question_history
                    WHERE guild_id = ? ORDER BY id DESC LIMIT ?
                )
                """,
                (community_id, community_id, HISTORY_LIMIT),
            )
            await db.commit()

    async def replace_invites(
        self, community_id: str, invites: Sequence[InviteRecord]
    ) -> None:
        async with self._connection("replace_invites") as db:
            try:
                await db.execute(
                    "DELETE FROM invites WHERE guild_id = ?", (community_id,)
                )
                await db.executemany(
                    """
                    INSERT INTO invites (guild_id, code, inviter_id, uses)
                    VALUES (?, ?, ?, ?)
                    """,
                    [
                        (community_id, invite.code, invite.inviter_id, invite.uses)
                        for invite in invites
                    ],
                )
            except sqlite3.Error:
                await db.rollback()
                raise
            await db.commit()

    async def load_invites(self, community_id: str) -> list[InviteRecord]:
        async with self._connection("load_invites") as db:
            async with db.execute(
                "SELECT code, inviter_id, uses FROM invites WHERE guild_id = ?",
                (community_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            InviteRecord(code=str(code), inviter_id=str(inviter), uses=int(uses))
            for code, inviter, uses in rows
        ]
