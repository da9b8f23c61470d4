"""Mention and reply handling for conversational requests.

A request is answered immediately when the chat model responds within its
short budget. Otherwise it is handed to the deferred queue, and the user is
told their queue position. When their queue is full the channel goes quiet
for the overload cool-down, signalled only by reactions.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from quizbot_core.ai.gemini import ChatTurn, TextGenerator
from quizbot_core.deferred_queue import DeferredRequestQueue, QueuedJob
from quizbot_core.errors import PersistenceFailure, PlatformError
from quizbot_core.logging import (
    StructuredLogger,
    get_logger,
    log_info,
    log_warning,
)
from quizbot_core.platform import IncomingMessage, PlatformClient
from quizbot_core.polls.admin import KNOWLEDGE_KEY
from quizbot_core.resilience import CallOptions, ResilientCaller, Success
from quizbot_core.state import CommunityState, CommunityStateManager

CHAT_CALL_OPTIONS = CallOptions(service_key="gemini_chat", max_attempts=2, timeout=8.0)
KNOWLEDGE_CHAR_LIMIT = 40_000
COOLDOWN_REACTION = "⏳"
OVERLOAD_REACTIONS = ("🇨", "🇦", "🇳", "🇹")
QUEUED_REPLY = (
    "i'm a bit overloaded, so i saved your request to a short queue and will "
    "reply here when i can. (position #{position})"
)
QUEUE_FULL_REPLY = "i'm completely overloaded right now. please try again in a minute."

_MENTION_PATTERN = re.compile(r"<@!?\d+>")
_LEADERBOARD_KEYWORDS = (
    "leaderboard",
    "top players",
    "scores",
    "points",
    "ranking",
    "rank",
)
_RANK_KEYWORDS = ("rank", "my score", "my points", "my rank")
_POLL_KEYWORDS = ("poll", "daily question", "today's question", "yesterday's poll")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def strip_mentions(content: str) -> str:
    return _MENTION_PATTERN.sub("", content).strip()


class ConversationOutcome(StrEnum):
    IGNORED = "ignored"
    COOLDOWN = "cooldown"
    OVERLOADED = "overloaded"
    REPLIED = "replied"
    QUEUED = "queued"
    QUEUE_FULL = "queue_full"


class ConversationService:
    """Answers mentions and replies, deferring to the queue under load."""

    def __init__(
        self,
        *,
        caller: ResilientCaller,
        generator: TextGenerator,
        platform: PlatformClient,
        state: CommunityStateManager,
        queue: DeferredRequestQueue,
        bot_name: str = "the trivia bot",
        creator_username: str | None = None,
        user_cooldown_seconds: float = 4.0,
        overload_cooldown_seconds: float = 60.0,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._caller = caller
        self._generator = generator
        self._platform = platform
        self._state = state
        self._queue = queue
        self._bot_name = bot_name
        self._creator_username = creator_username
        self._user_cooldown = timedelta(seconds=user_cooldown_seconds)
        self._overload_cooldown = timedelta(seconds=overload_cooldown_seconds)
        self._logger = get_logger(__name__) if logger is None else logger
        self._user_last_seen: dict[str, datetime] = {}
        self._overloaded_since: dict[str, datetime] = {}

    async def handle_message(self, message: IncomingMessage) -> ConversationOutcome:
        if not self._is_addressed(message):
            return ConversationOutcome.IGNORED

        now = _utcnow()
        last_seen = self._user_last_seen.get(message.author_id)
        if last_seen is not None and now - last_seen < self._user_cooldown:
            await self._react(message, (COOLDOWN_REACTION,))
            return ConversationOutcome.COOLDOWN
        self._remember_user(message.author_id, now)

        overloaded_since = self._overloaded_since.get(message.channel_id)
        if overloaded_since is not None:
            if now - overloaded_since < self._overload_cooldown:
                await self._react(message, OVERLOAD_REACTIONS)
                return ConversationOutcome.OVERLOADED
            del self._overloaded_since[message.channel_id]

        try:
            state = await self._state.get(message.community_id)
        except PersistenceFailure as error:
            log_warning(
                self._logger,
                "conversation_state_unavailable",
                community_id=message.community_id,
                error=str(error),
            )
            state = CommunityState(community_id=message.community_id)

        prompt, history = self.build_prompt(message)
        system_instruction = await self.build_system_instruction(state, message)

        outcome = await self._caller.call_with_retries(
            lambda: self._generator.chat(
                prompt, history=history, system_instruction=system_instruction
            ),
            CHAT_CALL_OPTIONS,
        )
        if isinstance(outcome, Success):
            await self._reply(message, outcome.data.strip().lower())
            return ConversationOutcome.REPLIED

        position = self._queue.enqueue(
            QueuedJob(
                message_id=message.id,
                channel_id=message.channel_id,
                community_id=message.community_id,
                author_id=message.author_id,
                prompt=prompt,
                system_instruction=system_instruction,
                history=tuple(history),
            )
        )
        if position is not None:
            await self._reply(message, QUEUED_REPLY.format(position=position))
            return ConversationOutcome.QUEUED

        self._overloaded_since[message.channel_id] = now
        log_warning(
            self._logger,
            "conversation_channel_overloaded",
            channel_id=message.channel_id,
            cooldown_seconds=self._overload_cooldown.total_seconds(),
        )
        await self._reply(message, QUEUE_FULL_REPLY)
        return ConversationOutcome.QUEUE_FULL

    def build_prompt(self, message: IncomingMessage) -> tuple[str, list[ChatTurn]]:
        """Return the prompt and prior turns for the model.

        The model requires history to start with a user turn. When the reply
        chain starts with a bot message, that message is folded into the
        prompt and the history is dropped.
        """
        content = strip_mentions(message.content)
        history = [
            ChatTurn("model" if turn.from_bot else "user", turn.content)
            for turn in message.reply_chain
        ]
        if history and history[0].role == "model":
            prompt = (
                "(The user is replying to your previous message, which said: "
                f'"{history[0].text}")\n\nTheir new message is: "{content}"'
            )
            return prompt, []
        return content, history

    async def build_system_instruction(
        self, state: CommunityState, message: IncomingMessage
    ) -> str:
        sections = [
            f"you are {self._bot_name}, the community's trivia and chat bot. be "
            "casual, human-like, a little humorous and unpredictable. do not "
            "only talk about yourself. replies should almost always be 2-3 "
            "sentences, concise and accurate, never more than one short "
            "paragraph. do not use any capital letters in your responses."
        ]
        if self._creator_username and message.author_name == self._creator_username:
            sections.append(
                f"You are speaking with {self._creator_username}, your creator. "
                "Be particularly witty, a little playful and appreciative."
            )
        else:
            sections.append(
                f'You are speaking with the user "{message.author_name}". Refer '
                "to them by name if it feels natural."
            )

        knowledge = state.knowledge_base.get(KNOWLEDGE_KEY)
        if knowledge:
            sections.append(
                "CONTEXT FROM KNOWLEDGE BASE (Use this to answer questions about "
                f"the organization/team):\n{knowledge[:KNOWLEDGE_CHAR_LIMIT]}\n"
                "END CONTEXT."
            )

        live_context = await self.build_live_context(state, message)
        if live_context:
            sections.append(
                "ADDITIONAL LIVE CONTEXT: Use the following up-to-the-minute data "
                "to answer the user's question if it is relevant. Do not mention "
                f"you were given this data.\n{live_context}"
            )
        return "\n\n".join(sections)

    async def build_live_context(
        self, state: CommunityState, message: IncomingMessage
    ) -> str:
        """Inject leaderboard, rank and poll data when the message asks for it."""
        lowered = strip_mentions(message.content).lower()
        parts: list[str] = []
        ranked = state.ranked()

        if _mentions_any(lowered, _LEADERBOARD_KEYWORDS):
            if ranked:
                lines = ["Current Leaderboard Top 10:"]
                for user_id, score in ranked[:10]:
                    name = await self._username(user_id) or "UnknownUser"
                    lines.append(f"- {name}: {score} points")
                parts.append("LEADERBOARD DATA:\n" + "\n".join(lines))
            else:
                parts.append("LEADERBOARD DATA:\nThe leaderboard is currently empty.")

        if _mentions_any(lowered, _RANK_KEYWORDS):
            position = next(
                (
                    index
                    for index, (user_id, _) in enumerate(ranked)
                    if user_id == message.author_id
                ),
                None,
            )
            if position is None:
                parts.append(
                    f"USER RANK DATA:\nThe user asking ({message.author_name}) is "
                    "not on the leaderboard yet."
                )
            else:
                parts.append(
                    f"USER RANK DATA:\nThe user asking ({message.author_name}) is "
                    f"currently rank #{position + 1} with {ranked[position][1]} "
                    "point(s)."
                )

        if _mentions_any(lowered, _POLL_KEYWORDS):
            poll = state.last_poll_data
            if poll is None:
                parts.append(
                    "CURRENT POLL DATA:\nThere is no active poll information in "
                    "memory right now."
                )
            else:
                text = (
                    f'CURRENT POLL DATA:\nThe last poll question asked was: "'
                    f'{poll.question}" with these options: {", ".join(poll.options)}.'
                )
                if poll.type == "trivia":
                    text += " The answer has not been revealed yet."
                parts.append(text)

        return "\n\n".join(parts)

    @property
    def tracked_users(self) -> int:
        return len(self._user_last_seen)

    def _remember_user(self, user_id: str, now: datetime) -> None:
        """Record ``user_id`` and forget users whose cooldown has lapsed."""
        expired = [
            seen_id
            for seen_id, seen_at in self._user_last_seen.items()
            if now - seen_at >= self._user_cooldown
        ]
        for seen_id in expired:
            del self._user_last_seen[seen_id]
        self._user_last_seen[user_id] = now

    def _is_addressed(self, message: IncomingMessage) -> bool:
        if message.author_is_bot or not message.addressed_to_bot:
            return False
        if message.mentions_everyone:
            return False
        return "@everyone" not in message.content and "@here" not in message.content

    async def _username(self, user_id: str) -> str | None:
        try:
            return await self._platform.fetch_username(user_id)
        except PlatformError:
            return None

    async def _reply(self, message: IncomingMessage, content: str) -> None:
        try:
            await self._platform.send_message(
                message.channel_id, content, reply_to=message.id
            )
        except PlatformError as error:
            log_warning(
                self._logger,
                "conversation_reply_failed",
                channel_id=message.channel_id,
                error=str(error),
            )
            return
        log_info(
            self._logger,
            "conversation_replied",
            channel_id=message.channel_id,
            author_id=message.author_id,
        )

    async def _react(self, message: IncomingMessage, emojis: Sequence[str]) -> None:
        for emoji in emojis:
            try:
                await self._platform.react(message.channel_id, message.id, emoji)
            except PlatformError:
                return


def _mentions_any(text: str, keywords: Sequence[str]) -> bool:
    return any(keyword in text for keyword in keywords)
