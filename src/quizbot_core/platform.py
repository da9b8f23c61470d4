"""Chat-platform collaborator interface.

The gateway client itself lives outside this package. Implementations must
raise :class:`~quizbot_core.errors.ExternalStateMissing` when a referenced
channel, message or poll is gone, and
:class:`~quizbot_core.errors.PermissionDenied` when the platform rejects the
call for missing permissions. Any other exception is treated as unexpected.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

POLL_DURATION_HOURS = 24


@dataclass(frozen=True)
class ChannelInfo:
    id: str
    community_id: str
    name: str = ""


@dataclass(frozen=True)
class Voter:
    id: str
    username: str = ""
    is_bot: bool = False


@dataclass(frozen=True)
class PollSnapshot:
    """Question and options read back from a live poll message."""

    message_id: str
    question: str
    options: tuple[str, ...]
    created_at: datetime | None = None


@dataclass(frozen=True)
class EmbedField:
    name: str
    value: str


@dataclass(frozen=True)
class Embed:
    title: str
    description: str = ""
    fields: tuple[EmbedField, ...] = ()
    footer: str | None = None
    color: int | None = None


@dataclass(frozen=True)
class PostedMessage:
    id: str
    channel_id: str


@dataclass(frozen=True)
class ChatMessage:
    """One message in a reply chain, oldest first when used as history."""

    author_id: str
    content: str
    from_bot: bool = False


@dataclass(frozen=True)
class IncomingMessage:
    """A message addressed to the bot by mention or reply."""

    id: str
    channel_id: str
    community_id: str
    author_id: str
    author_name: str
    content: str
    author_is_bot: bool = False
    mentions_everyone: bool = False
    addressed_to_bot: bool = True
    reply_chain: tuple[ChatMessage, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class InviteInfo:
    code: str
    inviter_id: str | None
    uses: int


class PlatformClient(Protocol):
    """Platform calls the core needs. All methods may raise platform errors."""

    async def fetch_channel(self, channel_id: str) -> ChannelInfo:
        """Return the channel and the community that owns it."""

    async def fetch_poll(self, channel_id: str, message_id: str) -> PollSnapshot:
        """Return the poll carried by ``message_id``."""

    async def fetch_voters(
        self, channel_id: str, message_id: str, option_index: int
    ) -> Sequence[Voter]:
        """Return every voter for one option of a poll."""

    async def send_poll(
        self,
        channel_id: str,
        *,
        question: str,
        options: Sequence[str],
        content: str | None = None,
        duration_hours: int = POLL_DURATION_HOURS,
    ) -> PostedMessage:
        """Post a single-choice poll."""

    async def send_message(
        self,
        channel_id: str,
        content: str | None = None,
        *,
        embed: Embed | None = None,
        reply_to: str | None = None,
    ) -> PostedMessage:
        """Send plain text and/or one embed, optionally as a reply."""

    async def react(self, channel_id: str, message_id: str, emoji: str) -> None:
        """Add a reaction to a message."""

    async def fetch_username(self, user_id: str) -> str | None:
        """Return the display username, or ``None`` when unknown."""

    async def fetch_invites(self, community_id: str) -> Sequence[InviteInfo]:
        """Return the community's live invites."""
