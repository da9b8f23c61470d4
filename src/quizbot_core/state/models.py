"""Typed per-community records and their JSON (de)serialization boundary.

Poll records are persisted as camelCase JSON blobs under fixed state keys.
Loading goes through :func:`decode_poll_record` so malformed blobs are
rejected here instead of surfacing as missing attributes deep in the poll
lifecycle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Literal, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

HISTORY_LIMIT = 50

PollType = Literal["trivia", "opinion"]


class StateKey(StrEnum):
    """Keys of the per-community state rows."""

    LAST_POLL_DATA = "lastPollData"
    ACTIVE_ON_DEMAND_POLL = "activeOnDemandPoll"
    LAST_SUCCESSFUL_POLL = "lastSuccessfulPoll"


class TriviaPoll(BaseModel):
    """Question, options and answer of one generated or static poll."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    type: PollType = "trivia"
    question: str = Field(min_length=1)
    options: tuple[str, ...] = Field(min_length=2, max_length=10)
    correct_answer_index: int = Field(ge=0)
    explanation: str = ""

    @model_validator(mode="after")
    def _validate_answer_index(self) -> TriviaPoll:
        if self.correct_answer_index >= len(self.options):
            raise ValueError(
                f"correct_answer_index {self.correct_answer_index} is out of range "
                f"for {len(self.options)} options"
            )
        return self

    @property
    def correct_option(self) -> str:
        return self.options[self.correct_answer_index]

    @property
    def correct_letter(self) -> str:
        return chr(ord("A") + self.correct_answer_index)

    def normalized_question(self) -> str:
        return normalize_question(self.question)


class PollRecord(TriviaPoll):
    """A posted scoring poll (``lastPollData`` / ``lastSuccessfulPoll``)."""

    poll_message_id: str | None = None
    created_at: datetime | None = None
    is_fallback: bool = False

    @field_validator("created_at", mode="before")
    @classmethod
    def _drop_unparseable_timestamp(cls, value: object) -> object:
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value)
            except ValueError:
                return None
        return value


class OnDemandPoll(TriviaPoll):
    """A non-scoring operator poll, at most one live per community."""

    message_id: str


@dataclass(frozen=True)
class InviteRecord:
    code: str
    inviter_id: str
    uses: int


@dataclass
class CommunityState:
    """In-memory mirror of one community's durable state."""

    community_id: str
    leaderboard: dict[str, int] = field(default_factory=dict)
    last_poll_data: PollRecord | None = None
    active_on_demand_poll: OnDemandPoll | None = None
    last_successful_poll: PollRecord | None = None
    knowledge_base: dict[str, str] = field(default_factory=dict)

    def ranked(self) -> list[tuple[str, int]]:
        """Leaderboard entries, highest score first."""
        return sorted(self.leaderboard.items(), key=lambda item: item[1], reverse=True)


def normalize_question(question: str) -> str:
    return question.strip().lower()


ModelT = TypeVar("ModelT", bound=TriviaPoll)


def encode_poll_record(record: TriviaPoll) -> str:
    return record.model_dump_json(by_alias=True)


def decode_poll_record(raw: str | bytes, model: type[ModelT]) -> ModelT:
    """Parse one persisted poll blob.

    Raises:
        ValueError: When the blob is not valid JSON or does not match ``model``.
    """
    try:
        return model.model_validate_json(raw)
    except ValidationError as error:
        raise ValueError(
            f"malformed {model.__name__} record: {error.error_count()} error(s)"
        ) from error
