"""Trivia and free-text generation on top of the resilient caller."""

from __future__ import annotations

from collections.abc import Sequence

from pydantic import ValidationError

from quizbot_core.ai.gemini import TextGenerator
from quizbot_core.ai.schemas import TRIVIA_POLL_SCHEMA
from quizbot_core.errors import PermanentServiceFailure, TransientServiceFailure
from quizbot_core.logging import (
    StructuredLogger,
    get_logger,
    log_error,
    log_warning,
)
from quizbot_core.resilience import (
    CallOptions,
    Failure,
    ResilientCaller,
    RetryOutcome,
    Success,
)
from quizbot_core.state.models import TriviaPoll, normalize_question

MAX_UNIQUE_ATTEMPTS = 5
MAX_OPTION_LENGTH = 55

TRIVIA_CALL_OPTIONS = CallOptions(
    service_key="gemini_trivia", max_attempts=3, timeout=20.0
)
TEXT_CALL_OPTIONS = CallOptions(service_key="gemini", max_attempts=2, timeout=10.0)
TRIVIA_TEMPERATURE = 0.9


def build_trivia_prompt(topic: str = "", history: Sequence[str] = ()) -> str:
    """Build the trivia prompt with an optional topic and avoid-list."""
    sections = [
        "You are an expert AI trivia poll creator. Your primary goal is to "
        "generate a NEW and UNIQUE trivia question about Artificial "
        "Intelligence for a general audience. The question must be "
        "interesting and based on well-known AI facts.",
        "**ABSOLUTE RULE: It is forbidden to generate a question that is the "
        "same as or very similar to any question in the history list provided "
        "below.** Do not rephrase or slightly modify past questions. Create "
        "something entirely new.",
    ]
    if topic:
        sections.append(f"The poll must be about: **{topic}**.")
    if history:
        avoided = "\n".join(f'- "{question}"' for question in history)
        sections.append(
            f"Here is a list of recent questions to avoid repeating:\n{avoided}"
        )
    sections.append(
        f"**CRITICAL REQUIREMENT:** Each poll option MUST be under "
        f"{MAX_OPTION_LENGTH} characters. Generate the poll based on the "
        "provided schema."
    )
    return "\n\n".join(sections)


def parse_trivia_poll(raw: str) -> TriviaPoll:
    """Validate a model response against :class:`TriviaPoll`.

    Raises:
        PermanentServiceFailure: When the text is not JSON or has the wrong
            shape. Malformed output is not retried.
    """
    try:
        poll = TriviaPoll.model_validate_json(raw.strip())
    except ValidationError as error:
        raise PermanentServiceFailure(
            f"Malformed trivia poll response: {error.error_count()} error(s)"
        ) from error
    return poll.model_copy(update={"type": "trivia"})


async def generate_text_with_retries(
    caller: ResilientCaller,
    generator: TextGenerator,
    prompt: str,
    *,
    service_key: str = "gemini",
    logger: StructuredLogger | None = None,
) -> str | None:
    """Generate free text with a short retry budget; ``None`` on any failure."""
    options = CallOptions(
        service_key=service_key,
        max_attempts=TEXT_CALL_OPTIONS.max_attempts,
        timeout=TEXT_CALL_OPTIONS.timeout,
    )
    outcome = await caller.call_with_retries(
        lambda: generator.generate_text(prompt), options
    )
    if isinstance(outcome, Success):
        return outcome.data.strip()
    log_error(
        get_logger(__name__) if logger is None else logger,
        "text_generation_failed",
        service_key=service_key,
        status=str(outcome.status),
    )
    return None


class TriviaGenerator:
    """Generates trivia polls that do not repeat recent questions."""

    def __init__(
        self,
        *,
        generator: TextGenerator,
        caller: ResilientCaller,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._generator = generator
        self._caller = caller
        self._logger = get_logger(__name__) if logger is None else logger

    async def generate_trivia(
        self, topic: str = "", history: Sequence[str] = ()
    ) -> RetryOutcome[TriviaPoll]:
        """Return a unique poll, or the first non-success outcome.

        Exact (trimmed, case-insensitive) repeats of a history entry are
        regenerated up to ``MAX_UNIQUE_ATTEMPTS`` times before giving up with
        a non-permanent failure.
        """
        prompt = build_trivia_prompt(topic, history)
        seen = {normalize_question(question) for question in history}

        for attempt in range(1, MAX_UNIQUE_ATTEMPTS + 1):
            outcome = await self._caller.call_with_retries(
                lambda: self._generate_once(prompt), TRIVIA_CALL_OPTIONS
            )
            if not isinstance(outcome, Success):
                return outcome
            if outcome.data.normalized_question() not in seen:
                return outcome
            log_warning(
                self._logger,
                "trivia_duplicate_generated",
                attempt=attempt,
                max_attempts=MAX_UNIQUE_ATTEMPTS,
            )

        log_error(
            self._logger,
            "trivia_unique_generation_exhausted",
            max_attempts=MAX_UNIQUE_ATTEMPTS,
        )
        return Failure(
            TransientServiceFailure("Failed to generate a unique question."),
            permanent=False,
        )

    async def generate_text(
        self, prompt: str, *, service_key: str = "gemini"
    ) -> str | None:
        return await generate_text_with_retries(
            self._caller,
            self._generator,
            prompt,
            service_key=service_key,
            logger=self._logger,
        )

    async def _generate_once(self, prompt: str) -> TriviaPoll:
        raw = await self._generator.generate_json(
            prompt, schema=TRIVIA_POLL_SCHEMA, temperature=TRIVIA_TEMPERATURE
        )
        return parse_trivia_poll(raw)
