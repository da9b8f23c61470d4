"""Generative model access for poll content, summaries and chat."""

from quizbot_core.ai.gemini import ChatTurn, GeminiClient, TextGenerator
from quizbot_core.ai.generation import (
    MAX_UNIQUE_ATTEMPTS,
    TriviaGenerator,
    build_trivia_prompt,
    generate_text_with_retries,
    parse_trivia_poll,
)
from quizbot_core.ai.schemas import TRIVIA_POLL_SCHEMA

__all__ = [
    "MAX_UNIQUE_ATTEMPTS",
    "TRIVIA_POLL_SCHEMA",
    "ChatTurn",
    "GeminiClient",
    "TextGenerator",
    "TriviaGenerator",
    "build_trivia_prompt",
    "generate_text_with_retries",
    "parse_trivia_poll",
]
