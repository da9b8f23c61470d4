"""Built-in polls served when generation fails and nothing better is cached."""

from __future__ import annotations

import random
from collections.abc import Callable, Sequence

from quizbot_core.state.models import TriviaPoll

FALLBACK_POLLS: tuple[TriviaPoll, ...] = (
    TriviaPoll(
        question="i lowk cant generate the poll today so go ahead:",
        options=("wrong answer", "not right", "pick me right answer", "lebron"),
        correct_answer_index=3,
        explanation=(
            "the right answer was lebron because... it's obvious. if you didn't "
            "get that right you should just quit atp."
        ),
    ),
    TriviaPoll(
        question="how many fours make up six sevens and two?",
        options=("11", "67", "41", "7"),
        correct_answer_index=0,
        explanation=(
            "Six sevens is 42, and adding two gives 44. Dividing 44 by 4 gives "
            "11, so 11 fours make up six sevens and two."
        ),
    ),
    TriviaPoll(
        question="ai?",
        options=("not ai", "ai", "not artificial intelligence", "option 5"),
        correct_answer_index=2,
        explanation=(
            "Neural networks are computational models inspired by the human "
            "brain's structure. They recognize complex patterns in data, which "
            "makes them powerful tools for image recognition, natural language "
            "processing and forecasting."
        ),
    ),
)


def pick_fallback(
    pool: Sequence[TriviaPoll] = FALLBACK_POLLS,
    choice: Callable[[Sequence[TriviaPoll]], TriviaPoll] = random.choice,
) -> TriviaPoll:
    """Return one static poll, chosen at random unless ``choice`` is given."""
    if not pool:
        raise ValueError("fallback pool is empty")
    return choice(pool)
