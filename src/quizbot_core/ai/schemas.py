"""Response schemas and constants for the Gemini REST API."""

RETRY_STATUSES = {408, 429, 500, 502, 503, 504}
AUTH_FAILURE_STATUSES = {401, 403}

TRIVIA_POLL_SCHEMA: dict[str, object] = {
    "type": "OBJECT",
    "properties": {
        "question": {"type": "STRING"},
        "options": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "minItems": 4,
            "maxItems": 4,
        },
        "correctAnswerIndex": {"type": "INTEGER"},
        "explanation": {"type": "STRING"},
    },
    "required": ["question", "options", "correctAnswerIndex", "explanation"],
}
