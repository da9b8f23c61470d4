from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal, Protocol, cast

import httpx

from quizbot_core.ai.schemas import AUTH_FAILURE_STATUSES, RETRY_STATUSES
from quizbot_core.errors import PermanentServiceFailure, TransientServiceFailure


@dataclass(frozen=True)
class ChatTurn:
    """One prior turn of a conversation, oldest first."""

    role: Literal["user", "model"]
    text: str


class TextGenerator(Protocol):
    """Generative model calls used by the bot. Each call is one attempt."""

    async def generate_text(
        self, prompt: str, *, system_instruction: str | None = None
    ) -> str:
        """Return free text for ``prompt``."""

    async def generate_json(
        self,
        prompt: str,
        *,
        schema: dict[str, object],
        temperature: float | None = None,
    ) -> str:
        """Return the raw JSON text produced under ``schema``."""

    async def chat(
        self,
        message: str,
        *,
        history: Sequence[ChatTurn] = (),
        system_instruction: str | None = None,
    ) -> str:
        """Return the model's reply to ``message`` after ``history``."""


class GeminiClient:
    """Single-attempt Gemini ``generateContent`` client.

    Retries and the circuit breaker live in
    :class:`~quizbot_core.resilience.ResilientCaller`; this client only maps
    transport and HTTP failures onto the service error taxonomy.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        api_key: str,
        model: str = "gemini-2.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
    ) -> None:
        """Create a Gemini client.

        Args:
            client: Shared async HTTP client.
            api_key: API key sent in the ``x-goog-api-key`` header.
            model: Model name used for every request.
            base_url: API root, without a trailing ``/models`` segment.
        """
        self._client = client
        self._api_key = api_key
        self._model = model
        self._url = f"{base_url.rstrip('/')}/models/{model}:generateContent"

    @property
    def model(self) -> str:
        return self._model

    async def generate_text(
        self, prompt: str, *, system_instruction: str | None = None
    ) -> str:
        body = self._build_body(
            [ChatTurn("user", prompt)], system_instruction=system_instruction
        )
        return await self._generate(body)

    async def generate_json(
        self,
        prompt: str,
        *,
        schema: dict[str, object],
        temperature: float | None = None,
    ) -> str:
        generation_config: dict[str, object] = {
            "responseMimeType": "application/json",
            "responseSchema": schema,
        }
        if temperature is not None:
            generation_config["temperature"] = temperature
        body = self._build_body(
            [ChatTurn("user", prompt)], generation_config=generation_config
        )
        return await self._generate(body)

    async def chat(
        self,
        message: str,
        *,
        history: Sequence[ChatTurn] = (),
        system_instruction: str | None = None,
    ) -> str:
        body = self._build_body(
            [*history, ChatTurn("user", message)],
            system_instruction=system_instruction,
        )
        return await self._generate(body)

    @staticmethod
    def _build_body(
        turns: Sequence[ChatTurn],
        *,
        system_instruction: str | None = None,
        generation_config: dict[str, object] | None = None,
    ) -> dict[str, object]:
        body: dict[str, object] = {
            "contents": [
                {"role": turn.role, "parts": [{"text": turn.text}]} for turn in turns
            ]
        }
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        if generation_config:
            body["generationConfig"] = generation_config
        return body

    async def _generate(self, body: dict[str, object]) -> str:
        try:
            response = await self._client.post(
                self._url,
                json=body,
                headers={"x-goog-api-key": self._api_key},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._raise_for_http_status(exc)
        except httpx.TimeoutException as exc:
            raise TransientServiceFailure(f"Gemini request timeout: {exc}") from exc
        except httpx.RequestError as exc:
            raise TransientServiceFailure(str(exc)) from exc

        payload = self._parse_json_object(response)
        return self._extract_text(payload, http_status=response.status_code)

    @staticmethod
    def _raise_for_http_status(exc: httpx.HTTPStatusError) -> None:
        status = exc.response.status_code
        message = f"Gemini returned HTTP {status}."
        if status in RETRY_STATUSES:
            raise TransientServiceFailure(message, http_status=status) from exc
        if status in AUTH_FAILURE_STATUSES:
            raise PermanentServiceFailure(
                f"Gemini auth failed (HTTP {status}).", http_status=status
            ) from exc
        raise PermanentServiceFailure(message, http_status=status) from exc

    @staticmethod
    def _parse_json_object(response: httpx.Response) -> dict[str, object]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise PermanentServiceFailure(
                "Gemini response is not valid JSON.",
                http_status=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise PermanentServiceFailure(
                "Gemini response is not a JSON object.",
                http_status=response.status_code,
            )
        return cast(dict[str, object], payload)

    @staticmethod
    def _extract_text(payload: dict[str, object], *, http_status: int) -> str:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            feedback = payload.get("promptFeedback")
            raise PermanentServiceFailure(
                f"Gemini response has no candidates: {feedback!r}",
                http_status=http_status,
            )
        first = candidates[0]
        content = first.get("content") if isinstance(first, dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            raise PermanentServiceFailure(
                "Gemini candidate has no content parts.", http_status=http_status
            )
        text = "".join(
            part["text"]
            for part in parts
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
        if not text.strip():
            raise PermanentServiceFailure(
                "Gemini candidate text is empty.", http_status=http_status
            )
        return text
