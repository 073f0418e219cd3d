"""Gemini REST client that produces structured study material."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import httpx

from studygen.config import DEFAULT_GEMINI_BASE_URL, DEFAULT_PREFERRED_MODELS, GeneratorSettings
from studygen.generator.base import GenerationError, GenerationResult
from studygen.generator.contracts import (
    LayoutContractError,
    RawTextPayload,
    StructuredPayload,
    StudyLayout,
    parse_payload,
)
from studygen.generator.prompts import build_system_prompt, build_user_prompt, difficulty_config
from studygen.jobs.backoff import is_transient

logger = logging.getLogger(__name__)

_ERROR_PREVIEW_CHARS = 300
_MODELS_PAGE_SIZE = 1000


def pick_backend(available: Sequence[str], preferred: Sequence[str]) -> str:
    """First preferred backend that is available, else any available one."""

    available_set = set(available)
    for backend_id in preferred:
        if backend_id in available_set:
            return backend_id
    if not available:
        raise GenerationError("No generation backends available.", transient=False)
    return available[0]


class GeminiGenerator:
    """Generate study layouts via Gemini ``generateContent`` in JSON mode."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str | None,
        base_url: str = DEFAULT_GEMINI_BASE_URL,
        preferred_models: tuple[str, ...] = DEFAULT_PREFERRED_MODELS,
        temperature: float = 0.3,
        max_output_tokens: int = 7_000,
        timeout_seconds: float = 120.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.preferred_models = preferred_models
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: GeneratorSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> GeminiGenerator:
        return cls(
            api_key=settings.api_key,
            base_url=settings.base_url,
            preferred_models=settings.preferred_models,
            temperature=settings.temperature,
            max_output_tokens=settings.max_output_tokens,
            timeout_seconds=settings.request_timeout_seconds,
            transport=transport,
        )

    def list_available_backends(self) -> list[str]:
        """Model ids currently served by the API, in listing order."""

        names: list[str] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"pageSize": _MODELS_PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            payload = self._request("GET", "/models", params=params)
            for model in payload.get("models") or []:
                if isinstance(model, dict) and model.get("name"):
                    names.append(str(model["name"]).removeprefix("models/"))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return names

    def select_backend(self) -> str:
        backend_id = pick_backend(self.list_available_backends(), self.preferred_models)
        logger.info("Selected generation backend %s", backend_id)
        return backend_id

    def generate(self, *, purpose: str, topic: str, difficulty: str) -> GenerationResult:
        """Generate one study layout; raises GenerationError on any failure."""

        config = difficulty_config(difficulty)
        backend_id = self.select_backend()
        raw_text = self.generate_text(
            model=backend_id,
            parts=(
                build_system_prompt(config),
                build_user_prompt(topic=topic, difficulty=difficulty, purpose=purpose),
            ),
            json_mode=True,
        )

        parsed = parse_payload(raw_text)
        if isinstance(parsed, RawTextPayload):
            raise GenerationError(
                f"Generator returned non-JSON output: {_preview(raw_text)}",
                transient=False,
            )
        try:
            layout = StudyLayout.from_payload(parsed.content)
        except LayoutContractError as error:
            raise GenerationError(
                f"Generator output violates study layout schema: {error}",
                transient=False,
            ) from error

        return GenerationResult(
            backend_id=backend_id,
            prompt=StructuredPayload(
                content={"purpose": purpose, "topic": topic, "difficulty": difficulty},
            ),
            content=layout,
            raw_text=raw_text,
        )

    def generate_text(
        self,
        *,
        model: str,
        parts: Sequence[str],
        json_mode: bool = False,
    ) -> str:
        """Send user parts to one model and return the concatenated candidate text."""

        generation_config: dict[str, Any] = {
            "temperature": self.temperature,
            "maxOutputTokens": self.max_output_tokens,
        }
        if json_mode:
            generation_config["responseMimeType"] = "application/json"
        payload = self._request(
            "POST",
            f"/models/{model}:generateContent",
            json={
                "contents": [{"role": "user", "parts": [{"text": part}]} for part in parts],
                "generationConfig": generation_config,
            },
        )
        return _candidate_text(payload)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GeminiGenerator:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not self.api_key:
            raise GenerationError("Missing Gemini API key.", transient=False)

        try:
            response = self._client.request(
                method,
                path,
                params={**(params or {}), "key": self.api_key},
                json=json,
            )
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling Gemini %s %s", method, path)
            raise GenerationError(f"Gemini request timeout: {error}", transient=True) from error
        except httpx.TransportError as error:
            logger.warning("Transport error calling Gemini %s %s: %s", method, path, error)
            raise GenerationError(f"Gemini transport error: {error}", transient=True) from error

        if not response.is_success:
            message = f"Gemini HTTP {response.status_code}: {_preview(response.text)}"
            transient = (
                response.status_code == httpx.codes.TOO_MANY_REQUESTS
                or response.status_code >= httpx.codes.INTERNAL_SERVER_ERROR
                or is_transient(message)
            )
            raise GenerationError(message, transient=transient)

        try:
            payload = response.json()
        except ValueError as error:
            raise GenerationError(
                f"Gemini returned a non-JSON envelope: {_preview(response.text)}",
                transient=False,
            ) from error
        if not isinstance(payload, dict):
            raise GenerationError("Gemini returned an unexpected envelope.", transient=False)
        return payload


def _candidate_text(payload: dict[str, Any]) -> str:
    candidates = payload.get("candidates") or []
    if not candidates:
        feedback = payload.get("promptFeedback") or {}
        reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        raise GenerationError(
            f"Gemini returned no candidates (block reason: {reason or 'unknown'}).",
            transient=False,
        )
    candidate = candidates[0] if isinstance(candidates, list) else None
    if not isinstance(candidate, dict):
        raise GenerationError("Gemini returned a malformed candidate.", transient=False)
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    texts = [
        str(part["text"])
        for part in parts or []
        if isinstance(part, dict) and "text" in part
    ]
    if not texts:
        finish_reason = candidate.get("finishReason", "unknown")
        raise GenerationError(
            f"Gemini candidate has no text parts (finish reason: {finish_reason}).",
            transient=False,
        )
    return "".join(texts)


def _preview(text: str) -> str:
    compact = " ".join(text.split())
    if len(compact) <= _ERROR_PREVIEW_CHARS:
        return compact
    return compact[:_ERROR_PREVIEW_CHARS] + "..."
