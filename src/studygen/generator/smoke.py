"""Lightweight smoke check for the generation backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from studygen.generator.base import GenerationError
from studygen.generator.client import GeminiGenerator

logger = logging.getLogger(__name__)

PING_CANDIDATES: tuple[str, ...] = (
    "gemini-2.5-pro",
    "gemini-2.5-flash",
    "gemini-2.0-flash",
    "gemini-2.0-flash-001",
    "gemini-2.5-flash-lite",
    "gemini-2.0-flash-lite",
    "gemini-2.0-flash-lite-001",
)
PING_PROMPT = "Say 'pong'"


@dataclass(slots=True)
class PingResult:
    """Outcome of probing candidate models in order."""

    ok: bool
    model: str | None
    text: str | None
    errors: dict[str, str] = field(default_factory=dict)


def ping_backends(
    generator: GeminiGenerator,
    *,
    candidates: tuple[str, ...] = PING_CANDIDATES,
) -> PingResult:
    """Return the first candidate model that answers a trivial prompt."""

    errors: dict[str, str] = {}
    for model in candidates:
        try:
            text = generator.generate_text(model=model, parts=(PING_PROMPT,))
        except GenerationError as error:
            logger.debug("Ping failed for %s: %s", model, error)
            errors[model] = str(error)
            continue
        if text.strip():
            return PingResult(ok=True, model=model, text=text.strip(), errors=errors)
        errors[model] = "empty response"
    return PingResult(ok=False, model=None, text=None, errors=errors)
