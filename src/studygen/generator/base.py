"""Generator interface shared by the worker and the synchronous path."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from studygen.generator.contracts import StructuredPayload, StudyLayout


class GenerationError(RuntimeError):
    """Generation failure with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(frozen=True, slots=True)
class GenerationResult:
    """Successful generation: backend used, request snapshot, parsed content."""

    backend_id: str
    prompt: StructuredPayload
    content: StudyLayout
    raw_text: str


class ContentGenerator(Protocol):
    """Protocol implemented by generation backends."""

    def generate(self, *, purpose: str, topic: str, difficulty: str) -> GenerationResult:
        """Generate study material or raise GenerationError."""
