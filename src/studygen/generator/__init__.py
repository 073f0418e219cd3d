"""Content generation backends."""

from studygen.generator.base import ContentGenerator, GenerationError, GenerationResult
from studygen.generator.client import GeminiGenerator

__all__ = [
    "ContentGenerator",
    "GeminiGenerator",
    "GenerationError",
    "GenerationResult",
]
