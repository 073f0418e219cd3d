"""Deterministic prompt construction for study material generation."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class DifficultyConfig:
    chapter_count: int
    detail_level: str


EASY = DifficultyConfig(chapter_count=3, detail_level="introductory")
BALANCED = DifficultyConfig(chapter_count=4, detail_level="balanced depth")
HARD = DifficultyConfig(chapter_count=6, detail_level="advanced depth")


def difficulty_config(level: str | None) -> DifficultyConfig:
    """Map a difficulty label to chapter count and depth; unknown labels are balanced."""

    normalized = str(level or "").strip().lower()
    if normalized == "easy":
        return EASY
    if normalized == "hard":
        return HARD
    return BALANCED


def build_system_prompt(config: DifficultyConfig) -> str:
    return f"""
Return ONLY valid JSON using the EXACT schema below.
Do NOT include anything outside the JSON (no text, no markdown, no comments).

{{
  "title": string,
  "summary": string,
  "chapters": [
    {{
      "title": string,
      "estimatedTime": string,
      "description": string,
      "bullets": string[]
    }}
  ]
}}

CONTENT RULES:
- Generate exactly {config.chapter_count} chapters.
- Write at {config.detail_level}.
- Each "description" must contain 2-4 detailed paragraphs.
- Each chapter must include one explicit "Example: ..." text.
- Each bullets[] must contain 4-7 detailed bullet points.
- The result MUST be valid JSON. No trailing commas. No invalid characters.
- STRICT JSON ONLY.
""".strip()


def build_user_prompt(*, topic: str, difficulty: str, purpose: str) -> str:
    return f"""
Generate a structured study material for the topic "{topic}".
Difficulty: {difficulty}
Purpose: {purpose}
""".strip()
