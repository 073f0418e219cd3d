"""Typed contracts for generator prompt/output snapshots and study layouts."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal


class LayoutContractError(ValueError):
    """Generated content does not match the study layout schema."""


@dataclass(frozen=True, slots=True)
class StructuredPayload:
    """Snapshot that parsed as a JSON object."""

    content: dict[str, Any]
    kind: Literal["structured"] = "structured"

    def to_text(self) -> str:
        return json.dumps(self.content, ensure_ascii=False)


@dataclass(frozen=True, slots=True)
class RawTextPayload:
    """Snapshot kept verbatim because it is not a JSON object."""

    text: str
    kind: Literal["raw_text"] = "raw_text"

    def to_text(self) -> str:
        return self.text


Payload = StructuredPayload | RawTextPayload


def parse_payload(text: str | None) -> Payload:
    """Parse stored or generated text into an explicit payload variant."""

    if text is None:
        return RawTextPayload(text="")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return RawTextPayload(text=text)
    if not isinstance(parsed, dict):
        return RawTextPayload(text=text)
    return StructuredPayload(content=parsed)


@dataclass(frozen=True, slots=True)
class Chapter:
    """One chapter of generated study material."""

    title: str
    estimated_time: str
    description: str
    bullets: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "estimatedTime": self.estimated_time,
            "description": self.description,
            "bullets": list(self.bullets),
        }


@dataclass(frozen=True, slots=True)
class StudyLayout:
    """Structured study material: title, summary, ordered chapters."""

    title: str
    summary: str
    chapters: tuple[Chapter, ...] = field(default_factory=tuple)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> StudyLayout:
        """Build a layout from parsed JSON, rejecting anything off-schema."""

        title = _require_str(payload, "title", where="layout")
        summary = _require_str(payload, "summary", where="layout")
        raw_chapters = payload.get("chapters")
        if not isinstance(raw_chapters, list) or not raw_chapters:
            raise LayoutContractError("layout.chapters must be a non-empty array.")

        chapters: list[Chapter] = []
        for index, raw in enumerate(raw_chapters):
            where = f"chapters[{index}]"
            if not isinstance(raw, dict):
                raise LayoutContractError(f"{where} must be an object.")
            bullets = raw.get("bullets")
            if not isinstance(bullets, list) or not all(isinstance(b, str) for b in bullets):
                raise LayoutContractError(f"{where}.bullets must be an array of strings.")
            chapters.append(
                Chapter(
                    title=_require_str(raw, "title", where=where),
                    estimated_time=_require_str(raw, "estimatedTime", where=where),
                    description=_require_str(raw, "description", where=where),
                    bullets=tuple(bullets),
                ),
            )
        return cls(title=title, summary=summary, chapters=tuple(chapters))

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "summary": self.summary,
            "chapters": [chapter.to_dict() for chapter in self.chapters],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def _require_str(payload: dict[str, Any], key: str, *, where: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise LayoutContractError(f"{where}.{key} must be a string.")
    return value
