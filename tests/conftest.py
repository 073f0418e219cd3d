"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from studygen.generator.base import GenerationError, GenerationResult
from studygen.generator.contracts import Chapter, StructuredPayload, StudyLayout
from studygen.jobs.models import UserAccountCreate, UserAccountView
from studygen.jobs.repository import StudyRepository


class ScriptedGenerator:
    """Generator double that replays a script of results and errors."""

    def __init__(self, script: list[GenerationResult | Exception]) -> None:
        self.script = list(script)
        self.calls: list[dict[str, str]] = []

    def generate(self, *, purpose: str, topic: str, difficulty: str) -> GenerationResult:
        self.calls.append({"purpose": purpose, "topic": topic, "difficulty": difficulty})
        if not self.script:
            raise AssertionError("ScriptedGenerator ran out of scripted outcomes")
        outcome = self.script.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def build_result(
    topic: str = "Photosynthesis",
    backend_id: str = "gemini-2.5-pro",
) -> GenerationResult:
    layout = StudyLayout(
        title=f"{topic} basics",
        summary=f"A short course on {topic}.",
        chapters=(
            Chapter(
                title="Light reactions",
                estimated_time="20 min",
                description="Chlorophyll absorbs light. Example: a leaf in sunlight.",
                bullets=("Photons", "Electron transport", "ATP", "NADPH"),
            ),
        ),
    )
    return GenerationResult(
        backend_id=backend_id,
        prompt=StructuredPayload(
            content={"purpose": "practice", "topic": topic, "difficulty": "Easy"},
        ),
        content=layout,
        raw_text=layout.to_json(),
    )


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[StudyRepository]:
    repo = StudyRepository(tmp_path / "studygen.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def user(repository: StudyRepository) -> UserAccountView:
    account, _ = repository.create_user_with_bonus(
        UserAccountCreate(external_id="ext_ada", email="ada@example.com", name="Ada"),
    )
    return account


@pytest.fixture()
def generation_result() -> GenerationResult:
    return build_result()


@pytest.fixture()
def scripted_generator():
    """Factory: `scripted_generator([result, GenerationError(...), ...])`."""

    return ScriptedGenerator


@pytest.fixture()
def transient_error() -> GenerationError:
    return GenerationError("Gemini HTTP 503: model is overloaded", transient=True)


@pytest.fixture()
def permanent_error() -> GenerationError:
    return GenerationError("Gemini HTTP 400: API key not valid", transient=False)
