from __future__ import annotations

from pathlib import Path

import allure
import pytest

from studygen.config import (
    DEFAULT_GEMINI_BASE_URL,
    DEFAULT_PREFERRED_MODELS,
    GeneratorSettings,
    Settings,
    WorkerSettings,
)

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]

_ENV_VARS = (
    "STUDYGEN_DB_PATH",
    "STUDYGEN_LOG_LEVEL",
    "STUDYGEN_GEMINI_API_KEY",
    "GOOGLE_GENERATIVE_AI_API_KEY",
    "STUDYGEN_GEMINI_BASE_URL",
    "STUDYGEN_GEMINI_PREFERRED_MODELS",
    "STUDYGEN_GENERATOR_MAX_OUTPUT_TOKENS",
    "STUDYGEN_WORKER_ID",
    "STUDYGEN_WORKER_STALE_EVENT_SECONDS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _valid_settings(**generator_overrides) -> Settings:
    return Settings(generator=GeneratorSettings(api_key="k", **generator_overrides))


def test_defaults_match_generation_contract() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".studygen.db")
    assert settings.log_level == "INFO"
    assert settings.generator.api_key is None
    assert settings.generator.base_url == DEFAULT_GEMINI_BASE_URL
    assert settings.generator.preferred_models == DEFAULT_PREFERRED_MODELS
    assert settings.generator.temperature == 0.3
    assert settings.generator.max_output_tokens == 7000
    assert settings.worker.stale_event_seconds == 1800


def test_explicit_db_path_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("STUDYGEN_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env().db_path == tmp_path / "env.db"
    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_api_key_falls_back_to_google_variable(monkeypatch) -> None:
    monkeypatch.setenv("GOOGLE_GENERATIVE_AI_API_KEY", "google-key")
    assert Settings.from_env().generator.api_key == "google-key"

    monkeypatch.setenv("STUDYGEN_GEMINI_API_KEY", "studygen-key")
    assert Settings.from_env().generator.api_key == "studygen-key"


def test_preferred_models_are_parsed_and_deduplicated(monkeypatch) -> None:
    monkeypatch.setenv(
        "STUDYGEN_GEMINI_PREFERRED_MODELS",
        "models/gemini-2.5-flash, gemini-2.0-flash,,gemini-2.5-flash",
    )

    assert Settings.from_env().generator.preferred_models == (
        "gemini-2.5-flash",
        "gemini-2.0-flash",
    )


def test_validate_for_generator_requires_api_key() -> None:
    with pytest.raises(ValueError, match="Missing Gemini API key"):
        Settings().validate_for_generator()


def test_validate_for_generator_rejects_relative_base_url() -> None:
    with pytest.raises(ValueError, match="Invalid STUDYGEN_GEMINI_BASE_URL"):
        _valid_settings(base_url="generativelanguage.googleapis.com").validate_for_generator()


def test_validate_for_generator_rejects_empty_model_list() -> None:
    with pytest.raises(ValueError, match="must name at least one model"):
        _valid_settings(preferred_models=()).validate_for_generator()


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"max_output_tokens": 0}, "MAX_OUTPUT_TOKENS must be > 0"),
        ({"request_timeout_seconds": 0}, "TIMEOUT_SECONDS must be > 0"),
    ],
)
def test_validate_for_generator_rejects_non_positive_limits(overrides, message) -> None:
    with pytest.raises(ValueError, match=message):
        _valid_settings(**overrides).validate_for_generator()


def test_validate_for_worker_checks_dispatcher_settings() -> None:
    settings = Settings(
        generator=GeneratorSettings(api_key="k"),
        worker=WorkerSettings(worker_id="w", stale_event_seconds=0),
    )

    with pytest.raises(ValueError, match="STALE_EVENT_SECONDS must be > 0"):
        settings.validate_for_worker()

    settings.worker = WorkerSettings(worker_id="  ")
    with pytest.raises(ValueError, match="STUDYGEN_WORKER_ID must not be empty"):
        settings.validate_for_worker()

    settings.worker = WorkerSettings(worker_id="host:1")
    settings.validate_for_worker()
