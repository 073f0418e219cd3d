"""Runtime configuration for the study generation worker."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_PREFERRED_MODELS: tuple[str, ...] = (
    "gemini-2.5-pro",
    "gemini-2.5-flash",
    "gemini-2.0-flash",
    "gemini-2.5-flash-lite",
)
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


@dataclass(slots=True)
class GeneratorSettings:
    """Content generation backend settings."""

    api_key: str | None = None
    base_url: str = DEFAULT_GEMINI_BASE_URL
    preferred_models: tuple[str, ...] = DEFAULT_PREFERRED_MODELS
    temperature: float = 0.3
    max_output_tokens: int = 7_000
    request_timeout_seconds: float = 120.0


@dataclass(slots=True)
class WorkerSettings:
    """Event dispatcher settings."""

    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}:{os.getpid()}")
    poll_interval_seconds: float = 2.0
    stale_event_seconds: int = 1_800


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".studygen.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    generator: GeneratorSettings = field(default_factory=GeneratorSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        worker_defaults = WorkerSettings()
        return cls(
            db_path=db_path or Path(os.getenv("STUDYGEN_DB_PATH", ".studygen.db")),
            sqlite_busy_timeout_ms=int(os.getenv("STUDYGEN_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("STUDYGEN_LOG_LEVEL", "INFO").strip().upper(),
            generator=GeneratorSettings(
                api_key=(
                    os.getenv("STUDYGEN_GEMINI_API_KEY")
                    or os.getenv("GOOGLE_GENERATIVE_AI_API_KEY")
                    or None
                ),
                base_url=os.getenv("STUDYGEN_GEMINI_BASE_URL", DEFAULT_GEMINI_BASE_URL).rstrip(
                    "/",
                ),
                preferred_models=_collect_preferred_models(),
                temperature=float(os.getenv("STUDYGEN_GENERATOR_TEMPERATURE", "0.3")),
                max_output_tokens=int(os.getenv("STUDYGEN_GENERATOR_MAX_OUTPUT_TOKENS", "7000")),
                request_timeout_seconds=float(
                    os.getenv("STUDYGEN_GENERATOR_TIMEOUT_SECONDS", "120.0"),
                ),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("STUDYGEN_WORKER_ID", worker_defaults.worker_id),
                poll_interval_seconds=float(
                    os.getenv("STUDYGEN_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                stale_event_seconds=int(os.getenv("STUDYGEN_WORKER_STALE_EVENT_SECONDS", "1800")),
            ),
        )

    def validate_for_generator(self) -> None:
        """Raise configuration error if the generation backend cannot be called."""

        if not self.generator.api_key:
            raise ValueError(
                "Missing Gemini API key. "
                "Set STUDYGEN_GEMINI_API_KEY or GOOGLE_GENERATIVE_AI_API_KEY.",
            )
        parsed = urlparse(self.generator.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid STUDYGEN_GEMINI_BASE_URL: "
                f"{self.generator.base_url!r}. Expected an absolute http(s) URL.",
            )
        if not self.generator.preferred_models:
            raise ValueError("STUDYGEN_GEMINI_PREFERRED_MODELS must name at least one model.")
        if self.generator.max_output_tokens <= 0:
            raise ValueError("STUDYGEN_GENERATOR_MAX_OUTPUT_TOKENS must be > 0.")
        if self.generator.request_timeout_seconds <= 0:
            raise ValueError("STUDYGEN_GENERATOR_TIMEOUT_SECONDS must be > 0.")

    def validate_for_worker(self) -> None:
        """Raise configuration error if dispatcher settings are unusable."""

        self.validate_for_generator()
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("STUDYGEN_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.stale_event_seconds <= 0:
            raise ValueError("STUDYGEN_WORKER_STALE_EVENT_SECONDS must be > 0.")
        if not self.worker.worker_id.strip():
            raise ValueError("STUDYGEN_WORKER_ID must not be empty.")


def _collect_preferred_models() -> tuple[str, ...]:
    raw = os.getenv("STUDYGEN_GEMINI_PREFERRED_MODELS", "").strip()
    if not raw:
        return DEFAULT_PREFERRED_MODELS
    deduped: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        model = part.strip().removeprefix("models/")
        if not model or model in seen:
            continue
        seen.add(model)
        deduped.append(model)
    return tuple(deduped)
