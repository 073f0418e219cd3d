"""Controllers for study CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from studygen.config import GeneratorSettings, Settings
from studygen.generator.base import ContentGenerator
from studygen.generator.client import GeminiGenerator
from studygen.generator.contracts import RawTextPayload, StructuredPayload
from studygen.generator.smoke import PING_CANDIDATES, ping_backends
from studygen.jobs.clock import SystemClock
from studygen.jobs.dispatcher import EventDispatcher
from studygen.jobs.events import SqlEventBus
from studygen.jobs.models import StudyRequestStatus, WorkEventStatus
from studygen.jobs.provisioning import ProvisioningWorker
from studygen.jobs.repository import StudyRepository
from studygen.jobs.services import StudyOrder, StudyService
from studygen.jobs.study_worker import StudyRequestWorker

GeneratorFactory = Callable[[GeneratorSettings], ContentGenerator]


@dataclass(slots=True)
class RegisterUserCommand:
    """CLI input for account registration."""

    db_path: Path | None
    name: str
    email: str
    external_id: str


@dataclass(slots=True)
class ShowUserCommand:
    db_path: Path | None
    external_id: str


@dataclass(slots=True)
class SubmitRequestCommand:
    """CLI input for queued or synchronous generation."""

    db_path: Path | None
    external_id: str
    topic: str
    difficulty: str
    purpose: str


@dataclass(slots=True)
class RequestRefCommand:
    db_path: Path | None
    request_id: str


@dataclass(slots=True)
class ListRequestsCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for the event dispatcher."""

    db_path: Path | None
    once: bool
    max_events: int | None
    max_idle_polls: int


@dataclass(slots=True)
class ListEventsCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class PingResultLines:
    lines: list[str]
    success: bool


class StudyCliController:
    """Coordinates account, request, worker, and inspection CLI operations."""

    def __init__(self, *, generator_factory: GeneratorFactory | None = None) -> None:
        self.generator_factory = generator_factory or GeminiGenerator.from_settings

    def register_user(self, command: RegisterUserCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = StudyService(repository=repository, event_bus=SqlEventBus(repository))
            event_id = service.register_user(
                name=command.name,
                email=command.email,
                external_id=command.external_id,
            )
        return [
            f"Registration queued: event_id={event_id} external_id={command.external_id}",
            "Run `studygen worker run` to provision the account.",
        ]

    def show_user(self, command: ShowUserCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            user = repository.get_user_by_external_id(external_id=command.external_id)
            ledger = repository.list_ledger(user_id=user.user_id) if user is not None else []
        if user is None:
            return [f"User not found: {command.external_id}"]

        expires = user.subscription_expires.isoformat() if user.subscription_expires else "-"
        lines = [
            f"User: {user.user_id} ({user.name} <{user.email}>)",
            f"External id: {user.external_id}",
            f"Credits: {user.remaining_credits}/{user.credits} remaining",
            f"Subscription: {user.subscription_tier} (expires {expires})",
            f"Ledger entries: {len(ledger)}",
        ]
        for entry in ledger:
            lines.append(
                f"  {entry.created_at.isoformat()} {entry.delta:+d} {entry.reason} "
                f"request_id={entry.request_id or '-'}",
            )
        return lines

    def submit_request(self, command: SubmitRequestCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = StudyService(repository=repository, event_bus=SqlEventBus(repository))
            record = service.submit_request(_order(command))
        return [
            "Request queued: "
            f"request_id={record.request_id} status={record.status.value} "
            f"difficulty={record.difficulty}",
        ]

    def generate_now(self, command: SubmitRequestCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_generator()
        with _repository(settings) as repository, self._generator(settings) as generator:
            service = StudyService(
                repository=repository,
                event_bus=SqlEventBus(repository),
                generator=generator,
            )
            material = service.generate_now(_order(command))
        return [
            "Material generated: "
            f"material_id={material.material_id} course_id={material.course_id} "
            f"status={material.status}",
            *_layout_lines(material.layout),
        ]

    def show_request(self, command: RequestRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            record = repository.get_request(request_id=command.request_id)
            material = repository.get_material_for_request(request_id=command.request_id)
        if record is None:
            return [f"Request not found: {command.request_id}"]

        lines = [
            f"Request: {record.request_id}",
            f"User: {record.user_id}",
            f"Topic: {record.topic}",
            f"Difficulty: {record.difficulty}",
            f"Purpose: {record.purpose}",
            f"Status: {record.status.value}",
            f"Attempts: {record.attempts}",
            f"Model: {record.model or '-'}",
            f"Error: {record.error or '-'}",
            f"Updated: {record.updated_at.isoformat()}",
        ]
        if material is None:
            lines.append("Material: -")
            return lines
        lines.append(f"Material: {material.material_id} course_id={material.course_id}")
        lines.extend(_layout_lines(material.layout))
        return lines

    def list_requests(self, command: ListRequestsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = StudyRequestStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            records = repository.list_requests(status=status, limit=command.limit)

        lines = [f"Requests: {len(records)}"]
        for record in records:
            lines.append(
                f"  {record.request_id} status={record.status.value} "
                f"attempts={record.attempts} topic={record.topic!r} "
                f"created_at={record.created_at.isoformat()}",
            )
        return lines

    def retry_request(self, command: RequestRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = StudyService(repository=repository, event_bus=SqlEventBus(repository))
            record = service.retry_request(command.request_id)
        return [f"Request re-queued: {record.request_id} status={record.status.value}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        clock = SystemClock()
        with _repository(settings) as repository, self._generator(settings) as generator:
            dispatcher = EventDispatcher(
                repository=repository,
                study_worker=StudyRequestWorker(
                    repository=repository,
                    generator=generator,
                    clock=clock,
                ),
                provisioning_worker=ProvisioningWorker(repository=repository),
                worker_id=settings.worker.worker_id,
                clock=clock,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                stale_event_seconds=settings.worker.stale_event_seconds,
            )
            summary = (
                dispatcher.run_once()
                if command.once
                else dispatcher.run_loop(
                    max_events=command.max_events,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} released={summary.released} "
            f"recovered={summary.recovered} idle_polls={summary.idle_polls}",
        ]

    def list_events(self, command: ListEventsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = WorkEventStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            events = repository.list_events(status=status, limit=command.limit)

        lines = [f"Events: {len(events)}"]
        for event in events:
            outcome = event.result.get("error") or event.result.get("reason") or "-"
            lines.append(
                f"  {event.event_id} {event.name} status={event.status.value} "
                f"deliveries={event.deliveries} worker={event.worker_id or '-'} "
                f"outcome={outcome}",
            )
        return lines

    def ping_generator(self) -> PingResultLines:
        settings = Settings.from_env()
        settings.validate_for_generator()
        with GeminiGenerator.from_settings(settings.generator) as generator:
            result = ping_backends(generator, candidates=PING_CANDIDATES)

        lines = [f"  {model}: {error}" for model, error in result.errors.items()]
        if result.ok:
            lines.append(f"Generator OK: model={result.model} reply={result.text!r}")
        else:
            lines.append("Generator ping failed for every candidate model.")
        return PingResultLines(lines=lines, success=result.ok)

    @contextmanager
    def _generator(self, settings: Settings) -> Iterator[ContentGenerator]:
        generator = self.generator_factory(settings.generator)
        try:
            yield generator
        finally:
            if isinstance(generator, GeminiGenerator):
                generator.close()


def _order(command: SubmitRequestCommand) -> StudyOrder:
    return StudyOrder(
        external_id=command.external_id,
        topic=command.topic,
        difficulty=command.difficulty,
        purpose=command.purpose,
    )


def _layout_lines(layout: StructuredPayload | RawTextPayload) -> list[str]:
    if isinstance(layout, RawTextPayload):
        return [f"Layout (raw): {layout.text[:200]}"]
    lines = [f"Title: {layout.content.get('title', '-')}"]
    chapters = layout.content.get("chapters") or []
    for index, chapter in enumerate(chapters, start=1):
        if isinstance(chapter, dict):
            lines.append(
                f"  {index}. {chapter.get('title', '-')} ({chapter.get('estimatedTime', '-')})",
            )
    return lines


@contextmanager
def _repository(settings: Settings) -> Iterator[StudyRepository]:
    repository = StudyRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
