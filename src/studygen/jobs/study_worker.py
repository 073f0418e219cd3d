"""Effectful shell that drives one study request through the retry state machine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from studygen.generator.base import ContentGenerator
from studygen.jobs.backoff import classify_failure
from studygen.jobs.clock import Clock, SystemClock
from studygen.jobs.models import StudyMaterialCreate, StudyRequestView
from studygen.jobs.repository import StudyRepository
from studygen.jobs.state_machine import (
    AttemptFailed,
    AttemptSucceeded,
    BackoffElapsed,
    BackoffInterrupted,
    Effect,
    Finish,
    Generate,
    JobEvent,
    JobState,
    Loaded,
    MarkFailed,
    MarkProcessing,
    Persisted,
    PersistArtifact,
    Phase,
    Sleep,
    StoreFailed,
    Superseded,
    transition,
)

logger = logging.getLogger(__name__)

MATERIAL_READY_STATUS = "ready"


@dataclass(slots=True)
class WorkerOutcome:
    """Result of one worker invocation, reported back to the event bus."""

    ok: bool
    request_id: str | None
    phase: str
    attempts: int = 0
    material_id: int | None = None
    error: str | None = None
    reason: str | None = None

    def to_result(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "ok": self.ok,
            "request_id": self.request_id,
            "phase": self.phase,
            "attempts": self.attempts,
        }
        if self.material_id is not None:
            result["material_id"] = self.material_id
        if self.error is not None:
            result["error"] = self.error
        if self.reason is not None:
            result["reason"] = self.reason
        return result


class StudyRequestWorker:
    """Consumes `study.request` events: generate, persist, mark terminal status."""

    def __init__(
        self,
        *,
        repository: StudyRepository,
        generator: ContentGenerator,
        clock: Clock | None = None,
    ) -> None:
        self.repository = repository
        self.generator = generator
        self.clock = clock or SystemClock()

    def handle(self, request_id: str | None) -> WorkerOutcome:
        """Process one request; safe to call repeatedly for the same id."""

        if not isinstance(request_id, str) or not request_id.strip():
            return WorkerOutcome(
                ok=False,
                request_id=None,
                phase="rejected",
                reason="Missing request_id",
            )

        record = self.repository.get_request(request_id=request_id)
        if record is None:
            logger.warning("Study request %s not found", request_id)
            return WorkerOutcome(
                ok=False,
                request_id=request_id,
                phase="rejected",
                reason="Request not found",
            )

        run = _Run(record=record)
        state = JobState(request_id=request_id)
        event: JobEvent | None = Loaded(status=record.status)
        while event is not None:
            step = transition(state, event)
            logger.debug(
                "Request %s: %s -> %s on %s",
                request_id,
                state.phase.value,
                step.state.phase.value,
                type(event).__name__,
            )
            state = step.state
            event = None
            for effect in step.effects:
                produced = self._execute(effect, run=run)
                if produced is not None:
                    event = produced
                    break
        if run.outcome is None:
            raise RuntimeError(f"Request {request_id} stopped without a final outcome")
        return run.outcome

    def _execute(self, effect: Effect, *, run: _Run) -> JobEvent | None:  # noqa: PLR0911
        record = run.record
        match effect:
            case MarkProcessing():
                if not self.repository.mark_processing(request_id=record.request_id):
                    return self._superseded(run)
                return None

            case Generate(attempt=attempt):
                return self._attempt(record=record, attempt=attempt)

            case Sleep(duration=duration, attempt=attempt):
                logger.info(
                    "Request %s: backing off %.0fs after attempt %d",
                    record.request_id,
                    duration.total_seconds(),
                    attempt,
                )
                if self.clock.sleep(duration):
                    return BackoffElapsed()
                return BackoffInterrupted()

            case PersistArtifact(result=result, attempt=attempt):
                try:
                    material = self.repository.complete_request(
                        request_id=record.request_id,
                        material=StudyMaterialCreate(
                            request_id=record.request_id,
                            course_id=f"REQ-{record.request_id}",
                            topic=record.topic,
                            difficulty_level=record.difficulty,
                            status=MATERIAL_READY_STATUS,
                            layout_json=result.content.to_json(),
                            created_by=str(record.user_id),
                        ),
                        model=result.backend_id,
                        prompt=result.prompt.to_text(),
                        output=result.content.to_json(),
                        attempts=attempt,
                    )
                except SQLAlchemyError as error:
                    logger.exception("Request %s: storing material failed", record.request_id)
                    return StoreFailed(error=f"Store error: {error}")
                if material is None:
                    return self._superseded(run)
                run.material_id = material.material_id
                return Persisted()

            case MarkFailed(error=error, attempt=attempt):
                if not self.repository.fail_request(
                    request_id=record.request_id,
                    error=error,
                    attempts=attempt,
                ):
                    logger.info("Request %s was finished by another invocation", record.request_id)
                return None

            case Finish(phase=phase, attempt=attempt, error=error):
                run.outcome = self._finish(
                    record=record,
                    phase=phase,
                    attempt=attempt,
                    error=error,
                    run=run,
                )
                return None

        raise ValueError(f"Unsupported effect: {effect!r}")

    def _attempt(self, *, record: StudyRequestView, attempt: int) -> JobEvent:
        logger.info(
            "Request %s: generation attempt %d (topic=%r, difficulty=%s)",
            record.request_id,
            attempt,
            record.topic,
            record.difficulty,
        )
        try:
            result = self.generator.generate(
                purpose=record.purpose,
                topic=record.topic,
                difficulty=record.difficulty,
            )
        except Exception as error:  # noqa: BLE001
            classification = classify_failure(error)
            logger.warning(
                "Request %s: attempt %d failed (%s): %s",
                record.request_id,
                attempt,
                classification.matched_rule,
                error,
            )
            return AttemptFailed(
                error=str(error) or type(error).__name__,
                transient=classification.transient,
            )
        return AttemptSucceeded(result=result)

    def _superseded(self, run: _Run) -> Superseded:
        current = self.repository.get_request(request_id=run.record.request_id)
        run.current_status = current.status.value if current is not None else "missing"
        logger.info(
            "Request %s was finished by another invocation (status=%s)",
            run.record.request_id,
            run.current_status,
        )
        return Superseded(status=current.status if current is not None else None)

    @staticmethod
    def _finish(  # noqa: PLR0913
        *,
        record: StudyRequestView,
        phase: Phase,
        attempt: int,
        error: str | None,
        run: _Run,
    ) -> WorkerOutcome:
        if phase == Phase.SKIPPED:
            logger.info(
                "Request %s already %s; skipping",
                record.request_id,
                record.status.value,
            )
            return WorkerOutcome(
                ok=True,
                request_id=record.request_id,
                phase=phase.value,
                attempts=record.attempts,
                reason=f"Request already {record.status.value}",
            )
        if phase == Phase.COMPLETED:
            logger.info("Request %s completed after %d attempt(s)", record.request_id, attempt)
            return WorkerOutcome(
                ok=True,
                request_id=record.request_id,
                phase=phase.value,
                attempts=attempt,
                material_id=run.material_id,
            )
        if phase == Phase.SUPERSEDED:
            return WorkerOutcome(
                ok=False,
                request_id=record.request_id,
                phase=phase.value,
                attempts=attempt,
                reason=f"Request already {run.current_status}",
            )
        if phase == Phase.INTERRUPTED:
            logger.warning("Request %s interrupted during backoff", record.request_id)
        else:
            logger.error(
                "Request %s failed after %d attempt(s): %s",
                record.request_id,
                attempt,
                error,
            )
        return WorkerOutcome(
            ok=False,
            request_id=record.request_id,
            phase=phase.value,
            attempts=attempt,
            error=error,
        )


@dataclass(slots=True)
class _Run:
    """Mutable bookkeeping for one invocation."""

    record: StudyRequestView
    material_id: int | None = None
    current_status: str | None = None
    outcome: WorkerOutcome | None = None
