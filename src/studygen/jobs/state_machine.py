"""Pure transition function for the study request retry state machine.

The worker shell feeds events in and executes the returned effects; nothing
here touches the store, the generator, or the clock, so every retry decision
can be tested on plain values.

    loaded --Loaded(queued|processing)--> generating
    loaded --Loaded(completed|failed)--> skipped
    generating --AttemptSucceeded--> persisting
    generating --AttemptFailed(permanent | final attempt)--> failed
    generating --AttemptFailed(transient)--> backing_off
    backing_off --BackoffElapsed--> generating
    backing_off --BackoffInterrupted--> interrupted
    persisting --Persisted--> completed
    persisting --StoreFailed--> failed
    generating|persisting --Superseded--> superseded

Superseded means a status compare-and-swap lost: another invocation already
finished the request, so this one stops without generating or writing.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum

from studygen.generator.base import GenerationResult
from studygen.jobs.backoff import MAX_ATTEMPTS, backoff_duration
from studygen.jobs.models import ACTIVE_STATUSES, StudyRequestStatus

UNKNOWN_ERROR = "Unknown error"


class Phase(str, Enum):
    LOADED = "loaded"
    GENERATING = "generating"
    BACKING_OFF = "backing_off"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    INTERRUPTED = "interrupted"
    SUPERSEDED = "superseded"


TERMINAL_PHASES = frozenset(
    {Phase.COMPLETED, Phase.FAILED, Phase.SKIPPED, Phase.INTERRUPTED, Phase.SUPERSEDED},
)


@dataclass(frozen=True, slots=True)
class JobState:
    request_id: str
    phase: Phase = Phase.LOADED
    attempt: int = 0
    max_attempts: int = MAX_ATTEMPTS
    last_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


# Events


@dataclass(frozen=True, slots=True)
class Loaded:
    status: StudyRequestStatus


@dataclass(frozen=True, slots=True)
class AttemptSucceeded:
    result: GenerationResult


@dataclass(frozen=True, slots=True)
class AttemptFailed:
    error: str
    transient: bool


@dataclass(frozen=True, slots=True)
class BackoffElapsed:
    pass


@dataclass(frozen=True, slots=True)
class BackoffInterrupted:
    pass


@dataclass(frozen=True, slots=True)
class Persisted:
    pass


@dataclass(frozen=True, slots=True)
class StoreFailed:
    error: str


@dataclass(frozen=True, slots=True)
class Superseded:
    status: StudyRequestStatus | None


JobEvent = (
    Loaded
    | AttemptSucceeded
    | AttemptFailed
    | BackoffElapsed
    | BackoffInterrupted
    | Persisted
    | StoreFailed
    | Superseded
)


# Effects


@dataclass(frozen=True, slots=True)
class MarkProcessing:
    pass


@dataclass(frozen=True, slots=True)
class Generate:
    attempt: int


@dataclass(frozen=True, slots=True)
class PersistArtifact:
    """Store the material and mark the request completed, atomically."""

    result: GenerationResult
    attempt: int


@dataclass(frozen=True, slots=True)
class MarkFailed:
    error: str
    attempt: int


@dataclass(frozen=True, slots=True)
class Sleep:
    duration: timedelta
    attempt: int


@dataclass(frozen=True, slots=True)
class Finish:
    phase: Phase
    attempt: int
    error: str | None = None


Effect = MarkProcessing | Generate | PersistArtifact | MarkFailed | Sleep | Finish


@dataclass(frozen=True, slots=True)
class Transition:
    state: JobState
    effects: tuple[Effect, ...]


def transition(state: JobState, event: JobEvent) -> Transition:  # noqa: PLR0911
    """Advance the state machine by one event."""

    if state.is_terminal:
        raise ValueError(
            f"Request {state.request_id} already finished in phase {state.phase.value}",
        )

    match event:
        case Loaded(status=status) if state.phase == Phase.LOADED:
            if status in ACTIVE_STATUSES:
                return Transition(
                    state=replace(state, phase=Phase.GENERATING, attempt=1),
                    effects=(MarkProcessing(), Generate(attempt=1)),
                )
            return _finish(state, Phase.SKIPPED)

        case AttemptSucceeded(result=result) if state.phase == Phase.GENERATING:
            return Transition(
                state=replace(state, phase=Phase.PERSISTING, last_error=None),
                effects=(PersistArtifact(result=result, attempt=state.attempt),),
            )

        case AttemptFailed(error=error, transient=transient) if state.phase == Phase.GENERATING:
            if not transient or state.attempt >= state.max_attempts:
                return _fail(replace(state, last_error=error))
            return Transition(
                state=replace(state, phase=Phase.BACKING_OFF, last_error=error),
                effects=(Sleep(duration=backoff_duration(state.attempt), attempt=state.attempt),),
            )

        case BackoffElapsed() if state.phase == Phase.BACKING_OFF:
            if state.attempt >= state.max_attempts:
                return _fail(state)
            next_attempt = state.attempt + 1
            return Transition(
                state=replace(state, phase=Phase.GENERATING, attempt=next_attempt),
                effects=(Generate(attempt=next_attempt),),
            )

        case BackoffInterrupted() if state.phase == Phase.BACKING_OFF:
            return _finish(state, Phase.INTERRUPTED)

        case Persisted() if state.phase == Phase.PERSISTING:
            return _finish(state, Phase.COMPLETED)

        case StoreFailed(error=error) if state.phase == Phase.PERSISTING:
            return _fail(replace(state, last_error=error))

        case Superseded() if state.phase in (Phase.GENERATING, Phase.PERSISTING):
            return _finish(state, Phase.SUPERSEDED)

    raise ValueError(
        f"Event {type(event).__name__} is not valid in phase {state.phase.value} "
        f"(request_id={state.request_id})",
    )


def _fail(state: JobState) -> Transition:
    error = state.last_error or UNKNOWN_ERROR
    failed = replace(state, phase=Phase.FAILED, last_error=error)
    return Transition(
        state=failed,
        effects=(
            MarkFailed(error=error, attempt=state.attempt),
            Finish(phase=Phase.FAILED, attempt=state.attempt, error=error),
        ),
    )


def _finish(state: JobState, phase: Phase) -> Transition:
    finished = replace(state, phase=phase)
    return Transition(
        state=finished,
        effects=(Finish(phase=phase, attempt=state.attempt, error=state.last_error),),
    )
