"""Queue dispatcher that delivers work events to the study and provisioning workers."""

from __future__ import annotations

import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from studygen.jobs.clock import Clock, SystemClock
from studygen.jobs.models import (
    STUDY_REQUEST_EVENT,
    USER_CREATE_EVENT,
    WorkEventStatus,
    WorkEventView,
)
from studygen.jobs.provisioning import ProvisioningWorker
from studygen.jobs.repository import StudyRepository
from studygen.jobs.state_machine import Phase
from studygen.jobs.study_worker import StudyRequestWorker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    released: int = 0
    recovered: int = 0
    idle_polls: int = 0

    def add(self, other: DispatchSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.released += other.released
        self.recovered += other.recovered
        self.idle_polls += other.idle_polls


@dataclass(slots=True)
class _Delivery:
    status: WorkEventStatus | None
    result: dict[str, Any]

    @property
    def release(self) -> bool:
        return self.status is None


class EventDispatcher:
    """Claims pending events one at a time and routes them by name."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: StudyRepository,
        study_worker: StudyRequestWorker,
        provisioning_worker: ProvisioningWorker,
        worker_id: str,
        clock: Clock | None = None,
        poll_interval_seconds: float = 2.0,
        stale_event_seconds: int = 1800,
    ) -> None:
        self.repository = repository
        self.study_worker = study_worker
        self.provisioning_worker = provisioning_worker
        self.worker_id = worker_id
        self.clock = clock or SystemClock()
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_event_seconds = stale_event_seconds
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_once(self) -> DispatchSummary:
        """Deliver at most one event."""

        summary = DispatchSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        summary.recovered = self._recover_stale_events()
        event = self.repository.claim_next_event(worker_id=self.worker_id)
        if event is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        logger.info(
            "Delivering event %s (%s), delivery #%d",
            event.event_id,
            event.name,
            event.deliveries,
        )
        try:
            delivery = self._route(event)
        except Exception as error:  # noqa: BLE001
            logger.exception("Event %s (%s) raised", event.event_id, event.name)
            delivery = _Delivery(
                status=WorkEventStatus.FAILED,
                result={"ok": False, "error": f"{type(error).__name__}: {error}"},
            )

        if delivery.release:
            self.repository.release_event(event_id=event.event_id, worker_id=self.worker_id)
            summary.released = 1
            return summary

        finished = self.repository.finish_event(
            event_id=event.event_id,
            worker_id=self.worker_id,
            status=delivery.status,
            result=delivery.result,
        )
        if not finished:
            logger.warning(
                "Event %s was reclaimed before %s could finish it",
                event.event_id,
                self.worker_id,
            )
        if delivery.status == WorkEventStatus.DONE:
            summary.succeeded = 1
        else:
            summary.failed = 1
        return summary

    def run_loop(
        self,
        *,
        max_events: int | None = None,
        max_idle_polls: int = 1,
    ) -> DispatchSummary:
        """Run until the queue is idle or `max_events` were delivered.

        Args:
            max_events: Stop after delivering this many events (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = DispatchSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_events is not None and aggregate.processed >= max_events:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        self.clock.request_stop()
        logger.warning("Stop requested (%s); finishing current event", signal_name)

    def _route(self, event: WorkEventView) -> _Delivery:
        if event.name == STUDY_REQUEST_EVENT:
            outcome = self.study_worker.handle(event.data.get("request_id"))
            if outcome.phase == Phase.INTERRUPTED.value:
                return _Delivery(status=None, result=outcome.to_result())
            status = WorkEventStatus.DONE if outcome.ok else WorkEventStatus.FAILED
            return _Delivery(status=status, result=outcome.to_result())

        if event.name == USER_CREATE_EVENT:
            provisioned = self.provisioning_worker.handle(event.data)
            status = WorkEventStatus.DONE if provisioned.ok else WorkEventStatus.FAILED
            return _Delivery(status=status, result=provisioned.to_result())

        logger.error("No handler for event %s (%s)", event.event_id, event.name)
        return _Delivery(
            status=WorkEventStatus.FAILED,
            result={"ok": False, "reason": f"Unknown event: {event.name}"},
        )

    def _recover_stale_events(self) -> int:
        if self.stale_event_seconds <= 0:
            return 0
        return self.repository.recover_stale_events(
            stale_after=timedelta(seconds=self.stale_event_seconds),
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        if seconds > 0:
            self.clock.sleep(timedelta(seconds=seconds))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
