"""Event bus: fire-and-forget work events backed by the `work_events` table."""

from __future__ import annotations

from typing import Any, Protocol

from studygen.jobs.repository import StudyRepository


class EventBus(Protocol):
    def send(self, name: str, data: dict[str, Any]) -> str:
        """Enqueue an event and return its id."""


class SqlEventBus:
    """Durable bus; events are picked up by `EventDispatcher`."""

    def __init__(self, repository: StudyRepository) -> None:
        self.repository = repository

    def send(self, name: str, data: dict[str, Any]) -> str:
        return self.repository.add_event(name=name, data=data).event_id
