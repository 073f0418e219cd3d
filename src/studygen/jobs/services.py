"""Use-case services: submit, generate, inspect, and retry study requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import uuid4

from studygen.generator.base import ContentGenerator
from studygen.jobs.clock import Clock, SystemClock
from studygen.jobs.events import EventBus
from studygen.jobs.models import (
    GENERATION_DEBIT_REASON,
    STUDY_REQUEST_EVENT,
    USER_CREATE_EVENT,
    StudyMaterialView,
    StudyRequestCreate,
    StudyRequestStatus,
    StudyRequestView,
    UserAccountView,
)
from studygen.jobs.repository import StudyRepository

logger = logging.getLogger(__name__)

DEFAULT_DIFFICULTY = "Easy"
DEFAULT_PURPOSE = "practice"
SYNC_MATERIAL_STATUS = "completed"


class StudyServiceError(RuntimeError):
    """Base error for study use-cases."""


class InputError(StudyServiceError):
    """Caller supplied invalid input."""


class NotFoundError(StudyServiceError):
    """Referenced user, request, or material does not exist."""


class NoCreditsError(StudyServiceError):
    """Free-tier user has no credits left."""


@dataclass(slots=True)
class StudyOrder:
    """High-level command to generate material for one user."""

    external_id: str
    topic: str
    difficulty: str = DEFAULT_DIFFICULTY
    purpose: str = DEFAULT_PURPOSE


class StudyService:
    """Coordinates credit checks, request storage, and event emission."""

    def __init__(
        self,
        *,
        repository: StudyRepository,
        event_bus: EventBus,
        generator: ContentGenerator | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.repository = repository
        self.event_bus = event_bus
        self.generator = generator
        self.clock = clock or SystemClock()

    def submit_request(self, order: StudyOrder) -> StudyRequestView:
        """Queue a request for the worker and emit `study.request`."""

        topic, user = self._validate(order)
        record = self.repository.create_request(
            StudyRequestCreate(
                user_id=user.user_id,
                topic=topic,
                purpose=_or_default(order.purpose, DEFAULT_PURPOSE),
                difficulty=_or_default(order.difficulty, DEFAULT_DIFFICULTY),
            ),
            debit_reason=None if self._is_paid(user) else GENERATION_DEBIT_REASON,
        )
        if record is None:
            raise NoCreditsError("No credits left")
        event_id = self.event_bus.send(STUDY_REQUEST_EVENT, {"request_id": record.request_id})
        logger.info(
            "Queued study request %s for user_id=%s (event %s)",
            record.request_id,
            user.user_id,
            event_id,
        )
        return record

    def generate_now(self, order: StudyOrder) -> StudyMaterialView:
        """Generate in-process without the queue; no retries."""

        if self.generator is None:
            raise StudyServiceError("Synchronous generation needs a configured generator.")
        topic, user = self._validate(order)
        if not self._is_paid(user) and not self.repository.debit_credit(
            user_id=user.user_id,
            reason=GENERATION_DEBIT_REASON,
        ):
            raise NoCreditsError("No credits left")

        difficulty = _or_default(order.difficulty, DEFAULT_DIFFICULTY)
        result = self.generator.generate(
            purpose=_or_default(order.purpose, DEFAULT_PURPOSE),
            topic=topic,
            difficulty=difficulty,
        )
        material, _ = self.repository.create_material(
            course_id=f"crs_{uuid4().hex}",
            topic=topic,
            difficulty_level=difficulty,
            status=SYNC_MATERIAL_STATUS,
            layout_json=result.content.to_json(),
            created_by=str(user.user_id),
        )
        logger.info(
            "Generated material %s for user_id=%s with %s",
            material.material_id,
            user.user_id,
            result.backend_id,
        )
        return material

    def get_request(self, request_id: str) -> StudyRequestView:
        record = self.repository.get_request(request_id=request_id)
        if record is None:
            raise NotFoundError(f"Request not found: {request_id}")
        return record

    def get_material(self, material_id: int) -> StudyMaterialView:
        material = self.repository.get_material(material_id=material_id)
        if material is None:
            raise NotFoundError(f"Material not found: {material_id}")
        return material

    def retry_request(self, request_id: str) -> StudyRequestView:
        """Re-drive a failed request, or re-emit the event for a stuck queued one."""

        record = self.get_request(request_id)
        if record.status == StudyRequestStatus.FAILED:
            if not self.repository.reset_failed_request(request_id=request_id):
                raise InputError(f"Request {request_id} changed state; retry again.")
        elif record.status != StudyRequestStatus.QUEUED:
            raise InputError(f"Request {request_id} is {record.status.value}; nothing to retry.")
        self.event_bus.send(STUDY_REQUEST_EVENT, {"request_id": request_id})
        logger.info("Re-emitted study request %s", request_id)
        return self.get_request(request_id)

    def register_user(self, *, name: str, email: str, external_id: str) -> str:
        """Emit `user.create`; the provisioning worker creates the account."""

        if not email.strip() or not external_id.strip():
            raise InputError("email and external_id are required")
        return self.event_bus.send(
            USER_CREATE_EVENT,
            {"name": name.strip(), "email": email.strip(), "external_id": external_id.strip()},
        )

    def _validate(self, order: StudyOrder) -> tuple[str, UserAccountView]:
        topic = order.topic.strip()
        if not topic:
            raise InputError("Topic is required")
        user = self.repository.get_user_by_external_id(external_id=order.external_id)
        if user is None:
            raise NotFoundError(f"User not found: {order.external_id}")
        return topic, user

    def _is_paid(self, user: UserAccountView) -> bool:
        return user.has_active_subscription(now=self.clock.now())


def _or_default(value: str | None, default: str) -> str:
    cleaned = (value or "").strip()
    return cleaned or default
