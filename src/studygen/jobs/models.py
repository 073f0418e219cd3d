"""Domain models for study requests, materials, accounts, and work events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from studygen.generator.contracts import Payload


class StudyRequestStatus(str, Enum):
    """Durable request lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = frozenset({StudyRequestStatus.QUEUED, StudyRequestStatus.PROCESSING})


class WorkEventStatus(str, Enum):
    """Delivery states of a work event."""

    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"
    FAILED = "failed"


STUDY_REQUEST_EVENT = "study.request"
USER_CREATE_EVENT = "user.create"

WELCOME_BONUS_CREDITS = 5
WELCOME_BONUS_REASON = "welcome.bonus"
GENERATION_DEBIT_REASON = "Generate study material"


@dataclass(slots=True)
class StudyRequestCreate:
    """Input payload for enqueuing a generation request."""

    user_id: int
    topic: str
    purpose: str
    difficulty: str
    request_id: str | None = None


@dataclass(slots=True)
class StudyRequestView:
    """Readable request view for the worker and read paths."""

    request_id: str
    user_id: int
    topic: str
    purpose: str
    difficulty: str
    status: StudyRequestStatus
    attempts: int
    model: str | None
    prompt: Payload | None
    output: Payload | None
    error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class StudyMaterialCreate:
    """Input payload for storing a generated study material."""

    course_id: str
    topic: str
    difficulty_level: str
    status: str
    layout_json: str
    created_by: str
    request_id: str | None = None


@dataclass(slots=True)
class StudyMaterialView:
    """Stored generated study material."""

    material_id: int
    course_id: str
    request_id: str | None
    topic: str
    difficulty_level: str
    status: str
    layout: Payload
    created_by: str
    created_at: datetime


@dataclass(slots=True)
class UserAccountCreate:
    """Input payload for provisioning a user account."""

    external_id: str
    email: str
    name: str


@dataclass(slots=True)
class UserAccountView:
    """Stored user account with credit counters."""

    user_id: int
    external_id: str
    email: str
    name: str
    credits: int
    used_credits: int
    subscription_tier: str
    subscription_expires: datetime | None
    created_at: datetime

    @property
    def remaining_credits(self) -> int:
        return self.credits - self.used_credits

    def has_active_subscription(self, *, now: datetime) -> bool:
        return (
            self.subscription_tier != "free"
            and self.subscription_expires is not None
            and self.subscription_expires > now
        )


@dataclass(slots=True)
class CreditLedgerView:
    entry_id: int
    user_id: int
    request_id: str | None
    delta: int
    reason: str
    created_at: datetime


@dataclass(slots=True)
class WorkEventView:
    """Queued work event with delivery bookkeeping."""

    event_id: str
    name: str
    data: dict[str, Any]
    status: WorkEventStatus
    deliveries: int
    worker_id: str | None
    claimed_at: datetime | None
    finished_at: datetime | None
    result: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
