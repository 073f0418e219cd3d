"""Persistent store for study requests, materials, accounts, and work events."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from studygen.generator.contracts import parse_payload
from studygen.storage.alembic_runner import upgrade_head
from studygen.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from studygen.storage.sqlmodel_models import (
    CreditLedgerEntry,
    StudyMaterial,
    StudyRequest,
    UserAccount,
    WorkEvent,
)
from studygen.jobs.models import (
    ACTIVE_STATUSES,
    WELCOME_BONUS_CREDITS,
    WELCOME_BONUS_REASON,
    CreditLedgerView,
    StudyMaterialCreate,
    StudyMaterialView,
    StudyRequestCreate,
    StudyRequestStatus,
    StudyRequestView,
    UserAccountCreate,
    UserAccountView,
    WorkEventStatus,
    WorkEventView,
)

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = tuple(status.value for status in ACTIVE_STATUSES)


class StudyRepository:
    """Persistence facade backed by SQLModel + SQLite.

    Every status change is a conditional update keyed by id and current
    status, so concurrent or duplicate invocations can only lose a race,
    never overwrite a terminal record.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.engine)

    # Accounts

    def get_user(self, *, user_id: int) -> UserAccountView | None:
        with Session(self.engine) as session:
            row = session.get(UserAccount, user_id)
            return _to_user_view(row) if row is not None else None

    def get_user_by_external_id(self, *, external_id: str) -> UserAccountView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(UserAccount).where(UserAccount.external_id == external_id),
            ).one_or_none()
            return _to_user_view(row) if row is not None else None

    def create_user_with_bonus(self, payload: UserAccountCreate) -> tuple[UserAccountView, bool]:
        """Create an account plus its welcome bonus in one transaction.

        Returns the account and whether this call created it. A concurrent
        insert for the same external id loses on the unique constraint and
        gets the winner's account back without a second bonus.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = UserAccount(
                external_id=payload.external_id,
                email=payload.email,
                name=payload.name,
                created_at=now,
            )
            session.add(row)
            try:
                session.flush()
                if row.user_id is None:
                    raise RuntimeError("User insert did not assign a primary key.")
                session.add(
                    CreditLedgerEntry(
                        user_id=row.user_id,
                        delta=WELCOME_BONUS_CREDITS,
                        reason=WELCOME_BONUS_REASON,
                        created_at=now,
                    ),
                )
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.exec(
                    select(UserAccount).where(UserAccount.external_id == payload.external_id),
                ).one()
                logger.info(
                    "Account for external_id=%s created concurrently; reusing user_id=%s",
                    payload.external_id,
                    existing.user_id,
                )
                return _to_user_view(existing), False
            session.refresh(row)
            return _to_user_view(row), True

    def list_ledger(self, *, user_id: int) -> list[CreditLedgerView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(CreditLedgerEntry)
                .where(CreditLedgerEntry.user_id == user_id)
                .order_by(col(CreditLedgerEntry.entry_id).asc()),
            ).all()
        return [
            CreditLedgerView(
                entry_id=row.entry_id or 0,
                user_id=row.user_id,
                request_id=row.request_id,
                delta=row.delta,
                reason=row.reason,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def debit_credit(self, *, user_id: int, reason: str, request_id: str | None = None) -> bool:
        """Spend one credit if any remain; False when the balance is exhausted."""

        with Session(self.engine) as session:
            if not self._debit_credit(
                session=session,
                user_id=user_id,
                reason=reason,
                request_id=request_id,
            ):
                session.rollback()
                return False
            session.commit()
            return True

    # Requests

    def create_request(
        self,
        payload: StudyRequestCreate,
        *,
        debit_reason: str | None = None,
    ) -> StudyRequestView | None:
        """Insert a queued request, optionally debiting one credit atomically.

        Returns None when a debit was requested and the user has no credits.
        """

        now = to_db_datetime(utc_now())
        request_id = payload.request_id or str(uuid4())
        with Session(self.engine) as session:
            if debit_reason is not None and not self._debit_credit(
                session=session,
                user_id=payload.user_id,
                reason=debit_reason,
                request_id=request_id,
            ):
                session.rollback()
                return None
            row = StudyRequest(
                request_id=request_id,
                user_id=payload.user_id,
                topic=payload.topic,
                purpose=payload.purpose,
                difficulty=payload.difficulty,
                status=StudyRequestStatus.QUEUED.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_request_view(row)

    def get_request(self, *, request_id: str) -> StudyRequestView | None:
        with Session(self.engine) as session:
            row = session.get(StudyRequest, request_id)
            return _to_request_view(row) if row is not None else None

    def list_requests(
        self,
        *,
        status: StudyRequestStatus | None = None,
        user_id: int | None = None,
        limit: int = 50,
    ) -> list[StudyRequestView]:
        with Session(self.engine) as session:
            statement = select(StudyRequest).order_by(col(StudyRequest.created_at).desc())
            if status is not None:
                statement = statement.where(StudyRequest.status == status.value)
            if user_id is not None:
                statement = statement.where(StudyRequest.user_id == user_id)
            rows = session.exec(statement.limit(limit)).all()
        return [_to_request_view(row) for row in rows]

    def mark_processing(self, *, request_id: str) -> bool:
        """queued|processing -> processing; re-entering is a harmless restamp."""

        return self._transition_request(
            request_id=request_id,
            values={"status": StudyRequestStatus.PROCESSING.value},
        )

    def complete_request(  # noqa: PLR0913
        self,
        *,
        request_id: str,
        material: StudyMaterialCreate,
        model: str,
        prompt: str,
        output: str,
        attempts: int,
    ) -> StudyMaterialView | None:
        """Link the request's material and mark it completed in one transaction.

        A material already linked to the request is reused. Returns None, with
        nothing written, when the request is no longer queued or processing.
        """

        values = {
            "status": StudyRequestStatus.COMPLETED.value,
            "model": model,
            "prompt": prompt,
            "output": output,
            "error": None,
            "attempts": attempts,
        }
        try:
            return self._complete_with_material(
                request_id=request_id,
                material=material,
                values=values,
            )
        except IntegrityError:
            logger.info(
                "Material for request %s inserted concurrently; completing with it",
                request_id,
            )
            return self._complete_with_material(
                request_id=request_id,
                material=material,
                values=values,
            )

    def fail_request(self, *, request_id: str, error: str, attempts: int) -> bool:
        """Record terminal failure; False when the request is no longer active."""

        return self._transition_request(
            request_id=request_id,
            values={
                "status": StudyRequestStatus.FAILED.value,
                "error": error,
                "attempts": attempts,
            },
        )

    def reset_failed_request(self, *, request_id: str) -> bool:
        """Operator retry: failed -> queued, clearing the last error."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StudyRequest)
                .where(
                    col(StudyRequest.request_id) == request_id,
                    col(StudyRequest.status) == StudyRequestStatus.FAILED.value,
                )
                .values(
                    status=StudyRequestStatus.QUEUED.value,
                    error=None,
                    attempts=0,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Materials

    def get_material(self, *, material_id: int) -> StudyMaterialView | None:
        with Session(self.engine) as session:
            row = session.get(StudyMaterial, material_id)
            return _to_material_view(row) if row is not None else None

    def get_material_for_request(self, *, request_id: str) -> StudyMaterialView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(StudyMaterial).where(StudyMaterial.request_id == request_id),
            ).one_or_none()
            return _to_material_view(row) if row is not None else None

    def count_materials_for_request(self, *, request_id: str) -> int:
        with Session(self.engine) as session:
            rows = session.exec(
                select(StudyMaterial.material_id).where(StudyMaterial.request_id == request_id),
            ).all()
        return len(rows)

    def create_material(  # noqa: PLR0913
        self,
        *,
        course_id: str,
        topic: str,
        difficulty_level: str,
        status: str,
        layout_json: str,
        created_by: str,
        request_id: str | None = None,
    ) -> tuple[StudyMaterialView, bool]:
        """Insert a material unless one is already linked to `request_id`.

        Returns the material and whether this call created it.
        """

        with Session(self.engine) as session:
            if request_id is not None:
                existing = session.exec(
                    select(StudyMaterial).where(StudyMaterial.request_id == request_id),
                ).one_or_none()
                if existing is not None:
                    return _to_material_view(existing), False

            row = StudyMaterial(
                course_id=course_id,
                request_id=request_id,
                topic=topic,
                difficulty_level=difficulty_level,
                status=status,
                layout_json=layout_json,
                created_by=created_by,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if request_id is None:
                    raise
                existing = session.exec(
                    select(StudyMaterial).where(StudyMaterial.request_id == request_id),
                ).one()
                logger.info(
                    "Material for request %s inserted concurrently; keeping material_id=%s",
                    request_id,
                    existing.material_id,
                )
                return _to_material_view(existing), False
            session.refresh(row)
            return _to_material_view(row), True

    # Work events

    def add_event(self, *, name: str, data: dict[str, Any]) -> WorkEventView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = WorkEvent(
                event_id=str(uuid4()),
                name=name,
                payload_json=json.dumps(data, ensure_ascii=False, sort_keys=True),
                status=WorkEventStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_event_view(row)

    def get_event(self, *, event_id: str) -> WorkEventView | None:
        with Session(self.engine) as session:
            row = session.get(WorkEvent, event_id)
            return _to_event_view(row) if row is not None else None

    def list_events(
        self,
        *,
        status: WorkEventStatus | None = None,
        limit: int = 50,
    ) -> list[WorkEventView]:
        with Session(self.engine) as session:
            statement = select(WorkEvent).order_by(col(WorkEvent.created_at).desc())
            if status is not None:
                statement = statement.where(WorkEvent.status == status.value)
            rows = session.exec(statement.limit(limit)).all()
        return [_to_event_view(row) for row in rows]

    def claim_next_event(self, *, worker_id: str) -> WorkEventView | None:
        """Atomically claim the oldest pending event."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(WorkEvent)
                    .where(WorkEvent.status == WorkEventStatus.PENDING.value)
                    .order_by(col(WorkEvent.created_at).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(WorkEvent)
                    .where(
                        col(WorkEvent.event_id) == candidate.event_id,
                        col(WorkEvent.status) == WorkEventStatus.PENDING.value,
                    )
                    .values(
                        status=WorkEventStatus.CLAIMED.value,
                        deliveries=candidate.deliveries + 1,
                        worker_id=worker_id,
                        claimed_at=now,
                        finished_at=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.get(WorkEvent, candidate.event_id)
                if claimed is None:
                    continue
                session.refresh(claimed)
                return _to_event_view(claimed)

    def finish_event(
        self,
        *,
        event_id: str,
        worker_id: str,
        status: WorkEventStatus,
        result: dict[str, Any],
    ) -> bool:
        """Close a claimed event as done/failed."""

        if status not in {WorkEventStatus.DONE, WorkEventStatus.FAILED}:
            raise ValueError(f"Unsupported final event status: {status}")
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(WorkEvent)
                .where(
                    col(WorkEvent.event_id) == event_id,
                    col(WorkEvent.worker_id) == worker_id,
                    col(WorkEvent.status) == WorkEventStatus.CLAIMED.value,
                )
                .values(
                    status=status.value,
                    result_json=json.dumps(result, ensure_ascii=False, sort_keys=True),
                    finished_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def release_event(self, *, event_id: str, worker_id: str) -> bool:
        """Return a claimed event to pending so it is delivered again."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(WorkEvent)
                .where(
                    col(WorkEvent.event_id) == event_id,
                    col(WorkEvent.worker_id) == worker_id,
                    col(WorkEvent.status) == WorkEventStatus.CLAIMED.value,
                )
                .values(
                    status=WorkEventStatus.PENDING.value,
                    worker_id=None,
                    claimed_at=None,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def recover_stale_events(self, *, stale_after: timedelta, now: datetime | None = None) -> int:
        """Redeliver events whose worker went silent (crash, redeploy)."""

        current = now or utc_now()
        cutoff = to_db_datetime(current - stale_after)
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(WorkEvent)
                .where(
                    col(WorkEvent.status) == WorkEventStatus.CLAIMED.value,
                    col(WorkEvent.claimed_at) < cutoff,
                )
                .values(
                    status=WorkEventStatus.PENDING.value,
                    worker_id=None,
                    claimed_at=None,
                    updated_at=to_db_datetime(current),
                ),
            )
            session.commit()
            recovered = int(outcome.rowcount or 0)
        if recovered:
            logger.warning("Recovered %d stale claimed event(s) for redelivery", recovered)
        return recovered

    def _complete_with_material(
        self,
        *,
        request_id: str,
        material: StudyMaterialCreate,
        values: dict[str, Any],
    ) -> StudyMaterialView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(StudyMaterial).where(StudyMaterial.request_id == request_id),
            ).one_or_none()
            if row is None:
                row = StudyMaterial(
                    course_id=material.course_id,
                    request_id=request_id,
                    topic=material.topic,
                    difficulty_level=material.difficulty_level,
                    status=material.status,
                    layout_json=material.layout_json,
                    created_by=material.created_by,
                    created_at=to_db_datetime(utc_now()),
                )
                session.add(row)
                session.flush()
            else:
                logger.info(
                    "Request %s already has material %s; not inserting a duplicate",
                    request_id,
                    row.material_id,
                )

            result = session.exec(
                sa_update(StudyRequest)
                .where(
                    col(StudyRequest.request_id) == request_id,
                    col(StudyRequest.status).in_(_ACTIVE_VALUES),
                )
                .values(**values, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            session.refresh(row)
            return _to_material_view(row)

    def _transition_request(self, *, request_id: str, values: dict[str, Any]) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StudyRequest)
                .where(
                    col(StudyRequest.request_id) == request_id,
                    col(StudyRequest.status).in_(_ACTIVE_VALUES),
                )
                .values(**values, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _debit_credit(
        self,
        *,
        session: Session,
        user_id: int,
        reason: str,
        request_id: str | None,
    ) -> bool:
        result = session.exec(
            sa_update(UserAccount)
            .where(
                col(UserAccount.user_id) == user_id,
                col(UserAccount.used_credits) < col(UserAccount.credits),
            )
            .values(used_credits=col(UserAccount.used_credits) + 1),
        )
        if result.rowcount != 1:
            return False
        session.add(
            CreditLedgerEntry(
                user_id=user_id,
                request_id=request_id,
                delta=-1,
                reason=reason,
                created_at=to_db_datetime(utc_now()),
            ),
        )
        return True


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_user_view(row: UserAccount) -> UserAccountView:
    return UserAccountView(
        user_id=row.user_id or 0,
        external_id=row.external_id,
        email=row.email,
        name=row.name,
        credits=row.credits,
        used_credits=row.used_credits,
        subscription_tier=row.subscription_tier,
        subscription_expires=_optional_aware(row.subscription_expires),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_request_view(row: StudyRequest) -> StudyRequestView:
    return StudyRequestView(
        request_id=row.request_id,
        user_id=row.user_id,
        topic=row.topic,
        purpose=row.purpose,
        difficulty=row.difficulty,
        status=StudyRequestStatus(row.status),
        attempts=row.attempts,
        model=row.model,
        prompt=parse_payload(row.prompt) if row.prompt is not None else None,
        output=parse_payload(row.output) if row.output is not None else None,
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_material_view(row: StudyMaterial) -> StudyMaterialView:
    return StudyMaterialView(
        material_id=row.material_id or 0,
        course_id=row.course_id,
        request_id=row.request_id,
        topic=row.topic,
        difficulty_level=row.difficulty_level,
        status=row.status,
        layout=parse_payload(row.layout_json),
        created_by=row.created_by,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_event_view(row: WorkEvent) -> WorkEventView:
    data = json.loads(row.payload_json) if row.payload_json else {}
    result = json.loads(row.result_json) if row.result_json else {}
    return WorkEventView(
        event_id=row.event_id,
        name=row.name,
        data=data if isinstance(data, dict) else {},
        status=WorkEventStatus(row.status),
        deliveries=row.deliveries,
        worker_id=row.worker_id,
        claimed_at=_optional_aware(row.claimed_at),
        finished_at=_optional_aware(row.finished_at),
        result=result if isinstance(result, dict) else {},
        created_at=to_utc_aware_datetime(row.created_at),
    )
