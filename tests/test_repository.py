from __future__ import annotations

from datetime import timedelta

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col

from studygen.jobs.models import (
    GENERATION_DEBIT_REASON,
    WELCOME_BONUS_CREDITS,
    WELCOME_BONUS_REASON,
    StudyMaterialCreate,
    StudyRequestCreate,
    StudyRequestStatus,
    UserAccountCreate,
    WorkEventStatus,
)
from studygen.storage.common import to_db_datetime, utc_now
from studygen.storage.sqlmodel_models import StudyMaterial, WorkEvent

pytestmark = [
    allure.epic("Study Generation"),
    allure.feature("Request State Store"),
]


def _request(repository, user, **overrides):
    payload = StudyRequestCreate(
        user_id=user.user_id,
        topic=overrides.pop("topic", "Cell biology"),
        purpose="practice",
        difficulty="Easy",
        **overrides,
    )
    return repository.create_request(payload)


def _material(record, **overrides) -> StudyMaterialCreate:
    fields = {
        "request_id": record.request_id,
        "course_id": f"REQ-{record.request_id}",
        "topic": record.topic,
        "difficulty_level": "Easy",
        "status": "ready",
        "layout_json": '{"title": "Cells"}',
        "created_by": str(record.user_id),
    }
    fields.update(overrides)
    return StudyMaterialCreate(**fields)


def test_new_account_gets_signup_credits_and_one_bonus_entry(repository) -> None:
    account, created = repository.create_user_with_bonus(
        UserAccountCreate(external_id="ext_1", email="one@example.com", name="One"),
    )

    assert created is True
    assert account.credits == 5
    assert account.used_credits == 0
    assert account.subscription_tier == "free"
    ledger = repository.list_ledger(user_id=account.user_id)
    assert [(entry.delta, entry.reason) for entry in ledger] == [
        (WELCOME_BONUS_CREDITS, WELCOME_BONUS_REASON),
    ]


def test_duplicate_external_id_returns_existing_account_without_bonus(repository) -> None:
    payload = UserAccountCreate(external_id="ext_1", email="one@example.com", name="One")
    first, _ = repository.create_user_with_bonus(payload)

    second, created = repository.create_user_with_bonus(payload)

    assert created is False
    assert second.user_id == first.user_id
    assert len(repository.list_ledger(user_id=first.user_id)) == 1


def test_debit_stops_at_zero_remaining(repository, user) -> None:
    results = [
        repository.debit_credit(user_id=user.user_id, reason=GENERATION_DEBIT_REASON)
        for _ in range(user.credits + 1)
    ]

    assert results == [True] * user.credits + [False]
    refreshed = repository.get_user(user_id=user.user_id)
    assert refreshed is not None
    assert refreshed.remaining_credits == 0
    debits = [entry for entry in repository.list_ledger(user_id=user.user_id) if entry.delta < 0]
    assert len(debits) == user.credits


def test_create_request_with_debit_is_atomic(repository, user) -> None:
    for _ in range(user.credits):
        assert repository.debit_credit(user_id=user.user_id, reason=GENERATION_DEBIT_REASON)

    record = repository.create_request(
        StudyRequestCreate(user_id=user.user_id, topic="t", purpose="p", difficulty="Easy"),
        debit_reason=GENERATION_DEBIT_REASON,
    )

    assert record is None
    assert repository.list_requests() == []


def test_create_request_links_debit_to_request(repository, user) -> None:
    record = repository.create_request(
        StudyRequestCreate(user_id=user.user_id, topic="t", purpose="p", difficulty="Easy"),
        debit_reason=GENERATION_DEBIT_REASON,
    )

    assert record is not None
    assert record.status == StudyRequestStatus.QUEUED
    assert record.attempts == 0
    debit = repository.list_ledger(user_id=user.user_id)[-1]
    assert debit.delta == -1
    assert debit.request_id == record.request_id


def test_status_updates_only_apply_to_active_requests(repository, user) -> None:
    record = _request(repository, user)
    request_id = record.request_id

    assert repository.mark_processing(request_id=request_id) is True
    assert repository.mark_processing(request_id=request_id) is True
    assert repository.complete_request(
        request_id=request_id,
        material=_material(record),
        model="gemini-2.5-flash",
        prompt="{}",
        output='{"title": "x"}',
        attempts=1,
    )
    assert repository.fail_request(request_id=request_id, error="late", attempts=2) is False
    assert repository.mark_processing(request_id=request_id) is False

    stored = repository.get_request(request_id=request_id)
    assert stored is not None
    assert stored.status == StudyRequestStatus.COMPLETED
    assert stored.error is None
    assert stored.model == "gemini-2.5-flash"


def test_complete_request_links_material_in_the_same_transaction(repository, user) -> None:
    record = _request(repository, user)

    material = repository.complete_request(
        request_id=record.request_id,
        material=_material(record),
        model="m",
        prompt="{}",
        output='{"title": "Cells"}',
        attempts=2,
    )

    assert material is not None
    assert material.request_id == record.request_id
    assert repository.get_material_for_request(request_id=record.request_id) == material
    stored = repository.get_request(request_id=record.request_id)
    assert stored is not None
    assert stored.status == StudyRequestStatus.COMPLETED
    assert stored.attempts == 2


def test_complete_request_on_finished_request_writes_nothing(repository, user) -> None:
    record = _request(repository, user)
    assert repository.fail_request(request_id=record.request_id, error="boom", attempts=1)

    material = repository.complete_request(
        request_id=record.request_id,
        material=_material(record),
        model="m",
        prompt="{}",
        output="{}",
        attempts=1,
    )

    assert material is None
    assert repository.count_materials_for_request(request_id=record.request_id) == 0
    stored = repository.get_request(request_id=record.request_id)
    assert stored is not None
    assert stored.status == StudyRequestStatus.FAILED
    assert stored.model is None


def test_complete_request_reuses_material_stored_earlier(repository, user) -> None:
    record = _request(repository, user)
    existing, _ = repository.create_material(
        request_id=record.request_id,
        course_id=f"REQ-{record.request_id}",
        topic=record.topic,
        difficulty_level="Easy",
        status="ready",
        layout_json="{}",
        created_by=str(user.user_id),
    )

    material = repository.complete_request(
        request_id=record.request_id,
        material=_material(record, layout_json='{"title": "Other"}'),
        model="m",
        prompt="{}",
        output="{}",
        attempts=1,
    )

    assert material is not None
    assert material.material_id == existing.material_id
    assert repository.count_materials_for_request(request_id=record.request_id) == 1


def test_reset_failed_request_requeues_only_failed(repository, user) -> None:
    record = _request(repository, user)
    request_id = record.request_id

    assert repository.reset_failed_request(request_id=request_id) is False
    assert repository.fail_request(request_id=request_id, error="503", attempts=3)
    assert repository.reset_failed_request(request_id=request_id) is True

    stored = repository.get_request(request_id=request_id)
    assert stored is not None
    assert stored.status == StudyRequestStatus.QUEUED
    assert stored.error is None
    assert stored.attempts == 0


def test_list_requests_filters_by_status(repository, user) -> None:
    first = _request(repository, user, topic="A")
    _request(repository, user, topic="B")
    assert repository.fail_request(request_id=first.request_id, error="x", attempts=1)

    failed = repository.list_requests(status=StudyRequestStatus.FAILED)
    queued = repository.list_requests(status=StudyRequestStatus.QUEUED, user_id=user.user_id)

    assert [item.topic for item in failed] == ["A"]
    assert [item.topic for item in queued] == ["B"]


def test_create_material_is_idempotent_per_request(repository, user) -> None:
    record = _request(repository, user)
    kwargs = {
        "request_id": record.request_id,
        "course_id": f"REQ-{record.request_id}",
        "topic": "Cell biology",
        "difficulty_level": "Easy",
        "status": "ready",
        "layout_json": '{"title": "Cells"}',
        "created_by": str(user.user_id),
    }

    first, created_first = repository.create_material(**kwargs)
    second, created_second = repository.create_material(**{**kwargs, "layout_json": "{}"})

    assert created_first is True
    assert created_second is False
    assert second.material_id == first.material_id
    assert repository.count_materials_for_request(request_id=record.request_id) == 1


def test_materials_without_request_are_not_deduplicated(repository, user) -> None:
    kwargs = {
        "course_id": "crs_1",
        "topic": "Cell biology",
        "difficulty_level": "Easy",
        "status": "completed",
        "layout_json": "{}",
        "created_by": str(user.user_id),
    }

    first, _ = repository.create_material(**kwargs)
    second, created = repository.create_material(**{**kwargs, "course_id": "crs_2"})

    assert created is True
    assert second.material_id != first.material_id


def test_unique_request_id_is_enforced_by_the_schema(repository, user) -> None:
    record = _request(repository, user)
    now = to_db_datetime(utc_now())

    def _row() -> StudyMaterial:
        return StudyMaterial(
            course_id="c",
            request_id=record.request_id,
            topic="t",
            difficulty_level="Easy",
            status="ready",
            layout_json="{}",
            created_by="1",
            created_at=now,
        )

    with Session(repository.engine) as session:
        session.add(_row())
        session.commit()
        session.add(_row())
        with pytest.raises(IntegrityError):
            session.commit()


def test_events_are_claimed_oldest_first_and_once(repository) -> None:
    first = repository.add_event(name="study.request", data={"request_id": "a"})
    second = repository.add_event(name="study.request", data={"request_id": "b"})

    claimed = repository.claim_next_event(worker_id="w1")
    claimed_next = repository.claim_next_event(worker_id="w2")

    assert claimed is not None
    assert claimed_next is not None
    assert claimed.event_id == first.event_id
    assert claimed.status == WorkEventStatus.CLAIMED
    assert claimed.deliveries == 1
    assert claimed.worker_id == "w1"
    assert claimed.data == {"request_id": "a"}
    assert claimed_next.event_id == second.event_id
    assert repository.claim_next_event(worker_id="w3") is None


def test_finish_event_requires_the_claiming_worker(repository) -> None:
    event = repository.add_event(name="user.create", data={})
    assert repository.claim_next_event(worker_id="w1") is not None

    assert (
        repository.finish_event(
            event_id=event.event_id,
            worker_id="intruder",
            status=WorkEventStatus.DONE,
            result={},
        )
        is False
    )
    assert repository.finish_event(
        event_id=event.event_id,
        worker_id="w1",
        status=WorkEventStatus.DONE,
        result={"ok": True},
    )

    stored = repository.get_event(event_id=event.event_id)
    assert stored is not None
    assert stored.status == WorkEventStatus.DONE
    assert stored.result == {"ok": True}
    assert stored.finished_at is not None


def test_finish_event_rejects_non_final_status(repository) -> None:
    with pytest.raises(ValueError, match="Unsupported final event status"):
        repository.finish_event(
            event_id="x",
            worker_id="w1",
            status=WorkEventStatus.PENDING,
            result={},
        )


def test_released_event_is_delivered_again(repository) -> None:
    event = repository.add_event(name="study.request", data={"request_id": "a"})
    assert repository.claim_next_event(worker_id="w1") is not None

    assert repository.release_event(event_id=event.event_id, worker_id="w1") is True
    again = repository.claim_next_event(worker_id="w2")

    assert again is not None
    assert again.event_id == event.event_id
    assert again.deliveries == 2


def test_stale_claims_are_recovered(repository) -> None:
    event = repository.add_event(name="study.request", data={"request_id": "a"})
    assert repository.claim_next_event(worker_id="crashed") is not None
    with Session(repository.engine) as session:
        session.exec(
            sa_update(WorkEvent)
            .where(col(WorkEvent.event_id) == event.event_id)
            .values(claimed_at=to_db_datetime(utc_now() - timedelta(hours=1))),
        )
        session.commit()

    assert repository.recover_stale_events(stale_after=timedelta(hours=2)) == 0
    assert repository.recover_stale_events(stale_after=timedelta(minutes=30)) == 1

    stored = repository.get_event(event_id=event.event_id)
    assert stored is not None
    assert stored.status == WorkEventStatus.PENDING
    assert stored.worker_id is None
