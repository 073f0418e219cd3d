from __future__ import annotations

import allure
import pytest

from studygen.jobs.models import WELCOME_BONUS_REASON
from studygen.jobs.provisioning import ProvisioningWorker

pytestmark = [
    allure.epic("Accounts"),
    allure.feature("Provisioning"),
]


@pytest.mark.parametrize(
    "data",
    [
        {"email": "a@example.com"},
        {"external_id": "ext_a"},
        {"email": "  ", "external_id": "ext_a"},
        {"email": None, "external_id": None},
    ],
)
def test_missing_identity_fields_are_rejected(repository, data) -> None:
    outcome = ProvisioningWorker(repository=repository).handle(data)

    assert outcome.ok is False
    assert outcome.reason == "Missing email or external_id"
    assert outcome.to_result() == {
        "ok": False,
        "created": False,
        "reason": "Missing email or external_id",
    }


def test_first_event_creates_account_with_welcome_bonus(repository) -> None:
    outcome = ProvisioningWorker(repository=repository).handle(
        {"name": "Linus", "email": "linus@example.com", "external_id": "ext_linus"},
    )

    assert outcome.ok is True
    assert outcome.created is True
    account = repository.get_user_by_external_id(external_id="ext_linus")
    assert account is not None
    assert account.user_id == outcome.user_id
    assert account.name == "Linus"
    assert account.remaining_credits == 5
    ledger = repository.list_ledger(user_id=account.user_id)
    assert [(entry.delta, entry.reason) for entry in ledger] == [(5, WELCOME_BONUS_REASON)]


def test_name_defaults_to_email_local_part(repository) -> None:
    outcome = ProvisioningWorker(repository=repository).handle(
        {"email": "margaret.h@example.com", "external_id": "ext_mh"},
    )

    account = repository.get_user(user_id=outcome.user_id)
    assert account is not None
    assert account.name == "margaret.h"


def test_repeated_events_are_idempotent(repository) -> None:
    worker = ProvisioningWorker(repository=repository)
    data = {"email": "dup@example.com", "external_id": "ext_dup"}

    first = worker.handle(data)
    second = worker.handle(data)

    assert first.created is True
    assert second.created is False
    assert second.user_id == first.user_id
    assert len(repository.list_ledger(user_id=first.user_id)) == 1


def test_concurrent_insert_loses_on_unique_constraint(repository, monkeypatch) -> None:
    worker = ProvisioningWorker(repository=repository)
    data = {"email": "race@example.com", "external_id": "ext_race"}
    winner = worker.handle(data)
    # Simulate the second invocation reading before the first one committed.
    monkeypatch.setattr(repository, "get_user_by_external_id", lambda **_kwargs: None)

    loser = worker.handle(data)

    assert loser.ok is True
    assert loser.created is False
    assert loser.user_id == winner.user_id
    assert len(repository.list_ledger(user_id=winner.user_id)) == 1
