"""Account provisioning for `user.create` events."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from studygen.jobs.models import UserAccountCreate
from studygen.jobs.repository import StudyRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProvisioningOutcome:
    ok: bool
    user_id: int | None = None
    created: bool = False
    reason: str | None = None

    def to_result(self) -> dict[str, Any]:
        result: dict[str, Any] = {"ok": self.ok, "created": self.created}
        if self.user_id is not None:
            result["user_id"] = self.user_id
        if self.reason is not None:
            result["reason"] = self.reason
        return result


class ProvisioningWorker:
    """Create the account for an external identity exactly once."""

    def __init__(self, *, repository: StudyRepository) -> None:
        self.repository = repository

    def handle(self, data: Mapping[str, Any]) -> ProvisioningOutcome:
        email = _clean(data.get("email"))
        external_id = _clean(data.get("external_id"))
        if not email or not external_id:
            return ProvisioningOutcome(ok=False, reason="Missing email or external_id")

        existing = self.repository.get_user_by_external_id(external_id=external_id)
        if existing is not None:
            logger.info("Account for external_id=%s already exists", external_id)
            return ProvisioningOutcome(ok=True, user_id=existing.user_id, created=False)

        name = _clean(data.get("name")) or email.split("@", 1)[0]
        account, created = self.repository.create_user_with_bonus(
            UserAccountCreate(external_id=external_id, email=email, name=name),
        )
        if created:
            logger.info("Provisioned user_id=%s for external_id=%s", account.user_id, external_id)
        return ProvisioningOutcome(ok=True, user_id=account.user_id, created=created)


def _clean(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""
