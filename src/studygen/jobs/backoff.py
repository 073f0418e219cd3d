"""Deterministic failure classification and backoff schedule for generation retries."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta

MAX_ATTEMPTS = 3
BASE_DELAY = timedelta(seconds=5)

_TRANSIENT_PATTERN = re.compile(
    r"503|429|overloaded|temporar|timeout|timed\s*out|try again|unavailable|quota",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class FailureClassification:
    """Normalized retry decision for one failed attempt."""

    transient: bool
    matched_rule: str
    matched_pattern: str | None

    def to_details(self) -> dict[str, object]:
        return {
            "transient": self.transient,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(error: BaseException | str | None) -> FailureClassification:
    """Classify an attempt failure into transient (retry) or permanent.

    Errors carrying an explicit ``transient`` flag (``GenerationError``) are
    classified by that flag; everything else by the message pattern set.
    """

    match = _TRANSIENT_PATTERN.search(str(error or ""))
    pattern = match.group(0).lower() if match is not None else None
    hint = getattr(error, "transient", None)
    if isinstance(hint, bool):
        return FailureClassification(
            transient=hint,
            matched_rule="transient_hint" if hint else "permanent_hint",
            matched_pattern=pattern,
        )
    if pattern is not None:
        return FailureClassification(
            transient=True,
            matched_rule="transient_pattern",
            matched_pattern=pattern,
        )
    return FailureClassification(
        transient=False,
        matched_rule="fallback_permanent",
        matched_pattern=None,
    )


def is_transient(error: BaseException | str | None) -> bool:
    """True when the failure is worth retrying after a delay."""

    return classify_failure(error).transient


def backoff_duration(attempt: int) -> timedelta:
    """Delay before the attempt after `attempt` (1-indexed): 5s, 10s, 20s, ..."""

    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return BASE_DELAY * (2 ** (attempt - 1))
