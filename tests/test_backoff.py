from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from studygen.generator.base import GenerationError
from studygen.jobs.backoff import (
    BASE_DELAY,
    MAX_ATTEMPTS,
    backoff_duration,
    classify_failure,
    is_transient,
)
from studygen.jobs.clock import SystemClock

pytestmark = [
    allure.epic("Study Generation"),
    allure.feature("Retry Policy"),
]


def test_retry_budget_constants_are_stable() -> None:
    assert MAX_ATTEMPTS == 3
    assert BASE_DELAY == timedelta(seconds=5)


@pytest.mark.parametrize(
    "message",
    [
        "HTTP 503 Service Unavailable",
        "429 Too Many Requests",
        "The model is overloaded",
        "Temporary failure in name resolution",
        "Gemini request timeout: read",
        "connection timed out",
        "Please try again later",
        "Resource has been exhausted (e.g. check QUOTA).",
    ],
)
def test_transient_messages_are_retried(message: str) -> None:
    assert is_transient(RuntimeError(message))
    assert is_transient(message)


@pytest.mark.parametrize(
    "message",
    ["HTTP 400 invalid argument", "API key not valid", "Permission denied", ""],
)
def test_other_messages_are_permanent(message: str) -> None:
    assert not is_transient(RuntimeError(message))


def test_none_is_permanent() -> None:
    assert classify_failure(None).matched_rule == "fallback_permanent"


def test_explicit_permanent_flag_wins_over_pattern() -> None:
    error = GenerationError("Generator returned non-JSON output: timeout in text", transient=False)

    classified = classify_failure(error)

    assert classified.transient is False
    assert classified.matched_rule == "permanent_hint"
    assert classified.matched_pattern == "timeout"


def test_explicit_transient_flag_is_honored_without_pattern() -> None:
    classified = classify_failure(GenerationError("connection reset by peer", transient=True))

    assert classified.transient is True
    assert classified.to_details() == {
        "transient": True,
        "matched_rule": "transient_hint",
        "matched_pattern": None,
    }


def test_pattern_match_reports_rule_and_pattern() -> None:
    classified = classify_failure(RuntimeError("Upstream OVERLOADED"))

    assert classified.transient is True
    assert classified.matched_rule == "transient_pattern"
    assert classified.matched_pattern == "overloaded"


def test_backoff_schedule_doubles_from_five_seconds() -> None:
    assert [backoff_duration(attempt) for attempt in (1, 2, 3)] == [
        timedelta(seconds=5),
        timedelta(seconds=10),
        timedelta(seconds=20),
    ]


@pytest.mark.parametrize("attempt", [0, -1])
def test_backoff_rejects_non_positive_attempt(attempt: int) -> None:
    with pytest.raises(ValueError, match="attempt must be >= 1"):
        backoff_duration(attempt)


def test_system_clock_sleep_is_cut_short_by_stop_request() -> None:
    clock = SystemClock()

    assert clock.sleep(timedelta(0)) is True
    clock.request_stop()
    assert clock.sleep(timedelta(hours=1)) is False
