from __future__ import annotations

import errno
from datetime import UTC, datetime

import allure
import httpx
import pytest

from durable_tasks.core.classifier import (
    ERROR_CLASSIFIER_VERSION,
    classify_error,
    parse_retry_after,
)
from durable_tasks.core.errors import (
    HandlerNotFoundError,
    PermanentTaskError,
    RateLimitedError,
    TransientTaskError,
)
from durable_tasks.core.models import ErrorCategory

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Error Classification"),
]


class _StatusError(Exception):
    def __init__(self, status_code: int, headers: dict[str, str] | None = None) -> None:
        super().__init__(f"upstream returned {status_code}")
        self.status_code = status_code
        self.headers = headers or {}


def _http_status_error(status_code: int, headers: dict[str, str] | None = None) -> Exception:
    request = httpx.Request("GET", "https://api.example.com/items")
    response = httpx.Response(status_code, headers=headers, request=request)
    return httpx.HTTPStatusError("boom", request=request, response=response)


def test_classifier_version_is_stable() -> None:
    assert ERROR_CLASSIFIER_VERSION == 1


def test_explicit_kinds_win_over_message_text() -> None:
    assert classify_error(TransientTaskError("invalid input")).category == ErrorCategory.TRANSIENT
    assert classify_error(PermanentTaskError("timeout")).category == ErrorCategory.PERMANENT

    rate_limited = classify_error(RateLimitedError(retry_after_seconds=12.5))
    assert rate_limited.category == ErrorCategory.RATE_LIMITED
    assert rate_limited.retry_after_seconds == 12.5
    assert rate_limited.matched_rule == "explicit_kind"


@pytest.mark.parametrize(
    "error",
    [
        ConnectionResetError("reset by peer"),
        TimeoutError("read timed out"),
        httpx.ConnectError("connection refused"),
        OSError(errno.EAGAIN, "resource temporarily unavailable"),
        MemoryError(),
    ],
)
def test_network_and_resource_failures_are_transient(error: Exception) -> None:
    assert classify_error(error).category == ErrorCategory.TRANSIENT


@pytest.mark.parametrize(
    "error",
    [
        TypeError("unsupported operand"),
        AttributeError("'NoneType' object has no attribute 'x'"),
        NotImplementedError("later"),
    ],
)
def test_programming_errors_are_code_defects(error: Exception) -> None:
    classified = classify_error(error)
    assert classified.category == ErrorCategory.CODE_DEFECT
    assert classified.reason_code == f"code_defect_{type(error).__name__.lower()}"


def test_key_error_is_not_a_code_defect() -> None:
    assert classify_error(KeyError("missing")).category == ErrorCategory.UNKNOWN


def test_missing_handler_is_code_defect() -> None:
    classified = classify_error(HandlerNotFoundError("No handler registered for task type 'x'"))
    assert classified.category == ErrorCategory.CODE_DEFECT


def test_http_status_mapping() -> None:
    assert classify_error(_http_status_error(503)).category == ErrorCategory.TRANSIENT
    assert classify_error(_http_status_error(408)).category == ErrorCategory.TRANSIENT
    assert classify_error(_http_status_error(404)).category == ErrorCategory.PERMANENT

    throttled = classify_error(_http_status_error(429, headers={"Retry-After": "30"}))
    assert throttled.category == ErrorCategory.RATE_LIMITED
    assert throttled.status_code == 429
    assert throttled.retry_after_seconds == 30.0


def test_status_attribute_on_foreign_exceptions() -> None:
    classified = classify_error(_StatusError(429, headers={"Retry-After": "7"}))
    assert classified.category == ErrorCategory.RATE_LIMITED
    assert classified.retry_after_seconds == 7.0
    assert classify_error(_StatusError(502)).category == ErrorCategory.TRANSIENT


def test_value_error_is_permanent_input() -> None:
    classified = classify_error(ValueError("bad payload"))
    assert classified.category == ErrorCategory.PERMANENT
    assert classified.reason_code == "permanent_input"


def test_text_heuristics_apply_in_order() -> None:
    rate = classify_error(RuntimeError("Too Many Requests, slow down"))
    assert rate.category == ErrorCategory.RATE_LIMITED
    assert rate.matched_pattern == "too many requests"

    transient = classify_error(RuntimeError("service unavailable, try again"))
    assert transient.category == ErrorCategory.TRANSIENT
    assert transient.matched_rule == "text_heuristic"

    permanent = classify_error(RuntimeError("request forbidden"))
    assert permanent.category == ErrorCategory.PERMANENT
    assert permanent.matched_pattern == "forbidden"


def test_unmatched_failure_is_unknown_and_never_raises() -> None:
    classified = classify_error(RuntimeError("something odd"))
    assert classified.category == ErrorCategory.UNKNOWN
    assert classified.reason_code == "unknown_runtimeerror"
    assert classified.matched_rule == "fallback_unknown"
    assert classified.to_event_details()["classifier_version"] == ERROR_CLASSIFIER_VERSION


def test_parse_retry_after_accepts_seconds_and_http_dates() -> None:
    now = datetime(2026, 10, 18, 12, 0, 0, tzinfo=UTC)
    assert parse_retry_after("120") == 120.0
    assert parse_retry_after("-5") == 0.0
    assert parse_retry_after("Sun, 18 Oct 2026 12:01:30 GMT", now=now) == 90.0
    assert parse_retry_after("Sun, 18 Oct 2026 11:00:00 GMT", now=now) == 0.0
    assert parse_retry_after("soon") is None
    assert parse_retry_after("") is None


@pytest.mark.parametrize("raw", ["inf", "Infinity", "-inf", "nan"])
def test_parse_retry_after_ignores_non_finite_values(raw: str) -> None:
    assert parse_retry_after(raw) is None


def test_non_finite_retry_hints_are_dropped() -> None:
    explicit = classify_error(RateLimitedError("slow down", retry_after_seconds=float("inf")))
    header = classify_error(_http_status_error(429, {"Retry-After": "inf"}))

    assert explicit.category == ErrorCategory.RATE_LIMITED
    assert explicit.retry_after_seconds is None
    assert header.category == ErrorCategory.RATE_LIMITED
    assert header.retry_after_seconds is None
