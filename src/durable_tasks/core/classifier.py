"""Deterministic task failure classification for retry policy."""

from __future__ import annotations

import errno
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import httpx

from durable_tasks.core.errors import (
    HandlerNotFoundError,
    PermanentTaskError,
    RateLimitedError,
    TransientTaskError,
)
from durable_tasks.core.models import ErrorCategory

ERROR_CLASSIFIER_VERSION = 1

HTTP_TOO_MANY_REQUESTS = 429
HTTP_REQUEST_TIMEOUT = 408

_TRANSIENT_NETWORK_TYPES: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    httpx.TransportError,
)
_TRANSIENT_RESOURCE_TYPES: tuple[type[BaseException], ...] = (MemoryError,)
_TRANSIENT_RESOURCE_ERRNOS = frozenset(
    {errno.EAGAIN, errno.EBUSY, errno.EMFILE, errno.ENFILE, errno.ENOMEM},
)
_CODE_DEFECT_TYPES: tuple[type[BaseException], ...] = (
    HandlerNotFoundError,
    TypeError,
    AttributeError,
    NameError,
    AssertionError,
    NotImplementedError,
    ImportError,
    RecursionError,
)
_PERMANENT_INPUT_TYPES: tuple[type[BaseException], ...] = (ValueError,)

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate-limit",
    "throttl",
    "slow down",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "connection reset",
    "connection refused",
    "timed out",
    "timeout",
    "network error",
    "could not resolve host",
    "try again",
    "deadlock",
    "database is locked",
)
_PERMANENT_PATTERNS: tuple[str, ...] = (
    "invalid",
    "malformed",
    "not found",
    "unauthorized",
    "forbidden",
    "permission denied",
    "unsupported",
    "bad request",
)


@dataclass(slots=True)
class ErrorClassification:
    """Normalized failure classification result."""

    category: ErrorCategory
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None
    status_code: int | None = None
    retry_after_seconds: float | None = None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": ERROR_CLASSIFIER_VERSION,
            "category": self.category.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            "status_code": self.status_code,
            "retry_after_seconds": self.retry_after_seconds,
        }


def classify_error(error: BaseException) -> ErrorClassification:  # noqa: PLR0911
    """Map any failure to a category. Never raises.

    Rules apply in order: explicit exception kind, protocol status signal,
    message text heuristics, then ``unknown``.
    """

    if isinstance(error, RateLimitedError):
        return ErrorClassification(
            category=ErrorCategory.RATE_LIMITED,
            reason_code="rate_limited",
            matched_rule="explicit_kind",
            retry_after_seconds=_non_negative(error.retry_after_seconds),
        )
    if isinstance(error, PermanentTaskError):
        return ErrorClassification(
            category=ErrorCategory.PERMANENT,
            reason_code="permanent_explicit",
            matched_rule="explicit_kind",
        )
    if isinstance(error, TransientTaskError):
        return ErrorClassification(
            category=ErrorCategory.TRANSIENT,
            reason_code="transient_explicit",
            matched_rule="explicit_kind",
        )
    if isinstance(error, _TRANSIENT_NETWORK_TYPES):
        return ErrorClassification(
            category=ErrorCategory.TRANSIENT,
            reason_code="transient_network",
            matched_rule="explicit_kind",
        )
    if isinstance(error, _TRANSIENT_RESOURCE_TYPES) or (
        isinstance(error, OSError) and error.errno in _TRANSIENT_RESOURCE_ERRNOS
    ):
        return ErrorClassification(
            category=ErrorCategory.TRANSIENT,
            reason_code="transient_resource",
            matched_rule="explicit_kind",
        )
    if isinstance(error, _CODE_DEFECT_TYPES):
        return ErrorClassification(
            category=ErrorCategory.CODE_DEFECT,
            reason_code=f"code_defect_{type(error).__name__.lower()}",
            matched_rule="explicit_kind",
        )

    status_code = _status_code(error)
    if status_code is not None:
        by_status = _classify_status(error, status_code)
        if by_status is not None:
            return by_status

    if isinstance(error, _PERMANENT_INPUT_TYPES):
        return ErrorClassification(
            category=ErrorCategory.PERMANENT,
            reason_code="permanent_input",
            matched_rule="explicit_kind",
        )

    haystack = str(error).lower()
    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return ErrorClassification(
            category=ErrorCategory.RATE_LIMITED,
            reason_code="rate_limited_text",
            matched_rule="text_heuristic",
            matched_pattern=pattern,
        )
    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return ErrorClassification(
            category=ErrorCategory.TRANSIENT,
            reason_code="transient_text",
            matched_rule="text_heuristic",
            matched_pattern=pattern,
        )
    pattern = _first_match(haystack, _PERMANENT_PATTERNS)
    if pattern is not None:
        return ErrorClassification(
            category=ErrorCategory.PERMANENT,
            reason_code="permanent_text",
            matched_rule="text_heuristic",
            matched_pattern=pattern,
        )

    return ErrorClassification(
        category=ErrorCategory.UNKNOWN,
        reason_code=f"unknown_{type(error).__name__.lower()}",
        matched_rule="fallback_unknown",
    )


def _classify_status(error: BaseException, status_code: int) -> ErrorClassification | None:
    if status_code == HTTP_TOO_MANY_REQUESTS:
        return ErrorClassification(
            category=ErrorCategory.RATE_LIMITED,
            reason_code="rate_limited_status",
            matched_rule="protocol_status",
            status_code=status_code,
            retry_after_seconds=_retry_after(error),
        )
    if status_code == HTTP_REQUEST_TIMEOUT or 500 <= status_code <= 599:  # noqa: PLR2004
        return ErrorClassification(
            category=ErrorCategory.TRANSIENT,
            reason_code="transient_status",
            matched_rule="protocol_status",
            status_code=status_code,
        )
    if 400 <= status_code <= 499:  # noqa: PLR2004
        return ErrorClassification(
            category=ErrorCategory.PERMANENT,
            reason_code="permanent_status",
            matched_rule="protocol_status",
            status_code=status_code,
        )
    return None


def _status_code(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _retry_after(error: BaseException) -> float | None:
    for attr in ("retry_after_seconds", "retry_after"):
        value = getattr(error, attr, None)
        if isinstance(value, int | float) and not isinstance(value, bool):
            return _non_negative(float(value))

    headers = None
    if isinstance(error, httpx.HTTPStatusError):
        headers = error.response.headers
    else:
        headers = getattr(error, "headers", None)
    if headers is None:
        return None
    try:
        raw = headers.get("Retry-After")
    except AttributeError:
        return None
    if raw is None:
        return None
    return parse_retry_after(str(raw))


def parse_retry_after(value: str, *, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header given either as seconds or an HTTP date."""

    token = value.strip()
    if not token:
        return None
    try:
        return _non_negative(float(token))
    except ValueError:
        pass
    try:
        moment = parsedate_to_datetime(token)
    except (TypeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    reference = now or datetime.now(tz=UTC)
    return max(0.0, (moment - reference).total_seconds())


def _non_negative(value: float | None) -> float | None:
    if value is None:
        return None
    number = float(value)
    if not math.isfinite(number):
        return None
    return max(0.0, number)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
