from __future__ import annotations

import time

import allure
import httpx
import pytest

from durable_tasks.core.breaker import (
    BreakerBoard,
    BreakerPhase,
    CircuitBreaker,
    counts_as_dependency_failure,
)
from durable_tasks.core.errors import (
    BreakerOpenError,
    OperationTimeoutError,
    PermanentTaskError,
    RateLimitedError,
    TaskCancelledError,
    TransientTaskError,
)

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Circuit Breaker"),
]


class _Boom(ConnectionError):
    pass


def _fail() -> None:
    raise _Boom("dependency down")


def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(_Boom):
            breaker.execute(_fail)


def test_opens_after_consecutive_failures(clock) -> None:
    breaker = CircuitBreaker("api", failure_threshold=3, recovery_timeout_seconds=30, clock=clock)

    _trip(breaker, 2)
    assert breaker.phase == BreakerPhase.CLOSED
    _trip(breaker, 1)
    assert breaker.phase == BreakerPhase.OPEN
    assert breaker.consecutive_failures == 3


def test_success_resets_failure_count(clock) -> None:
    breaker = CircuitBreaker("api", failure_threshold=3, clock=clock)

    _trip(breaker, 2)
    assert breaker.execute(lambda: "ok") == "ok"
    _trip(breaker, 2)

    assert breaker.phase == BreakerPhase.CLOSED
    assert breaker.consecutive_failures == 2


def test_open_breaker_fails_fast_without_calling(clock) -> None:
    breaker = CircuitBreaker("api", failure_threshold=1, recovery_timeout_seconds=30, clock=clock)
    _trip(breaker, 1)
    calls: list[int] = []

    clock.advance(10)
    with pytest.raises(BreakerOpenError) as raised:
        breaker.execute(lambda: calls.append(1))

    assert calls == []
    assert raised.value.dependency == "api"
    assert raised.value.retry_after_seconds == pytest.approx(20.0)


def test_half_open_trial_success_closes(clock) -> None:
    breaker = CircuitBreaker("api", failure_threshold=1, recovery_timeout_seconds=30, clock=clock)
    _trip(breaker, 1)

    clock.advance(30)
    assert breaker.execute(lambda: 42) == 42

    assert breaker.phase == BreakerPhase.CLOSED
    assert breaker.consecutive_failures == 0


def test_half_open_trial_failure_reopens(clock) -> None:
    breaker = CircuitBreaker("api", failure_threshold=2, recovery_timeout_seconds=30, clock=clock)
    _trip(breaker, 2)

    clock.advance(31)
    _trip(breaker, 1)

    assert breaker.phase == BreakerPhase.OPEN
    assert breaker.retry_after_seconds() == pytest.approx(30.0)


def test_half_open_admits_a_single_trial(clock) -> None:
    breaker = CircuitBreaker("api", failure_threshold=1, recovery_timeout_seconds=5, clock=clock)
    _trip(breaker, 1)
    clock.advance(5)
    nested: list[Exception] = []

    def trial() -> str:
        # A concurrent caller arriving while the trial runs is refused.
        try:
            breaker.execute(lambda: "second")
        except BreakerOpenError as error:
            nested.append(error)
        return "first"

    assert breaker.execute(trial) == "first"
    assert len(nested) == 1
    assert breaker.phase == BreakerPhase.CLOSED


def _http_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.example.com/items")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ConnectionError("reset"), True),
        (TransientTaskError("upstream flaked"), True),
        (RateLimitedError("slow down", retry_after_seconds=5), True),
        (OperationTimeoutError("too slow"), True),
        (_http_error(503), True),
        (_http_error(404), False),
        (ValueError("bad payload"), False),
        (PermanentTaskError("bad input"), False),
        (TypeError("handler bug"), False),
        (RuntimeError("something odd"), False),
        (TaskCancelledError("draining"), False),
    ],
)
def test_only_dependency_failures_count(error: Exception, expected: bool) -> None:
    assert counts_as_dependency_failure(error) is expected


def test_non_dependency_errors_leave_breaker_closed(clock) -> None:
    breaker = CircuitBreaker("api", failure_threshold=1, clock=clock)

    def rejected() -> None:
        raise ValueError("bad input")

    for _ in range(3):
        with pytest.raises(ValueError, match="bad input"):
            breaker.execute(rejected)

    assert breaker.phase == BreakerPhase.CLOSED
    assert breaker.consecutive_failures == 0


def test_half_open_trial_with_non_dependency_error_frees_the_slot(clock) -> None:
    breaker = CircuitBreaker("api", failure_threshold=1, recovery_timeout_seconds=5, clock=clock)
    _trip(breaker, 1)
    clock.advance(5)

    with pytest.raises(PermanentTaskError):
        breaker.execute(_reject)

    assert breaker.phase == BreakerPhase.HALF_OPEN
    assert breaker.execute(lambda: "ok") == "ok"
    assert breaker.phase == BreakerPhase.CLOSED


def test_custom_failure_predicate(clock) -> None:
    breaker = CircuitBreaker(
        "api",
        failure_threshold=1,
        clock=clock,
        is_failure=lambda error: isinstance(error, PermanentTaskError),
    )

    with pytest.raises(_Boom):
        breaker.execute(_fail)
    assert breaker.phase == BreakerPhase.CLOSED

    with pytest.raises(PermanentTaskError):
        breaker.execute(_reject)
    assert breaker.phase == BreakerPhase.OPEN


def _reject() -> None:
    raise PermanentTaskError("bad input")


def test_timeout_counts_as_failure() -> None:
    breaker = CircuitBreaker("slow", failure_threshold=1, recovery_timeout_seconds=60)

    with pytest.raises(OperationTimeoutError):
        breaker.execute(lambda: time.sleep(0.5), timeout_seconds=0.05)

    assert breaker.phase == BreakerPhase.OPEN


def test_board_keeps_one_breaker_per_dependency(clock) -> None:
    board = BreakerBoard(failure_threshold=1, recovery_timeout_seconds=10, clock=clock)

    _trip(board.get("db"), 1)

    assert board.get("db") is board.get("db")
    assert board.get("db").phase == BreakerPhase.OPEN
    assert board.get("http").phase == BreakerPhase.CLOSED
    assert [snapshot.dependency for snapshot in board.snapshots()] == ["db", "http"]


def test_invalid_thresholds_are_rejected() -> None:
    with pytest.raises(ValueError, match="failure_threshold"):
        CircuitBreaker("api", failure_threshold=0)
    with pytest.raises(ValueError, match="recovery_timeout_seconds"):
        CircuitBreaker("api", recovery_timeout_seconds=-1)


def test_default_threshold_opens_after_five_failures(clock) -> None:
    breaker = CircuitBreaker("api", clock=clock)

    _trip(breaker, 4)
    assert breaker.phase == BreakerPhase.CLOSED
    _trip(breaker, 1)
    assert breaker.phase == BreakerPhase.OPEN


def test_timeout_fires_callback_and_does_not_block(clock) -> None:
    breaker = CircuitBreaker("slow", failure_threshold=5, clock=clock)
    released = []

    with pytest.raises(OperationTimeoutError):
        breaker.execute(
            lambda: time.sleep(0.5),
            timeout_seconds=0.05,
            on_timeout=lambda: released.append(True),
        )

    assert released == [True]
    assert breaker.consecutive_failures == 1
