"""Per-process circuit breakers guarding task dependencies.

Breaker state lives in worker memory only. Each worker process builds its
own :class:`BreakerBoard`, so a single degraded worker never opens the
circuit for the rest of the fleet, and a restart starts from ``closed``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from durable_tasks.core.classifier import classify_error
from durable_tasks.core.errors import BreakerOpenError, OperationTimeoutError, TaskCancelledError
from durable_tasks.core.models import ErrorCategory

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RECOVERY_TIMEOUT_SECONDS = 30.0

_DEPENDENCY_FAILURE_CATEGORIES = frozenset({ErrorCategory.TRANSIENT, ErrorCategory.RATE_LIMITED})


def counts_as_dependency_failure(error: Exception) -> bool:
    """Whether an error says something about the health of the dependency.

    Bad input and handler defects fail the same way against a healthy
    dependency, and a cancellation is no failure at all. Only transient and
    rate-limited outcomes count.
    """

    if isinstance(error, TaskCancelledError):
        return False
    if isinstance(error, OperationTimeoutError):
        return True
    return classify_error(error).category in _DEPENDENCY_FAILURE_CATEGORIES


class BreakerPhase(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class BreakerSnapshot:
    """Point-in-time view of one breaker for logging and CLI output."""

    dependency: str
    phase: BreakerPhase
    consecutive_failures: int
    last_failure_at: float | None


class CircuitBreaker:
    """Fail-fast guard for one dependency inside one worker process."""

    def __init__(
        self,
        dependency: str,
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_timeout_seconds: float = DEFAULT_RECOVERY_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        is_failure: Callable[[Exception], bool] = counts_as_dependency_failure,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if recovery_timeout_seconds < 0:
            raise ValueError("recovery_timeout_seconds must be >= 0")
        self.dependency = dependency
        self.failure_threshold = failure_threshold
        self.recovery_timeout_seconds = recovery_timeout_seconds
        self.is_failure = is_failure
        self._clock = clock
        self._phase = BreakerPhase.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: float | None = None
        self._trial_in_flight = False

    @property
    def phase(self) -> BreakerPhase:
        return self._phase

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def snapshot(self) -> BreakerSnapshot:
        return BreakerSnapshot(
            dependency=self.dependency,
            phase=self._phase,
            consecutive_failures=self._consecutive_failures,
            last_failure_at=self._last_failure_at,
        )

    def retry_after_seconds(self) -> float:
        """Seconds until an open breaker admits its trial call."""

        if self._phase != BreakerPhase.OPEN or self._last_failure_at is None:
            return 0.0
        elapsed = self._clock() - self._last_failure_at
        return max(0.0, self.recovery_timeout_seconds - elapsed)

    def execute(
        self,
        operation: Callable[[], T],
        *,
        timeout_seconds: float | None = None,
        on_timeout: Callable[[], None] | None = None,
    ) -> T:
        """Run ``operation`` through the breaker.

        Raises :class:`BreakerOpenError` without calling ``operation`` while
        open. A call exceeding ``timeout_seconds`` counts as a failure, fires
        ``on_timeout`` and raises :class:`OperationTimeoutError`. Other errors
        count only when ``is_failure`` accepts them; either way they propagate.
        """

        self._before_call()
        try:
            result = run_with_timeout(
                operation,
                timeout_seconds=timeout_seconds,
                on_timeout=on_timeout,
            )
        except Exception as error:
            if self.is_failure(error):
                self._on_failure()
            else:
                self._trial_in_flight = False
            raise
        self._on_success()
        return result

    def _before_call(self) -> None:
        if self._phase == BreakerPhase.CLOSED:
            return
        if self._phase == BreakerPhase.OPEN:
            remaining = self.retry_after_seconds()
            if remaining > 0:
                raise BreakerOpenError(self.dependency, retry_after_seconds=remaining)
            self._phase = BreakerPhase.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit breaker half-open (dependency=%s).", self.dependency)
        if self._trial_in_flight:
            raise BreakerOpenError(
                self.dependency,
                retry_after_seconds=self.recovery_timeout_seconds,
            )
        self._trial_in_flight = True

    def _on_success(self) -> None:
        if self._phase == BreakerPhase.HALF_OPEN:
            logger.info(
                "Circuit breaker closed after trial success (dependency=%s).",
                self.dependency,
            )
        self._phase = BreakerPhase.CLOSED
        self._consecutive_failures = 0
        self._trial_in_flight = False

    def _on_failure(self) -> None:
        self._consecutive_failures += 1
        self._last_failure_at = self._clock()
        if self._phase == BreakerPhase.HALF_OPEN:
            self._phase = BreakerPhase.OPEN
            self._trial_in_flight = False
            logger.warning(
                "Circuit breaker re-opened after failed trial (dependency=%s).",
                self.dependency,
            )
            return
        if self._consecutive_failures >= self.failure_threshold:
            self._phase = BreakerPhase.OPEN
            logger.warning(
                "Circuit breaker opened (dependency=%s consecutive_failures=%d).",
                self.dependency,
                self._consecutive_failures,
            )


class BreakerBoard:
    """Lazily created breakers keyed by dependency, owned by one worker."""

    def __init__(
        self,
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_timeout_seconds: float = DEFAULT_RECOVERY_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        is_failure: Callable[[Exception], bool] = counts_as_dependency_failure,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout_seconds = recovery_timeout_seconds
        self.is_failure = is_failure
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, dependency: str) -> CircuitBreaker:
        breaker = self._breakers.get(dependency)
        if breaker is None:
            breaker = CircuitBreaker(
                dependency,
                failure_threshold=self.failure_threshold,
                recovery_timeout_seconds=self.recovery_timeout_seconds,
                clock=self._clock,
                is_failure=self.is_failure,
            )
            self._breakers[dependency] = breaker
        return breaker

    def snapshots(self) -> list[BreakerSnapshot]:
        return [self._breakers[key].snapshot() for key in sorted(self._breakers)]


def run_with_timeout(
    operation: Callable[[], T],
    *,
    timeout_seconds: float | None,
    on_timeout: Callable[[], None] | None = None,
) -> T:
    """Run ``operation`` and give up waiting after ``timeout_seconds``.

    Python threads cannot be killed: on timeout ``on_timeout`` tells the
    operation to stop and the daemon thread is left to wind down on its own.
    """

    if timeout_seconds is None:
        return operation()
    outcome: dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["result"] = operation()
        except Exception as error:  # noqa: BLE001
            outcome["error"] = error

    thread = threading.Thread(target=_target, name="breaker-call", daemon=True)
    thread.start()
    thread.join(timeout_seconds)
    if thread.is_alive():
        if on_timeout is not None:
            on_timeout()
        raise OperationTimeoutError(f"Operation exceeded timeout of {timeout_seconds:.1f}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]
