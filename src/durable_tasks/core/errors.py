"""Exception types raised by handlers, the breaker and the task store."""

from __future__ import annotations


class TaskError(Exception):
    """Base class for errors a handler raises to steer classification."""


class TransientTaskError(TaskError):
    """Failure expected to clear up on its own (network blip, busy resource)."""


class RateLimitedError(TaskError):
    """Dependency asked the caller to slow down."""

    def __init__(self, message: str = "rate limited", *, retry_after_seconds: float | None = None):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class PermanentTaskError(TaskError):
    """Failure that will repeat on every attempt (bad input, rejected request)."""


class BreakerOpenError(Exception):
    """Circuit breaker refused the call.

    Not a task outcome: the worker returns the task to the queue without
    spending retry budget.
    """

    def __init__(self, dependency: str, *, retry_after_seconds: float) -> None:
        super().__init__(
            f"Circuit breaker open for {dependency!r}; retry in {retry_after_seconds:.1f}s",
        )
        self.dependency = dependency
        self.retry_after_seconds = retry_after_seconds


class OperationTimeoutError(TimeoutError):
    """Breaker-wrapped operation did not finish within its timeout."""


class StoreUnavailableError(RuntimeError):
    """Task store could not complete an operation; retry the operation as a whole."""


class DeadLetterNotFoundError(LookupError):
    """Dead-letter id is unknown."""


class HandlerNotFoundError(LookupError):
    """No handler is registered for a task type."""


class TaskCancelledError(Exception):
    """Handler stopped early: its worker is draining or gave up on the attempt.

    The task goes back to pending without spending retry budget.
    """
