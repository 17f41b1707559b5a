"""Failure resolution: classify, schedule a retry or dead-letter."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from durable_tasks.core.classifier import classify_error
from durable_tasks.core.errors import StoreUnavailableError
from durable_tasks.core.models import (
    ErrorCategory,
    FailOutcome,
    FailureResolution,
    TaskView,
)
from durable_tasks.core.retry import RetryPolicy, decide_retry
from durable_tasks.queue.repository import TaskStore

logger = logging.getLogger(__name__)
alert_logger = logging.getLogger("durable_tasks.alerts")

T = TypeVar("T")


class TaskQueueService:
    """Resolves failed attempts against the store using the retry policy."""

    def __init__(
        self,
        *,
        store: TaskStore,
        policy: RetryPolicy | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.policy = policy or RetryPolicy()
        self._rng = rng or random.Random()  # noqa: S311

    def fail(self, *, task: TaskView, worker_id: str | None, error: BaseException) -> FailOutcome:
        """Record a failed attempt of a task claimed by ``worker_id``.

        Retryable categories with budget left go back to pending with a
        jittered delay; everything else lands in the dead-letter store.
        ``LOST`` means the claim was taken away meanwhile and nothing changed.
        """

        classification = classify_error(error)
        category = classification.category
        message = describe_error(error)
        if category == ErrorCategory.UNKNOWN:
            logger.warning(
                "Unclassified task failure (task_id=%s type=%s error=%s).",
                task.task_id,
                task.task_type,
                message,
            )

        decision = decide_retry(
            category=category,
            retry_count=task.retry_count,
            max_retries=task.max_retries,
            policy=self.policy,
            suggested_delay_seconds=classification.retry_after_seconds,
            rng=self._rng,
        )
        details = classification.to_event_details()
        details["decision_reason"] = decision.reason

        if decision.retry:
            scheduled_at = self.store.reschedule(
                task_id=task.task_id,
                worker_id=worker_id,
                delay_seconds=decision.delay_seconds,
                error=message,
                category=category,
                details=details,
            )
            if scheduled_at is None:
                return FailOutcome(
                    resolution=FailureResolution.LOST,
                    category=category,
                    reason="claim_lost",
                )
            logger.info(
                "Task retry scheduled (task_id=%s category=%s retry=%d/%d delay=%.2fs).",
                task.task_id,
                category.value,
                task.retry_count + 1,
                task.max_retries,
                decision.delay_seconds,
            )
            return FailOutcome(
                resolution=FailureResolution.RESCHEDULED,
                category=category,
                delay_seconds=decision.delay_seconds,
                reason=decision.reason,
            )

        alert: dict[str, object] | None = None
        if category == ErrorCategory.CODE_DEFECT:
            alert = {"reason_code": classification.reason_code, "error": message}
        dead_letter_id = self.store.move_to_dead_letter(
            task_id=task.task_id,
            worker_id=worker_id,
            final_error=message,
            category=category,
            details=details,
            alert=alert,
        )
        if dead_letter_id is None:
            return FailOutcome(
                resolution=FailureResolution.LOST,
                category=category,
                reason="claim_lost",
            )
        if alert is not None:
            alert_logger.critical(
                "Handler defect, task dead-lettered without retry "
                "(task_id=%s type=%s reason=%s dead_letter_id=%s): %s",
                task.task_id,
                task.task_type,
                classification.reason_code,
                dead_letter_id,
                message,
            )
        return FailOutcome(
            resolution=FailureResolution.DEAD_LETTERED,
            category=category,
            dead_letter_id=dead_letter_id,
            reason=decision.reason,
        )


def describe_error(error: BaseException) -> str:
    text = str(error).strip()
    name = type(error).__name__
    return f"{name}: {text}" if text else name


def retry_store_operation(
    operation: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay_seconds: float = 0.2,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run a store call, retrying with jittered backoff while the store is unavailable."""

    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except StoreUnavailableError as error:
            if attempt == attempts:
                raise
            delay = random.uniform(0, base_delay_seconds * (2 ** (attempt - 1)))  # noqa: S311
            logger.warning(
                "Task store unavailable, retrying in %.2fs (attempt %d/%d): %s",
                delay,
                attempt,
                attempts,
                error,
            )
            sleep(delay)
    raise AssertionError("unreachable")
