"""Retry scheduling: exponential backoff with full jitter."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass

from durable_tasks.core.models import ErrorCategory

DEFAULT_BASE_DELAY_SECONDS = 2.0
DEFAULT_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY_SECONDS = 3600.0
DEFAULT_UNKNOWN_MAX_RETRIES = 1
DEFAULT_MAX_SUGGESTED_DELAY_SECONDS = 86_400.0


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Backoff parameters shared by every task type."""

    base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS
    multiplier: float = DEFAULT_MULTIPLIER
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS
    unknown_max_retries: int = DEFAULT_UNKNOWN_MAX_RETRIES
    max_suggested_delay_seconds: float = DEFAULT_MAX_SUGGESTED_DELAY_SECONDS

    def ceiling(self, retry_count: int) -> float:
        """Upper bound of the jittered delay for a task that has retried ``retry_count`` times."""

        exponent = max(retry_count, 0)
        try:
            raw = self.base_delay_seconds * (self.multiplier**exponent)
        except OverflowError:
            return self.max_delay_seconds
        return max(0.0, min(self.max_delay_seconds, raw))


@dataclass(slots=True, frozen=True)
class RetryDecision:
    """Scheduler verdict for one failed attempt."""

    retry: bool
    delay_seconds: float = 0.0
    reason: str = ""

    @property
    def terminal(self) -> bool:
        return not self.retry


def decide_retry(  # noqa: PLR0913
    *,
    category: ErrorCategory,
    retry_count: int,
    max_retries: int,
    policy: RetryPolicy,
    suggested_delay_seconds: float | None = None,
    rng: random.Random | None = None,
) -> RetryDecision:
    """Decide between a delayed retry and terminal failure. Never raises.

    ``retry_count`` is the count before this failure is recorded, so the
    first retry uses exponent 0.
    """

    if category in {ErrorCategory.PERMANENT, ErrorCategory.CODE_DEFECT}:
        return RetryDecision(retry=False, reason=f"{category.value}_failure")

    budget = max_retries
    if category == ErrorCategory.UNKNOWN:
        budget = min(max_retries, policy.unknown_max_retries)
    if retry_count + 1 > budget:
        return RetryDecision(retry=False, reason="retry_budget_exhausted")

    if (
        category == ErrorCategory.RATE_LIMITED
        and suggested_delay_seconds is not None
        and math.isfinite(suggested_delay_seconds)
    ):
        suggested = max(0.0, suggested_delay_seconds)
        if suggested > policy.max_suggested_delay_seconds:
            return RetryDecision(
                retry=True,
                delay_seconds=policy.max_suggested_delay_seconds,
                reason="server_suggested_delay_capped",
            )
        return RetryDecision(retry=True, delay_seconds=suggested, reason="server_suggested_delay")

    capped = policy.ceiling(retry_count)
    generator = rng or random  # noqa: S311
    return RetryDecision(
        retry=True,
        delay_seconds=generator.uniform(0, capped),
        reason="exponential_full_jitter",
    )
