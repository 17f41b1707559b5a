"""Task handler registry resolved once at worker startup."""

from __future__ import annotations

import importlib
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from durable_tasks.core.errors import HandlerNotFoundError, TaskCancelledError
from durable_tasks.core.models import TaskView

CANCEL_CHECK_SECONDS = 0.05


class ProgressSink(Protocol):
    def __call__(self, *, task_id: str, percent: int, message: str | None) -> None: ...


@dataclass(slots=True)
class TaskContext:
    """Everything a handler may touch while executing one task.

    ``stop_event`` is shared by the whole worker and fires on drain;
    ``attempt_cancel`` belongs to this attempt alone and fires when the
    worker stops waiting for it (handler timeout).
    """

    task: TaskView
    worker_id: str
    stop_event: threading.Event
    attempt_cancel: threading.Event = field(default_factory=threading.Event)
    progress_sink: ProgressSink | None = None
    progress_min_interval_seconds: float = 1.0
    clock: Callable[[], float] = time.monotonic
    _last_progress_at: float | None = field(default=None, init=False)
    _last_progress_percent: int | None = field(default=None, init=False)

    @property
    def payload(self) -> dict[str, Any]:
        return self.task.payload

    @property
    def cancelled(self) -> bool:
        """True once the worker started draining or gave up on this attempt."""

        return self.stop_event.is_set() or self.attempt_cancel.is_set()

    def raise_if_cancelled(self) -> None:
        if self.attempt_cancel.is_set():
            raise TaskCancelledError(f"Attempt on task {self.task.task_id} was abandoned")
        if self.stop_event.is_set():
            raise TaskCancelledError(f"Worker {self.worker_id} is draining")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``, waking early on cancellation.

        Returns whether the attempt is cancelled.
        """

        deadline = time.monotonic() + max(0.0, seconds)
        while not self.cancelled:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self.attempt_cancel.wait(min(remaining, CANCEL_CHECK_SECONDS))
        return True

    def report_progress(self, percent: int, message: str | None = None) -> bool:
        """Persist progress, throttled to one write per interval.

        Reaching 100% always goes through. Returns whether a write happened.
        """

        if self.progress_sink is None:
            return False
        bounded = max(0, min(100, int(percent)))
        now = self.clock()
        if (
            bounded < 100  # noqa: PLR2004
            and self._last_progress_at is not None
            and now - self._last_progress_at < self.progress_min_interval_seconds
        ):
            return False
        if bounded == self._last_progress_percent:
            return False
        self.progress_sink(task_id=self.task.task_id, percent=bounded, message=message)
        self._last_progress_at = now
        self._last_progress_percent = bounded
        return True


TaskHandler = Callable[[TaskContext], object]


@dataclass(slots=True, frozen=True)
class HandlerSpec:
    """Registered handler with its execution policy."""

    task_type: str
    handler: TaskHandler
    dependency: str | Callable[[TaskView], str] | None = None
    timeout_seconds: float | None = None

    def dependency_for(self, task: TaskView) -> str | None:
        """Breaker key for ``task``; ``None`` runs without a breaker."""

        if self.dependency is None:
            return None
        if callable(self.dependency):
            return self.dependency(task)
        return self.dependency


class HandlerRegistry:
    """Maps task-type tags to handlers; new types are added by registration."""

    def __init__(self) -> None:
        self._specs: dict[str, HandlerSpec] = {}

    def register(
        self,
        task_type: str,
        handler: TaskHandler,
        *,
        dependency: str | Callable[[TaskView], str] | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        if not task_type.strip():
            raise ValueError("task_type must be a non-empty string")
        if task_type in self._specs:
            raise ValueError(f"Handler already registered for task type {task_type!r}")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._specs[task_type] = HandlerSpec(
            task_type=task_type,
            handler=handler,
            dependency=dependency,
            timeout_seconds=timeout_seconds,
        )

    def handler(
        self,
        task_type: str,
        *,
        dependency: str | Callable[[TaskView], str] | None = None,
        timeout_seconds: float | None = None,
    ) -> Callable[[TaskHandler], TaskHandler]:
        """Decorator form of :meth:`register`."""

        def _decorate(func: TaskHandler) -> TaskHandler:
            self.register(
                task_type,
                func,
                dependency=dependency,
                timeout_seconds=timeout_seconds,
            )
            return func

        return _decorate

    def resolve(self, task_type: str) -> HandlerSpec:
        entry = self._specs.get(task_type)
        if entry is None:
            raise HandlerNotFoundError(f"No handler registered for task type {task_type!r}")
        return entry

    def capabilities(self) -> frozenset[str]:
        return frozenset(self._specs)

    def merge(self, other: HandlerRegistry) -> None:
        for entry in other._specs.values():
            self.register(
                entry.task_type,
                entry.handler,
                dependency=entry.dependency,
                timeout_seconds=entry.timeout_seconds,
            )

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._specs

    def __len__(self) -> int:
        return len(self._specs)


def load_registry(references: Iterable[str]) -> HandlerRegistry:
    """Build one registry from ``module:attribute`` references.

    Each attribute must be a :class:`HandlerRegistry`.
    """

    combined = HandlerRegistry()
    for reference in references:
        module_name, sep, attribute = reference.partition(":")
        if not sep or not module_name or not attribute:
            raise ValueError(
                f"Invalid handler reference {reference!r}. Expected '<module>:<attribute>'.",
            )
        module = importlib.import_module(module_name)
        registry = getattr(module, attribute, None)
        if not isinstance(registry, HandlerRegistry):
            raise TypeError(f"{reference!r} is not a HandlerRegistry")
        combined.merge(registry)
    return combined
