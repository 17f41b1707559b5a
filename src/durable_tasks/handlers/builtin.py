"""Handlers shipped with the package, useful for smoke tests and demos."""

from __future__ import annotations

import json
import logging
import time
from urllib.parse import urlparse

import httpx

from durable_tasks import __version__
from durable_tasks.core.errors import PermanentTaskError, RateLimitedError, TransientTaskError
from durable_tasks.core.models import TaskView
from durable_tasks.core.registry import HandlerRegistry, TaskContext

logger = logging.getLogger(__name__)

REGISTRY = HandlerRegistry()

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = f"durable-tasks/{__version__}"
SLEEP_STEP_SECONDS = 0.1

_ECHO_FAILURES: dict[str, type[Exception]] = {
    "transient": TransientTaskError,
    "permanent": PermanentTaskError,
    "rate_limited": RateLimitedError,
    "defect": TypeError,
    "unknown": RuntimeError,
}


@REGISTRY.handler("echo")
def echo(context: TaskContext) -> str:
    """Return the payload as JSON; ``{"fail": "<kind>"}`` raises instead."""

    kind = context.payload.get("fail")
    if kind is not None:
        error_type = _ECHO_FAILURES.get(str(kind))
        if error_type is None:
            raise PermanentTaskError(f"Unsupported echo failure kind: {kind!r}")
        raise error_type(f"echo asked to fail ({kind})")
    return json.dumps(context.payload, ensure_ascii=False, sort_keys=True)


@REGISTRY.handler("sleep")
def sleep(context: TaskContext) -> str:
    """Sleep ``seconds`` while reporting progress; stops early once cancelled."""

    raw = context.payload.get("seconds", 1.0)
    try:
        seconds = float(raw)
    except (TypeError, ValueError) as error:
        raise PermanentTaskError(f"Invalid seconds value: {raw!r}") from error
    if seconds < 0:
        raise PermanentTaskError("seconds must be >= 0")

    started = time.monotonic()
    while True:
        context.raise_if_cancelled()
        elapsed = time.monotonic() - started
        if elapsed >= seconds:
            break
        context.report_progress(int(elapsed * 100 / seconds) if seconds else 100)
        context.wait(min(SLEEP_STEP_SECONDS, seconds - elapsed))
    context.report_progress(100, "done")
    return f"slept {seconds:.2f}s"


def _http_dependency(task: TaskView) -> str:
    host = urlparse(str(task.payload.get("url", ""))).netloc.lower()
    return f"http:{host or 'unknown'}"


@REGISTRY.handler("http.get", dependency=_http_dependency, timeout_seconds=120.0)
def http_get(context: TaskContext) -> str:
    """Fetch ``url``; non-2xx responses raise and are classified by status code."""

    url = str(context.payload.get("url", "")).strip()
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise PermanentTaskError(
            f"Invalid URL: {url!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
    timeout_seconds = float(context.payload.get("timeout_seconds", DEFAULT_HTTP_TIMEOUT_SECONDS))

    with httpx.Client(
        timeout=httpx.Timeout(timeout_seconds, connect=10.0),
        headers={"User-Agent": DEFAULT_USER_AGENT},
        follow_redirects=True,
    ) as client:
        response = client.get(url)
        response.raise_for_status()
    logger.debug("Fetched %s (status=%d bytes=%d)", url, response.status_code, len(response.content))
    return f"HTTP {response.status_code} ({len(response.content)} bytes)"
