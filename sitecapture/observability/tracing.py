"""Tracing helpers for fetch and job processing stages."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars


def _logger():
    return structlog.get_logger("sitecapture.trace")


def set_context(*, job_id: str, job_kind: str, owner: Optional[str] = None) -> None:
    bind_contextvars(job_id=job_id, job_kind=job_kind, owner=owner)
    _logger().debug("trace_context", job_id=job_id, job_kind=job_kind)


def clear_context() -> None:
    clear_contextvars()


@contextlib.contextmanager
def span(*, name: str, url: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().debug("trace_span", span=name, url=url, elapsed_ms=elapsed_ms)


def log_fetch_failure(*, url: str, reason: str) -> None:
    _logger().info("fetch_failed", url=url, reason=reason)


def log_fetch_result(*, url: str, status: int, bytes_read: int, elapsed_ms: int) -> None:
    _logger().info(
        "fetch_result",
        url=url,
        status=status,
        bytes=bytes_read,
        elapsed_ms=elapsed_ms,
    )
