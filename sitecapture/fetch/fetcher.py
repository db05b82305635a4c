"""Single-attempt fetch primitive used by sitemap discovery."""
from __future__ import annotations

import time
from typing import Optional

import httpx
import structlog

from sitecapture.fetch.session import FetchSession
from sitecapture.observability.metrics import MetricsRegistry
from sitecapture.observability.tracing import log_fetch_failure, log_fetch_result, span

LOGGER = structlog.get_logger(__name__)

FETCH_TIMEOUT_SECONDS = 5.0


async def fetch_text(
    session: FetchSession,
    url: str,
    *,
    timeout: float = FETCH_TIMEOUT_SECONDS,
    metrics: Optional[MetricsRegistry] = None,
) -> Optional[str]:
    """Return the body of a 2xx response, or None for anything else.

    Timeouts, transport errors, malformed URLs and non-2xx statuses all count
    as "not found" for this candidate. There is no retry at this layer.
    """
    metrics = metrics or MetricsRegistry()
    metrics.incr("sitemap_fetches")
    try:
        with span(name="fetch", url=url):
            start = time.perf_counter()
            response = await session.fetch(url, timeout=timeout)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        metrics.incr("fetch_failures")
        log_fetch_failure(url=url, reason=str(exc) or type(exc).__name__)
        return None

    elapsed_ms = int((time.perf_counter() - start) * 1000)
    log_fetch_result(
        url=url,
        status=response.status_code,
        bytes_read=len(response.content or b""),
        elapsed_ms=elapsed_ms,
    )
    metrics.incr(f"http_{response.status_code // 100}xx")
    if not response.is_success:
        return None
    return response.text
