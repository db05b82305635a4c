"""Turn a batch of page URLs into queued screenshot jobs."""
from __future__ import annotations

from typing import Callable, List, Mapping, Optional, Sequence, Union
from urllib.parse import urlsplit

import pydantic
import structlog

from sitecapture.errors import ValidationError
from sitecapture.observability.metrics import MetricsRegistry
from sitecapture.orchestrator.jobs import CaptureOptions, JobKind, ScreenshotJob
from sitecapture.orchestrator.lifecycle import JobLifecycleManager

LOGGER = structlog.get_logger(__name__)

MAX_BATCH_SIZE = 100

OptionsInput = Union[CaptureOptions, Mapping[str, object], None]


def coerce_options(options: OptionsInput) -> CaptureOptions:
    """Validate ``options`` into a fresh CaptureOptions snapshot."""
    if options is None:
        return CaptureOptions()
    try:
        if isinstance(options, CaptureOptions):
            return CaptureOptions.model_validate(options.model_dump())
        return CaptureOptions.model_validate(dict(options))
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid capture options: {exc.errors(include_url=False)}") from exc


def _is_web_url(url: object) -> bool:
    if not isinstance(url, str):
        return False
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


class ScreenshotBatchDispatcher:
    """Creates one pending screenshot job per URL and returns their ids.

    Every check runs before anything is written, so a rejected batch leaves
    no jobs behind. Capture itself happens elsewhere.
    """

    def __init__(
        self,
        manager: JobLifecycleManager,
        *,
        max_batch: int = MAX_BATCH_SIZE,
        on_dispatch: Optional[Callable[[List[ScreenshotJob]], None]] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._manager = manager
        self._max_batch = max_batch
        self._on_dispatch = on_dispatch
        self._metrics = metrics or MetricsRegistry()

    async def dispatch(
        self,
        urls: Sequence[str],
        options: OptionsInput,
        owner: str,
        sitemap_job_id: Optional[str] = None,
    ) -> List[str]:
        if not (owner or "").strip():
            raise ValidationError("Owner is required")
        urls = list(urls or [])
        if not urls:
            raise ValidationError("At least one URL is required")
        if len(urls) > self._max_batch:
            raise ValidationError(f"Maximum {self._max_batch} URLs per request, got {len(urls)}")
        invalid = [url for url in urls if not _is_web_url(url)]
        if invalid:
            raise ValidationError(f"Invalid URLs: {invalid[:5]}")
        snapshot = coerce_options(options)
        if sitemap_job_id is not None:
            linked = await self._manager.get(JobKind.SITEMAP, sitemap_job_id, owner=owner)
            if linked is None:
                raise ValidationError(f"Unknown sitemap job {sitemap_job_id}")

        payloads = [
            {
                "url": url.strip(),
                "sitemap_job_id": sitemap_job_id,
                "options": snapshot.model_copy(deep=True),
            }
            for url in urls
        ]
        jobs = await self._manager.create_many(JobKind.SCREENSHOT, owner=owner, payloads=payloads)
        self._metrics.incr("screenshots_dispatched", len(jobs))
        LOGGER.info("screenshots_dispatched", owner=owner, count=len(jobs), sitemap_job_id=sitemap_job_id)
        if self._on_dispatch is not None:
            self._on_dispatch(jobs)
        return [job.id for job in jobs]
