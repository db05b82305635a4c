"""Screenshot render pipeline: claims queued jobs and reports results back."""
from __future__ import annotations

import re
from typing import List, Optional, Protocol

import structlog

from sitecapture.errors import InvalidTransition
from sitecapture.observability.metrics import MetricsRegistry
from sitecapture.observability.tracing import clear_context, set_context, span
from sitecapture.orchestrator.jobs import CaptureOptions, JobKind, JobStatus, ScreenshotJob
from sitecapture.orchestrator.lifecycle import JobLifecycleManager
from sitecapture.storage.artifacts import extension_for

LOGGER = structlog.get_logger(__name__)

DEFAULT_RENDER_BATCH = 5

_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9_.-]+")


class Renderer(Protocol):
    async def capture(self, url: str, options: CaptureOptions) -> bytes: ...


class ArtifactStore(Protocol):
    async def put(self, data: bytes, content_type: str, name: Optional[str] = None) -> str: ...


def artifact_name(job: ScreenshotJob) -> str:
    owner = _UNSAFE_SEGMENT.sub("_", job.owner).strip(".") or "anonymous"
    return f"screenshots/{owner}/{job.id}{extension_for(job.options.content_type)}"


class RenderCallbacks:
    """Entry points for an external renderer reporting on jobs it took."""

    def __init__(self, manager: JobLifecycleManager) -> None:
        self._manager = manager

    async def started(self, job_id: str) -> ScreenshotJob:
        return await self._manager.transition(JobKind.SCREENSHOT, job_id, JobStatus.PROCESSING)

    async def captured(self, job_id: str, screenshot_url: str, thumbnail_url: Optional[str] = None) -> ScreenshotJob:
        patch = {"screenshot_url": screenshot_url}
        if thumbnail_url:
            patch["thumbnail_url"] = thumbnail_url
        return await self._manager.transition(JobKind.SCREENSHOT, job_id, JobStatus.COMPLETED, patch)

    async def failed(self, job_id: str, message: str) -> ScreenshotJob:
        return await self._manager.transition(
            JobKind.SCREENSHOT, job_id, JobStatus.FAILED, {"error_message": message}
        )


class RenderWorker:
    def __init__(
        self,
        manager: JobLifecycleManager,
        renderer: Renderer,
        artifacts: ArtifactStore,
        *,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._manager = manager
        self._renderer = renderer
        self._artifacts = artifacts
        self._callbacks = RenderCallbacks(manager)
        self._metrics = metrics or MetricsRegistry()

    async def process_pending(self, limit: int = DEFAULT_RENDER_BATCH) -> List[ScreenshotJob]:
        """Render up to ``limit`` of the oldest pending jobs, one after another."""
        finished: List[ScreenshotJob] = []
        for job in await self._manager.pending(JobKind.SCREENSHOT, limit=limit):
            result = await self.process(job)
            if result is not None:
                finished.append(result)
        return finished

    async def process(self, job: ScreenshotJob) -> Optional[ScreenshotJob]:
        try:
            await self._callbacks.started(job.id)
        except InvalidTransition:
            LOGGER.info("screenshot_already_claimed", job_id=job.id)
            return None

        set_context(job_id=job.id, job_kind=JobKind.SCREENSHOT.value, owner=job.owner)
        try:
            try:
                with span(name="render", url=job.url):
                    image = await self._renderer.capture(job.url, job.options)
                url = await self._artifacts.put(image, job.options.content_type, artifact_name(job))
            except Exception as exc:
                LOGGER.warning("screenshot_failed", job_id=job.id, url=job.url, error=str(exc))
                return await self._callbacks.failed(job.id, str(exc) or exc.__class__.__name__)
            self._metrics.incr("screenshots_rendered")
            return await self._callbacks.captured(job.id, url)
        finally:
            clear_context()
