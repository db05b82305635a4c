import asyncio

import pytest

from sitecapture.observability.metrics import MetricsRegistry
from sitecapture.orchestrator.dispatcher import ScreenshotBatchDispatcher
from sitecapture.orchestrator.jobs import CaptureOptions, JobKind, JobStatus, ScreenshotJob
from sitecapture.orchestrator.lifecycle import JobLifecycleManager
from sitecapture.render.pipeline import RenderCallbacks, RenderWorker, artifact_name
from sitecapture.storage.artifacts import LocalArtifactStore
from sitecapture.storage.job_store import SqliteJobStore


class FakeRenderer:
    def __init__(self):
        self.calls = []

    async def capture(self, url: str, options: CaptureOptions) -> bytes:
        self.calls.append((url, options))
        if "broken" in url:
            raise RuntimeError("Navigation timeout of 60000 ms exceeded")
        return b"\x89PNG fake image for " + url.encode()


def test_worker_renders_pending_jobs(tmp_path):
    async def _run():
        metrics = MetricsRegistry()
        manager = JobLifecycleManager(SqliteJobStore(tmp_path / "jobs.db"))
        artifacts = LocalArtifactStore(tmp_path / "artifacts", base_url="https://cdn.example.com/")
        renderer = FakeRenderer()
        worker = RenderWorker(manager, renderer, artifacts, metrics=metrics)

        job_ids = await ScreenshotBatchDispatcher(manager).dispatch(
            ["https://example.com/ok", "https://example.com/broken"],
            {"format": "jpeg", "deviceType": "tablet"},
            "user-1",
        )
        finished = await worker.process_pending(limit=5)
        assert [job.id for job in finished] == job_ids

        ok, broken = finished
        assert ok.status is JobStatus.COMPLETED
        assert ok.screenshot_url == f"https://cdn.example.com/screenshots/user-1/{ok.id}.jpg"
        assert (tmp_path / "artifacts" / "screenshots" / "user-1" / f"{ok.id}.jpg").read_bytes().startswith(b"\x89PNG")
        assert broken.status is JobStatus.FAILED
        assert broken.error_message == "Navigation timeout of 60000 ms exceeded"
        assert renderer.calls[0][1].viewport.width == 768
        assert metrics.get("screenshots_rendered") == 1
        assert await worker.process_pending() == []

    asyncio.run(_run())


def test_callbacks_follow_lifecycle(tmp_path):
    async def _run():
        manager = JobLifecycleManager(SqliteJobStore(tmp_path / "jobs.db"))
        callbacks = RenderCallbacks(manager)
        job = await manager.create(JobKind.SCREENSHOT, owner="user-1", url="https://example.com/")
        await callbacks.started(job.id)
        done = await callbacks.captured(job.id, "https://cdn/full.png", thumbnail_url="https://cdn/thumb.png")
        assert done.thumbnail_url == "https://cdn/thumb.png"
        assert done.started_at is not None

    asyncio.run(_run())


def test_artifact_names_are_contained(tmp_path):
    store = LocalArtifactStore(tmp_path)
    with pytest.raises(ValueError):
        store.path_for("../outside.png")
    stored = asyncio.run(store.put(b"data", "image/png", "nested/file.png"))
    assert stored.startswith("file://")
    assert (tmp_path / "nested" / "file.png").read_bytes() == b"data"


def test_artifact_name_sanitises_owner():
    job = ScreenshotJob(owner="../team a", url="https://example.com/")
    assert artifact_name(job) == f"screenshots/_team_a/{job.id}.png"
