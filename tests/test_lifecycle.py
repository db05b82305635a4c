import asyncio

import pytest

from sitecapture.errors import InvalidTransition, JobNotFound
from sitecapture.observability.metrics import MetricsRegistry
from sitecapture.orchestrator.jobs import JobKind, JobStatus
from sitecapture.orchestrator.lifecycle import JobLifecycleManager
from sitecapture.storage.job_store import SqliteJobStore


def _manager(tmp_path, metrics=None):
    return JobLifecycleManager(SqliteJobStore(tmp_path / "jobs.db"), metrics=metrics)


def test_happy_path_records_timestamps_and_dedupes(tmp_path):
    async def _run():
        manager = _manager(tmp_path)
        job = await manager.create(JobKind.SITEMAP, owner="user-1", domain="example.com")
        assert job.status is JobStatus.PENDING
        assert job.started_at is None

        processing = await manager.transition(JobKind.SITEMAP, job.id, JobStatus.PROCESSING)
        assert processing.started_at is not None

        done = await manager.transition(
            JobKind.SITEMAP,
            job.id,
            JobStatus.COMPLETED,
            {"urls": ["https://example.com/a", "https://example.com/a", "https://example.com/b"], "source": "sitemap_xml"},
        )
        assert done.urls == ["https://example.com/a", "https://example.com/b"]
        assert done.completed_at is not None
        assert done.error_message is None

        stored = await manager.get(JobKind.SITEMAP, job.id, owner="user-1")
        assert stored == done
        assert stored.created_at == job.created_at

    asyncio.run(_run())


def test_terminal_jobs_are_immutable(tmp_path):
    async def _run():
        metrics = MetricsRegistry()
        manager = _manager(tmp_path, metrics)
        job = await manager.create(JobKind.CRAWL, owner="user-1", domain="example.com")
        await manager.transition(JobKind.CRAWL, job.id, JobStatus.PROCESSING)
        done = await manager.transition(JobKind.CRAWL, job.id, JobStatus.COMPLETED, {"discovered_urls": []})

        for status in (JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.COMPLETED):
            with pytest.raises(InvalidTransition):
                await manager.transition(JobKind.CRAWL, job.id, status)
        assert await manager.get(JobKind.CRAWL, job.id) == done
        assert metrics.get("invalid_transitions") == 4

    asyncio.run(_run())


def test_pending_cannot_skip_to_completed(tmp_path):
    async def _run():
        manager = _manager(tmp_path)
        job = await manager.create(JobKind.SCREENSHOT, owner="user-1", url="https://example.com/")
        with pytest.raises(InvalidTransition):
            await manager.transition(JobKind.SCREENSHOT, job.id, JobStatus.COMPLETED)
        assert (await manager.get(JobKind.SCREENSHOT, job.id)).status is JobStatus.PENDING

    asyncio.run(_run())


def test_pending_can_fail_before_dispatch(tmp_path):
    async def _run():
        manager = _manager(tmp_path)
        job = await manager.create(JobKind.SCREENSHOT, owner="user-1", url="https://example.com/")
        failed = await manager.transition(JobKind.SCREENSHOT, job.id, JobStatus.FAILED)
        assert failed.started_at is None
        assert failed.completed_at is not None
        assert failed.error_message == "Job failed"

    asyncio.run(_run())


def test_patch_rules(tmp_path):
    async def _run():
        manager = _manager(tmp_path)
        job = await manager.create(JobKind.SITEMAP, owner="user-1", domain="example.com")
        with pytest.raises(InvalidTransition):
            await manager.transition(JobKind.SITEMAP, job.id, JobStatus.PROCESSING, {"owner": "intruder"})
        with pytest.raises(InvalidTransition):
            await manager.transition(JobKind.SITEMAP, job.id, JobStatus.PROCESSING, {"urls": ["https://example.com/"]})
        with pytest.raises(InvalidTransition):
            await manager.transition(JobKind.SITEMAP, job.id, JobStatus.PROCESSING, {"error_message": "nope"})

        await manager.transition(JobKind.SITEMAP, job.id, JobStatus.PROCESSING)
        failed = await manager.transition(
            JobKind.SITEMAP, job.id, JobStatus.FAILED, {"error_message": "No sitemap found"}
        )
        assert failed.owner == "user-1"
        assert failed.urls == []
        assert failed.error_message == "No sitemap found"

    asyncio.run(_run())


def test_owner_scoping(tmp_path):
    async def _run():
        manager = _manager(tmp_path)
        first = await manager.create(JobKind.SITEMAP, owner="alice", domain="a.example")
        await manager.create(JobKind.SITEMAP, owner="bob", domain="b.example")
        second = await manager.create(JobKind.SITEMAP, owner="alice", domain="c.example")

        listed = await manager.list_by_owner("alice", JobKind.SITEMAP)
        assert [job.id for job in listed] == [second.id, first.id]
        assert await manager.get(JobKind.SITEMAP, first.id, owner="bob") is None
        with pytest.raises(JobNotFound):
            await manager.transition(JobKind.SITEMAP, first.id, JobStatus.PROCESSING, owner="bob")
        assert await manager.list_by_owner("carol", JobKind.SITEMAP) == []

    asyncio.run(_run())


def test_pending_is_fifo_across_owners(tmp_path):
    async def _run():
        manager = _manager(tmp_path)
        jobs = [
            await manager.create(JobKind.CRAWL, owner=owner, domain=f"{owner}.example")
            for owner in ("alice", "bob", "carol")
        ]
        await manager.transition(JobKind.CRAWL, jobs[0].id, JobStatus.PROCESSING)
        pending = await manager.pending(JobKind.CRAWL, limit=5)
        assert [job.id for job in pending] == [jobs[1].id, jobs[2].id]

    asyncio.run(_run())


def test_concurrent_terminal_writes_first_wins(tmp_path):
    async def _run():
        manager = _manager(tmp_path)
        job = await manager.create(JobKind.CRAWL, owner="user-1", domain="example.com")
        await manager.transition(JobKind.CRAWL, job.id, JobStatus.PROCESSING)

        outcomes = await asyncio.gather(
            manager.transition(JobKind.CRAWL, job.id, JobStatus.COMPLETED, {"discovered_urls": ["https://example.com/"]}),
            manager.transition(JobKind.CRAWL, job.id, JobStatus.FAILED, {"error_message": "Crawl timed out after 900s"}),
            return_exceptions=True,
        )
        winners = [outcome for outcome in outcomes if not isinstance(outcome, Exception)]
        losers = [outcome for outcome in outcomes if isinstance(outcome, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1 and isinstance(losers[0], InvalidTransition)
        stored = await manager.get(JobKind.CRAWL, job.id)
        assert stored.status is winners[0].status

    asyncio.run(_run())


def test_create_many_is_all_or_nothing(tmp_path):
    async def _run():
        manager = _manager(tmp_path)
        with pytest.raises(ValueError):
            await manager.create_many(
                JobKind.SCREENSHOT,
                owner="user-1",
                payloads=[{"url": "https://example.com/a"}, {"url": "https://example.com/b", "options": {"quality": 3}}],
            )
        assert await manager.list_by_owner("user-1", JobKind.SCREENSHOT) == []

    asyncio.run(_run())


def test_events_follow_every_write(tmp_path):
    async def _run():
        manager = _manager(tmp_path)
        subscription = manager.events.subscribe(owner="user-1")
        job = await manager.create(JobKind.SITEMAP, owner="user-1", domain="example.com")
        await manager.create(JobKind.SITEMAP, owner="someone-else", domain="example.org")
        await manager.transition(JobKind.SITEMAP, job.id, JobStatus.PROCESSING)
        with pytest.raises(InvalidTransition):
            await manager.transition(JobKind.SITEMAP, job.id, JobStatus.PENDING)

        seen = []
        while True:
            event = await subscription.get(timeout=0.05)
            if event is None:
                break
            seen.append((event.type, event.status))
        assert seen == [("created", JobStatus.PENDING), ("transitioned", JobStatus.PROCESSING)]
        subscription.close()

    asyncio.run(_run())
