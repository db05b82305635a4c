import asyncio
import json

import pytest

from sitecapture.admin import cli
from sitecapture.observability.metrics import MetricsRegistry
from sitecapture.orchestrator.jobs import JobKind, JobStatus
from sitecapture.orchestrator.lifecycle import JobLifecycleManager
from sitecapture.storage.job_store import SqliteJobStore


@pytest.fixture()
def prepared_store(tmp_path):
    database = tmp_path / "jobs.db"
    metrics_dir = tmp_path / "metrics"

    async def _seed():
        manager = JobLifecycleManager(SqliteJobStore(database))
        done = await manager.create(JobKind.CRAWL, owner="user-1", domain="a.example")
        await manager.transition(JobKind.CRAWL, done.id, JobStatus.PROCESSING)
        await manager.transition(JobKind.CRAWL, done.id, JobStatus.COMPLETED, {"discovered_urls": ["https://a.example/"]})
        for domain in ("b.example", "c.example"):
            job = await manager.create(JobKind.CRAWL, owner="user-1", domain=domain)
            await manager.transition(JobKind.CRAWL, job.id, JobStatus.PROCESSING)
            await manager.transition(JobKind.CRAWL, job.id, JobStatus.FAILED, {"error_message": "Crawl timed out after 900s"})
        await manager.create(JobKind.SITEMAP, owner="user-2", domain="d.example")

    asyncio.run(_seed())
    metrics = MetricsRegistry()
    metrics.incr("crawls_completed")
    metrics.export(path=metrics_dir / "crawl_worker_20240101T000000.json", run_id="20240101T000000")
    return database, metrics_dir


def test_admin_summary(prepared_store, capsys):
    database, metrics_dir = prepared_store
    args = cli.build_parser().parse_args(["summary", "--database", str(database), "--metrics", str(metrics_dir)])
    cli.cmd_summary(args)
    output = json.loads(capsys.readouterr().out)
    assert output["jobs"]["crawl"] == {"pending": 0, "processing": 0, "completed": 1, "failed": 2}
    assert output["jobs"]["sitemap"]["pending"] == 1
    assert output["metrics"]["crawl_worker_20240101T000000"]["counters"] == {"crawls_completed": 1}

    args = cli.build_parser().parse_args(
        ["summary", "--database", str(database), "--metrics", str(metrics_dir), "--owner", "user-2"]
    )
    cli.cmd_summary(args)
    output = json.loads(capsys.readouterr().out)
    assert output["jobs"]["crawl"]["failed"] == 0
    assert output["jobs"]["sitemap"]["pending"] == 1


def test_admin_inspect_failures(prepared_store, capsys):
    database, _ = prepared_store
    args = cli.build_parser().parse_args(["inspect-failures", "--database", str(database), "--last", "30"])
    cli.cmd_failures(args)
    output = json.loads(capsys.readouterr().out)
    assert output == {"Crawl timed out after 900s": 2}


def test_admin_explain(tmp_path, capsys):
    args = cli.build_parser().parse_args(
        ["explain", "--domain", "https://www.Example.com/", "--settings", str(tmp_path / "missing.toml")]
    )
    cli.cmd_explain(args)
    output = json.loads(capsys.readouterr().out)
    assert output["valid"] is True
    assert output["host"] == "example.com"
    assert output["candidates"][0] == "https://example.com/robots.txt"
    assert "--headless" in output["crawl_command"]

    args = cli.build_parser().parse_args(["explain", "--domain", "   "])
    cli.cmd_explain(args)
    assert json.loads(capsys.readouterr().out)["valid"] is False
