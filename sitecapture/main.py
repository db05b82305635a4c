"""Command-line entrypoints for sitemap discovery, bulk crawls and screenshots."""
from __future__ import annotations

import argparse
import asyncio
import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Dict, List, Optional, TypeVar

import tomllib
from dotenv import load_dotenv

try:
    import uvloop
except ImportError:  # pragma: no cover - uvloop optional on some platforms
    uvloop = None

from sitecapture.crawl.orchestrator import BulkCrawlOrchestrator, CrawlerSettings
from sitecapture.discovery.resolver import SitemapResolver
from sitecapture.discovery.service import DiscoveryService
from sitecapture.errors import InvalidTransition, SiteCaptureError, ValidationError
from sitecapture.fetch.fetcher import FETCH_TIMEOUT_SECONDS
from sitecapture.fetch.session import DEFAULT_USER_AGENT, create_fetch_session
from sitecapture.notify.poller import CRAWL_WATCH, SCREENSHOT_WATCH, watch_jobs
from sitecapture.observability.log import configure_logging
from sitecapture.observability.metrics import MetricsRegistry
from sitecapture.orchestrator.dispatcher import ScreenshotBatchDispatcher
from sitecapture.orchestrator.jobs import JobKind, JobStatus
from sitecapture.orchestrator.lifecycle import JobLifecycleManager
from sitecapture.render.pipeline import RenderCallbacks, artifact_name
from sitecapture.storage.artifacts import LocalArtifactStore
from sitecapture.storage.job_store import SqliteJobStore
from sitecapture.storage.layout import DataLayout

T = TypeVar("T")


def load_settings(path: Path) -> Dict[str, object]:
    """Read the TOML configuration file."""
    with path.open("rb") as handle:
        return tomllib.load(handle)


@dataclass
class Runtime:
    settings: Dict[str, object]
    layout: DataLayout
    metrics: MetricsRegistry
    manager: JobLifecycleManager
    orchestrator: BulkCrawlOrchestrator


def build_runtime(settings: Dict[str, object]) -> Runtime:
    """Wire the job store, lifecycle manager and crawl orchestrator."""
    layout = DataLayout.from_settings(settings)
    metrics = MetricsRegistry()
    manager = JobLifecycleManager(SqliteJobStore(layout.database), metrics=metrics)
    crawler = CrawlerSettings.from_settings(settings)
    orchestrator = BulkCrawlOrchestrator(manager, crawler, metrics=metrics)
    return Runtime(settings=settings, layout=layout, metrics=metrics, manager=manager, orchestrator=orchestrator)


def _default_owner() -> Optional[str]:
    return os.environ.get("SITECAPTURE_OWNER")


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="sitecapture", description="Sitemap discovery and screenshot jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    discover = sub.add_parser("discover", help="Discover a domain's pages from its sitemaps")
    discover.add_argument("domain")
    discover.add_argument("--owner", default=_default_owner(), help="Principal the jobs belong to")
    discover.add_argument("--no-crawl", action="store_true", help="Fail instead of queueing a bulk crawl")
    discover.add_argument("--max-urls", type=int, default=500)
    discover.add_argument("--crawl-depth", type=int, default=3)
    discover.add_argument("--watch", action="store_true", help="Wait for a queued crawl to finish")

    start = sub.add_parser("start-crawl", help="Queue a bulk crawl for a domain")
    start.add_argument("domain")
    start.add_argument("--owner", default=_default_owner())
    start.add_argument("--sitemap-job-id")
    start.add_argument("--max-urls", type=int, default=500)
    start.add_argument("--crawl-depth", type=int, default=3)

    worker = sub.add_parser("crawl-worker", help="Process pending bulk crawls")
    worker.add_argument("--ticks", type=int, help="Number of polling iterations to execute")
    worker.add_argument("--interval", type=float, help="Seconds between polls")

    shot = sub.add_parser("screenshot", help="Queue screenshot jobs for a batch of URLs")
    shot.add_argument("urls", nargs="+")
    shot.add_argument("--owner", default=_default_owner())
    shot.add_argument("--sitemap-job-id")
    shot.add_argument("--viewport-only", action="store_true", help="Capture the viewport instead of the full page")
    shot.add_argument("--scroll-page", action="store_true")
    shot.add_argument("--fresh", action="store_true")
    shot.add_argument("--no-ads", action="store_true")
    shot.add_argument("--no-cookies", action="store_true")
    shot.add_argument("--device", choices=["desktop", "tablet", "mobile"], default="desktop")
    shot.add_argument("--delay", type=float, default=2)
    shot.add_argument("--format", choices=["png", "jpeg"], default="png")
    shot.add_argument("--quality", type=int, default=90)
    shot.add_argument("--watch", action="store_true", help="Wait for the batch to finish")

    result = sub.add_parser("screenshot-result", help="Record a renderer's progress on a screenshot job")
    result.add_argument("job_id")
    result.add_argument("outcome", choices=["started", "captured", "failed"])
    result.add_argument("--file", help="Captured image to store as the job's artifact")
    result.add_argument("--url", help="Already-hosted screenshot URL")
    result.add_argument("--thumbnail-url")
    result.add_argument("--message", help="Failure reason")

    status = sub.add_parser("status", help="Show one job")
    status.add_argument("job_id")
    status.add_argument("--kind", choices=[kind.value for kind in JobKind], default=JobKind.SITEMAP.value)
    status.add_argument("--owner", default=_default_owner())

    jobs = sub.add_parser("jobs", help="List jobs newest first")
    jobs.add_argument("--kind", choices=[kind.value for kind in JobKind], default=JobKind.SITEMAP.value)
    jobs.add_argument("--owner", default=_default_owner())
    jobs.add_argument("--status", choices=[status.value for status in JobStatus])
    jobs.add_argument("--limit", type=int, default=50)

    return parser


def _emit(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _require_owner(owner: Optional[str]) -> None:
    if not (owner or "").strip():
        raise ValidationError("Owner is required")


async def run_discover(args: argparse.Namespace, runtime: Runtime) -> Dict[str, object]:
    fetch_cfg = runtime.settings.get("fetch", {})
    discovery_cfg = runtime.settings.get("discovery", {})
    timeout = float(fetch_cfg.get("timeout_seconds", FETCH_TIMEOUT_SECONDS))
    async with create_fetch_session(
        user_agent=fetch_cfg.get("user_agent", DEFAULT_USER_AGENT),
        timeout=timeout,
        max_connections=int(fetch_cfg.get("max_connections", 10)),
    ) as session:
        resolver = SitemapResolver(
            session,
            timeout=timeout,
            metrics=runtime.metrics,
            html_sitemap=bool(discovery_cfg.get("html_sitemap", True)),
        )
        service = DiscoveryService(runtime.manager, resolver, runtime.orchestrator)
        outcome = await service.discover(
            args.owner,
            args.domain,
            auto_crawl=not args.no_crawl,
            max_urls=args.max_urls,
            crawl_depth=args.crawl_depth,
        )
    result = outcome.as_dict()
    if args.watch and outcome.crawl_job is not None:
        watch = await watch_jobs(
            runtime.manager,
            JobKind.CRAWL,
            [outcome.crawl_job.id],
            owner=args.owner,
            policy=CRAWL_WATCH,
            events=runtime.manager.events,
        )
        sitemap_job = await runtime.manager.get(JobKind.SITEMAP, outcome.sitemap_job.id, owner=args.owner)
        result["crawl_job"] = watch.jobs[0].summary()
        result["sitemap_job"] = sitemap_job.summary() if sitemap_job else result["sitemap_job"]
        result["watch"] = {"gave_up": watch.gave_up, **watch.progress.as_dict()}
    return result


async def run_start_crawl(args: argparse.Namespace, runtime: Runtime) -> Dict[str, object]:
    job = await runtime.orchestrator.start_crawl(
        args.owner,
        args.domain,
        sitemap_job_id=args.sitemap_job_id,
        max_urls=args.max_urls,
        crawl_depth=args.crawl_depth,
    )
    return job.summary()


async def run_crawl_worker(args: argparse.Namespace, runtime: Runtime) -> Dict[str, object]:
    processed = await runtime.orchestrator.run(interval=args.interval, ticks=args.ticks)
    run_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    runtime.metrics.export(path=runtime.layout.metrics / f"crawl_worker_{run_id}.json", run_id=run_id)
    return {"processed": processed, "metrics": runtime.metrics.snapshot()}


async def run_screenshot(args: argparse.Namespace, runtime: Runtime) -> Dict[str, object]:
    options = {
        "fullPage": not args.viewport_only,
        "scrollPage": args.scroll_page,
        "fresh": args.fresh,
        "noAds": args.no_ads,
        "noCookies": args.no_cookies,
        "deviceType": args.device,
        "delay": args.delay,
        "format": args.format,
        "quality": args.quality,
    }
    dispatcher = ScreenshotBatchDispatcher(runtime.manager, metrics=runtime.metrics)
    job_ids = await dispatcher.dispatch(args.urls, options, args.owner, sitemap_job_id=args.sitemap_job_id)
    result: Dict[str, object] = {"job_ids": job_ids, "count": len(job_ids)}
    if args.watch:
        watch = await watch_jobs(
            runtime.manager,
            JobKind.SCREENSHOT,
            job_ids,
            owner=args.owner,
            policy=SCREENSHOT_WATCH,
            events=runtime.manager.events,
        )
        result["watch"] = {"gave_up": watch.gave_up, **watch.progress.as_dict()}
    return result


async def run_screenshot_result(args: argparse.Namespace, runtime: Runtime) -> Dict[str, object]:
    callbacks = RenderCallbacks(runtime.manager)
    if args.outcome == "started":
        job = await callbacks.started(args.job_id)
    elif args.outcome == "failed":
        job = await callbacks.failed(args.job_id, args.message or "Screenshot failed")
    else:
        if bool(args.file) == bool(args.url):
            raise ValidationError("Pass exactly one of --file or --url")
        screenshot_url = args.url
        if args.file:
            if not Path(args.file).is_file():
                raise ValidationError(f"Screenshot file not found: {args.file}")
            job = await runtime.manager.require(JobKind.SCREENSHOT, args.job_id)
            if job.status is not JobStatus.PROCESSING:
                raise InvalidTransition(f"screenshot job {job.id} is {job.status.value}, not processing")
            base_url = runtime.settings.get("app", {}).get("artifacts_base_url") or None
            store = LocalArtifactStore(runtime.layout.artifacts, base_url=base_url)
            screenshot_url = await store.put(
                Path(args.file).read_bytes(), job.options.content_type, artifact_name(job)
            )
        job = await callbacks.captured(args.job_id, screenshot_url, thumbnail_url=args.thumbnail_url)
        runtime.metrics.incr("screenshots_rendered")
    return job.summary()


async def run_status(args: argparse.Namespace, runtime: Runtime) -> Dict[str, object]:
    _require_owner(args.owner)
    job = await runtime.manager.require(JobKind(args.kind), args.job_id, owner=args.owner)
    return job.summary()


async def run_jobs(args: argparse.Namespace, runtime: Runtime) -> List[Dict[str, object]]:
    _require_owner(args.owner)
    jobs = await runtime.manager.list_by_owner(
        args.owner,
        JobKind(args.kind),
        status=JobStatus(args.status) if args.status else None,
        limit=args.limit,
    )
    return [job.summary() for job in jobs]


COMMANDS = {
    "discover": run_discover,
    "start-crawl": run_start_crawl,
    "crawl-worker": run_crawl_worker,
    "screenshot": run_screenshot,
    "screenshot-result": run_screenshot_result,
    "status": run_status,
    "jobs": run_jobs,
}


def _run(coro: Awaitable[T]) -> T:
    if uvloop is not None:
        return uvloop.run(coro)
    return asyncio.run(coro)


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    settings = load_settings(Path("config/settings.toml"))
    configure_logging(Path("config/logging.yaml"))
    runtime = build_runtime(settings)

    if args.command == "crawl-worker" and not runtime.orchestrator.settings.available():
        _emit({"error": "CrawlerUnavailable", "message": f"Crawler not found: {runtime.orchestrator.settings.command[0]}"})
        raise SystemExit(1)

    try:
        result = _run(COMMANDS[args.command](args, runtime))
    except SiteCaptureError as exc:
        _emit({"error": exc.__class__.__name__, "message": str(exc)})
        raise SystemExit(1)
    _emit(result)


if __name__ == "__main__":
    main()
