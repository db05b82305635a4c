"""Bulk crawl worker: claims pending crawl jobs and runs the external crawler."""
from __future__ import annotations

import asyncio
import os
import re
import shlex
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

import structlog

from sitecapture.crawl.export import read_crawl_export
from sitecapture.crawl.process import DEFAULT_KILL_GRACE_SECONDS, run_supervised
from sitecapture.errors import CrawlProcessFailure, CrawlTimeout, InvalidTransition, ValidationError
from sitecapture.observability.metrics import MetricsRegistry, record_duration
from sitecapture.observability.tracing import clear_context, set_context
from sitecapture.orchestrator.jobs import CrawlJob, JobKind, JobStatus, SourceTag
from sitecapture.orchestrator.lifecycle import JobLifecycleManager

LOGGER = structlog.get_logger(__name__)

DEFAULT_CRAWLER_COMMAND = ("/usr/bin/screamingfrogseospider",)
BASE_CONFIG_NAME = "base.seospiderconfig"
DEFAULT_CRAWL_TIMEOUT_SECONDS = 900.0
DEFAULT_POLL_INTERVAL_SECONDS = 10.0

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


def crawl_url(domain: str) -> str:
    domain = domain.strip()
    return domain if _SCHEME_RE.match(domain) else f"https://{domain}"


@dataclass(frozen=True)
class CrawlerSettings:
    """Where the crawler lives, where it writes, and how long it may run."""

    command: Tuple[str, ...] = DEFAULT_CRAWLER_COMMAND
    output_root: Path = Path("data/crawls")
    config_dir: Optional[Path] = None
    timeout: float = DEFAULT_CRAWL_TIMEOUT_SECONDS
    kill_grace: float = DEFAULT_KILL_GRACE_SECONDS
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS

    @classmethod
    def from_settings(
        cls,
        settings: Mapping[str, object],
        environ: Optional[Mapping[str, str]] = None,
    ) -> "CrawlerSettings":
        """Build from the ``[crawler]`` table; ``SITECAPTURE_CRAWLER_*`` variables win."""
        env = os.environ if environ is None else environ
        section = dict(settings.get("crawler", {}) or {})

        command = env.get("SITECAPTURE_CRAWLER_PATH") or section.get("command") or list(DEFAULT_CRAWLER_COMMAND)
        if isinstance(command, str):
            command = shlex.split(command)
        output_root = env.get("SITECAPTURE_CRAWLER_OUTPUT_DIR") or section.get("output_dir", "data/crawls")
        config_dir = env.get("SITECAPTURE_CRAWLER_CONFIG_DIR") or section.get("config_dir")
        timeout = env.get("SITECAPTURE_CRAWLER_TIMEOUT") or section.get("timeout_seconds", DEFAULT_CRAWL_TIMEOUT_SECONDS)
        poll_interval = env.get("SITECAPTURE_CRAWLER_POLL_INTERVAL") or section.get(
            "poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS
        )
        return cls(
            command=tuple(str(part) for part in command),
            output_root=Path(str(output_root)),
            config_dir=Path(str(config_dir)) if config_dir else None,
            timeout=float(timeout),
            kill_grace=float(section.get("kill_grace_seconds", DEFAULT_KILL_GRACE_SECONDS)),
            poll_interval=float(poll_interval),
        )

    @property
    def config_path(self) -> Optional[Path]:
        if self.config_dir is None:
            return None
        return self.config_dir / BASE_CONFIG_NAME

    def available(self) -> bool:
        if not self.command:
            return False
        executable = self.command[0]
        return shutil.which(executable) is not None or Path(executable).is_file()

    def build_args(self, url: str, output_dir: Path) -> List[str]:
        args = list(self.command) + [
            "--headless",
            "--crawl",
            url,
            "--output-folder",
            str(output_dir),
            "--export-tabs",
            "Internal:All",
        ]
        config_path = self.config_path
        if config_path is not None and config_path.is_file():
            args.extend(["--config", str(config_path)])
        return args


class BulkCrawlOrchestrator:
    """Runs one crawl at a time, oldest pending job first.

    Outcomes are recorded on the crawl job and mirrored onto the sitemap job
    that requested it, if any. Nothing here raises for a failed crawl.
    """

    def __init__(
        self,
        manager: JobLifecycleManager,
        settings: CrawlerSettings,
        *,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._manager = manager
        self._settings = settings
        self._metrics = metrics or MetricsRegistry()

    @property
    def settings(self) -> CrawlerSettings:
        return self._settings

    async def start_crawl(
        self,
        owner: str,
        domain: str,
        *,
        sitemap_job_id: Optional[str] = None,
        max_urls: int = 500,
        crawl_depth: int = 3,
    ) -> CrawlJob:
        """Queue a crawl; the worker loop picks it up later."""
        domain = (domain or "").strip()
        if not domain:
            raise ValidationError("Domain is required")
        if not (owner or "").strip():
            raise ValidationError("Owner is required")
        sitemap_job = None
        if sitemap_job_id is not None:
            sitemap_job = await self._manager.get(JobKind.SITEMAP, sitemap_job_id, owner=owner)
            if sitemap_job is None:
                raise ValidationError(f"Unknown sitemap job {sitemap_job_id}")
            if sitemap_job.status.is_terminal:
                raise ValidationError(
                    f"Sitemap job {sitemap_job_id} is already {sitemap_job.status.value}; start a new discovery instead"
                )

        job = await self._manager.create(
            JobKind.CRAWL,
            owner=owner,
            domain=domain,
            sitemap_job_id=sitemap_job_id,
            max_urls=max_urls,
            crawl_depth=crawl_depth,
        )
        if sitemap_job is not None and sitemap_job.status is JobStatus.PENDING:
            await self._manager.transition(JobKind.SITEMAP, sitemap_job_id, JobStatus.PROCESSING)
        LOGGER.info("crawl_queued", job_id=job.id, domain=domain, sitemap_job_id=sitemap_job_id)
        return job

    async def process_next(self) -> Optional[CrawlJob]:
        pending = await self._manager.pending(JobKind.CRAWL, limit=1)
        if not pending:
            return None
        return await self.process(pending[0])

    async def process(self, job: CrawlJob) -> Optional[CrawlJob]:
        """Claim ``job``, crawl, and record the outcome; None if already claimed."""
        try:
            await self._manager.transition(JobKind.CRAWL, job.id, JobStatus.PROCESSING)
        except InvalidTransition:
            LOGGER.info("crawl_already_claimed", job_id=job.id)
            return None

        set_context(job_id=job.id, job_kind=JobKind.CRAWL.value, owner=job.owner)
        self._metrics.incr("crawls_started")
        output_dir = self._settings.output_root / job.id
        urls: List[str] = []
        error: Optional[str] = None
        try:
            with record_duration(self._metrics, "crawl_duration_ms"):
                urls = await self._crawl(job, output_dir)
        except CrawlTimeout as exc:
            self._metrics.incr("crawl_timeouts")
            error = str(exc)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
        finally:
            self._cleanup(output_dir)

        try:
            if error is None:
                final = await self._manager.transition(
                    JobKind.CRAWL, job.id, JobStatus.COMPLETED, {"discovered_urls": urls}
                )
                self._metrics.incr("crawls_completed")
                LOGGER.info("crawl_completed", job_id=job.id, urls=len(final.discovered_urls))
            else:
                final = await self._manager.transition(
                    JobKind.CRAWL, job.id, JobStatus.FAILED, {"error_message": error}
                )
                self._metrics.incr("crawls_failed")
                LOGGER.warning("crawl_failed", job_id=job.id, error=error)
            await self._propagate(final)
            return final
        finally:
            clear_context()

    async def _crawl(self, job: CrawlJob, output_dir: Path) -> List[str]:
        shutil.rmtree(output_dir, ignore_errors=True)
        output_dir.mkdir(parents=True, exist_ok=True)
        argv = self._settings.build_args(crawl_url(job.domain), output_dir)
        result = await run_supervised(
            argv, timeout=self._settings.timeout, kill_grace=self._settings.kill_grace
        )
        if result.returncode != 0:
            raise CrawlProcessFailure(result.returncode, result.stderr)
        return read_crawl_export(output_dir)

    def _cleanup(self, output_dir: Path) -> None:
        try:
            if output_dir.exists():
                shutil.rmtree(output_dir)
        except OSError as exc:
            LOGGER.warning("crawl_cleanup_failed", path=str(output_dir), error=str(exc))

    async def _propagate(self, crawl_job: CrawlJob) -> None:
        """Mirror the crawl's terminal state onto its linked sitemap job."""
        if crawl_job.sitemap_job_id is None:
            return
        sitemap_job = await self._manager.get(JobKind.SITEMAP, crawl_job.sitemap_job_id)
        if sitemap_job is None:
            LOGGER.warning("sitemap_job_missing", job_id=crawl_job.id, sitemap_job_id=crawl_job.sitemap_job_id)
            return
        try:
            if crawl_job.status is JobStatus.COMPLETED:
                if sitemap_job.status is JobStatus.PENDING:
                    await self._manager.transition(JobKind.SITEMAP, sitemap_job.id, JobStatus.PROCESSING)
                await self._manager.transition(
                    JobKind.SITEMAP,
                    sitemap_job.id,
                    JobStatus.COMPLETED,
                    {"urls": crawl_job.discovered_urls, "source": SourceTag.BULK_CRAWL},
                )
            else:
                await self._manager.transition(
                    JobKind.SITEMAP,
                    sitemap_job.id,
                    JobStatus.FAILED,
                    {"error_message": crawl_job.error_message},
                )
        except InvalidTransition as exc:
            LOGGER.warning("sitemap_propagation_skipped", sitemap_job_id=sitemap_job.id, reason=str(exc))

    async def run(self, *, interval: Optional[float] = None, ticks: Optional[int] = None) -> int:
        """Poll for pending crawls; returns the number of jobs processed."""
        interval = self._settings.poll_interval if interval is None else interval
        processed = 0
        tick = 0
        while ticks is None or tick < ticks:
            try:
                if await self.process_next() is not None:
                    processed += 1
            except Exception:
                LOGGER.exception("crawl_tick_failed", tick=tick)
            tick += 1
            if ticks is None or tick < ticks:
                await asyncio.sleep(interval)
        return processed
