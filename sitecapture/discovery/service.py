"""Run sitemap discovery as a tracked job, falling back to a bulk crawl."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from sitecapture.crawl.orchestrator import BulkCrawlOrchestrator
from sitecapture.discovery.groups import UrlGroup, group_urls
from sitecapture.discovery.resolver import SitemapResolver, normalize_domain
from sitecapture.errors import ValidationError
from sitecapture.observability.tracing import clear_context, set_context
from sitecapture.orchestrator.jobs import CrawlJob, JobKind, JobStatus, SitemapJob
from sitecapture.orchestrator.lifecycle import JobLifecycleManager

LOGGER = structlog.get_logger(__name__)

NO_SITEMAP_MESSAGE = "No sitemap found"


@dataclass
class DiscoveryOutcome:
    sitemap_job: SitemapJob
    crawl_job: Optional[CrawlJob] = None
    groups: List[UrlGroup] = field(default_factory=list)

    @property
    def crawl_started(self) -> bool:
        return self.crawl_job is not None

    def as_dict(self) -> Dict[str, object]:
        return {
            "sitemap_job": self.sitemap_job.summary(),
            "crawl_job": self.crawl_job.summary() if self.crawl_job else None,
            "groups": [group.as_dict() for group in self.groups],
        }


class DiscoveryService:
    def __init__(
        self,
        manager: JobLifecycleManager,
        resolver: SitemapResolver,
        orchestrator: Optional[BulkCrawlOrchestrator] = None,
    ) -> None:
        self._manager = manager
        self._resolver = resolver
        self._orchestrator = orchestrator

    async def discover(
        self,
        owner: str,
        domain: str,
        *,
        auto_crawl: bool = True,
        max_urls: int = 500,
        crawl_depth: int = 3,
    ) -> DiscoveryOutcome:
        """Resolve ``domain`` and record the result on a new sitemap job.

        When nothing is found and a crawler is wired in, the sitemap job is left
        processing and a linked crawl job is queued; the crawl worker finishes it.
        """
        if not (owner or "").strip():
            raise ValidationError("Owner is required")
        host = normalize_domain(domain)

        job = await self._manager.create(JobKind.SITEMAP, owner=owner, domain=host)
        set_context(job_id=job.id, job_kind=JobKind.SITEMAP.value, owner=owner)
        try:
            job = await self._manager.transition(JobKind.SITEMAP, job.id, JobStatus.PROCESSING)
            try:
                result = await self._resolver.resolve(host)
            except Exception as exc:
                LOGGER.exception("discovery_failed", domain=host)
                failed = await self._manager.transition(
                    JobKind.SITEMAP, job.id, JobStatus.FAILED, {"error_message": str(exc) or exc.__class__.__name__}
                )
                return DiscoveryOutcome(sitemap_job=failed)

            if result is not None:
                completed = await self._manager.transition(
                    JobKind.SITEMAP,
                    job.id,
                    JobStatus.COMPLETED,
                    {"urls": result.urls, "source": result.source},
                )
                return DiscoveryOutcome(sitemap_job=completed, groups=group_urls(completed.urls))

            if auto_crawl and self._orchestrator is not None:
                try:
                    crawl_job = await self._orchestrator.start_crawl(
                        owner,
                        host,
                        sitemap_job_id=job.id,
                        max_urls=max_urls,
                        crawl_depth=crawl_depth,
                    )
                except Exception as exc:
                    LOGGER.exception("crawl_fallback_failed", domain=host)
                    failed = await self._manager.transition(
                        JobKind.SITEMAP,
                        job.id,
                        JobStatus.FAILED,
                        {"error_message": str(exc) or exc.__class__.__name__},
                    )
                    return DiscoveryOutcome(sitemap_job=failed)
                LOGGER.info("discovery_fell_back_to_crawl", domain=host, crawl_job_id=crawl_job.id)
                return DiscoveryOutcome(sitemap_job=job, crawl_job=crawl_job)

            failed = await self._manager.transition(
                JobKind.SITEMAP, job.id, JobStatus.FAILED, {"error_message": NO_SITEMAP_MESSAGE}
            )
            return DiscoveryOutcome(sitemap_job=failed)
        finally:
            clear_context()
