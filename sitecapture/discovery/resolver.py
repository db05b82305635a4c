"""Multi-strategy sitemap resolution for a single domain."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import structlog

from sitecapture.discovery.expander import SitemapIndexExpander
from sitecapture.errors import ValidationError
from sitecapture.fetch.fetcher import FETCH_TIMEOUT_SECONDS, fetch_text
from sitecapture.fetch.robots import fetch_robots_sitemaps
from sitecapture.fetch.session import FetchSession
from sitecapture.observability.metrics import MetricsRegistry
from sitecapture.orchestrator.jobs import SourceTag
from sitecapture.parse.sitemap import extract_html_links, extract_locs, source_for_path

LOGGER = structlog.get_logger(__name__)

WELL_KNOWN_SITEMAP_PATHS = (
    "/sitemap.xml",
    "/sitemap_index.xml",
    "/sitemaps.xml",
    "/sitemap/",
    "/sitemap/sitemap.xml",
    "/wp-sitemap.xml",
    "/sitemap-index.xml",
    "/page-sitemap.xml",
    "/post-sitemap.xml",
)
HTML_SITEMAP_PATH = "/sitemap.html"

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_HOST_END_RE = re.compile(r"[/?#:]")


def normalize_domain(domain: str) -> str:
    """Reduce a casually typed domain to its bare lowercase host.

    ``HTTP://WWW.Example.com/foo?x=1``, ``example.com`` and
    ``https://example.com:8080`` all normalize to ``example.com``.
    """
    host = (domain or "").strip().lower()
    host = _SCHEME_RE.sub("", host)
    if host.startswith("www."):
        host = host[4:]
    host = _HOST_END_RE.split(host, maxsplit=1)[0]
    if not host:
        raise ValidationError("Domain is required")
    return host


def canonical_base(host: str) -> str:
    return f"https://{host}"


@dataclass(frozen=True)
class DiscoveryResult:
    """URLs discovered for a domain together with the strategy that found them."""

    domain: str
    source: str
    urls: List[str] = field(default_factory=list)


class SitemapResolver:
    """Tries robots.txt, then well-known sitemap paths, then an HTML sitemap.

    The first strategy yielding at least one URL wins. ``resolve`` returns None
    when nothing is found, which is the cue to consider a bulk crawl.
    """

    def __init__(
        self,
        session: FetchSession,
        *,
        timeout: float = FETCH_TIMEOUT_SECONDS,
        metrics: Optional[MetricsRegistry] = None,
        paths: Sequence[str] = WELL_KNOWN_SITEMAP_PATHS,
        html_sitemap: bool = True,
    ) -> None:
        self._session = session
        self._timeout = timeout
        self._metrics = metrics or MetricsRegistry()
        self._paths = tuple(paths)
        self._html_sitemap = html_sitemap
        self._expander = SitemapIndexExpander(session, timeout=timeout, metrics=self._metrics)

    def candidate_urls(self, domain: str) -> List[str]:
        """List every URL the resolver may fetch for ``domain``, in order."""
        base = canonical_base(normalize_domain(domain))
        candidates = [f"{base}/robots.txt"]
        candidates.extend(f"{base}{path}" for path in self._paths)
        if self._html_sitemap:
            candidates.append(f"{base}{HTML_SITEMAP_PATH}")
        return candidates

    async def resolve(self, domain: str) -> Optional[DiscoveryResult]:
        host = normalize_domain(domain)
        base = canonical_base(host)

        urls = await self._from_robots(base)
        if urls:
            return self._found(host, SourceTag.ROBOTS_TXT, urls)

        for path in self._paths:
            urls = await self._from_path(base, path)
            if urls:
                return self._found(host, source_for_path(path), urls)

        if self._html_sitemap:
            urls = await self._from_html(base)
            if urls:
                return self._found(host, SourceTag.SITEMAP_HTML, urls)

        self._metrics.incr("discoveries_not_found")
        LOGGER.info("sitemap_not_found", domain=host)
        return None

    def _found(self, host: str, source: str, urls: List[str]) -> DiscoveryResult:
        self._metrics.incr("discoveries_found")
        LOGGER.info("sitemap_found", domain=host, source=source, urls=len(urls))
        return DiscoveryResult(domain=host, source=source, urls=urls)

    async def _from_robots(self, base: str) -> List[str]:
        sitemap_urls = await fetch_robots_sitemaps(
            self._session, base, timeout=self._timeout, metrics=self._metrics
        )
        if not sitemap_urls:
            return []
        return await self._expander.expand_index(sitemap_urls)

    async def _from_path(self, base: str, path: str) -> List[str]:
        entries = await self._expander.fetch_sitemap(f"{base}{path}")
        if not entries:
            return []
        return await self._expander.expand(entries)

    async def _from_html(self, base: str) -> List[str]:
        page = await fetch_text(
            self._session, f"{base}{HTML_SITEMAP_PATH}", timeout=self._timeout, metrics=self._metrics
        )
        if page is None:
            return []
        return extract_html_links(page, base)
