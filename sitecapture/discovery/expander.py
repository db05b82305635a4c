"""Bounded expansion of sitemap indexes into page URLs."""
from __future__ import annotations

from typing import List, Optional, Sequence

import structlog

from sitecapture.fetch.fetcher import FETCH_TIMEOUT_SECONDS, fetch_text
from sitecapture.fetch.session import FetchSession
from sitecapture.observability.metrics import MetricsRegistry
from sitecapture.parse.sitemap import dedupe, extract_locs, is_sitemap_index

LOGGER = structlog.get_logger(__name__)

MAX_INDEX_SITEMAPS = 15
MAX_NESTED_SITEMAPS = 5


class SitemapIndexExpander:
    """Turns candidate sitemap URLs into a deduplicated list of page URLs.

    Expansion is capped at ``max_sitemaps`` first-level sitemaps and
    ``max_nested`` second-level ones per nested index; anything beyond the caps
    is silently dropped. Nesting deeper than one level is never followed.
    """

    def __init__(
        self,
        session: FetchSession,
        *,
        timeout: float = FETCH_TIMEOUT_SECONDS,
        metrics: Optional[MetricsRegistry] = None,
        max_sitemaps: int = MAX_INDEX_SITEMAPS,
        max_nested: int = MAX_NESTED_SITEMAPS,
    ) -> None:
        self._session = session
        self._timeout = timeout
        self._metrics = metrics or MetricsRegistry()
        self._max_sitemaps = max_sitemaps
        self._max_nested = max_nested

    async def fetch_sitemap(self, url: str) -> Optional[List[str]]:
        """Fetch one sitemap and return its ``<loc>`` entries, or None on failure."""
        content = await fetch_text(self._session, url, timeout=self._timeout, metrics=self._metrics)
        if content is None:
            return None
        return extract_locs(content)

    async def expand(self, candidates: Sequence[str]) -> List[str]:
        """Expand ``candidates`` if they look like an index, else return them as pages."""
        urls = list(candidates)
        if is_sitemap_index(urls):
            return await self.expand_index(urls)
        return dedupe(urls)

    async def expand_index(self, sitemap_urls: Sequence[str]) -> List[str]:
        """Fetch every listed sitemap (bounded) and flatten their entries."""
        collected: List[str] = []
        for sitemap_url in list(sitemap_urls)[: self._max_sitemaps]:
            entries = await self.fetch_sitemap(sitemap_url)
            if not entries:
                continue
            if not is_sitemap_index(entries):
                collected.extend(entries)
                continue
            LOGGER.debug("nested_sitemap_index", url=sitemap_url, entries=len(entries))
            for nested_url in entries[: self._max_nested]:
                nested = await self.fetch_sitemap(nested_url)
                if nested:
                    collected.extend(nested)
        return dedupe(collected)
