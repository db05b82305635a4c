"""Robots.txt helper utilities."""
from __future__ import annotations

from typing import List, Optional

from sitecapture.fetch.fetcher import fetch_text
from sitecapture.fetch.session import FetchSession
from sitecapture.observability.metrics import MetricsRegistry


def sitemaps_from_robots(robots_txt: str) -> List[str]:
    """Collect the URL of every ``Sitemap:`` directive, case-insensitively."""
    sitemap_urls: List[str] = []
    for line in robots_txt.splitlines():
        stripped = line.strip()
        if not stripped.lower().startswith("sitemap:"):
            continue
        url = stripped.split(":", 1)[1].strip()
        if url:
            sitemap_urls.append(url)
    return sitemap_urls


async def fetch_robots_sitemaps(
    session: FetchSession,
    base_url: str,
    *,
    timeout: float,
    metrics: Optional[MetricsRegistry] = None,
) -> List[str]:
    """Fetch ``{base_url}/robots.txt`` and return its sitemap references."""
    robots_txt = await fetch_text(session, f"{base_url}/robots.txt", timeout=timeout, metrics=metrics)
    if robots_txt is None:
        return []
    return sitemaps_from_robots(robots_txt)
