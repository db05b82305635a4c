import asyncio

import httpx
import pytest

from sitecapture.discovery.expander import SitemapIndexExpander
from sitecapture.discovery.groups import group_urls
from sitecapture.discovery.resolver import SitemapResolver, canonical_base, normalize_domain
from sitecapture.errors import ValidationError
from sitecapture.fetch.fetcher import fetch_text
from sitecapture.fetch.session import FetchSession
from sitecapture.observability.metrics import MetricsRegistry


def _urlset(*urls: str) -> str:
    body = "".join(f"<url><loc>{url}</loc></url>" for url in urls)
    return f'<?xml version="1.0"?><urlset>{body}</urlset>'


def _index(*urls: str) -> str:
    body = "".join(f"<sitemap><loc>{url}</loc></sitemap>" for url in urls)
    return f'<?xml version="1.0"?><sitemapindex>{body}</sitemapindex>'


class FakeSession(FetchSession):
    """Serves canned bodies; unknown URLs are 404s."""

    def __init__(self, pages):
        super().__init__(client=None)
        self.pages = pages
        self.requested = []

    async def fetch(self, url: str, *, headers=None, timeout: float = 5.0) -> httpx.Response:  # type: ignore[override]
        self.requested.append(url)
        page = self.pages.get(url)
        if isinstance(page, Exception):
            raise page
        if page is None:
            return httpx.Response(404, text="not found", request=httpx.Request("GET", url))
        status, body = page if isinstance(page, tuple) else (200, page)
        return httpx.Response(status, text=body, request=httpx.Request("GET", url))


def test_normalize_domain_variants():
    assert normalize_domain("HTTP://WWW.Example.com/foo?x=1") == "example.com"
    assert normalize_domain("example.com") == "example.com"
    assert normalize_domain("https://example.com:8080") == "example.com"
    assert normalize_domain("  shop.Example.com#top ") == "shop.example.com"
    assert canonical_base("example.com") == "https://example.com"


@pytest.mark.parametrize("value", ["", "   ", "https://", "www."])
def test_normalize_domain_rejects_empty(value):
    with pytest.raises(ValidationError):
        normalize_domain(value)


def test_fetch_text_treats_errors_as_not_found():
    async def _run():
        metrics = MetricsRegistry()
        session = FakeSession(
            {
                "https://example.com/ok": "fine",
                "https://example.com/server": (503, "busy"),
                "https://example.com/slow": httpx.ConnectTimeout("timed out"),
            }
        )
        assert await fetch_text(session, "https://example.com/ok", metrics=metrics) == "fine"
        assert await fetch_text(session, "https://example.com/server", metrics=metrics) is None
        assert await fetch_text(session, "https://example.com/slow", metrics=metrics) is None
        assert await fetch_text(session, "https://example.com/missing", metrics=metrics) is None
        assert metrics.get("sitemap_fetches") == 4
        assert metrics.get("fetch_failures") == 1
        assert metrics.get("http_2xx") == 1
        assert metrics.get("http_4xx") == 1
        assert metrics.get("http_5xx") == 1

    asyncio.run(_run())


def test_first_matching_path_wins():
    async def _run():
        session = FakeSession(
            {
                "https://example.com/sitemap.xml": _urlset("https://example.com/", "https://example.com/a"),
                "https://example.com/sitemap_index.xml": _urlset("https://example.com/other"),
            }
        )
        result = await SitemapResolver(session).resolve("example.com")
        assert result is not None
        assert result.source == "sitemap_xml"
        assert result.urls == ["https://example.com/", "https://example.com/a"]
        assert "https://example.com/sitemap_index.xml" not in session.requested

    asyncio.run(_run())


def test_wp_sitemap_is_found_after_earlier_misses():
    async def _run():
        pages = [f"https://shop.example.com/p/{slug}" for slug in ("shoes", "hats", "bags")]
        session = FakeSession({"https://shop.example.com/wp-sitemap.xml": _urlset(*pages)})
        result = await SitemapResolver(session).resolve("shop.example.com")
        assert result is not None
        assert result.source == "wp-sitemap_xml"
        assert result.urls == pages
        assert session.requested[0] == "https://shop.example.com/robots.txt"
        assert session.requested[-1] == "https://shop.example.com/wp-sitemap.xml"

    asyncio.run(_run())


def test_robots_references_take_priority():
    async def _run():
        session = FakeSession(
            {
                "https://example.com/robots.txt": "User-agent: *\nSitemap: https://example.com/custom.xml\n",
                "https://example.com/custom.xml": _urlset("https://example.com/from-robots"),
                "https://example.com/sitemap.xml": _urlset("https://example.com/from-path"),
            }
        )
        result = await SitemapResolver(session).resolve("www.example.com")
        assert result is not None
        assert result.source == "robots_txt"
        assert result.urls == ["https://example.com/from-robots"]

    asyncio.run(_run())


def test_unreachable_robots_sitemap_falls_through():
    async def _run():
        session = FakeSession(
            {
                "https://example.com/robots.txt": "Sitemap: https://example.com/gone.xml\n",
                "https://example.com/sitemaps.xml": _urlset("https://example.com/page"),
            }
        )
        result = await SitemapResolver(session).resolve("example.com")
        assert result is not None
        assert result.source == "sitemaps_xml"

    asyncio.run(_run())


def test_html_sitemap_is_last_resort():
    async def _run():
        html = '<ul><li><a href="/contact">Contact</a></li><li><a href="https://elsewhere.org/">x</a></li></ul>'
        session = FakeSession({"https://example.com/sitemap.html": html})
        result = await SitemapResolver(session).resolve("example.com")
        assert result is not None
        assert result.source == "sitemap_html"
        assert result.urls == ["https://example.com/contact"]

        disabled = await SitemapResolver(session, html_sitemap=False).resolve("example.com")
        assert disabled is None

    asyncio.run(_run())


def test_nothing_found_is_not_an_error():
    async def _run():
        metrics = MetricsRegistry()
        session = FakeSession({"https://example.com/sitemap.xml": _urlset()})
        assert await SitemapResolver(session, metrics=metrics).resolve("example.com") is None
        assert metrics.get("discoveries_not_found") == 1

    asyncio.run(_run())


def test_index_expansion_is_capped_and_deduplicated():
    async def _run():
        children = [f"https://example.com/sitemap-{i}.xml" for i in range(20)]
        pages = {child: _urlset(f"https://example.com/page-{i}", "https://example.com/") for i, child in enumerate(children)}
        session = FakeSession(pages)
        urls = await SitemapIndexExpander(session).expand(children)
        assert len(urls) == len(set(urls)) == 16
        assert "https://example.com/page-14" in urls
        assert "https://example.com/page-15" not in urls
        assert "https://example.com/sitemap-15.xml" not in session.requested

    asyncio.run(_run())


def test_nested_index_expands_one_level_only():
    async def _run():
        nested = [f"https://example.com/nested-{i}.xml" for i in range(8)]
        pages = {
            "https://example.com/a.xml": _index(*nested),
            "https://example.com/b.xml": _urlset("https://example.com/b-page", "https://example.com/nested-page-0"),
            nested[0]: _index("https://example.com/deeper-1.xml", "https://example.com/deeper-2.xml"),
        }
        for i, url in enumerate(nested[1:], start=1):
            pages[url] = _urlset(f"https://example.com/nested-page-{i}")
        session = FakeSession(pages)
        urls = await SitemapIndexExpander(session).expand(["https://example.com/a.xml", "https://example.com/b.xml"])
        assert urls == [
            "https://example.com/deeper-1.xml",
            "https://example.com/deeper-2.xml",
            "https://example.com/nested-page-1",
            "https://example.com/nested-page-2",
            "https://example.com/nested-page-3",
            "https://example.com/nested-page-4",
            "https://example.com/b-page",
            "https://example.com/nested-page-0",
        ]
        assert nested[5] not in session.requested
        assert "https://example.com/deeper-1.xml" not in session.requested

    asyncio.run(_run())


def test_page_lists_pass_through_without_fetching():
    async def _run():
        session = FakeSession({})
        urls = await SitemapIndexExpander(session).expand(
            ["https://example.com/a", "https://example.com/b", "https://example.com/a"]
        )
        assert urls == ["https://example.com/a", "https://example.com/b"]
        assert session.requested == []

    asyncio.run(_run())


def test_group_urls_by_first_segment():
    groups = group_urls(
        [
            "https://example.com/",
            "https://example.com/blog/one",
            "https://example.com/blog/two",
            "https://example.com/case-studies/acme",
        ]
    )
    assert [(group.prefix, group.label, group.count) for group in groups] == [
        ("/blog", "Blog", 2),
        ("/", "Homepage", 1),
        ("/case-studies", "Case studies", 1),
    ]
