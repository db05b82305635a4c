"""Lenient sitemap parsing helpers."""
from __future__ import annotations

import html
import re
from typing import Iterable, List
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

_LOC_RE = re.compile(r"<loc>(.*?)</loc>", re.IGNORECASE | re.DOTALL)
_CDATA_RE = re.compile(r"^<!\[CDATA\[(.*)\]\]>$", re.DOTALL)


def dedupe(urls: Iterable[str]) -> List[str]:
    """Drop repeated entries while keeping first-seen order."""
    return list(dict.fromkeys(urls))


def extract_locs(xml_content: str) -> List[str]:
    """Scan a sitemap document for ``<loc>`` values.

    This is a regex scan rather than schema validation, so truncated or
    otherwise malformed XML still yields whatever ``<loc>`` pairs it contains.
    """
    urls: List[str] = []
    for match in _LOC_RE.finditer(xml_content):
        value = match.group(1).strip()
        cdata = _CDATA_RE.match(value)
        if cdata:
            value = cdata.group(1).strip()
        value = html.unescape(value)
        if value:
            urls.append(value)
    return urls


def is_sitemap_index(urls: List[str]) -> bool:
    """Return True when strictly more than half of the entries end in ``.xml``."""
    if not urls:
        return False
    xml_count = sum(1 for url in urls if url.endswith(".xml"))
    return xml_count * 2 > len(urls)


def extract_html_links(page: str, base_url: str) -> List[str]:
    """Return same-site links from an HTML sitemap page, resolved to absolute URLs."""
    soup = BeautifulSoup(page, "html.parser")
    host = _bare_host(base_url)
    links: List[str] = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if href.startswith("/") and not href.startswith("//"):
            links.append(urljoin(base_url + "/", href))
            continue
        if href.startswith(("http://", "https://")) and _bare_host(href) == host:
            links.append(href)
    return dedupe(links)


def _bare_host(url: str) -> str:
    host = urlsplit(url).netloc.lower()
    return host[4:] if host.startswith("www.") else host


def source_for_path(path: str) -> str:
    """Derive the source tag for a well-known sitemap path.

    ``/sitemap.xml`` becomes ``sitemap_xml`` and ``/wp-sitemap.xml`` becomes
    ``wp-sitemap_xml``.
    """
    tag = path.strip("/").replace("/", "_").replace(".", "_")
    return tag or "sitemap"
