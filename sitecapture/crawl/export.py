"""Read the crawler's tabular export into a list of crawlable HTML page URLs."""
from __future__ import annotations

import csv
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import structlog

from sitecapture.errors import MalformedOutput
from sitecapture.parse.sitemap import dedupe

LOGGER = structlog.get_logger(__name__)

EXPORT_FILENAMES = ("internal_all.csv", "Internal_all.csv", "internal_html.csv", "Internal_html.csv")
URL_COLUMNS = ("Address", "URL", "address", "url")
STATUS_COLUMNS = ("Status Code", "status_code")
CONTENT_TYPE_COLUMNS = ("Content Type", "content_type")


def locate_export(output_dir: Path) -> Path:
    for name in EXPORT_FILENAMES:
        candidate = output_dir / name
        if candidate.is_file():
            return candidate
    raise MalformedOutput(f"CSV output not found in {output_dir}")


def _first(row: Dict[Optional[str], object], columns: Sequence[str]) -> str:
    for column in columns:
        value = row.get(column)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _keep(url: str, status: str, content_type: str) -> bool:
    if not url.lower().startswith(("http://", "https://")):
        return False
    if status and status != "200":
        return False
    if content_type and "text/html" not in content_type.lower():
        return False
    return True


def parse_export(path: Path) -> List[str]:
    """Return successful HTML page URLs from ``path`` in first-seen order.

    Rows with no status or content type are kept; the crawler leaves those blank
    for pages it did not need to refetch.
    """
    try:
        with path.open("r", encoding="utf-8-sig", newline="") as handle:
            reader = csv.DictReader(handle)
            header = reader.fieldnames or []
            if not any(column in header for column in URL_COLUMNS):
                raise MalformedOutput(f"No URL column in {path.name}: {header}")
            urls = []
            for row in reader:
                url = _first(row, URL_COLUMNS)
                if _keep(url, _first(row, STATUS_COLUMNS), _first(row, CONTENT_TYPE_COLUMNS)):
                    urls.append(url)
    except (csv.Error, UnicodeDecodeError) as exc:
        raise MalformedOutput(f"Unreadable crawler export {path.name}: {exc}") from exc
    kept = dedupe(urls)
    LOGGER.info("crawl_export_parsed", path=str(path), urls=len(kept))
    return kept


def read_crawl_export(output_dir: Path) -> List[str]:
    return parse_export(locate_export(output_dir))
