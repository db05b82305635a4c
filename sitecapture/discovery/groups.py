"""Group discovered URLs by their leading path segment."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List
from urllib.parse import urlsplit

ROOT_PREFIX = "/"


@dataclass
class UrlGroup:
    prefix: str
    label: str
    urls: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.urls)

    def as_dict(self) -> Dict[str, object]:
        return {"prefix": self.prefix, "label": self.label, "urls": list(self.urls), "count": self.count}


def _label_for(prefix: str) -> str:
    if prefix == ROOT_PREFIX:
        return "Homepage"
    segment = prefix[1:]
    return segment[:1].upper() + segment[1:].replace("-", " ")


def _prefix_for(url: str) -> str:
    try:
        path = urlsplit(url).path
    except ValueError:
        return ROOT_PREFIX
    segments = [part for part in path.split("/") if part]
    if not segments:
        return ROOT_PREFIX
    return "/" + segments[0]


def group_urls(urls: Iterable[str]) -> List[UrlGroup]:
    """Bucket URLs by first path segment, largest group first."""
    groups: Dict[str, UrlGroup] = {}
    for url in urls:
        prefix = _prefix_for(url)
        group = groups.get(prefix)
        if group is None:
            group = groups[prefix] = UrlGroup(prefix=prefix, label=_label_for(prefix))
        group.urls.append(url)
    return sorted(groups.values(), key=lambda group: group.count, reverse=True)
