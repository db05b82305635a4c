"""Definitions for discovery, crawl and screenshot jobs."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Dict, FrozenSet, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def rank(self) -> int:
        """Position in the forward-only lifecycle; both terminal states share a rank."""
        return {"pending": 0, "processing": 1}.get(self.value, 2)


class JobKind(str, Enum):
    SITEMAP = "sitemap"
    CRAWL = "crawl"
    SCREENSHOT = "screenshot"


class SourceTag:
    """Well-known discovery source tags; path-derived tags are also valid."""

    ROBOTS_TXT = "robots_txt"
    SITEMAP_XML = "sitemap_xml"
    SITEMAP_INDEX = "sitemap_index"
    SITEMAP_HTML = "sitemap_html"
    BULK_CRAWL = "bulk_crawl"


class DeviceType(str, Enum):
    DESKTOP = "desktop"
    TABLET = "tablet"
    MOBILE = "mobile"


class Viewport(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int
    height: int


VIEWPORT_PRESETS: Dict[DeviceType, Viewport] = {
    DeviceType.DESKTOP: Viewport(width=1920, height=1080),
    DeviceType.TABLET: Viewport(width=768, height=1024),
    DeviceType.MOBILE: Viewport(width=375, height=667),
}


class CaptureOptions(BaseModel):
    """Capture configuration handed verbatim to the render pipeline."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")

    full_page: bool = Field(default=True, alias="fullPage")
    scroll_page: bool = Field(default=False, alias="scrollPage")
    fresh: bool = False
    no_ads: bool = Field(default=False, alias="noAds")
    no_cookies: bool = Field(default=False, alias="noCookies")
    device_type: DeviceType = Field(default=DeviceType.DESKTOP, alias="deviceType")
    delay: float = Field(default=2, ge=0, le=10, description="Seconds to wait before capture")
    format: Literal["png", "jpeg"] = "png"
    quality: int = Field(default=90, ge=10, le=100, description="JPEG quality; ignored for PNG")

    @property
    def viewport(self) -> Viewport:
        return VIEWPORT_PRESETS[self.device_type]

    @property
    def blocks_trackers(self) -> bool:
        return self.no_ads

    @property
    def removes_cookie_banners(self) -> bool:
        # Either flag alone is enough to strip cookie banners.
        return self.no_ads or self.no_cookies

    @property
    def content_type(self) -> str:
        return "image/jpeg" if self.format == "jpeg" else "image/png"

    def to_payload(self) -> Dict[str, object]:
        """Camel-cased payload for the render pipeline, including the viewport."""
        payload = self.model_dump(mode="json", by_alias=True)
        payload["viewport"] = self.viewport.model_dump()
        return payload


class Job(BaseModel):
    """Fields shared by every job kind."""

    kind: ClassVar[JobKind]
    result_field: ClassVar[Optional[str]] = None
    patchable: ClassVar[FrozenSet[str]] = frozenset()

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner: str = Field(min_length=1)
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def summary(self) -> Dict[str, object]:
        data = self.model_dump(mode="json")
        data["kind"] = self.kind.value
        return data


class SitemapJob(Job):
    kind: ClassVar[JobKind] = JobKind.SITEMAP
    result_field: ClassVar[Optional[str]] = "urls"
    patchable: ClassVar[FrozenSet[str]] = frozenset({"urls", "source"})

    domain: str
    urls: List[str] = Field(default_factory=list)
    source: Optional[str] = None


class CrawlJob(Job):
    kind: ClassVar[JobKind] = JobKind.CRAWL
    result_field: ClassVar[Optional[str]] = "discovered_urls"
    patchable: ClassVar[FrozenSet[str]] = frozenset({"discovered_urls"})

    domain: str
    sitemap_job_id: Optional[str] = None
    max_urls: int = Field(default=500, gt=0)
    crawl_depth: int = Field(default=3, gt=0)
    discovered_urls: List[str] = Field(default_factory=list)


class ScreenshotJob(Job):
    kind: ClassVar[JobKind] = JobKind.SCREENSHOT
    patchable: ClassVar[FrozenSet[str]] = frozenset({"screenshot_url", "thumbnail_url"})

    url: str
    sitemap_job_id: Optional[str] = None
    options: CaptureOptions = Field(default_factory=CaptureOptions)
    screenshot_url: Optional[str] = None
    thumbnail_url: Optional[str] = None


JOB_MODELS: Dict[JobKind, Type[Job]] = {
    JobKind.SITEMAP: SitemapJob,
    JobKind.CRAWL: CrawlJob,
    JobKind.SCREENSHOT: ScreenshotJob,
}
