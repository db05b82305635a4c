"""Exception hierarchy shared by discovery, crawl and job orchestration."""
from __future__ import annotations


class SiteCaptureError(Exception):
    """Base class for all errors raised by the platform."""


class ValidationError(SiteCaptureError, ValueError):
    """Caller input violates a hard contract; nothing was created."""


class JobNotFound(SiteCaptureError, LookupError):
    """The job does not exist or is not visible to the caller."""


class InvalidTransition(SiteCaptureError):
    """An illegal job state change was attempted; stored state is unchanged."""


class CrawlError(SiteCaptureError):
    """Base class for bulk crawl failures recorded on a crawl job."""


class CrawlTimeout(CrawlError):
    def __init__(self, timeout: float) -> None:
        super().__init__(f"Crawl timed out after {timeout:g}s")
        self.timeout = timeout


class CrawlProcessFailure(CrawlError):
    def __init__(self, returncode: int, stderr: str) -> None:
        detail = stderr.strip()
        message = f"Crawler exited with code {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class MalformedOutput(CrawlError):
    """The crawler exited cleanly but its export is missing or unreadable."""
