"""Factories for httpx-backed fetch sessions."""
from __future__ import annotations

import contextlib
from typing import AsyncIterator, Dict, Optional

import httpx

DEFAULT_USER_AGENT = "SiteCapture Sitemap Crawler"


class FetchSession:
    """Thin wrapper over an `httpx.AsyncClient` used by the sitemap resolver."""

    def __init__(self, client: Optional[httpx.AsyncClient]) -> None:
        self._client = client

    async def fetch(self, url: str, *, headers: Optional[Dict[str, str]] = None, timeout: float = 5.0) -> httpx.Response:
        """Issue a GET request and return the response without raising on status."""
        if self._client is None:
            raise RuntimeError("No fetch session available")
        return await self._client.get(url, headers=headers, timeout=timeout)


@contextlib.asynccontextmanager
async def create_fetch_session(
    *,
    user_agent: str = DEFAULT_USER_AGENT,
    timeout: float = 5.0,
    max_connections: int = 10,
) -> AsyncIterator[FetchSession]:
    """Yield a configured `FetchSession` for the duration of the context."""
    headers = {"User-Agent": user_agent}
    limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections)
    async with httpx.AsyncClient(
        headers=headers,
        limits=limits,
        timeout=timeout,
        follow_redirects=True,
    ) as client:
        yield FetchSession(client)
