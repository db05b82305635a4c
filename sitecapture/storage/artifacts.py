"""Filesystem artifact store for captured screenshots."""
from __future__ import annotations

import asyncio
import mimetypes
import uuid
from pathlib import Path, PurePosixPath
from typing import Optional

import structlog

LOGGER = structlog.get_logger(__name__)

_EXTENSIONS = {"image/png": ".png", "image/jpeg": ".jpg"}


def extension_for(content_type: str) -> str:
    return _EXTENSIONS.get(content_type) or mimetypes.guess_extension(content_type) or ".bin"


class LocalArtifactStore:
    """Writes artifacts below ``root`` and hands back a fetchable URL.

    With ``base_url`` the URL is ``{base_url}/{name}``; otherwise a file URI.
    """

    def __init__(self, root: Path, *, base_url: Optional[str] = None) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._base_url = base_url.rstrip("/") if base_url else None

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, name: str) -> Path:
        relative = PurePosixPath(name)
        if relative.is_absolute() or ".." in relative.parts:
            raise ValueError(f"Artifact name escapes the store: {name}")
        return self._root.joinpath(*relative.parts)

    async def put(self, data: bytes, content_type: str, name: Optional[str] = None) -> str:
        name = name or f"{uuid.uuid4().hex}{extension_for(content_type)}"
        target = self.path_for(name)
        await asyncio.to_thread(self._write, target, data)
        LOGGER.info("artifact_stored", name=name, content_type=content_type, bytes=len(data))
        if self._base_url:
            return f"{self._base_url}/{name}"
        return target.resolve().as_uri()

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(target)
