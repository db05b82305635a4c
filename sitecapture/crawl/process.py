"""Supervised execution of the external crawler with a hard wall-clock limit."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Sequence

import structlog

from sitecapture.errors import CrawlTimeout

LOGGER = structlog.get_logger(__name__)

DEFAULT_KILL_GRACE_SECONDS = 5.0
EXIT_POLL_SECONDS = 0.1


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str


async def _pump(stream: asyncio.StreamReader, sink: List[str], *, name: str) -> None:
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        text = chunk.decode("utf-8", errors="replace")
        sink.append(text)
        LOGGER.info("crawler_output", stream=name, output=text.strip())


async def _wait_exit(process: asyncio.subprocess.Process) -> int:
    """Wait for the child itself to exit, even if descendants still hold its pipes."""
    while process.returncode is None:
        await asyncio.sleep(EXIT_POLL_SECONDS)
    return process.returncode


async def _terminate(process: asyncio.subprocess.Process, kill_grace: float) -> None:
    """SIGTERM, then SIGKILL if the process is still alive after ``kill_grace``."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(_wait_exit(process), timeout=kill_grace)
        return
    except asyncio.TimeoutError:
        LOGGER.warning("crawler_kill", pid=process.pid, grace_seconds=kill_grace)
    try:
        process.kill()
    except ProcessLookupError:
        return
    await _wait_exit(process)


async def run_supervised(
    argv: Sequence[str],
    *,
    timeout: float,
    kill_grace: float = DEFAULT_KILL_GRACE_SECONDS,
) -> ProcessResult:
    """Run ``argv`` to completion, streaming its output to the log.

    Raises CrawlTimeout once ``timeout`` elapses; by then the child has been
    terminated. A non-zero exit is returned, not raised.
    """
    LOGGER.info("crawler_spawn", argv=list(argv), timeout=timeout)
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout: List[str] = []
    stderr: List[str] = []
    readers = [
        asyncio.create_task(_pump(process.stdout, stdout, name="stdout")),
        asyncio.create_task(_pump(process.stderr, stderr, name="stderr")),
    ]
    try:
        try:
            returncode = await asyncio.wait_for(_wait_exit(process), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("crawler_timeout", pid=process.pid, timeout=timeout)
            await _terminate(process, kill_grace)
            raise CrawlTimeout(timeout) from None
        _, detached = await asyncio.wait(readers, timeout=kill_grace)
        if detached:
            LOGGER.warning("crawler_output_detached", pid=process.pid, returncode=returncode)
        return ProcessResult(returncode=returncode, stdout="".join(stdout), stderr="".join(stderr))
    finally:
        if process.returncode is None:
            await _terminate(process, kill_grace)
        for reader in readers:
            if not reader.done():
                reader.cancel()
        await asyncio.gather(*readers, return_exceptions=True)
