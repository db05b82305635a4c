"""Watch a set of jobs until they settle, combining polling with push events."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import structlog

from sitecapture.errors import JobNotFound
from sitecapture.notify.events import JobEventBus
from sitecapture.orchestrator.jobs import Job, JobKind, JobStatus
from sitecapture.orchestrator.lifecycle import JobLifecycleManager

LOGGER = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WatchPolicy:
    interval: float
    max_duration: float


CRAWL_WATCH = WatchPolicy(interval=3.0, max_duration=300.0)
SCREENSHOT_WATCH = WatchPolicy(interval=2.0, max_duration=600.0)


@dataclass(frozen=True)
class BatchProgress:
    total: int
    completed: int
    failed: int
    pending: int

    @property
    def done(self) -> bool:
        return self.pending == 0

    @classmethod
    def from_jobs(cls, jobs: Sequence[Job]) -> "BatchProgress":
        completed = sum(1 for job in jobs if job.status is JobStatus.COMPLETED)
        failed = sum(1 for job in jobs if job.status is JobStatus.FAILED)
        return cls(total=len(jobs), completed=completed, failed=failed, pending=len(jobs) - completed - failed)

    def as_dict(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "pending": self.pending,
            "done": self.done,
        }


@dataclass
class WatchResult:
    jobs: List[Job]
    progress: BatchProgress
    gave_up: bool = False
    polls: int = field(default=0)


def _advance(known: Dict[str, Job], job: Job) -> bool:
    """Keep ``job`` if it is further along than what we hold; True when it changed."""
    current = known.get(job.id)
    if current is not None and job.status.rank <= current.status.rank:
        return False
    known[job.id] = job
    return True


async def watch_jobs(
    manager: JobLifecycleManager,
    kind: JobKind,
    job_ids: Sequence[str],
    *,
    owner: str,
    policy: WatchPolicy = SCREENSHOT_WATCH,
    events: Optional[JobEventBus] = None,
    on_update: Optional[Callable[[Job], None]] = None,
) -> WatchResult:
    """Wait until every job is terminal or ``policy.max_duration`` runs out.

    Polling is authoritative; push events only shorten the wait between polls.
    Giving up is reported through ``gave_up`` and never changes job state.
    """
    kind = JobKind(kind)
    ids = list(dict.fromkeys(job_ids))
    known: Dict[str, Job] = {}
    deadline = time.monotonic() + policy.max_duration
    subscription = events.subscribe(job_ids=ids, owner=owner, kind=kind) if events is not None else None
    polls = 0

    def _accept(job: Job) -> None:
        if _advance(known, job) and on_update is not None:
            on_update(job)

    try:
        while True:
            polls += 1
            for job_id in ids:
                job = await manager.get(kind, job_id, owner=owner)
                if job is None:
                    if job_id not in known:
                        raise JobNotFound(f"{kind.value} job {job_id} not found")
                    continue
                _accept(job)

            progress = BatchProgress.from_jobs([known[job_id] for job_id in ids])
            if progress.done:
                return WatchResult(jobs=[known[job_id] for job_id in ids], progress=progress, polls=polls)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                LOGGER.info("watch_gave_up", job_kind=kind.value, pending=progress.pending, total=progress.total)
                return WatchResult(
                    jobs=[known[job_id] for job_id in ids], progress=progress, gave_up=True, polls=polls
                )

            wait_until = time.monotonic() + min(policy.interval, remaining)
            if subscription is None:
                await asyncio.sleep(max(wait_until - time.monotonic(), 0))
                continue
            while True:
                left = wait_until - time.monotonic()
                if left <= 0:
                    break
                event = await subscription.get(timeout=left)
                if event is None:
                    break
                _accept(event.job)
                if BatchProgress.from_jobs([known[job_id] for job_id in ids]).done:
                    break
    finally:
        if subscription is not None:
            subscription.close()
