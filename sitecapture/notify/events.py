"""Best-effort push notifications for job state changes."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Iterable, List, Optional, Set

import structlog

from sitecapture.orchestrator.jobs import Job, JobKind, JobStatus

LOGGER = structlog.get_logger(__name__)

_CLOSED = object()


@dataclass(frozen=True)
class JobEvent:
    """A job snapshot taken right after it was created or transitioned."""

    type: str  # "created" | "transitioned"
    job: Job

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def kind(self) -> JobKind:
        return self.job.kind

    @property
    def owner(self) -> str:
        return self.job.owner

    @property
    def status(self) -> JobStatus:
        return self.job.status


class Subscription:
    """Bounded queue of matching events; overflow is dropped, not blocked on.

    Nothing is replayed: events published before ``subscribe`` returned are
    never seen, so consumers must pair this with polling.
    """

    def __init__(
        self,
        bus: "JobEventBus",
        *,
        job_ids: Optional[Iterable[str]],
        owner: Optional[str],
        kind: Optional[JobKind],
        maxsize: int,
    ) -> None:
        self._bus = bus
        self._job_ids: Optional[Set[str]] = set(job_ids) if job_ids is not None else None
        self._owner = owner
        self._kind = JobKind(kind) if kind is not None else None
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def matches(self, event: JobEvent) -> bool:
        if self._kind is not None and event.kind is not self._kind:
            return False
        if self._owner is not None and event.owner != self._owner:
            return False
        if self._job_ids is not None and event.job_id not in self._job_ids:
            return False
        return True

    def offer(self, event: JobEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            LOGGER.warning("job_event_dropped", job_id=event.job_id, status=event.status.value)

    async def get(self, timeout: Optional[float] = None) -> Optional[JobEvent]:
        """Wait for the next event; None when ``timeout`` elapses first."""
        if self.closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout=max(timeout, 0))
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            return None
        return item  # type: ignore[return-value]

    def close(self) -> None:
        """Unsubscribe and wake any consumer blocked on the queue."""
        if self.closed:
            return
        self.closed = True
        self._bus.unsubscribe(self)
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __aiter__(self) -> AsyncIterator[JobEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[JobEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class JobEventBus:
    """In-process fan-out of lifecycle events to push subscribers."""

    def __init__(self) -> None:
        self._subscriptions: List[Subscription] = []

    def subscribe(
        self,
        *,
        job_ids: Optional[Iterable[str]] = None,
        owner: Optional[str] = None,
        kind: Optional[JobKind] = None,
        maxsize: int = 100,
    ) -> Subscription:
        subscription = Subscription(self, job_ids=job_ids, owner=owner, kind=kind, maxsize=maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: JobEvent) -> int:
        """Deliver ``event`` to every matching subscription; returns the match count."""
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.offer(event)
                delivered += 1
        return delivered
