"""Single writer of job state: creation, forward-only transitions, scoped reads."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog

from sitecapture.errors import InvalidTransition, JobNotFound
from sitecapture.notify.events import JobEvent, JobEventBus
from sitecapture.observability.metrics import MetricsRegistry
from sitecapture.orchestrator.jobs import JOB_MODELS, Job, JobKind, JobStatus, utcnow
from sitecapture.parse.sitemap import dedupe
from sitecapture.storage.job_store import JobStore, job_from_row, job_to_row

LOGGER = structlog.get_logger(__name__)

DEFAULT_FAILURE_MESSAGE = "Job failed"

_ALLOWED = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class JobLifecycleManager:
    """Creates jobs and moves them through pending → processing → terminal.

    Every mutation goes through here. Owner scoping is enforced on reads even
    though the store already filters, and each successful write is published
    on the event bus.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        events: Optional[JobEventBus] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._store = store
        self.events = events or JobEventBus()
        self._metrics = metrics or MetricsRegistry()

    async def create(self, kind: JobKind, *, owner: str, **payload: Any) -> Job:
        jobs = await self.create_many(kind, owner=owner, payloads=[payload])
        return jobs[0]

    async def create_many(self, kind: JobKind, *, owner: str, payloads: Sequence[Mapping[str, Any]]) -> List[Job]:
        """Create several jobs of one kind in a single store transaction."""
        kind = JobKind(kind)
        model = JOB_MODELS[kind]
        jobs = [model(owner=owner, **dict(payload)) for payload in payloads]
        await self._store.insert(kind, [job_to_row(job) for job in jobs])
        for job in jobs:
            LOGGER.info("job_created", job_id=job.id, job_kind=kind.value, owner=owner)
            self.events.publish(JobEvent(type="created", job=job))
        return jobs

    async def get(self, kind: JobKind, job_id: str, *, owner: Optional[str] = None) -> Optional[Job]:
        """Return the job, or None when it is missing or belongs to someone else."""
        kind = JobKind(kind)
        row = await self._store.fetch(kind, job_id)
        if row is None:
            return None
        job = job_from_row(kind, row)
        if owner is not None and job.owner != owner:
            return None
        return job

    async def require(self, kind: JobKind, job_id: str, *, owner: Optional[str] = None) -> Job:
        job = await self.get(kind, job_id, owner=owner)
        if job is None:
            raise JobNotFound(f"{JobKind(kind).value} job {job_id} not found")
        return job

    async def list_by_owner(
        self,
        owner: str,
        kind: JobKind,
        *,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        """Newest-first jobs of ``kind`` that belong to ``owner``."""
        kind = JobKind(kind)
        rows = await self._store.select(
            kind,
            owner=owner,
            status=JobStatus(status).value if status is not None else None,
            newest_first=True,
            limit=limit,
        )
        jobs = [job_from_row(kind, row) for row in rows]
        return [job for job in jobs if job.owner == owner]

    async def pending(self, kind: JobKind, *, limit: int = 1) -> List[Job]:
        """Oldest pending jobs across all owners, for workers."""
        kind = JobKind(kind)
        rows = await self._store.select(kind, status=JobStatus.PENDING.value, limit=limit)
        return [job_from_row(kind, row) for row in rows]

    async def transition(
        self,
        kind: JobKind,
        job_id: str,
        status: JobStatus,
        patch: Optional[Mapping[str, Any]] = None,
        *,
        owner: Optional[str] = None,
    ) -> Job:
        """Move a job forward and apply ``patch``; raises InvalidTransition otherwise."""
        kind = JobKind(kind)
        status = JobStatus(status)
        current = await self.require(kind, job_id, owner=owner)
        try:
            updates = self._plan(current, status, dict(patch or {}))
        except InvalidTransition:
            self._metrics.incr("invalid_transitions")
            raise

        updated = current.model_copy(update=updates)
        row = job_to_row(updated)
        fields = {column: row[column] for column in ("status", "started_at", "completed_at", "error_message", "payload")}
        applied = await self._store.update_if(kind, job_id, expected_status=current.status.value, fields=fields)
        if not applied:
            latest = await self.require(kind, job_id)
            self._metrics.incr("invalid_transitions")
            raise InvalidTransition(
                f"{kind.value} job {job_id} changed to {latest.status.value} before {status.value} could be applied"
            )

        self._metrics.incr("job_transitions")
        LOGGER.info(
            "job_transition",
            job_id=job_id,
            job_kind=kind.value,
            from_status=current.status.value,
            to_status=status.value,
        )
        self.events.publish(JobEvent(type="transitioned", job=updated))
        return updated

    def _plan(self, current: Job, status: JobStatus, patch: Dict[str, Any]) -> Dict[str, Any]:
        if status not in _ALLOWED[current.status]:
            raise InvalidTransition(
                f"{current.kind.value} job {current.id} cannot move from {current.status.value} to {status.value}"
            )
        error_message = patch.pop("error_message", None)
        disallowed = set(patch) - current.patchable
        if disallowed:
            raise InvalidTransition(f"Fields cannot be patched on {current.kind.value} jobs: {sorted(disallowed)}")

        result_field = current.result_field
        if result_field and result_field in patch and status is not JobStatus.COMPLETED:
            raise InvalidTransition(f"{result_field} can only be written when completing a job")
        if error_message is not None and status is not JobStatus.FAILED:
            raise InvalidTransition("error_message is only recorded on failure")

        now = utcnow()
        updates: Dict[str, Any] = dict(patch)
        updates["status"] = status
        if status is JobStatus.PROCESSING:
            updates["started_at"] = now
        else:
            updates["completed_at"] = now
        updates["error_message"] = (error_message or DEFAULT_FAILURE_MESSAGE) if status is JobStatus.FAILED else None
        if result_field and status is JobStatus.COMPLETED:
            updates[result_field] = dedupe(str(url) for url in patch.get(result_field, []))
        return updates
