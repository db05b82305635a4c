"""Administrative status helpers."""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional

import orjson

from sitecapture.orchestrator.jobs import JobKind, JobStatus, utcnow
from sitecapture.storage.job_store import JobStore


async def job_counts(store: JobStore, *, owner: Optional[str] = None) -> Dict[str, Dict[str, int]]:
    """Count jobs per kind and status, optionally for one owner."""
    counts: Dict[str, Dict[str, int]] = {}
    for kind in JobKind:
        rows = await store.select(kind, owner=owner)
        per_status = {status.value: 0 for status in JobStatus}
        for row in rows:
            if owner is not None and row["owner"] != owner:
                continue
            per_status[str(row["status"])] = per_status.get(str(row["status"]), 0) + 1
        counts[kind.value] = per_status
    return counts


async def failure_reasons(
    store: JobStore,
    *,
    kind: JobKind,
    owner: Optional[str] = None,
    days: int = 7,
) -> Dict[str, int]:
    """Tally error messages of jobs that failed within the last ``days``."""
    cutoff = utcnow() - timedelta(days=days)
    counter: Counter[str] = Counter()
    for row in await store.select(kind, owner=owner, status=JobStatus.FAILED.value):
        finished = row.get("completed_at")
        if finished and datetime.fromisoformat(str(finished)) < cutoff:
            continue
        counter[str(row.get("error_message") or "unknown")] += 1
    return dict(counter)


def summarise_metrics(metrics_dir: Path) -> Dict[str, Dict[str, object]]:
    """Summarise counter exports written by the crawl worker."""
    results: Dict[str, Dict[str, object]] = {}
    if not metrics_dir.exists():
        return results
    for path in sorted(metrics_dir.glob("*.json")):
        try:
            payload = orjson.loads(path.read_bytes())
        except orjson.JSONDecodeError:
            continue
        results[path.stem] = {
            "path": str(path),
            "generated_at": payload.get("generated_at"),
            "counters": {key: value for key, value in payload.get("counters", {}).items() if value},
        }
    return results
