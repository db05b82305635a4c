"""SQLite-backed job tables for sitemap, crawl and screenshot jobs."""
from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

import orjson

from sitecapture.orchestrator.jobs import JOB_MODELS, Job, JobKind

COLUMNS = (
    "id",
    "owner",
    "status",
    "created_at",
    "started_at",
    "completed_at",
    "error_message",
)
MUTABLE_COLUMNS = ("status", "started_at", "completed_at", "error_message", "payload")

Row = Dict[str, object]


def job_to_row(job: Job) -> Row:
    """Split a job into indexed columns and a JSON payload of kind-specific fields."""
    data = job.model_dump(mode="json")
    row: Row = {column: data.pop(column) for column in COLUMNS}
    row["payload"] = orjson.dumps(data).decode()
    return row


def job_from_row(kind: JobKind, row: Row) -> Job:
    data = {column: row[column] for column in COLUMNS}
    payload = row.get("payload") or "{}"
    data.update(orjson.loads(payload))
    return JOB_MODELS[kind].model_validate(data)


class JobStore(Protocol):
    async def insert(self, kind: JobKind, rows: Sequence[Row]) -> None: ...
    async def fetch(self, kind: JobKind, job_id: str) -> Optional[Row]: ...
    async def update_if(self, kind: JobKind, job_id: str, *, expected_status: str, fields: Row) -> bool: ...
    async def select(
        self,
        kind: JobKind,
        *,
        owner: Optional[str] = None,
        status: Optional[str] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]: ...


def _table(kind: JobKind) -> str:
    return f"{JobKind(kind).value}_jobs"


class SqliteJobStore:
    """Persist jobs in a SQLite file; each call runs on a worker thread.

    ``update_if`` is a compare-and-set on the current status, which is what
    makes concurrent terminal transitions resolve as first-writer-wins.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_tables()

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._path, timeout=30)
        connection.row_factory = sqlite3.Row
        return connection

    def _ensure_tables(self) -> None:
        connection = self._connect()
        try:
            for kind in JobKind:
                table = _table(kind)
                connection.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        id TEXT NOT NULL UNIQUE,
                        owner TEXT NOT NULL,
                        status TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        started_at TEXT,
                        completed_at TEXT,
                        error_message TEXT,
                        payload TEXT NOT NULL
                    )
                    """
                )
                connection.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_owner ON {table} (owner)")
                connection.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_status ON {table} (status, seq)")
            connection.commit()
        finally:
            connection.close()

    async def insert(self, kind: JobKind, rows: Sequence[Row]) -> None:
        await asyncio.to_thread(self._insert, kind, list(rows))

    def _insert(self, kind: JobKind, rows: List[Row]) -> None:
        if not rows:
            return
        columns = COLUMNS + ("payload",)
        placeholders = ", ".join(f":{column}" for column in columns)
        sql = f"INSERT INTO {_table(kind)} ({', '.join(columns)}) VALUES ({placeholders})"
        connection = self._connect()
        try:
            with connection:
                connection.executemany(sql, rows)
        finally:
            connection.close()

    async def fetch(self, kind: JobKind, job_id: str) -> Optional[Row]:
        return await asyncio.to_thread(self._fetch, kind, job_id)

    def _fetch(self, kind: JobKind, job_id: str) -> Optional[Row]:
        connection = self._connect()
        try:
            row = connection.execute(f"SELECT * FROM {_table(kind)} WHERE id = ?", (job_id,)).fetchone()
        finally:
            connection.close()
        return dict(row) if row else None

    async def update_if(self, kind: JobKind, job_id: str, *, expected_status: str, fields: Row) -> bool:
        return await asyncio.to_thread(self._update_if, kind, job_id, expected_status, dict(fields))

    def _update_if(self, kind: JobKind, job_id: str, expected_status: str, fields: Row) -> bool:
        unknown = set(fields) - set(MUTABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Columns are not updatable: {sorted(unknown)}")
        assignments = ", ".join(f"{column} = :{column}" for column in fields)
        params = dict(fields, job_id=job_id, expected_status=expected_status)
        sql = (
            f"UPDATE {_table(kind)} SET {assignments} "
            "WHERE id = :job_id AND status = :expected_status"
        )
        connection = self._connect()
        try:
            with connection:
                cursor = connection.execute(sql, params)
                return cursor.rowcount == 1
        finally:
            connection.close()

    async def select(
        self,
        kind: JobKind,
        *,
        owner: Optional[str] = None,
        status: Optional[str] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        return await asyncio.to_thread(self._select, kind, owner, status, newest_first, limit)

    def _select(
        self,
        kind: JobKind,
        owner: Optional[str],
        status: Optional[str],
        newest_first: bool,
        limit: Optional[int],
    ) -> List[Row]:
        clauses: List[str] = []
        params: List[object] = []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        sql = f"SELECT * FROM {_table(kind)}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY seq " + ("DESC" if newest_first else "ASC")
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        connection = self._connect()
        try:
            rows = connection.execute(sql, params).fetchall()
        finally:
            connection.close()
        return [dict(row) for row in rows]
