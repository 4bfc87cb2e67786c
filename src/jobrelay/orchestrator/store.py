"""Persistent job store for the jobrelay orchestrator.

SQLite-backed store for tasks, jobs and sync jobs. Survives orchestrator
restarts so job history and job numbering are durable.

All database methods are async (via ``aiosqlite``) so they never block the
event loop. The store is deliberately dumb: it reads and writes whole
records and never decides whether a transition is legal. That is the job of
``JobLifecycleManager``, which is the only writer.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import aiosqlite

from jobrelay.core.logging import get_logger
from jobrelay.orchestrator.exceptions import ConflictError
from jobrelay.orchestrator.types import (
    ACTIVE_STATUSES,
    Job,
    JobStatus,
    SyncJob,
    SyncJobStatus,
    Task,
)

_logger = get_logger("orchestrator.store")

_TASK_COLUMNS = (
    "id", "org_id", "jurisdiction_id", "name", "description", "entity_ref",
    "status", "metadata", "last_job_number", "created_at", "updated_at",
)
_JOB_COLUMNS = (
    "id", "task_id", "job_number", "status", "execution_ref", "log_group",
    "log_stream", "created_at", "started_at", "completed_at", "last_event_at",
    "result", "error_message", "failure_origin",
)
_SYNC_JOB_COLUMNS = (
    "id", "org_id", "jurisdiction_id", "status", "execution_ref", "log_group",
    "log_stream", "records_found", "created_at", "started_at", "completed_at",
    "error_message",
)
_JSON_COLUMNS = frozenset({"metadata", "result"})
_ACTIVE_SQL = ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_STATUSES, key=lambda s: s.value))


class JobStore:
    """Async SQLite-backed store for tasks, jobs and sync jobs.

    Usage::

        store = JobStore(db_path)
        await store.open()   # creates tables, sets WAL mode
        ...
        await store.close()

    Or as an async context manager::

        async with JobStore(db_path) as store:
            await store.insert_task(task)
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path.expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the database connection and create tables."""
        conn = await aiosqlite.connect(str(self._db_path))
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA journal_mode=WAL")
            await self._create_tables(conn)
        except Exception:
            await conn.close()
            raise
        self._conn = conn
        _logger.info("store.opened", path=str(self._db_path))

    @property
    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("JobStore not opened, call open() first")
        return self._conn

    @staticmethod
    async def _create_tables(conn: aiosqlite.Connection) -> None:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                org_id TEXT NOT NULL,
                jurisdiction_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                entity_ref TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                metadata TEXT NOT NULL DEFAULT '{}',
                last_job_number INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL REFERENCES tasks (id),
                job_number INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                execution_ref TEXT,
                log_group TEXT,
                log_stream TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                last_event_at TEXT,
                result TEXT NOT NULL DEFAULT '{}',
                error_message TEXT,
                failure_origin TEXT,
                UNIQUE (task_id, job_number)
            )
        """)
        # At most one non-terminal job per task, enforced by the database too
        await conn.execute(f"""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_one_active
            ON jobs (task_id) WHERE status IN ({_ACTIVE_SQL})
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs (status)
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_jobs (
                id TEXT PRIMARY KEY,
                org_id TEXT NOT NULL,
                jurisdiction_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                execution_ref TEXT,
                log_group TEXT,
                log_stream TEXT,
                records_found INTEGER,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                error_message TEXT
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_jobs_org
            ON sync_jobs (org_id, jurisdiction_id, created_at DESC)
        """)
        await conn.commit()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def insert_task(self, task: Task) -> None:
        await self._insert("tasks", _TASK_COLUMNS, task.model_dump(mode="json"))

    async def save_task(self, task: Task) -> None:
        await self._update("tasks", _TASK_COLUMNS, task.model_dump(mode="json"))

    async def get_task(self, task_id: str) -> Task | None:
        row = await self._fetch_one("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return None if row is None else Task.model_validate(_decode(row))

    async def list_tasks(self, *, org_id: str | None = None, limit: int = 100) -> list[Task]:
        """List tasks, most recently created first."""
        if org_id:
            rows = await self._fetch_all(
                "SELECT * FROM tasks WHERE org_id = ? ORDER BY created_at DESC LIMIT ?",
                (org_id, limit),
            )
        else:
            rows = await self._fetch_all(
                "SELECT * FROM tasks ORDER BY created_at DESC LIMIT ?", (limit,)
            )
        return [Task.model_validate(_decode(r)) for r in rows]

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task and every job that belongs to it."""
        await self._db.execute("DELETE FROM jobs WHERE task_id = ?", (task_id,))
        cursor = await self._db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        await self._db.commit()
        return cursor.rowcount > 0

    async def allocate_job_number(self, task_id: str) -> int:
        """Bump and return the task's job counter.

        Numbers are never handed out twice, even after the job holding one
        is deleted.
        """
        await self._db.execute(
            "UPDATE tasks SET last_job_number = last_job_number + 1 WHERE id = ?",
            (task_id,),
        )
        row = await self._fetch_one(
            "SELECT last_job_number FROM tasks WHERE id = ?", (task_id,)
        )
        await self._db.commit()
        if row is None:
            raise KeyError(task_id)
        number: int = row["last_job_number"]
        return number

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def insert_job(self, job: Job) -> None:
        """Insert a new job.

        Raises:
            ConflictError: If the task already has a non-terminal job.
        """
        try:
            await self._insert("jobs", _JOB_COLUMNS, job.model_dump(mode="json"))
        except sqlite3.IntegrityError as e:
            await self._db.rollback()
            raise ConflictError(
                f"Task {job.task_id} already has an active job"
            ) from e

    async def save_job(self, job: Job) -> None:
        await self._update("jobs", _JOB_COLUMNS, job.model_dump(mode="json"))

    async def get_job(self, job_id: str) -> Job | None:
        row = await self._fetch_one("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return None if row is None else Job.model_validate(_decode(row))

    async def delete_job(self, job_id: str) -> bool:
        cursor = await self._db.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
        await self._db.commit()
        return cursor.rowcount > 0

    async def list_jobs(
        self,
        *,
        task_id: str | None = None,
        statuses: Iterable[JobStatus] | None = None,
        limit: int = 100,
    ) -> list[Job]:
        """List jobs, newest first (by job number within a task)."""
        conditions: list[str] = []
        params: list[Any] = []
        if task_id is not None:
            conditions.append("task_id = ?")
            params.append(task_id)
        if statuses is not None:
            values = [JobStatus(s).value for s in statuses]
            if not values:
                return []
            conditions.append("status IN ({})".format(",".join("?" for _ in values)))
            params.extend(values)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        rows = await self._fetch_all(
            f"SELECT * FROM jobs {where} ORDER BY created_at DESC, job_number DESC LIMIT ?",
            params,
        )
        return [Job.model_validate(_decode(r)) for r in rows]

    async def active_job_for_task(self, task_id: str) -> Job | None:
        row = await self._fetch_one(
            f"SELECT * FROM jobs WHERE task_id = ? AND status IN ({_ACTIVE_SQL}) LIMIT 1",
            (task_id,),
        )
        return None if row is None else Job.model_validate(_decode(row))

    # ------------------------------------------------------------------
    # Sync jobs
    # ------------------------------------------------------------------

    async def insert_sync_job(self, sync_job: SyncJob) -> None:
        await self._insert("sync_jobs", _SYNC_JOB_COLUMNS, sync_job.model_dump(mode="json"))

    async def save_sync_job(self, sync_job: SyncJob) -> None:
        await self._update("sync_jobs", _SYNC_JOB_COLUMNS, sync_job.model_dump(mode="json"))

    async def get_sync_job(self, sync_job_id: str) -> SyncJob | None:
        row = await self._fetch_one("SELECT * FROM sync_jobs WHERE id = ?", (sync_job_id,))
        return None if row is None else SyncJob.model_validate(_decode(row))

    async def list_sync_jobs(
        self,
        *,
        org_id: str | None = None,
        jurisdiction_id: str | None = None,
        statuses: Iterable[SyncJobStatus] | None = None,
        limit: int = 20,
    ) -> list[SyncJob]:
        """List sync jobs, most recent first."""
        conditions: list[str] = []
        params: list[Any] = []
        if org_id is not None:
            conditions.append("org_id = ?")
            params.append(org_id)
        if jurisdiction_id is not None:
            conditions.append("jurisdiction_id = ?")
            params.append(jurisdiction_id)
        if statuses is not None:
            values = [SyncJobStatus(s).value for s in statuses]
            if not values:
                return []
            conditions.append("status IN ({})".format(",".join("?" for _ in values)))
            params.extend(values)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        rows = await self._fetch_all(
            f"SELECT * FROM sync_jobs {where} ORDER BY created_at DESC LIMIT ?",
            params,
        )
        return [SyncJob.model_validate(_decode(r)) for r in rows]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> JobStore:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _insert(self, table: str, columns: tuple[str, ...], data: dict[str, Any]) -> None:
        placeholders = ", ".join("?" for _ in columns)
        await self._db.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            _encode(columns, data),
        )
        await self._db.commit()

    async def _update(self, table: str, columns: tuple[str, ...], data: dict[str, Any]) -> None:
        assignments = ", ".join(f"{c} = ?" for c in columns if c != "id")
        values = [v for c, v in zip(columns, _encode(columns, data), strict=True) if c != "id"]
        cursor = await self._db.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            (*values, data["id"]),
        )
        await self._db.commit()
        if cursor.rowcount == 0:
            _logger.warning("store.update_missing_row", table=table, id=data["id"])

    async def _fetch_one(self, sql: str, params: Iterable[Any]) -> aiosqlite.Row | None:
        cursor = await self._db.execute(sql, tuple(params))
        return await cursor.fetchone()

    async def _fetch_all(self, sql: str, params: Iterable[Any]) -> list[aiosqlite.Row]:
        cursor = await self._db.execute(sql, tuple(params))
        return list(await cursor.fetchall())


def _encode(columns: tuple[str, ...], data: dict[str, Any]) -> list[Any]:
    return [
        json.dumps(data.get(c) or {}) if c in _JSON_COLUMNS else data.get(c)
        for c in columns
    ]


def _decode(row: aiosqlite.Row) -> dict[str, Any]:
    record = dict(row)
    for column in _JSON_COLUMNS & record.keys():
        record[column] = json.loads(record[column] or "{}")
    return record


__all__ = ["JobStore"]
