"""Persistence port for the job tracker, with a SQLite implementation."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Protocol

from xsearch.models import Job, JobProgress, JobStatus
from xsearch.store import SqliteStore, to_db_time

logger = logging.getLogger(__name__)

_STALE_MESSAGE = "Job was still running when the process stopped"


class JobStore(Protocol):
    """What :class:`~xsearch.jobs.JobTrackingService` needs from storage."""

    def save_job(self, job: Job) -> None: ...

    def fail_stale_jobs(self, started_before: datetime, completed_at: datetime) -> int: ...

    def purge_jobs(self, started_before: datetime) -> int: ...

    def load_jobs(self, started_after: datetime) -> list[Job]: ...


def _job_from_row(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        type=row["type"],
        status=row["status"],
        progress=JobProgress(
            current=row["progress_current"],
            total=row["progress_total"],
            message=row["progress_message"],
        ),
        metadata=json.loads(row["metadata"] or "{}"),
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        error_message=row["error_message"],
    )


class SqliteJobStore(SqliteStore):
    """``jobs`` table; a write-behind log of the tracker's in-memory state."""

    def save_job(self, job: Job) -> None:
        con = self._connect()
        try:
            with con:
                con.execute(
                    """
                    INSERT INTO jobs
                        (id, type, status, progress_current, progress_total,
                         progress_message, metadata, started_at, completed_at, error_message)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        status = excluded.status,
                        progress_current = excluded.progress_current,
                        progress_total = excluded.progress_total,
                        progress_message = excluded.progress_message,
                        metadata = excluded.metadata,
                        completed_at = excluded.completed_at,
                        error_message = excluded.error_message
                    """,
                    (
                        job.id,
                        str(job.type),
                        str(job.status),
                        job.progress.current,
                        job.progress.total,
                        job.progress.message,
                        json.dumps(job.metadata, default=str),
                        to_db_time(job.started_at),
                        to_db_time(job.completed_at),
                        job.error_message,
                    ),
                )
        finally:
            con.close()

    def get_job(self, job_id: str) -> Job | None:
        con = self._connect()
        try:
            row = con.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        finally:
            con.close()
        return _job_from_row(row) if row else None

    def fail_stale_jobs(self, started_before: datetime, completed_at: datetime) -> int:
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    """
                    UPDATE jobs
                       SET status = ?, completed_at = ?, error_message = ?
                     WHERE status = ? AND started_at < ?
                    """,
                    (
                        str(JobStatus.FAILED),
                        to_db_time(completed_at),
                        _STALE_MESSAGE,
                        str(JobStatus.RUNNING),
                        to_db_time(started_before),
                    ),
                )
            return cur.rowcount
        finally:
            con.close()

    def purge_jobs(self, started_before: datetime) -> int:
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    "DELETE FROM jobs WHERE started_at < ?", (to_db_time(started_before),)
                )
            return cur.rowcount
        finally:
            con.close()

    def load_jobs(self, started_after: datetime) -> list[Job]:
        con = self._connect()
        try:
            rows = con.execute(
                "SELECT * FROM jobs WHERE started_at >= ? ORDER BY started_at",
                (to_db_time(started_after),),
            ).fetchall()
        finally:
            con.close()
        return [_job_from_row(r) for r in rows]
