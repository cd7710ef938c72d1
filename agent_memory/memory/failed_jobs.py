"""
Failed Job Storage.

Background work that gives up on an item records it here so it can be
inspected (and retried by hand) later instead of being silently dropped.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from ..errors import StorageError
from .schema import connect, utc_now

logger = logging.getLogger("agent_memory.memory.failed_jobs")


@dataclass
class FailedJob:
    """A unit of background work that failed permanently."""
    id: int
    job_type: str  # e.g. 'embedding_generation'
    ref_id: Optional[int]
    payload: Optional[dict]
    error: str
    retry_count: int
    failed_at: datetime


class FailedJobRepository:
    """SQLite-backed record of failed background jobs."""

    def __init__(self, db_path: str, timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout

    def _execute(self, sql: str, params: tuple = ()) -> "_Result":
        try:
            conn = connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}") from e
        try:
            cursor = conn.execute(sql, params)
            rows = cursor.fetchall()
            conn.commit()
            return _Result(rows, cursor.lastrowid, cursor.rowcount)
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> FailedJob:
        return FailedJob(
            id=row["id"],
            job_type=row["job_type"],
            ref_id=row["ref_id"],
            payload=json.loads(row["payload"]) if row["payload"] else None,
            error=row["error"],
            retry_count=row["retry_count"],
            failed_at=datetime.fromisoformat(row["failed_at"]),
        )

    def create(
        self,
        job_type: str,
        error: str,
        ref_id: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
        retry_count: int = 0,
    ) -> int:
        """
        Record a failed job.

        Args:
            job_type: Kind of work that failed (e.g. 'embedding_generation')
            error: Error message from the last attempt
            ref_id: Id of the row the job was about
            payload: JSON-serializable details
            retry_count: How many times the job was retried before giving up

        Returns:
            The id of the stored failed job
        """
        result = self._execute(
            """
            INSERT INTO failed_jobs (job_type, ref_id, payload, error, retry_count)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                job_type,
                ref_id,
                json.dumps(payload) if payload is not None else None,
                error,
                retry_count,
            ),
        )
        logger.info(f"Recorded failed {job_type} job for ref {ref_id}: {error}")
        return result.lastrowid

    def get(self, job_id: int) -> Optional[FailedJob]:
        """Get a failed job by id."""
        rows = self._execute("SELECT * FROM failed_jobs WHERE id = ?", (job_id,)).rows
        return self._row_to_job(rows[0]) if rows else None

    def list_jobs(self, job_type: Optional[str] = None, limit: int = 100) -> list[FailedJob]:
        """Most recent failed jobs first."""
        if job_type is None:
            rows = self._execute(
                "SELECT * FROM failed_jobs ORDER BY failed_at DESC, id DESC LIMIT ?",
                (limit,),
            ).rows
        else:
            rows = self._execute(
                """
                SELECT * FROM failed_jobs WHERE job_type = ?
                ORDER BY failed_at DESC, id DESC LIMIT ?
                """,
                (job_type, limit),
            ).rows
        return [self._row_to_job(row) for row in rows]

    def count(self, job_type: Optional[str] = None) -> int:
        if job_type is None:
            rows = self._execute("SELECT COUNT(*) FROM failed_jobs").rows
        else:
            rows = self._execute(
                "SELECT COUNT(*) FROM failed_jobs WHERE job_type = ?", (job_type,)
            ).rows
        return rows[0][0]

    def delete(self, job_id: int) -> bool:
        """Delete one failed job. Returns True if it existed."""
        return self._execute("DELETE FROM failed_jobs WHERE id = ?", (job_id,)).rowcount > 0

    def delete_older_than(self, days: int, job_type: Optional[str] = None) -> int:
        """Delete failed jobs older than *days*. Returns the number removed."""
        cutoff = (utc_now() - timedelta(days=days)).isoformat(timespec="milliseconds")
        if job_type is None:
            return self._execute(
                "DELETE FROM failed_jobs WHERE failed_at < ?", (cutoff,)
            ).rowcount
        return self._execute(
            "DELETE FROM failed_jobs WHERE failed_at < ? AND job_type = ?", (cutoff, job_type)
        ).rowcount

    def clear(self, job_type: Optional[str] = None) -> int:
        """Delete every failed job (of one type). Returns the number removed."""
        if job_type is None:
            return self._execute("DELETE FROM failed_jobs").rowcount
        return self._execute("DELETE FROM failed_jobs WHERE job_type = ?", (job_type,)).rowcount


@dataclass
class _Result:
    rows: list
    lastrowid: Optional[int]
    rowcount: int
