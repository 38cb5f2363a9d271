import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any

from luogu_archive.db.connection import get_connection
from luogu_archive.models.job import JobError, JobStatus, JobStatusView, TaskJob
from luogu_archive.repositories.base import AbstractJobRepository

logger = logging.getLogger(__name__)

_STATUS_FIELDS = {
    "status",
    "progress",
    "attempts",
    "started_at",
    "completed_at",
    "failed_at",
    "cancelled_at",
    "result",
    "error_message",
    "error_classification",
}


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, JobStatus):
        return value.value
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False, default=str)
    return value


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_error(row: sqlite3.Row) -> JobError | None:
    if row["error_message"] is None:
        return None
    return JobError(
        message=row["error_message"],
        classification=row["error_classification"] or "unknown",
    )


class JobRepository(AbstractJobRepository):
    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def create_job(self, job: TaskJob) -> None:
        with get_connection(self._db_path) as conn:
            conn.execute(
                """
                INSERT INTO jobs
                    (id, job_type, payload, status, priority, progress,
                     attempts, max_attempts, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.job_type,
                    json.dumps(job.payload, ensure_ascii=False),
                    job.status.value,
                    job.priority,
                    job.progress,
                    job.attempts,
                    job.max_attempts,
                    job.created_at.isoformat(),
                ),
            )
            conn.commit()

    def update_job_status(self, job_id: str, fields: dict[str, Any]) -> None:
        unknown = set(fields) - _STATUS_FIELDS
        if unknown:
            raise ValueError(f"unknown job fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        with get_connection(self._db_path) as conn:
            conn.execute(
                f"UPDATE jobs SET {assignments} WHERE id = ?",
                (*(_to_db(v) for v in fields.values()), job_id),
            )
            conn.commit()

    def find_job(self, job_id: str) -> JobStatusView | None:
        with get_connection(self._db_path) as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return JobStatusView(
            job_id=row["id"],
            job_type=row["job_type"],
            status=row["status"],
            progress=row["progress"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            created_at=_parse_dt(row["created_at"]),
            started_at=_parse_dt(row["started_at"]),
            completed_at=_parse_dt(row["completed_at"]),
            failed_at=_parse_dt(row["failed_at"]),
            cancelled_at=_parse_dt(row["cancelled_at"]),
            result=json.loads(row["result"]) if row["result"] else None,
            error=_row_error(row),
        )

    def find_pending_jobs(self, limit: int) -> list[TaskJob]:
        with get_connection(self._db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE status = 'pending'
                ORDER BY created_at ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            TaskJob(
                id=row["id"],
                job_type=row["job_type"],
                payload=json.loads(row["payload"] or "{}"),
                status=JobStatus.PENDING,
                priority=row["priority"],
                progress=row["progress"],
                attempts=row["attempts"],
                max_attempts=row["max_attempts"],
                created_at=_parse_dt(row["created_at"]),
            )
            for row in rows
        ]

    def count_jobs_by_status(self, status: str) -> int:
        with get_connection(self._db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM jobs WHERE status = ?", (JobStatus(status).value,)
            ).fetchone()
        return row["n"]

    def delete_completed_jobs_before(self, cutoff: datetime) -> int:
        with get_connection(self._db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM jobs WHERE status = 'completed' AND completed_at < ?",
                (cutoff.isoformat(),),
            )
            conn.commit()
        return cursor.rowcount

    def fail_stranded_jobs(
        self, started_before: datetime, exclude_ids: set[str], message: str
    ) -> int:
        params: list[Any] = [
            message,
            datetime.now(timezone.utc).isoformat(),
            started_before.isoformat(),
        ]
        exclusion = ""
        if exclude_ids:
            exclusion = f"AND id NOT IN ({', '.join('?' for _ in exclude_ids)})"
            params.extend(sorted(exclude_ids))
        with get_connection(self._db_path) as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET status = 'failed', error_message = ?, error_classification = 'stranded',
                    failed_at = ?
                WHERE status = 'processing'
                  AND (started_at IS NULL OR started_at < ?)
                  {exclusion}
                """,
                params,
            )
            conn.commit()
        if cursor.rowcount:
            logger.warning("[store] reconciled stranded jobs | count=%d", cursor.rowcount)
        return cursor.rowcount
