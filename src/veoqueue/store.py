from __future__ import annotations

import contextlib
import json
import sqlite3
from pathlib import Path
from typing import Any

from .models import JobRecord, JobStatus
from .utils import utc_now_iso


class PersistenceError(RuntimeError):
    pass


def _row_to_job(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        job_id=row["job_id"],
        shot_id=row["shot_id"],
        title=row["title"],
        operation_name=row["operation_name"],
        status=JobStatus(row["status"]),
        created_at=row["created_at"],
        file_path=row["file_path"],
    )


class JobStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        try:
            self.conn = sqlite3.connect(str(db_path))
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode = WAL")
            self.conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as exc:
            raise PersistenceError(f"open {db_path} failed: {exc}") from exc

    def close(self) -> None:
        self.conn.close()

    def _execute(self, query: str, params: tuple | list = ()) -> sqlite3.Cursor:
        try:
            cursor = self.conn.execute(query, params)
            self.conn.commit()
        except sqlite3.Error as exc:
            with contextlib.suppress(sqlite3.Error):
                self.conn.rollback()
            raise PersistenceError(f"job store query failed: {exc}") from exc
        return cursor

    def _fetch(self, query: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        try:
            return self.conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"job store query failed: {exc}") from exc

    def init_schema(self) -> None:
        try:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    shot_id TEXT,
                    title TEXT,
                    operation_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    file_path TEXT
                );

                CREATE TABLE IF NOT EXISTS job_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_status_created_at
                    ON jobs(status, created_at);
                CREATE INDEX IF NOT EXISTS idx_job_events_job_timestamp
                    ON job_events(job_id, timestamp);
                """
            )
            self.conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"schema init failed: {exc}") from exc

    def add_event(self, job_id: str, event_type: str, details: dict[str, Any] | None = None) -> None:
        self._execute(
            """
            INSERT INTO job_events(job_id, event_type, timestamp, details_json)
            VALUES (?, ?, ?, ?)
            """,
            (job_id, event_type, utc_now_iso(), json.dumps(details or {}, sort_keys=True)),
        )

    def list_events(self, job_id: str) -> list[dict[str, Any]]:
        rows = self._fetch(
            "SELECT event_type, timestamp, details_json FROM job_events WHERE job_id = ? ORDER BY id",
            (job_id,),
        )
        return [
            {
                "event_type": row["event_type"],
                "timestamp": row["timestamp"],
                "details": json.loads(row["details_json"]),
            }
            for row in rows
        ]

    def create_job(
        self,
        job: JobRecord,
        event_type: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Insert a PENDING job, plus its first event in the same transaction when given."""
        if job.status is not JobStatus.PENDING or job.file_path is not None:
            raise ValueError("new jobs must be PENDING without a file path")
        try:
            with self.conn:
                self.conn.execute(
                    """
                    INSERT INTO jobs(job_id, shot_id, title, operation_name, status, created_at, file_path)
                    VALUES (?, ?, ?, ?, ?, ?, NULL)
                    """,
                    (job.job_id, job.shot_id, job.title, job.operation_name, job.status.value, job.created_at),
                )
                if event_type is not None:
                    self.conn.execute(
                        """
                        INSERT INTO job_events(job_id, event_type, timestamp, details_json)
                        VALUES (?, ?, ?, ?)
                        """,
                        (job.job_id, event_type, utc_now_iso(), json.dumps(details or {}, sort_keys=True)),
                    )
        except sqlite3.Error as exc:
            raise PersistenceError(f"create job {job.job_id} failed: {exc}") from exc

    def get_job(self, job_id: str) -> JobRecord | None:
        rows = self._fetch("SELECT * FROM jobs WHERE job_id = ?", (job_id,))
        if not rows:
            return None
        return _row_to_job(rows[0])

    def list_jobs_by_status(self, status: JobStatus) -> list[JobRecord]:
        rows = self._fetch(
            "SELECT * FROM jobs WHERE status = ? ORDER BY created_at",
            (status.value,),
        )
        return [_row_to_job(row) for row in rows]

    def list_jobs(self, limit: int | None = None) -> list[JobRecord]:
        query = "SELECT * FROM jobs ORDER BY created_at DESC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        return [_row_to_job(row) for row in self._fetch(query, params)]

    def update_status(self, job_id: str, status: JobStatus, file_path: str | None = None) -> bool:
        """Apply a status write; DONE rows are never moved back to PENDING.

        Returns ``True`` when a row changed.
        """
        if status is JobStatus.DONE:
            if not file_path:
                raise ValueError("DONE requires a file path")
            cursor = self._execute(
                "UPDATE jobs SET status = ?, file_path = ? WHERE job_id = ? AND status = ?",
                (JobStatus.DONE.value, file_path, job_id, JobStatus.PENDING.value),
            )
            return cursor.rowcount > 0
        if file_path is not None:
            raise ValueError("PENDING jobs cannot carry a file path")
        return False

    def delete_job(self, job_id: str) -> bool:
        cursor = self._execute("DELETE FROM jobs WHERE job_id = ?", (job_id,))
        if cursor.rowcount > 0:
            self._execute("DELETE FROM job_events WHERE job_id = ?", (job_id,))
            return True
        return False

    def summary_counts(self) -> dict[str, int]:
        rows = self._fetch("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status")
        output = {status.value: 0 for status in JobStatus}
        for row in rows:
            output[str(row["status"])] = int(row["count"])
        return output
