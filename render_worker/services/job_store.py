"""
Job store service for render job persistence.

Two backends share one contract: an in-memory store for single-process
deployments and tests, and SQLite for durability across restarts. Every
mutation is a compare-and-swap on the record's `version`, so two workers can
never both win the same update.
"""

import sqlite3
import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from pathlib import Path

from render_worker.errors import DuplicateJob, JobNotFound, PersistenceConflict
from render_worker.models.job import (
    HistoryEntry,
    JobRecord,
    JobStateMachine,
    JobStatus,
    TERMINAL_STATUSES,
    utcnow,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"step", "reason", "attempt", "owner", "artifacts"}

# Fixed-width UTC timestamps so that text ordering in SQLite is chronological
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


class JobStore:
    """Contract shared by all job store backends."""

    def put(self, job: JobRecord) -> JobRecord:
        raise NotImplementedError

    def get(self, job_id: str) -> JobRecord:
        raise NotImplementedError

    def update_status(self, job_id: str, status: JobStatus,
                      history_entry: Optional[HistoryEntry] = None, *,
                      expected_version: int, **changes: Any) -> JobRecord:
        raise NotImplementedError

    def request_cancel(self, job_id: str) -> JobRecord:
        raise NotImplementedError

    def list_jobs(self, limit: Optional[int] = None, offset: int = 0) -> List[JobRecord]:
        raise NotImplementedError

    def list_unfinished(self) -> List[JobRecord]:
        raise NotImplementedError

    def mark_notified(self, job_id: str) -> JobRecord:
        raise NotImplementedError

    def list_unnotified(self) -> List[JobRecord]:
        raise NotImplementedError

    def cleanup_terminal_jobs(self, days_old: int = 30) -> int:
        raise NotImplementedError

    @staticmethod
    def _apply_update(current: JobRecord, status: JobStatus,
                      history_entry: Optional[HistoryEntry],
                      expected_version: int, changes: Dict[str, Any]) -> JobRecord:
        """Validate a CAS update against `current` and build the next record."""
        if current.version != expected_version:
            raise PersistenceConflict(current.job_id, expected_version, current.version)
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise TypeError(f"Cannot update fields: {sorted(unknown)}")

        JobStateMachine.check(current, status, changes.get("step", current.step), history_entry)

        now = utcnow()
        updated = current.model_copy(deep=True)
        for key, value in changes.items():
            setattr(updated, key, value)
        updated.status = status
        if history_entry is not None:
            updated.history.append(history_entry.model_copy())
        updated.version = current.version + 1
        updated.updated_at = now
        if status in TERMINAL_STATUSES:
            updated.completed_at = now
        return updated


class InMemoryJobStore(JobStore):
    """Lock-guarded dict of job records. Records are copied in and out."""

    def __init__(self):
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    def put(self, job: JobRecord) -> JobRecord:
        with self._lock:
            if job.job_id in self._jobs:
                raise DuplicateJob(f"Job {job.job_id} already exists")
            self._jobs[job.job_id] = job.model_copy(deep=True)
        logger.info("Stored job %s", job.job_id)
        return job.model_copy(deep=True)

    def get(self, job_id: str) -> JobRecord:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            return job.model_copy(deep=True)

    def update_status(self, job_id: str, status: JobStatus,
                      history_entry: Optional[HistoryEntry] = None, *,
                      expected_version: int, **changes: Any) -> JobRecord:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFound(job_id)
            updated = self._apply_update(current, status, history_entry, expected_version, changes)
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    def request_cancel(self, job_id: str) -> JobRecord:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFound(job_id)
            if current.is_terminal or current.cancel_requested:
                return current.model_copy(deep=True)
            return self._set_flag(current, "cancel_requested")

    def mark_notified(self, job_id: str) -> JobRecord:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFound(job_id)
            if current.notified:
                return current.model_copy(deep=True)
            return self._set_flag(current, "notified")

    def _set_flag(self, current: JobRecord, flag: str) -> JobRecord:
        updated = current.model_copy(deep=True)
        setattr(updated, flag, True)
        updated.version += 1
        updated.updated_at = utcnow()
        self._jobs[updated.job_id] = updated
        return updated.model_copy(deep=True)

    def list_jobs(self, limit: Optional[int] = None, offset: int = 0) -> List[JobRecord]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.submitted_at, reverse=True)
            end = offset + limit if limit else None
            return [j.model_copy(deep=True) for j in jobs[offset:end]]

    def list_unfinished(self) -> List[JobRecord]:
        with self._lock:
            # dict order is insertion order, i.e. submission order
            return [j.model_copy(deep=True) for j in self._jobs.values() if not j.is_terminal]

    def list_unnotified(self) -> List[JobRecord]:
        with self._lock:
            return [
                j.model_copy(deep=True) for j in self._jobs.values()
                if j.is_terminal and not j.notified
            ]

    def cleanup_terminal_jobs(self, days_old: int = 30) -> int:
        cutoff = utcnow() - timedelta(days=days_old)
        with self._lock:
            stale = [
                job_id for job_id, job in self._jobs.items()
                if job.is_terminal and job.completed_at is not None and job.completed_at < cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]
        if stale:
            logger.info(f"Cleaned up {len(stale)} old jobs")
        return len(stale)


class SQLiteJobStore(JobStore):
    """SQLite-based job store."""

    COLUMNS = (
        "job_id, status, step, reason, payload, artifacts, attempt, history, version, "
        "owner, cancel_requested, submitted_at, updated_at, completed_at, notified"
    )

    def __init__(self, db_path: str = "render_worker.db", timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=self.timeout)

    def _init_database(self):
        """Initialize the database with required tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    step TEXT,
                    reason TEXT,
                    payload TEXT,  -- JSON string
                    artifacts TEXT,  -- JSON string
                    attempt INTEGER NOT NULL DEFAULT 0,
                    history TEXT,  -- JSON string
                    version INTEGER NOT NULL DEFAULT 0,
                    owner TEXT,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    submitted_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT,
                    notified INTEGER NOT NULL DEFAULT 0
                )
            """)

            # databases created before terminal notifications were tracked
            columns = {row[1] for row in cursor.execute("PRAGMA table_info(jobs)")}
            if "notified" not in columns:
                cursor.execute("ALTER TABLE jobs ADD COLUMN notified INTEGER NOT NULL DEFAULT 0")
                # jobs that finished before the upgrade are not announced again
                cursor.execute("UPDATE jobs SET notified = 1 WHERE status IN (?, ?)",
                               (JobStatus.SUCCEEDED.value, JobStatus.FAILED.value))
                logger.info("Added notified column to jobs table")

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_submitted_at ON jobs(submitted_at)
            """)

            conn.commit()
            logger.info(f"Job store initialized at {self.db_path}")

    def _record_to_row(self, job: JobRecord) -> tuple:
        data = job.model_dump(mode="json")
        return (
            data["job_id"],
            data["status"],
            data["step"],
            data["reason"],
            json.dumps(data["payload"]),
            json.dumps(data["artifacts"]),
            data["attempt"],
            json.dumps(data["history"]),
            data["version"],
            data["owner"],
            1 if data["cancel_requested"] else 0,
            _format_ts(job.submitted_at),
            _format_ts(job.updated_at),
            _format_ts(job.completed_at),
            1 if data["notified"] else 0,
        )

    def _row_to_record(self, row) -> JobRecord:
        """Convert database row to JobRecord object."""
        return JobRecord(
            job_id=row[0],
            status=JobStatus(row[1]),
            step=row[2],
            reason=row[3],
            payload=json.loads(row[4]) if row[4] else {},
            artifacts=json.loads(row[5]) if row[5] else {},
            attempt=row[6],
            history=json.loads(row[7]) if row[7] else [],
            version=row[8],
            owner=row[9],
            cancel_requested=bool(row[10]),
            submitted_at=row[11],
            updated_at=row[12],
            completed_at=row[13],
            notified=bool(row[14]),
        )

    def _fetch(self, conn: sqlite3.Connection, job_id: str) -> JobRecord:
        cursor = conn.cursor()
        cursor.execute(f"SELECT {self.COLUMNS} FROM jobs WHERE job_id = ?", (job_id,))
        row = cursor.fetchone()
        if not row:
            raise JobNotFound(job_id)
        return self._row_to_record(row)

    def put(self, job: JobRecord) -> JobRecord:
        with self._connect() as conn:
            try:
                conn.execute(
                    f"INSERT INTO jobs ({self.COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self._record_to_row(job),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateJob(f"Job {job.job_id} already exists") from e
            conn.commit()
        logger.info(f"Created job {job.job_id} in database")
        return job.model_copy(deep=True)

    def get(self, job_id: str) -> JobRecord:
        with self._connect() as conn:
            return self._fetch(conn, job_id)

    def _swap(self, conn: sqlite3.Connection, updated: JobRecord, expected_version: int):
        row = self._record_to_row(updated)
        cursor = conn.execute("""
            UPDATE jobs SET
                status = ?, step = ?, reason = ?, artifacts = ?, attempt = ?, history = ?,
                version = ?, owner = ?, cancel_requested = ?, updated_at = ?, completed_at = ?,
                notified = ?
            WHERE job_id = ? AND version = ?
        """, (
            row[1], row[2], row[3], row[5], row[6], row[7],
            row[8], row[9], row[10], row[12], row[13], row[14],
            updated.job_id, expected_version,
        ))
        if cursor.rowcount != 1:
            conn.rollback()
            actual = self._fetch(conn, updated.job_id)
            raise PersistenceConflict(updated.job_id, expected_version, actual.version)
        conn.commit()

    def update_status(self, job_id: str, status: JobStatus,
                      history_entry: Optional[HistoryEntry] = None, *,
                      expected_version: int, **changes: Any) -> JobRecord:
        with self._connect() as conn:
            current = self._fetch(conn, job_id)
            updated = self._apply_update(current, status, history_entry, expected_version, changes)
            self._swap(conn, updated, expected_version)
            return updated

    def _set_flag(self, job_id: str, flag: str, done: Callable[[JobRecord], bool]) -> JobRecord:
        """CAS loop that sets a boolean flag unless `done(current)` says there is nothing to do."""
        while True:
            with self._connect() as conn:
                current = self._fetch(conn, job_id)
                if done(current):
                    return current
                updated = current.model_copy(deep=True)
                setattr(updated, flag, True)
                updated.version += 1
                updated.updated_at = utcnow()
                try:
                    self._swap(conn, updated, current.version)
                except PersistenceConflict:
                    continue
                return updated

    def request_cancel(self, job_id: str) -> JobRecord:
        return self._set_flag(job_id, "cancel_requested",
                              lambda job: job.is_terminal or job.cancel_requested)

    def mark_notified(self, job_id: str) -> JobRecord:
        return self._set_flag(job_id, "notified", lambda job: job.notified)

    def list_jobs(self, limit: Optional[int] = None, offset: int = 0) -> List[JobRecord]:
        """List jobs with optional pagination, newest first."""
        with self._connect() as conn:
            query = f"SELECT {self.COLUMNS} FROM jobs ORDER BY submitted_at DESC"
            params: tuple = ()
            if limit:
                query += " LIMIT ? OFFSET ?"
                params = (limit, offset)
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_record(row) for row in rows]

    def list_unfinished(self) -> List[JobRecord]:
        """Non-terminal jobs in submission order."""
        with self._connect() as conn:
            rows = conn.execute(f"""
                SELECT {self.COLUMNS} FROM jobs
                WHERE status IN (?, ?)
                ORDER BY submitted_at ASC, rowid ASC
            """, (JobStatus.PENDING.value, JobStatus.RUNNING.value)).fetchall()
            return [self._row_to_record(row) for row in rows]

    def list_unnotified(self) -> List[JobRecord]:
        """Terminal jobs whose notification was never sent, in submission order."""
        with self._connect() as conn:
            rows = conn.execute(f"""
                SELECT {self.COLUMNS} FROM jobs
                WHERE status IN (?, ?) AND notified = 0
                ORDER BY submitted_at ASC, rowid ASC
            """, (JobStatus.SUCCEEDED.value, JobStatus.FAILED.value)).fetchall()
            return [self._row_to_record(row) for row in rows]

    def cleanup_terminal_jobs(self, days_old: int = 30) -> int:
        """Delete terminal jobs that finished more than `days_old` days ago."""
        cutoff = utcnow() - timedelta(days=days_old)
        with self._connect() as conn:
            cursor = conn.execute("""
                DELETE FROM jobs
                WHERE completed_at < ? AND status IN (?, ?)
            """, (_format_ts(cutoff), JobStatus.SUCCEEDED.value, JobStatus.FAILED.value))
            deleted_count = cursor.rowcount
            conn.commit()

        if deleted_count > 0:
            logger.info(f"Cleaned up {deleted_count} old jobs")
        return deleted_count


def create_job_store(kind: str, db_path: str = "render_worker.db") -> JobStore:
    """Build the store backend named by the JOB_STORE setting."""
    if kind == "memory":
        return InMemoryJobStore()
    if kind == "sqlite":
        return SQLiteJobStore(db_path)
    raise ValueError(f"Unknown job store: {kind}")
