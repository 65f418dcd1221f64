"""
Persistence Adapter for the job queue.

SQLite storage (WAL mode) implementing the JobStore contract:
- Versioned compare-and-set transitions (no read-modify-write)
- Atomic recurrence expansion (template marker advance + instance insert)
- Queue ordering: priority ASC, created_at ASC, insertion order
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from .entities import (
    Job,
    JobPriority,
    JobStatus,
    from_iso,
    to_iso,
)
from .errors import (
    ConflictError,
    JobNotFoundError,
)


# Columns a transition may change
MUTABLE_COLUMNS = frozenset(
    {
        "status",
        "retry_count",
        "started_at",
        "completed_at",
        "error_message",
        "worker_id",
    }
)

DATETIME_COLUMNS = frozenset(
    {"scheduled_time", "created_at", "started_at", "completed_at", "last_fired_at"}
)

QUEUE_ORDER = "ORDER BY priority ASC, created_at ASC, rowid ASC"


class PersistenceAdapter:
    """
    SQLite-based persistence for job records.

    - Does NOT contain business logic (edges are validated by StateMachine)
    - Every update is guarded by (status, version) and bumps version
    """

    def __init__(self, db_path: str | Path, timeout: float = 30.0):
        """
        Initialize persistence adapter.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds a connection waits on a locked database

        Raises:
            ValueError: For ":memory:", since each call opens its own connection
        """
        self.db_path = str(db_path)
        if self.db_path == ":memory:":
            raise ValueError(
                "In-memory SQLite is not supported: every operation opens a new "
                "connection. Use a temporary file instead."
            )
        self.timeout = timeout
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode enabled."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    job_type TEXT NOT NULL,
                    priority INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    payload,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL,
                    scheduled_time TEXT,
                    cron_expression TEXT,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    error_message TEXT,
                    worker_id TEXT,
                    template_id TEXT,
                    last_fired_at TEXT,
                    version INTEGER NOT NULL DEFAULT 0
                )
            """)

            # Dispatch ordering
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_queue_order
                ON jobs (status, priority, created_at)
            """)

            # Promotion scan
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_scheduled_time
                ON jobs (status, scheduled_time)
            """)

    # =========================================================================
    # Row Mapping
    # =========================================================================

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        """Convert a database row to a Job entity."""
        return Job(
            job_id=row["job_id"],
            job_type=row["job_type"],
            priority=JobPriority(row["priority"]),
            status=JobStatus(row["status"]),
            payload=row["payload"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            scheduled_time=from_iso(row["scheduled_time"]),
            cron_expression=row["cron_expression"],
            created_at=from_iso(row["created_at"]),
            started_at=from_iso(row["started_at"]),
            completed_at=from_iso(row["completed_at"]),
            error_message=row["error_message"],
            worker_id=row["worker_id"],
            template_id=row["template_id"],
            last_fired_at=from_iso(row["last_fired_at"]),
            version=row["version"],
        )

    @staticmethod
    def _to_column(name: str, value: Any) -> Any:
        """Convert an entity value to its column representation."""
        if name in DATETIME_COLUMNS:
            return to_iso(value)
        if isinstance(value, JobStatus):
            return value.value
        if isinstance(value, JobPriority):
            return int(value)
        return value

    def _insert_job(self, conn: sqlite3.Connection, job: Job) -> None:
        conn.execute(
            """
            INSERT INTO jobs
            (job_id, job_type, priority, status, payload, retry_count, max_retries,
             scheduled_time, cron_expression, created_at, started_at, completed_at,
             error_message, worker_id, template_id, last_fired_at, version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.job_id,
                job.job_type,
                int(job.priority),
                job.status.value,
                job.payload,
                job.retry_count,
                job.max_retries,
                to_iso(job.scheduled_time),
                job.cron_expression,
                to_iso(job.created_at),
                to_iso(job.started_at),
                to_iso(job.completed_at),
                job.error_message,
                job.worker_id,
                job.template_id,
                to_iso(job.last_fired_at),
                job.version,
            ),
        )

    # =========================================================================
    # Job Operations
    # =========================================================================

    def create_job(self, job: Job) -> Job:
        """Insert a new job record."""
        with self._transaction() as conn:
            self._insert_job(conn, job)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_job(row)

    def list_jobs_by_status(self, status: JobStatus, limit: int = 100) -> list[Job]:
        """List jobs by status in dispatch order."""
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs WHERE status = ? {QUEUE_ORDER} LIMIT ?",
                (status.value, limit),
            ).fetchall()

        return [self._row_to_job(row) for row in rows]

    def find_due_scheduled(self, now: datetime, limit: int = 100) -> list[Job]:
        """SCHEDULED one-off jobs whose scheduled_time has arrived."""
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM jobs
                WHERE status = ?
                  AND cron_expression IS NULL
                  AND scheduled_time IS NOT NULL
                  AND scheduled_time <= ?
                {QUEUE_ORDER}
                LIMIT ?
                """,
                (JobStatus.SCHEDULED.value, to_iso(now), limit),
            ).fetchall()

        return [self._row_to_job(row) for row in rows]

    def list_templates(self) -> list[Job]:
        """Recurring templates that are still active (SCHEDULED)."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE status = ? AND cron_expression IS NOT NULL
                ORDER BY created_at ASC
                """,
                (JobStatus.SCHEDULED.value,),
            ).fetchall()

        return [self._row_to_job(row) for row in rows]

    def find_retry_eligible(self, limit: int = 100) -> list[Job]:
        """FAILED jobs awaiting requeue or dead-lettering."""
        return self.list_jobs_by_status(JobStatus.FAILED, limit=limit)

    def count_by_status(self) -> dict[JobStatus, int]:
        """Count jobs per status (every status present, zero if empty)."""
        counts = {status: 0 for status in JobStatus}
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS count FROM jobs GROUP BY status"
            ).fetchall()

        for row in rows:
            counts[JobStatus(row["status"])] = row["count"]
        return counts

    def count_by_status_and_priority(self) -> dict[tuple[JobStatus, JobPriority], int]:
        """Count jobs per (status, priority)."""
        counts: dict[tuple[JobStatus, JobPriority], int] = {}
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT status, priority, COUNT(*) AS count
                FROM jobs GROUP BY status, priority
                """
            ).fetchall()

        for row in rows:
            counts[(JobStatus(row["status"]), JobPriority(row["priority"]))] = row["count"]
        return counts

    def average_processing_time(self) -> tuple[int, float]:
        """
        Mean processing time of COMPLETED jobs.

        Returns:
            (sample count, mean seconds); (0, 0.0) when nothing completed
        """
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT started_at, completed_at FROM jobs
                WHERE status = ? AND started_at IS NOT NULL AND completed_at IS NOT NULL
                """,
                (JobStatus.COMPLETED.value,),
            ).fetchall()

        if not rows:
            return 0, 0.0

        total = sum(
            (from_iso(row["completed_at"]) - from_iso(row["started_at"])).total_seconds()
            for row in rows
        )
        return len(rows), total / len(rows)

    # =========================================================================
    # Atomic Mutations
    # =========================================================================

    def apply_transition(
        self,
        job_id: str,
        expected_status: JobStatus,
        expected_version: int,
        changes: dict[str, Any],
    ) -> Job:
        """
        Compare-and-set update of a job record.

        The UPDATE only matches if the stored status and version still equal
        what the caller read, so of two racing callers exactly one wins.

        Raises:
            JobNotFoundError: If job doesn't exist
            ConflictError: If status or version changed underneath the caller
        """
        unknown = set(changes) - MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns not mutable through a transition: {sorted(unknown)}")

        assignments = [f"{name} = ?" for name in changes]
        values = [self._to_column(name, value) for name, value in changes.items()]
        assignments.append("version = version + 1")

        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET {', '.join(assignments)}
                WHERE job_id = ? AND status = ? AND version = ?
                """,
                (*values, job_id, expected_status.value, expected_version),
            )

            if cursor.rowcount == 0:
                self._raise_for_missed_update(conn, job_id, expected_status, expected_version)

            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()

        return self._row_to_job(row)

    def expand_recurrence(
        self,
        template: Job,
        fire_time: datetime,
        instance: Job,
    ) -> Job:
        """
        Advance a template's last-fired marker and insert its instance atomically.

        The marker update is guarded by the marker value the caller read, so
        one occurrence is expanded at most once even when ticks race.

        Raises:
            JobNotFoundError: If template doesn't exist
            ConflictError: If the marker already moved or the template left SCHEDULED
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET last_fired_at = ?, version = version + 1
                WHERE job_id = ? AND status = ? AND last_fired_at = ?
                """,
                (
                    to_iso(fire_time),
                    template.job_id,
                    JobStatus.SCHEDULED.value,
                    to_iso(template.last_fired_at),
                ),
            )

            if cursor.rowcount == 0:
                self._raise_for_missed_update(
                    conn, template.job_id, JobStatus.SCHEDULED, template.version
                )

            self._insert_job(conn, instance)

        return instance

    def _raise_for_missed_update(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        expected_status: JobStatus,
        expected_version: int,
    ) -> None:
        row = conn.execute(
            "SELECT status, version FROM jobs WHERE job_id = ?",
            (job_id,),
        ).fetchone()

        if row is None:
            raise JobNotFoundError(job_id)

        raise ConflictError(
            job_id,
            expected_status=expected_status.value,
            actual_status=row["status"],
            expected_version=expected_version,
            actual_version=row["version"],
        )
