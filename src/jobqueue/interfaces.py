"""
Collaborator interfaces consumed by the engine.

- JobStore: durable storage with an atomic, versioned transition primitive
- Publisher: fire-and-forget hand-off of jobs to a topic
- Broadcaster: best-effort push of status and metrics snapshots
"""

import logging
from datetime import datetime
from typing import Any, Optional, Protocol

from .entities import Job, JobPriority, JobStatus


logger = logging.getLogger(__name__)


# Topics (Publisher)
JOB_TOPIC = "jobs"
DEAD_LETTER_TOPIC = "jobs.dead-letter"

# Channels (Broadcaster)
STATUS_CHANNEL = "job-status"
METRICS_CHANNEL = "metrics"


class JobStore(Protocol):
    """Storage contract. All mutations of an existing record go through apply_transition()."""

    def create_job(self, job: Job) -> Job:
        ...

    def get_job(self, job_id: str) -> Optional[Job]:
        ...

    def list_jobs_by_status(self, status: JobStatus, limit: int = 100) -> list[Job]:
        """Jobs in status, ordered by (priority ASC, created_at ASC)."""
        ...

    def find_due_scheduled(self, now: datetime, limit: int = 100) -> list[Job]:
        """SCHEDULED non-template jobs with scheduled_time <= now."""
        ...

    def list_templates(self) -> list[Job]:
        """Recurring templates still SCHEDULED."""
        ...

    def find_retry_eligible(self, limit: int = 100) -> list[Job]:
        """FAILED jobs awaiting a retry decision."""
        ...

    def count_by_status(self) -> dict[JobStatus, int]:
        ...

    def count_by_status_and_priority(self) -> dict[tuple[JobStatus, JobPriority], int]:
        ...

    def average_processing_time(self) -> tuple[int, float]:
        """(number of COMPLETED jobs, mean completed_at - started_at in seconds)."""
        ...

    def apply_transition(
        self,
        job_id: str,
        expected_status: JobStatus,
        expected_version: int,
        changes: dict[str, Any],
    ) -> Job:
        """Atomically apply changes if status and version still match; bump version."""
        ...

    def expand_recurrence(
        self,
        template: Job,
        fire_time: datetime,
        instance: Job,
    ) -> Job:
        """Atomically advance template.last_fired_at to fire_time and insert instance."""
        ...


class Publisher(Protocol):
    def publish(self, topic: str, job: Job) -> None:
        ...


class Broadcaster(Protocol):
    def broadcast(self, channel: str, payload: dict) -> None:
        ...


class LoggingPublisher:
    """Publisher that only records the hand-off in the log."""

    def publish(self, topic: str, job: Job) -> None:
        logger.debug(f"Published job {job.job_id} to '{topic}'")


class LoggingBroadcaster:
    """Broadcaster that only records the push in the log."""

    def broadcast(self, channel: str, payload: dict) -> None:
        logger.debug(f"Broadcast on '{channel}': {sorted(payload)}")
