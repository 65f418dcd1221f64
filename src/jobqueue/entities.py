"""
Job queue domain entities.

- Job: single unit of work, or a recurring template when it carries a cron expression
- JobStatus / JobPriority: canonical status and priority values
- TransitionEvent: emitted by the state machine for every applied change

Mutability rules:
- job_id, job_type, payload, priority, created_at, cron_expression: Immutable
- status, retry_count, started_at, completed_at, error_message, worker_id:
  changed only through StateMachine transitions
- version: bumped by every successful transition (compare-and-set guard)
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional, Union
import uuid


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

DEFAULT_MAX_RETRIES = 5


class JobStatus(str, Enum):
    """
    Job status values.

    - PENDING: Waiting to be claimed by the dispatcher
    - SCHEDULED: Waiting for its scheduled time (or a recurring template)
    - PROCESSING: Claimed by a worker
    - COMPLETED: Handler succeeded (terminal)
    - FAILED: Handler failed, awaiting retry decision
    - DEAD_LETTER: Retry budget exhausted (terminal)
    - CANCELLED: Cancelled before execution (terminal)
    """

    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.DEAD_LETTER, JobStatus.CANCELLED}
)


class JobPriority(IntEnum):
    """Dispatch priority. Lower value dispatches first."""

    HIGH = 1
    MEDIUM = 2
    LOW = 3

    @classmethod
    def parse(cls, value: Union["JobPriority", int, str]) -> "JobPriority":
        """Accept an enum member, its numeric value or its (case-insensitive) name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            if value.isdigit():
                return cls(int(value))
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown priority: {value}") from None
        return cls(value)


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as a fixed-width UTC string (lexical order == time order)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a string produced by to_iso()."""
    if value is None:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


@dataclass
class Job:
    """
    Single unit of work.

    A job carrying a cron_expression is a recurring template: it stays
    SCHEDULED and only the instances it spawns are ever dispatched.
    """

    job_id: str
    job_type: str
    priority: JobPriority
    status: JobStatus
    payload: Union[str, bytes, None] = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    scheduled_time: Optional[datetime] = None
    cron_expression: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    worker_id: Optional[str] = None
    template_id: Optional[str] = None
    last_fired_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def create(
        cls,
        job_type: str,
        payload: Union[str, bytes, None] = None,
        priority: Union[JobPriority, int, str] = JobPriority.MEDIUM,
        max_retries: int = DEFAULT_MAX_RETRIES,
        scheduled_time: Optional[datetime] = None,
        cron_expression: Optional[str] = None,
        template_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "Job":
        """
        Create a new Job with generated ID and its initial status.

        Status starts SCHEDULED when a scheduled_time or cron_expression is
        given, PENDING otherwise.

        Raises:
            ValueError: If job_type is empty, max_retries is negative, or both
                scheduled_time and cron_expression are given
        """
        if not job_type or not job_type.strip():
            raise ValueError("job_type must be a non-empty string")
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        if scheduled_time is not None and cron_expression is not None:
            raise ValueError("A job is either scheduled once or recurring, not both")

        now = created_at or utc_now()
        is_template = cron_expression is not None
        status = (
            JobStatus.SCHEDULED
            if scheduled_time is not None or is_template
            else JobStatus.PENDING
        )

        return cls(
            job_id=generate_uuid(),
            job_type=job_type,
            priority=JobPriority.parse(priority),
            status=status,
            payload=payload,
            max_retries=max_retries,
            scheduled_time=scheduled_time,
            cron_expression=cron_expression,
            created_at=now,
            template_id=template_id,
            last_fired_at=now if is_template else None,
        )

    def spawn_instance(self, fire_time: datetime, created_at: datetime) -> "Job":
        """Build the SCHEDULED instance for one occurrence of this template."""
        return Job.create(
            job_type=self.job_type,
            payload=self.payload,
            priority=self.priority,
            max_retries=self.max_retries,
            scheduled_time=fire_time,
            template_id=self.job_id,
            created_at=created_at,
        )

    @property
    def is_template(self) -> bool:
        """Check if this job is a recurring template."""
        return self.cron_expression is not None

    def is_terminal(self) -> bool:
        """Check if job is in a terminal state."""
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        """Serializable view used for publications and broadcasts."""
        data = asdict(self)
        data["priority"] = self.priority.name
        data["status"] = self.status.value
        if isinstance(self.payload, bytes):
            data["payload"] = self.payload.decode("utf-8", errors="replace")
        for key in (
            "scheduled_time",
            "created_at",
            "started_at",
            "completed_at",
            "last_fired_at",
        ):
            data[key] = to_iso(data[key])
        return data


@dataclass(frozen=True)
class TransitionEvent:
    """
    A change applied by the state machine.

    previous_status is None for the creation of a record.
    """

    job: Job
    previous_status: Optional[JobStatus]
    status: JobStatus
    occurred_at: datetime

    def to_dict(self) -> dict:
        return {
            "job_id": self.job.job_id,
            "job_type": self.job.job_type,
            "priority": self.job.priority.name,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "status": self.status.value,
            "occurred_at": to_iso(self.occurred_at),
            "job": self.job.to_dict(),
        }
