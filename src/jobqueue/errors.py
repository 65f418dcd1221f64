"""
Job queue exceptions.

Taxonomy:
- ValidationError: rejected at submission, never reaches the store
- JobNotFoundError: surfaced to the caller
- InvalidTransitionError: edge not allowed by the state machine
- ConflictError: lost a transition race, recovered locally by skipping
- ExecutionError / DeadLetterCondition: outcome values, never raised out of the core
"""

from typing import Optional


class JobQueueError(Exception):
    """Base exception for all job queue errors."""
    pass


class ValidationError(JobQueueError):
    """Raised when a submission is rejected before it reaches the store."""
    pass


class UnknownJobTypeError(ValidationError):
    """Raised when no handler is registered for a job type."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"Unknown job type: {job_type}")


class InvalidCronExpressionError(ValidationError):
    """Raised when a cron expression cannot be parsed."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid cron expression '{expression}': {reason}")


class JobNotFoundError(JobQueueError):
    """Raised when a requested job does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidTransitionError(JobQueueError):
    """
    Raised when a status transition is not an allowed edge.

    Examples:
    - COMPLETED -> PROCESSING
    - anything out of CANCELLED
    - a recurring template moving to PENDING/PROCESSING
    """

    def __init__(self, job_id: str, source: str, target: str, reason: Optional[str] = None):
        self.job_id = job_id
        self.source = source
        self.target = target
        message = f"Invalid transition for job {job_id}: {source} -> {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class ConflictError(JobQueueError):
    """
    Raised when a compare-and-set on a job record loses a race.

    The stored record no longer matches the status/version the caller read,
    so none of the caller's side effects were applied.
    """

    def __init__(
        self,
        job_id: str,
        expected_status: str,
        actual_status: str,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
    ):
        self.job_id = job_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Conflict for job {job_id}: "
            f"expected status '{expected_status}' (version {expected_version}), "
            f"got '{actual_status}' (version {actual_version})"
        )


class ExecutionError(JobQueueError):
    """
    Failure reported by a handler.

    Carried inside a HandlerResult; workers never let it escape.
    """

    def __init__(self, job_type: str, message: str):
        self.job_type = job_type
        self.message = message
        super().__init__(f"{job_type}: {message}")


class DeadLetterCondition(JobQueueError):
    """Why a job was routed to the dead-letter sink. Published, not raised."""

    def __init__(self, job_id: str, retry_count: int, last_error: Optional[str]):
        self.job_id = job_id
        self.retry_count = retry_count
        self.last_error = last_error
        super().__init__(
            f"Job {job_id} dead-lettered after {retry_count} failed attempts: {last_error}"
        )

    @classmethod
    def from_job(cls, job) -> "DeadLetterCondition":
        """Rebuild the condition from a dead-lettered job record."""
        return cls(job.job_id, job.retry_count, job.error_message)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }
