"""
Retry Policy and Retry Controller.

RetryPolicy is pure: it computes backoff delays and decides, for a FAILED
job, between Requeue(after delay) and DeadLetter.

RetryController applies those decisions through the state machine:
- right after a failure (dead-letter immediately when the budget is spent)
- on every retry-check tick (requeue jobs whose backoff has elapsed)

Nothing here sleeps for a backoff: eligibility is re-evaluated each tick.

Backoff:
    delay(n) = min(initial_delay * multiplier ** n, max_delay)
    Example with 1s / 2.0 / 60s: 1s, 2s, 4s, 8s, 16s, 32s, 60s, 60s, ...
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from .clock import Clock, SystemClock
from .entities import Job, JobStatus
from .errors import ConflictError, DeadLetterCondition, JobNotFoundError
from .interfaces import DEAD_LETTER_TOPIC, JOB_TOPIC, JobStore, Publisher
from .state_machine import StateMachine


logger = logging.getLogger(__name__)


DEFAULT_INITIAL_DELAY_SECONDS = 1.0
DEFAULT_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY_SECONDS = 60.0


@dataclass(frozen=True)
class Requeue:
    """Retry the job once delay has elapsed since its last attempt started."""

    delay: timedelta


@dataclass(frozen=True)
class DeadLetter:
    """Retry budget exhausted; route to the dead-letter sink."""

    condition: DeadLetterCondition


RetryDecision = Union[Requeue, DeadLetter]


class RetryPolicy:
    """
    Exponential backoff with a cap, and the retry-vs-dead-letter rule.

    retry_count on a FAILED job already includes the failure just recorded,
    so a job with max_retries=N is requeued after failures 1..N and
    dead-lettered on failure N+1.
    """

    def __init__(
        self,
        initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
        multiplier: float = DEFAULT_MULTIPLIER,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    ):
        if initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if max_delay < initial_delay:
            raise ValueError("max_delay must be >= initial_delay")

        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.max_delay = max_delay

    def calculate_delay(self, retry_count: int) -> float:
        """
        Backoff delay in seconds for a retry count.

        Formula: min(initial_delay * multiplier ** retry_count, max_delay)
        """
        if retry_count < 0:
            raise ValueError("retry_count must be >= 0")
        try:
            delay = self.initial_delay * (self.multiplier ** retry_count)
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)

    def retry_delay(self, job: Job) -> timedelta:
        """Delay to wait before retrying a FAILED job."""
        return timedelta(seconds=self.calculate_delay(max(job.retry_count - 1, 0)))

    def on_failure(self, job: Job) -> RetryDecision:
        """Decide what happens to a FAILED job."""
        attempts_before_this_failure = job.retry_count - 1
        if attempts_before_this_failure >= job.max_retries:
            return DeadLetter(DeadLetterCondition.from_job(job))
        return Requeue(self.retry_delay(job))

    def is_eligible(self, job: Job, now: datetime) -> bool:
        """Check whether a FAILED job's backoff has elapsed."""
        last_attempt = job.started_at or job.created_at
        return now - last_attempt >= self.retry_delay(job)


class RetryController:
    """
    Applies retry decisions.

    Requeue: FAILED -> PENDING once eligible, republished to the job topic.
    DeadLetter: FAILED -> DEAD_LETTER, published to the dead-letter topic.
    """

    def __init__(
        self,
        store: JobStore,
        state_machine: StateMachine,
        publisher: Publisher,
        policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
        batch_size: int = 100,
    ):
        self.store = store
        self.state_machine = state_machine
        self.publisher = publisher
        self.policy = policy or RetryPolicy()
        self.clock = clock or SystemClock()
        self.batch_size = batch_size

    # =========================================================================
    # Failure Handling
    # =========================================================================

    def on_job_failed(self, job: Job) -> RetryDecision:
        """
        Handle a job that just moved to FAILED.

        Called by the Dispatcher. Dead-letters immediately when the budget is
        spent; otherwise the retry-check tick requeues it later.
        """
        decision = self.policy.on_failure(job)

        if isinstance(decision, DeadLetter):
            self.dead_letter(job, decision.condition)
        else:
            logger.info(
                f"Job {job.job_id} failed (attempt {job.retry_count}/{job.max_retries + 1}), "
                f"retry in {decision.delay.total_seconds()}s: {job.error_message}"
            )

        return decision

    def dead_letter(self, job: Job, condition: DeadLetterCondition) -> Optional[Job]:
        """
        Route a FAILED job to DEAD_LETTER.

        Returns:
            The dead-lettered job, or None if another caller moved it first
        """
        try:
            dead = self.state_machine.transition(job, JobStatus.DEAD_LETTER)
        except ConflictError as e:
            logger.debug(f"Skipping dead-letter of job {job.job_id}: {e}")
            return None

        # Subscribers rebuild the condition from retry_count and error_message
        logger.warning(f"Moved to dead letter: {condition}")
        self._publish(DEAD_LETTER_TOPIC, dead)
        return dead

    def requeue(self, job: Job) -> Optional[Job]:
        """
        Move a FAILED job back to PENDING.

        Returns:
            The requeued job, or None if another caller moved it first
        """
        try:
            pending = self.state_machine.transition(job, JobStatus.PENDING)
        except ConflictError as e:
            logger.debug(f"Skipping requeue of job {job.job_id}: {e}")
            return None

        logger.info(f"Retrying job {job.job_id} (attempt {job.retry_count + 1})")
        self._publish(JOB_TOPIC, pending)
        return pending

    # =========================================================================
    # Retry-Check Tick
    # =========================================================================

    def tick(self) -> dict:
        """
        Re-evaluate every FAILED job.

        Returns:
            Counts of jobs requeued, dead-lettered and still waiting
        """
        stats = {"requeued": 0, "dead_lettered": 0, "waiting": 0}
        now = self.clock.now()

        for job in self.store.find_retry_eligible(limit=self.batch_size):
            decision = self.policy.on_failure(job)

            if isinstance(decision, DeadLetter):
                if self.dead_letter(job, decision.condition) is not None:
                    stats["dead_lettered"] += 1
            elif self.policy.is_eligible(job, now):
                if self.requeue(job) is not None:
                    stats["requeued"] += 1
            else:
                stats["waiting"] += 1

        if stats["requeued"] or stats["dead_lettered"]:
            logger.info(
                f"Retry check: {stats['requeued']} requeued, "
                f"{stats['dead_lettered']} dead-lettered, {stats['waiting']} waiting"
            )
        return stats

    def retry_status(self, job_id: str) -> dict:
        """Describe where a job stands in its retry budget."""
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        info = {
            "job_id": job.job_id,
            "status": job.status.value,
            "retry_count": job.retry_count,
            "max_retries": job.max_retries,
            "retry_at": None,
        }
        if job.status == JobStatus.FAILED:
            decision = self.policy.on_failure(job)
            if isinstance(decision, Requeue):
                info["retry_at"] = (job.started_at or job.created_at) + decision.delay
        return info

    def _publish(self, topic: str, job: Job) -> None:
        try:
            self.publisher.publish(topic, job)
        except Exception as e:
            logger.warning(f"Failed to publish job {job.job_id} to '{topic}': {e}")
