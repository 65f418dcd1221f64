"""
State Machine for job records.

The only writer of job records:
- Validates the edge (source -> target) before touching the store
- Computes the side effects of the edge (timestamps, worker, retry count)
- Applies them through the store's versioned compare-and-set
- Emits a TransitionEvent to every listener (metrics, broadcaster)

Allowed edges:
    PENDING    -> PROCESSING | CANCELLED
    SCHEDULED  -> PENDING | CANCELLED
    PROCESSING -> COMPLETED | FAILED
    FAILED     -> PENDING | DEAD_LETTER | CANCELLED

A PROCESSING job cannot be cancelled: its execution finishes and the outcome
transition applies.
"""

import logging
import threading
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

from .clock import Clock, SystemClock
from .entities import Job, JobStatus, TransitionEvent
from .errors import InvalidTransitionError
from .interfaces import JobStore


logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.SCHEDULED: frozenset({JobStatus.PENDING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset(
        {JobStatus.PENDING, JobStatus.DEAD_LETTER, JobStatus.CANCELLED}
    ),
}

TransitionListener = Callable[[TransitionEvent], None]

# Per-job event ordering locks
ORDER_LOCK_STRIPES = 64


def is_allowed(source: JobStatus, target: JobStatus) -> bool:
    """Check whether source -> target is an edge of the state machine."""
    return target in ALLOWED_TRANSITIONS.get(source, frozenset())


class StateMachine:
    """
    Validates and applies job status transitions.

    Two callers holding the same snapshot of a job race on the store's
    (status, version) guard; the loser gets ConflictError and nothing of its
    change is written or emitted.

    Each write and the delivery of its event happen under the job's ordering
    lock, so listeners see a job's events in commit order even when different
    threads apply them. Jobs hash onto a fixed set of lock stripes; unrelated
    jobs only contend when they share a stripe. Listeners must not block;
    hand slow work to a queue (see BroadcastOutbox).
    """

    def __init__(
        self,
        store: JobStore,
        clock: Optional[Clock] = None,
        listeners: Optional[list[TransitionListener]] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self._listeners: list[TransitionListener] = list(listeners or [])
        self._order_locks = [threading.RLock() for _ in range(ORDER_LOCK_STRIPES)]

    def add_listener(self, listener: TransitionListener) -> None:
        """Register a callback for every applied transition."""
        self._listeners.append(listener)

    @contextmanager
    def hold_transitions(self) -> Iterator[None]:
        """Block writes while the caller reads the store (metrics reconcile)."""
        with ExitStack() as stack:
            # Fixed acquisition order; a writer only ever holds one stripe
            for lock in self._order_locks:
                stack.enter_context(lock)
            yield

    def _order_lock(self, job_id: str) -> threading.RLock:
        return self._order_locks[hash(job_id) % len(self._order_locks)]

    # =========================================================================
    # Record Creation
    # =========================================================================

    def create(self, job: Job) -> Job:
        """Persist a freshly built job and emit its creation event."""
        with self._order_lock(job.job_id):
            created = self.store.create_job(job)
            self._emit(TransitionEvent(created, None, created.status, self.clock.now()))
        return created

    def expand_recurrence(self, template: Job, fire_time: datetime) -> Job:
        """
        Spawn the instance for one occurrence of a recurring template.

        Raises:
            InvalidTransitionError: If the job is not an active template
            ConflictError: If the occurrence was already expanded
        """
        if not template.is_template or template.status != JobStatus.SCHEDULED:
            raise InvalidTransitionError(
                template.job_id,
                template.status.value,
                JobStatus.SCHEDULED.value,
                reason="only active recurring templates can be expanded",
            )

        instance = template.spawn_instance(fire_time, created_at=self.clock.now())
        with self._order_lock(template.job_id):
            instance = self.store.expand_recurrence(template, fire_time, instance)
            self._emit(TransitionEvent(instance, None, instance.status, self.clock.now()))
        return instance

    # =========================================================================
    # Transitions
    # =========================================================================

    def transition(
        self,
        job: Job,
        target: JobStatus,
        worker_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Job:
        """
        Move job from its current status to target.

        Args:
            job: Snapshot of the job as last read (status and version are the guard)
            target: Status to move to
            worker_id: Claimant identity (PENDING -> PROCESSING)
            error_message: Failure detail (PROCESSING -> FAILED)

        Returns:
            The updated job as stored

        Raises:
            InvalidTransitionError: If source -> target is not allowed
            ConflictError: If another caller changed the job first
            JobNotFoundError: If the job no longer exists
        """
        source = job.status

        if not is_allowed(source, target):
            raise InvalidTransitionError(job.job_id, source.value, target.value)

        if job.is_template and target != JobStatus.CANCELLED:
            raise InvalidTransitionError(
                job.job_id,
                source.value,
                target.value,
                reason="recurring templates are never dispatched",
            )

        now = self.clock.now()
        changes = self._side_effects(job, target, now, worker_id, error_message)

        with self._order_lock(job.job_id):
            updated = self.store.apply_transition(job.job_id, source, job.version, changes)

            logger.debug(
                f"Job {job.job_id}: {source.value} -> {target.value} (version {updated.version})"
            )
            self._emit(TransitionEvent(updated, source, target, now))
        return updated

    def _side_effects(
        self,
        job: Job,
        target: JobStatus,
        now: datetime,
        worker_id: Optional[str],
        error_message: Optional[str],
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {"status": target}

        if target == JobStatus.PROCESSING:
            if not worker_id:
                raise ValueError("worker_id is required to claim a job")
            changes["started_at"] = max(now, job.created_at)
            changes["worker_id"] = worker_id

        elif target == JobStatus.COMPLETED:
            changes["completed_at"] = max(now, job.started_at or job.created_at)
            changes["worker_id"] = None
            changes["error_message"] = None

        elif target == JobStatus.FAILED:
            changes["retry_count"] = job.retry_count + 1
            changes["error_message"] = error_message or "Job failed"
            changes["worker_id"] = None

        elif target == JobStatus.PENDING and job.status == JobStatus.FAILED:
            changes["error_message"] = None

        return changes

    def _emit(self, event: TransitionEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    f"Transition listener failed for job {event.job.job_id}: {e}",
                    exc_info=True,
                )
