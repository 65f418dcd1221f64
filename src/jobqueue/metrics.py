"""
Metrics Aggregator.

Counters are updated synchronously from state machine transition events:
- jobs per status, and per (status, priority)
- running mean of processing time (completed_at - started_at)
- last-hour completions/failures in one-minute buckets

reconcile() recomputes the counters from the store (used on startup).
"""

import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from .clock import Clock, SystemClock
from .entities import JobPriority, JobStatus, TransitionEvent, to_iso
from .interfaces import METRICS_CHANNEL, Broadcaster, JobStore


logger = logging.getLogger(__name__)


class JobMetrics(BaseModel):
    """Point-in-time snapshot of queue metrics."""

    total_jobs: int = 0
    pending_jobs: int = 0
    scheduled_jobs: int = 0
    processing_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    dead_letter_jobs: int = 0
    cancelled_jobs: int = 0
    high_priority_pending: int = 0
    medium_priority_pending: int = 0
    low_priority_pending: int = 0
    success_rate: float = Field(default=0.0, description="completed / processed, 0..1")
    failure_rate: float = Field(default=0.0, description="(failed + dead letter) / processed, 0..1")
    average_processing_time: float = Field(default=0.0, description="Seconds")
    jobs_processed_last_hour: int = 0
    jobs_failed_last_hour: int = 0
    generated_at: Optional[str] = None


class RollingWindowCounter:
    """
    Event count over a sliding window, kept in fixed-width time buckets.

    Adding and reading are O(number of buckets); no event history is stored.
    """

    def __init__(
        self,
        window: timedelta = timedelta(hours=1),
        bucket: timedelta = timedelta(minutes=1),
    ):
        if bucket <= timedelta(0) or window < bucket:
            raise ValueError("bucket must be positive and no larger than window")
        self.window = window
        self.bucket_seconds = bucket.total_seconds()
        self._buckets: deque[tuple[int, int]] = deque()

    def _bucket_key(self, at: datetime) -> int:
        return int(at.timestamp() // self.bucket_seconds)

    def _evict(self, now: datetime) -> None:
        oldest = self._bucket_key(now - self.window)
        while self._buckets and self._buckets[0][0] <= oldest:
            self._buckets.popleft()

    def add(self, at: datetime, count: int = 1) -> None:
        key = self._bucket_key(at)
        if self._buckets and self._buckets[-1][0] == key:
            self._buckets[-1] = (key, self._buckets[-1][1] + count)
        elif self._buckets and self._buckets[-1][0] > key:
            # Late event: fold into the newest bucket still inside the window
            self._buckets[-1] = (self._buckets[-1][0], self._buckets[-1][1] + count)
        else:
            self._buckets.append((key, count))
        self._evict(at)

    def total(self, now: datetime) -> int:
        self._evict(now)
        return sum(count for _, count in self._buckets)

    def clear(self) -> None:
        self._buckets.clear()


class MetricsAggregator:
    """
    Incrementally maintained job metrics.

    Register on_transition() as a StateMachine listener. The state machine
    delivers events in commit order, so counts never need clamping; call
    reconcile() under StateMachine.hold_transitions() when writers are live.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        broadcaster: Optional[Broadcaster] = None,
    ):
        self.clock = clock or SystemClock()
        self.broadcaster = broadcaster

        self._lock = threading.Lock()
        self._by_status: dict[JobStatus, int] = {status: 0 for status in JobStatus}
        self._by_status_priority: dict[tuple[JobStatus, JobPriority], int] = {}
        self._completed_samples = 0
        self._mean_processing_seconds = 0.0
        self._completed_window = RollingWindowCounter()
        self._failed_window = RollingWindowCounter()

    # =========================================================================
    # Event Intake
    # =========================================================================

    def on_transition(self, event: TransitionEvent) -> None:
        """Apply one transition event to the counters."""
        priority = event.job.priority

        with self._lock:
            if event.previous_status is not None:
                self._adjust(event.previous_status, priority, -1)
            self._adjust(event.status, priority, 1)

            if event.status == JobStatus.COMPLETED:
                self._completed_window.add(event.occurred_at)
                job = event.job
                if job.started_at is not None and job.completed_at is not None:
                    duration = (job.completed_at - job.started_at).total_seconds()
                    self._completed_samples += 1
                    self._mean_processing_seconds += (
                        duration - self._mean_processing_seconds
                    ) / self._completed_samples

            elif event.status == JobStatus.FAILED:
                self._failed_window.add(event.occurred_at)

    def _adjust(self, status: JobStatus, priority: JobPriority, delta: int) -> None:
        self._by_status[status] += delta
        key = (status, priority)
        self._by_status_priority[key] = self._by_status_priority.get(key, 0) + delta

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def reconcile(self, store: JobStore) -> None:
        """Replace counters and mean with values recomputed from the store."""
        by_status = store.count_by_status()
        by_status_priority = store.count_by_status_and_priority()
        samples, mean = store.average_processing_time()

        with self._lock:
            self._by_status = {status: by_status.get(status, 0) for status in JobStatus}
            self._by_status_priority = dict(by_status_priority)
            self._completed_samples = samples
            self._mean_processing_seconds = mean

        logger.info(
            f"Metrics reconciled from store: {sum(self._by_status.values())} jobs, "
            f"{samples} completed"
        )

    # =========================================================================
    # Snapshot
    # =========================================================================

    def count(self, status: JobStatus, priority: Optional[JobPriority] = None) -> int:
        with self._lock:
            if priority is None:
                return self._by_status[status]
            return self._by_status_priority.get((status, priority), 0)

    def snapshot(self) -> JobMetrics:
        """Pull the current metrics."""
        now = self.clock.now()

        with self._lock:
            by_status = dict(self._by_status)
            pending = {
                priority: self._by_status_priority.get((JobStatus.PENDING, priority), 0)
                for priority in JobPriority
            }
            mean = self._mean_processing_seconds
            processed_last_hour = self._completed_window.total(now)
            failed_last_hour = self._failed_window.total(now)

        completed = by_status[JobStatus.COMPLETED]
        failed = by_status[JobStatus.FAILED]
        dead_letter = by_status[JobStatus.DEAD_LETTER]
        processed = completed + failed + dead_letter

        return JobMetrics(
            total_jobs=sum(by_status.values()),
            pending_jobs=by_status[JobStatus.PENDING],
            scheduled_jobs=by_status[JobStatus.SCHEDULED],
            processing_jobs=by_status[JobStatus.PROCESSING],
            completed_jobs=completed,
            failed_jobs=failed,
            dead_letter_jobs=dead_letter,
            cancelled_jobs=by_status[JobStatus.CANCELLED],
            high_priority_pending=pending[JobPriority.HIGH],
            medium_priority_pending=pending[JobPriority.MEDIUM],
            low_priority_pending=pending[JobPriority.LOW],
            success_rate=completed / processed if processed else 0.0,
            failure_rate=(failed + dead_letter) / processed if processed else 0.0,
            average_processing_time=mean,
            jobs_processed_last_hour=processed_last_hour,
            jobs_failed_last_hour=failed_last_hour,
            generated_at=to_iso(now),
        )

    def broadcast(self) -> Optional[JobMetrics]:
        """Push a snapshot to the broadcaster (metrics loop tick)."""
        metrics = self.snapshot()
        if self.broadcaster is None:
            return metrics

        try:
            self.broadcaster.broadcast(METRICS_CHANNEL, metrics.model_dump())
        except Exception as e:
            logger.warning(f"Metrics broadcast failed: {e}")

        logger.debug(
            f"Metrics updated: pending={metrics.pending_jobs}, "
            f"processing={metrics.processing_jobs}, completed={metrics.completed_jobs}"
        )
        return metrics
