"""
State Machine Tests.

- Allowed and rejected edges
- Side effects stamped per edge
- Compare-and-set: stale snapshots lose, losers write and emit nothing
"""

import threading
import time
from datetime import timedelta

import pytest

from src.jobqueue import (
    ALLOWED_TRANSITIONS,
    ConflictError,
    InvalidTransitionError,
    Job,
    JobNotFoundError,
    JobStatus,
    StateMachine,
)
from src.jobqueue.state_machine import is_allowed

from .conftest import assert_job_status


EXPECTED_EDGES = {
    (JobStatus.PENDING, JobStatus.PROCESSING),
    (JobStatus.PENDING, JobStatus.CANCELLED),
    (JobStatus.SCHEDULED, JobStatus.PENDING),
    (JobStatus.SCHEDULED, JobStatus.CANCELLED),
    (JobStatus.PROCESSING, JobStatus.COMPLETED),
    (JobStatus.PROCESSING, JobStatus.FAILED),
    (JobStatus.FAILED, JobStatus.PENDING),
    (JobStatus.FAILED, JobStatus.DEAD_LETTER),
    (JobStatus.FAILED, JobStatus.CANCELLED),
}


class TestEdgeTable:
    """The transition table is exactly the lifecycle graph."""

    @pytest.mark.parametrize("source", list(JobStatus))
    @pytest.mark.parametrize("target", list(JobStatus))
    def test_is_allowed_matches_lifecycle(self, source, target):
        assert is_allowed(source, target) == ((source, target) in EXPECTED_EDGES)

    def test_terminal_statuses_have_no_outgoing_edges(self):
        for status in (JobStatus.COMPLETED, JobStatus.DEAD_LETTER, JobStatus.CANCELLED):
            assert status not in ALLOWED_TRANSITIONS


class TestCreation:
    """Initial status and creation events."""

    def test_immediate_job_starts_pending(self, create_job):
        job = create_job()

        assert job.status == JobStatus.PENDING
        assert job.retry_count == 0
        assert job.version == 0

    def test_scheduled_job_starts_scheduled(self, create_job, mock_clock):
        job = create_job(scheduled_time=mock_clock.now() + timedelta(minutes=5))
        assert job.status == JobStatus.SCHEDULED

    def test_template_starts_scheduled_with_marker(self, create_job, mock_clock):
        template = create_job(cron_expression="*/5 * * * *")

        assert template.status == JobStatus.SCHEDULED
        assert template.is_template
        assert template.last_fired_at == mock_clock.now()

    def test_creation_emits_event_without_previous_status(self, store, mock_clock):
        events = []
        machine = StateMachine(store, clock=mock_clock, listeners=[events.append])

        job = machine.create(Job.create("test", created_at=mock_clock.now()))

        assert len(events) == 1
        assert events[0].previous_status is None
        assert events[0].status == JobStatus.PENDING
        assert events[0].job.job_id == job.job_id

    def test_job_create_rejects_scheduled_and_cron_together(self, mock_clock):
        with pytest.raises(ValueError):
            Job.create(
                "test",
                scheduled_time=mock_clock.now(),
                cron_expression="* * * * *",
            )


class TestSideEffects:
    """Each edge stamps the fields it owns."""

    def test_claim_sets_started_at_and_worker(self, create_job, claim, mock_clock):
        job = create_job()
        mock_clock.tick(3)

        claimed = claim(job, worker_id="host-1/worker-1")

        assert claimed.status == JobStatus.PROCESSING
        assert claimed.started_at == mock_clock.now()
        assert claimed.worker_id == "host-1/worker-1"
        assert claimed.version == job.version + 1

    def test_claim_requires_worker_id(self, create_job, state_machine):
        job = create_job()
        with pytest.raises(ValueError):
            state_machine.transition(job, JobStatus.PROCESSING)

    def test_completion_timestamps_are_ordered(self, create_job, claim, complete, mock_clock):
        job = create_job()
        mock_clock.tick(1)
        claimed = claim(job)
        mock_clock.tick(2)

        done = complete(claimed)

        assert done.created_at <= done.started_at <= done.completed_at
        assert done.completed_at - done.started_at == timedelta(seconds=2)
        assert done.worker_id is None

    def test_failure_increments_retry_count(self, create_job, claim, fail):
        failed = fail(claim(create_job()), error="handler exploded")

        assert failed.status == JobStatus.FAILED
        assert failed.retry_count == 1
        assert failed.error_message == "handler exploded"
        assert failed.worker_id is None

    def test_requeue_clears_error(self, create_job, claim, fail, state_machine):
        failed = fail(claim(create_job()))

        requeued = state_machine.transition(failed, JobStatus.PENDING)

        assert requeued.status == JobStatus.PENDING
        assert requeued.error_message is None
        assert requeued.retry_count == 1


class TestRejectedTransitions:
    """Invalid edges raise and leave the record untouched."""

    def test_completed_to_processing_is_rejected(self, store, create_job, claim, complete, state_machine):
        done = complete(claim(create_job()))

        with pytest.raises(InvalidTransitionError) as exc_info:
            state_machine.transition(done, JobStatus.PROCESSING, worker_id="w")

        assert "COMPLETED" in str(exc_info.value)
        assert "PROCESSING" in str(exc_info.value)
        stored = assert_job_status(store, done.job_id, JobStatus.COMPLETED)
        assert stored.version == done.version

    @pytest.mark.parametrize("target", list(JobStatus))
    def test_cancelled_is_terminal(self, create_job, state_machine, target):
        cancelled = state_machine.transition(create_job(), JobStatus.CANCELLED)

        with pytest.raises(InvalidTransitionError):
            state_machine.transition(cancelled, target, worker_id="w")

    def test_processing_cannot_be_cancelled(self, create_job, claim, state_machine):
        claimed = claim(create_job())

        with pytest.raises(InvalidTransitionError):
            state_machine.transition(claimed, JobStatus.CANCELLED)

    def test_template_cannot_be_promoted(self, create_job, state_machine):
        template = create_job(cron_expression="0 * * * *")

        with pytest.raises(InvalidTransitionError):
            state_machine.transition(template, JobStatus.PENDING)

    def test_template_can_be_cancelled(self, create_job, state_machine):
        template = create_job(cron_expression="0 * * * *")

        cancelled = state_machine.transition(template, JobStatus.CANCELLED)

        assert cancelled.status == JobStatus.CANCELLED

    def test_missing_job_raises_not_found(self, state_machine, mock_clock):
        ghost = Job.create("test", created_at=mock_clock.now())

        with pytest.raises(JobNotFoundError):
            state_machine.transition(ghost, JobStatus.PROCESSING, worker_id="w")


class TestCompareAndSet:
    """Racing callers: exactly one transition applies."""

    def test_stale_snapshot_loses(self, store, create_job, state_machine):
        job = create_job()
        snapshot_a = store.get_job(job.job_id)
        snapshot_b = store.get_job(job.job_id)

        state_machine.transition(snapshot_a, JobStatus.PROCESSING, worker_id="a")

        with pytest.raises(ConflictError) as exc_info:
            state_machine.transition(snapshot_b, JobStatus.PROCESSING, worker_id="b")

        assert exc_info.value.actual_status == JobStatus.PROCESSING.value
        stored = assert_job_status(store, job.job_id, JobStatus.PROCESSING)
        assert stored.worker_id == "a"

    def test_loser_emits_no_event(self, store, create_job, mock_clock):
        job = create_job()
        events = []
        machine = StateMachine(store, clock=mock_clock, listeners=[events.append])

        machine.transition(job, JobStatus.CANCELLED)
        with pytest.raises(ConflictError):
            machine.transition(job, JobStatus.PROCESSING, worker_id="w")

        assert [e.status for e in events] == [JobStatus.CANCELLED]

    def test_concurrent_claims_have_one_winner(self, store, create_job, state_machine):
        job = create_job()
        contenders = 8
        barrier = threading.Barrier(contenders)
        winners = []
        losers = []

        def contend(index: int) -> None:
            barrier.wait()
            try:
                winners.append(
                    state_machine.transition(job, JobStatus.PROCESSING, worker_id=f"w{index}")
                )
            except ConflictError:
                losers.append(index)

        threads = [threading.Thread(target=contend, args=(i,)) for i in range(contenders)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(winners) == 1
        assert len(losers) == contenders - 1
        stored = assert_job_status(store, job.job_id, JobStatus.PROCESSING)
        assert stored.worker_id == winners[0].worker_id
        assert stored.version == 1


class TestListeners:
    """Listener failures never undo a transition."""

    def test_failing_listener_is_contained(self, store, create_job, mock_clock):
        def explode(event):
            raise RuntimeError("listener down")

        seen = []
        machine = StateMachine(store, clock=mock_clock, listeners=[explode, seen.append])

        updated = machine.transition(create_job(), JobStatus.CANCELLED)

        assert updated.status == JobStatus.CANCELLED
        assert len(seen) == 1
        assert_job_status(store, updated.job_id, JobStatus.CANCELLED)

    def test_events_arrive_in_commit_order_across_threads(
        self, store, create_job, claim, state_machine, metrics
    ):
        job = claim(create_job())
        entered = threading.Event()
        order = []

        def slow_on_failure(event):
            if event.status == JobStatus.FAILED:
                entered.set()
                time.sleep(0.3)
            order.append(event.status)

        state_machine.add_listener(slow_on_failure)
        worker = threading.Thread(
            target=state_machine.transition,
            args=(job, JobStatus.FAILED),
            kwargs={"error_message": "boom"},
        )
        worker.start()
        assert entered.wait(timeout=5)

        # The FAILED row is committed; its listeners are still running
        state_machine.transition(store.get_job(job.job_id), JobStatus.PENDING)
        worker.join(timeout=5)

        assert order == [JobStatus.FAILED, JobStatus.PENDING]
        assert metrics.count(JobStatus.FAILED) == 0
        assert metrics.count(JobStatus.PENDING) == 1

    def test_concurrent_transitions_keep_metrics_exact(
        self, store, create_job, claim, complete, fail, metrics
    ):
        jobs = [claim(create_job()) for _ in range(20)]

        def finish(index, job):
            if index % 2:
                complete(job)
            else:
                fail(job)

        threads = [
            threading.Thread(target=finish, args=(index, job)) for index, job in enumerate(jobs)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        counts = store.count_by_status()
        for status in JobStatus:
            assert metrics.count(status) == counts[status], status

    def test_slow_listener_does_not_hold_other_jobs(self, store, create_job, claim, state_machine):
        slow = claim(create_job())
        other = create_job()
        while state_machine._order_lock(other.job_id) is state_machine._order_lock(slow.job_id):
            other = create_job()
        entered = threading.Event()
        release = threading.Event()

        def stall_on_failure(event):
            if event.job.job_id == slow.job_id and event.status == JobStatus.FAILED:
                entered.set()
                release.wait(timeout=5)

        state_machine.add_listener(stall_on_failure)
        worker = threading.Thread(
            target=state_machine.transition,
            args=(slow, JobStatus.FAILED),
            kwargs={"error_message": "boom"},
        )
        worker.start()
        assert entered.wait(timeout=5)

        started = time.monotonic()
        claimed = state_machine.transition(other, JobStatus.PROCESSING, worker_id="worker-2")
        elapsed = time.monotonic() - started

        release.set()
        worker.join(timeout=5)
        assert claimed.status == JobStatus.PROCESSING
        assert elapsed < 1.0
