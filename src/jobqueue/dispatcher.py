"""
Dispatcher for the job queue.

- Polls PENDING jobs in dispatch order (priority ASC, created_at ASC)
- Claims each candidate atomically (PENDING -> PROCESSING); losers skip
- Hands claimed jobs to a bounded worker pool
- Records the handler outcome (COMPLETED, or FAILED + retry decision)

What Dispatcher MUST NOT do:
- Block the poll loop waiting for pool capacity
- Sleep for retry backoff (RetryController's tick does the requeue)
- Let a handler exception escape a worker
"""

import itertools
import logging
import os
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Optional

from .entities import Job, JobStatus
from .errors import ConflictError, JobNotFoundError, UnknownJobTypeError
from .handlers import HandlerRegistry, HandlerResult, JobHandler
from .interfaces import JobStore
from .retry_controller import RetryController
from .state_machine import StateMachine


logger = logging.getLogger(__name__)


DEFAULT_POOL_SIZE = 4


def default_dispatcher_id() -> str:
    """Identity of this process as a claimant."""
    return f"{socket.gethostname()}-{os.getpid()}"


class Dispatcher:
    """
    Claims pending jobs and runs them on a bounded worker pool.

    Each poll() claims at most as many jobs as there are free worker slots;
    remaining candidates stay PENDING for the next poll.
    """

    def __init__(
        self,
        store: JobStore,
        state_machine: StateMachine,
        registry: HandlerRegistry,
        retry_controller: RetryController,
        pool_size: int = DEFAULT_POOL_SIZE,
        batch_size: Optional[int] = None,
        dispatcher_id: Optional[str] = None,
    ):
        """
        Initialize Dispatcher.

        Args:
            store: JobStore for candidate queries
            state_machine: StateMachine for claims and outcomes
            registry: HandlerRegistry resolving job types
            retry_controller: Receives every FAILED outcome
            pool_size: Worker pool capacity (W)
            batch_size: Candidates fetched per poll (defaults to 2 * pool_size)
            dispatcher_id: Prefix of the worker ids stamped on claimed jobs
        """
        if pool_size < 1:
            raise ValueError(f"pool_size must be >= 1, got {pool_size}")

        self.store = store
        self.state_machine = state_machine
        self.registry = registry
        self.retry_controller = retry_controller
        self.pool_size = pool_size
        self.batch_size = batch_size or pool_size * 2
        self.dispatcher_id = dispatcher_id or default_dispatcher_id()

        self._pool: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._in_flight = 0
        self._futures: set[Future] = set()
        self._worker_seq = itertools.count(1)

    # =========================================================================
    # Capacity
    # =========================================================================

    @property
    def in_flight(self) -> int:
        """Number of jobs currently executing."""
        with self._lock:
            return self._in_flight

    @property
    def free_slots(self) -> int:
        with self._lock:
            return self.pool_size - self._in_flight

    def _try_acquire_slot(self) -> bool:
        with self._lock:
            if self._in_flight >= self.pool_size:
                return False
            self._in_flight += 1
            return True

    def _release_slot(self) -> None:
        with self._lock:
            self._in_flight -= 1

    def _ensure_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.pool_size,
                thread_name_prefix="jobqueue-worker",
            )
        return self._pool

    def _next_worker_id(self) -> str:
        return f"{self.dispatcher_id}/worker-{next(self._worker_seq)}"

    # =========================================================================
    # Poll Tick
    # =========================================================================

    def poll(self) -> list[Job]:
        """
        Claim and dispatch as many PENDING jobs as free slots allow.

        Returns:
            Jobs claimed by this poll (now PROCESSING)
        """
        if self.free_slots <= 0:
            logger.debug("Worker pool saturated, leaving jobs PENDING")
            return []

        candidates = self.store.list_jobs_by_status(JobStatus.PENDING, limit=self.batch_size)
        if not candidates:
            logger.debug("Queue is empty")
            return []

        dispatched: list[Job] = []
        for job in candidates:
            handler = self.registry.resolve(job.job_type)
            if handler is None:
                self._fail_unknown_type(job)
                continue

            if not self._try_acquire_slot():
                logger.debug("Worker pool saturated, deferring remaining candidates")
                break

            claimed = self._claim(job)
            if claimed is None:
                self._release_slot()
                continue

            self._submit(claimed, handler)
            dispatched.append(claimed)

        if dispatched:
            logger.info(f"Dispatched {len(dispatched)} job(s), {self.in_flight} in flight")
        return dispatched

    def _claim(self, job: Job) -> Optional[Job]:
        """Atomic PENDING -> PROCESSING; None if another claimant won."""
        try:
            claimed = self.state_machine.transition(
                job,
                JobStatus.PROCESSING,
                worker_id=self._next_worker_id(),
            )
        except ConflictError as e:
            logger.debug(f"Job {job.job_id} already claimed: {e}")
            return None
        except JobNotFoundError:
            logger.debug(f"Job {job.job_id} disappeared before claim")
            return None

        logger.info(
            f"Claimed job {claimed.job_id} (type={claimed.job_type}, "
            f"priority={claimed.priority.name}, worker={claimed.worker_id})"
        )
        return claimed

    def _fail_unknown_type(self, job: Job) -> None:
        """Claim and fail a job whose type has no handler, without using a worker slot."""
        claimed = self._claim(job)
        if claimed is None:
            return

        error = UnknownJobTypeError(job.job_type)
        logger.error(f"Job {job.job_id} failed: {error}")
        self._record_outcome(claimed, HandlerResult.fail(job.job_type, str(error)))

    def _submit(self, job: Job, handler: JobHandler) -> None:
        future = self._ensure_pool().submit(self._run, job, handler)
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget_future)

    def _forget_future(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    # =========================================================================
    # Worker
    # =========================================================================

    def _run(self, job: Job, handler: JobHandler) -> None:
        """Worker body: execute handler, record outcome, free the slot."""
        try:
            try:
                result = handler.execute(job.payload)
                if not isinstance(result, HandlerResult):
                    result = HandlerResult.ok(result)
            except Exception as e:
                logger.exception(f"Handler for job {job.job_id} raised")
                result = HandlerResult.fail(job.job_type, f"{type(e).__name__}: {e}")

            self._record_outcome(job, result)
        finally:
            self._release_slot()

    def _record_outcome(self, job: Job, result: HandlerResult) -> Optional[Job]:
        """PROCESSING -> COMPLETED, or PROCESSING -> FAILED followed by the retry decision."""
        try:
            if result.success:
                completed = self.state_machine.transition(job, JobStatus.COMPLETED)
                logger.info(f"Job {job.job_id} completed")
                return completed

            failed = self.state_machine.transition(
                job,
                JobStatus.FAILED,
                error_message=result.error_message,
            )
            self.retry_controller.on_job_failed(failed)
            return failed

        except ConflictError as e:
            logger.warning(f"Outcome of job {job.job_id} lost a race: {e}")
        except Exception as e:
            logger.error(f"Failed to record outcome of job {job.job_id}: {e}", exc_info=True)
        return None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for in-flight jobs to finish.

        Returns:
            True if nothing is left running
        """
        with self._lock:
            pending = set(self._futures)
        if pending:
            wait(pending, timeout=timeout)
        return self.in_flight == 0

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        """Stop the worker pool. In-flight jobs finish unless wait_for_jobs is False."""
        if self._pool is not None:
            self._pool.shutdown(wait=wait_for_jobs)
            self._pool = None

    def is_busy(self) -> bool:
        """Check if any job is executing."""
        return self.in_flight > 0
