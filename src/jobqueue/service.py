"""
Job Queue Service - Main entry point for the job lifecycle engine.

This service orchestrates all engine components:
- PersistenceAdapter (storage)
- StateMachine (the only writer of job records)
- Dispatcher (poll loop + worker pool)
- JobScheduler (promotion + recurrence expansion loop)
- RetryController (retry-eligibility loop)
- MetricsAggregator (counters + metrics broadcast loop)
- BroadcastOutbox (status/metrics delivery off the loop threads)
- RecoveryManager (crash recovery)

Usage:
    service = JobQueueService.create(config, registry)
    service.start()
    # ... loops run in background threads ...
    service.stop()
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from .clock import Clock, SystemClock
from .config import EngineConfig
from .cron import validate_cron_expression
from .dispatcher import Dispatcher
from .entities import Job, JobPriority, JobStatus, TransitionEvent
from .errors import (
    ConflictError,
    JobNotFoundError,
    UnknownJobTypeError,
    ValidationError,
)
from .handlers import HandlerRegistry
from .interfaces import (
    JOB_TOPIC,
    STATUS_CHANNEL,
    Broadcaster,
    JobStore,
    LoggingBroadcaster,
    LoggingPublisher,
    Publisher,
)
from .metrics import JobMetrics, MetricsAggregator
from .outbox import BroadcastOutbox
from .persistence import PersistenceAdapter
from .recovery import RecoveryManager
from .retry_controller import RetryController, RetryPolicy
from .scheduler import JobScheduler
from .state_machine import StateMachine
from .ticker import PeriodicTask


logger = logging.getLogger(__name__)


CANCEL_ATTEMPTS = 5

Payload = Union[str, bytes, None]
Priority = Union[JobPriority, int, str]


@dataclass
class EngineContext:
    """Collaborators shared by every engine component."""

    store: JobStore
    publisher: Publisher
    broadcaster: Broadcaster
    registry: HandlerRegistry
    clock: Clock


class JobQueueService:
    """
    Main service that coordinates all engine components.

    Provides:
    - Component initialization and wiring
    - Startup with recovery and metrics reconciliation
    - Graceful shutdown
    - Upward operations (submit, schedule, create_recurring, get, cancel,
      metrics_snapshot)
    """

    def __init__(
        self,
        context: EngineContext,
        config: EngineConfig,
        state_machine: StateMachine,
        metrics: MetricsAggregator,
        retry_controller: RetryController,
        dispatcher: Dispatcher,
        scheduler: JobScheduler,
        recovery_manager: RecoveryManager,
        outbox: BroadcastOutbox,
    ):
        """
        Initialize JobQueueService with all components.

        Use JobQueueService.create() for convenient construction.
        """
        self.context = context
        self.config = config
        self.state_machine = state_machine
        self.metrics = metrics
        self.retry_controller = retry_controller
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.recovery_manager = recovery_manager
        self.outbox = outbox

        self.tasks = [
            PeriodicTask("dispatcher", config.dispatcher_poll_interval, dispatcher.poll),
            PeriodicTask("scheduler", config.scheduler_poll_interval, scheduler.tick),
            PeriodicTask("retry-check", config.retry_check_interval, retry_controller.tick),
            PeriodicTask("metrics", config.metrics_broadcast_interval, metrics.broadcast),
        ]
        self._started = False

    @classmethod
    def create(
        cls,
        config: Optional[EngineConfig] = None,
        registry: Optional[HandlerRegistry] = None,
        store: Optional[JobStore] = None,
        publisher: Optional[Publisher] = None,
        broadcaster: Optional[Broadcaster] = None,
        clock: Optional[Clock] = None,
    ) -> "JobQueueService":
        """
        Create a JobQueueService with all components wired together.

        Args:
            config: Engine settings (defaults apply when omitted)
            registry: Handlers by job type
            store: JobStore (defaults to SQLite at config.db_path)
            publisher: Topic publisher (defaults to logging only)
            broadcaster: Status/metrics broadcaster (defaults to logging only)
            clock: Time source (defaults to the system clock)

        Returns:
            Configured JobQueueService
        """
        config = config or EngineConfig()

        context = EngineContext(
            store=store or PersistenceAdapter(config.db_path),
            publisher=publisher or LoggingPublisher(),
            broadcaster=broadcaster or LoggingBroadcaster(),
            registry=registry or HandlerRegistry(),
            clock=clock or SystemClock(),
        )

        outbox = BroadcastOutbox(context.broadcaster, maxsize=config.broadcast_queue_size)
        metrics = MetricsAggregator(clock=context.clock, broadcaster=outbox)

        state_machine = StateMachine(context.store, clock=context.clock)
        state_machine.add_listener(metrics.on_transition)

        retry_controller = RetryController(
            store=context.store,
            state_machine=state_machine,
            publisher=context.publisher,
            policy=RetryPolicy(
                initial_delay=config.retry_initial_delay,
                multiplier=config.retry_multiplier,
                max_delay=config.retry_max_delay,
            ),
            clock=context.clock,
        )

        dispatcher = Dispatcher(
            store=context.store,
            state_machine=state_machine,
            registry=context.registry,
            retry_controller=retry_controller,
            pool_size=config.worker_pool_size,
            batch_size=config.dispatch_batch_size,
        )

        scheduler = JobScheduler(context.store, state_machine, clock=context.clock)

        recovery_manager = RecoveryManager(
            store=context.store,
            state_machine=state_machine,
            retry_controller=retry_controller,
        )

        service = cls(
            context=context,
            config=config,
            state_machine=state_machine,
            metrics=metrics,
            retry_controller=retry_controller,
            dispatcher=dispatcher,
            scheduler=scheduler,
            recovery_manager=recovery_manager,
            outbox=outbox,
        )
        state_machine.add_listener(service._broadcast_status)
        return service

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, run_recovery: bool = True) -> dict:
        """
        Start the four engine loops.

        Args:
            run_recovery: Whether to run crash recovery first

        Returns:
            Recovery statistics if recovery was run
        """
        if self._started:
            raise RuntimeError("Job queue already started")

        logger.info("Starting job queue service...")

        recovery_stats = {}
        if run_recovery:
            recovery_stats = self.recovery_manager.recover_on_startup()
        with self.state_machine.hold_transitions():
            self.metrics.reconcile(self.context.store)

        self.outbox.start()
        for task in self.tasks:
            task.start()
        self._started = True

        logger.info(
            f"Job queue service started (workers={self.dispatcher.pool_size}, "
            f"handlers={self.context.registry.job_types})"
        )
        return recovery_stats

    def stop(self, timeout: float = 30.0) -> None:
        """
        Stop the loops, then let in-flight jobs finish (no preemption).

        Args:
            timeout: Maximum wait per loop and for in-flight jobs
        """
        if not self._started:
            return

        logger.info("Stopping job queue service...")
        for task in self.tasks:
            task.stop(timeout=timeout)

        if not self.dispatcher.drain(timeout=timeout):
            logger.warning(f"{self.dispatcher.in_flight} job(s) still running at shutdown")
        self.dispatcher.shutdown(wait_for_jobs=False)
        self.outbox.stop(timeout=timeout)

        self._started = False
        logger.info("Job queue service stopped")

    @property
    def is_running(self) -> bool:
        """Check if the engine loops are running."""
        return self._started and all(task.is_running() for task in self.tasks)

    # =========================================================================
    # Job Operations
    # =========================================================================

    def submit(
        self,
        job_type: str,
        payload: Payload = None,
        priority: Priority = JobPriority.MEDIUM,
        max_retries: Optional[int] = None,
    ) -> Job:
        """
        Submit a job for immediate dispatch.

        Returns:
            The created PENDING job

        Raises:
            ValidationError: If the job type has no handler or the input is invalid
        """
        job = self._build(job_type, payload, priority, max_retries)
        job = self.state_machine.create(job)

        logger.info(
            f"Submitted job {job.job_id} (type={job.job_type}, priority={job.priority.name})"
        )
        self._publish(job)
        return job

    def schedule(
        self,
        job_type: str,
        payload: Payload,
        priority: Priority,
        at: datetime,
        max_retries: Optional[int] = None,
    ) -> Job:
        """
        Create a one-off job that becomes PENDING at `at`.

        A naive `at` is taken as UTC.
        """
        if at is None:
            raise ValidationError("Scheduled time is required")

        job = self._build(job_type, payload, priority, max_retries, scheduled_time=_as_utc(at))
        job = self.state_machine.create(job)

        logger.info(
            f"Scheduled job {job.job_id} (type={job.job_type}) for {job.scheduled_time.isoformat()}"
        )
        return job

    def create_recurring(
        self,
        job_type: str,
        payload: Payload,
        priority: Priority,
        cron_expression: str,
        max_retries: Optional[int] = None,
    ) -> Job:
        """
        Create a recurring template.

        The template is never dispatched itself; the scheduler loop spawns one
        instance per due occurrence of cron_expression.

        Raises:
            InvalidCronExpressionError: If the expression is malformed
        """
        validate_cron_expression(cron_expression)

        job = self._build(
            job_type, payload, priority, max_retries, cron_expression=cron_expression
        )
        job = self.state_machine.create(job)

        logger.info(
            f"Created recurring job {job.job_id} (type={job.job_type}, cron='{cron_expression}')"
        )
        return job

    def get(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        return self.context.store.get_job(job_id)

    def cancel(self, job_id: str) -> Job:
        """
        Cancel a PENDING, SCHEDULED or FAILED job.

        PROCESSING jobs cannot be cancelled; their execution finishes and the
        outcome applies. Cancelling a template stops further expansion.

        Returns:
            The cancelled job

        Raises:
            JobNotFoundError: If no job has this ID
            InvalidTransitionError: If the job's status does not allow cancellation
        """
        for attempt in range(1, CANCEL_ATTEMPTS + 1):
            job = self.context.store.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            try:
                cancelled = self.state_machine.transition(job, JobStatus.CANCELLED)
            except ConflictError:
                if attempt == CANCEL_ATTEMPTS:
                    raise
                logger.debug(f"Job {job_id} changed during cancel, re-reading")
                continue

            logger.info(f"Cancelled job {job_id} (was {job.status.value})")
            return cancelled

    def metrics_snapshot(self) -> JobMetrics:
        """Get the current metrics."""
        return self.metrics.snapshot()

    def list_jobs(self, status: Union[JobStatus, str], limit: int = 100) -> list[Job]:
        """List jobs in a status, in dispatch order."""
        return self.context.store.list_jobs_by_status(JobStatus(status), limit=limit)

    def list_dead_letters(self, limit: int = 100) -> list[Job]:
        """List dead-lettered jobs."""
        return self.context.store.list_jobs_by_status(JobStatus.DEAD_LETTER, limit=limit)

    def retry_status(self, job_id: str) -> dict:
        """Get retry count, budget and next retry time of a job."""
        return self.retry_controller.retry_status(job_id)

    # =========================================================================
    # Internals
    # =========================================================================

    def _build(
        self,
        job_type: str,
        payload: Payload,
        priority: Priority,
        max_retries: Optional[int],
        **kwargs,
    ) -> Job:
        if not self.context.registry.is_registered(job_type):
            raise UnknownJobTypeError(job_type)

        if max_retries is None:
            max_retries = self.config.default_max_retries

        try:
            return Job.create(
                job_type=job_type,
                payload=payload,
                priority=priority,
                max_retries=max_retries,
                created_at=self.context.clock.now(),
                **kwargs,
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e

    def _publish(self, job: Job) -> None:
        try:
            self.context.publisher.publish(JOB_TOPIC, job)
        except Exception as e:
            logger.warning(f"Failed to publish job {job.job_id} to '{JOB_TOPIC}': {e}")

    def _broadcast_status(self, event: TransitionEvent) -> None:
        self.outbox.broadcast(STATUS_CHANNEL, event.to_dict())


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
