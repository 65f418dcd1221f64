"""
Recovery Manager for the job queue.

Handles crash recovery on startup:
- PROCESSING jobs left behind by a dead process are failed with
  "worker lost" and handed to the retry policy

Recovery is idempotent: a second run finds no PROCESSING jobs to fail.
"""

import logging

from .entities import Job, JobStatus
from .errors import ConflictError, JobNotFoundError
from .interfaces import JobStore
from .retry_controller import RetryController
from .state_machine import StateMachine


logger = logging.getLogger(__name__)


WORKER_LOST_MESSAGE = "worker lost"


class RecoveryManager:
    """
    Handles crash recovery and startup cleanup.

    Must run before the dispatcher starts, while no job of this process is
    PROCESSING.
    """

    def __init__(
        self,
        store: JobStore,
        state_machine: StateMachine,
        retry_controller: RetryController,
        batch_size: int = 500,
    ):
        """
        Initialize RecoveryManager.

        Args:
            store: JobStore for storage
            state_machine: StateMachine for the PROCESSING -> FAILED transitions
            retry_controller: Applies the retry decision to each failed job
            batch_size: Jobs loaded per query
        """
        self.store = store
        self.state_machine = state_machine
        self.retry_controller = retry_controller
        self.batch_size = batch_size

    def recover_on_startup(self) -> dict:
        """
        Perform full recovery on engine startup.

        Returns:
            Recovery statistics
        """
        stats = {"processing_jobs_recovered": 0, "errors": []}

        logger.info("Starting crash recovery...")

        try:
            recovered = self._recover_processing_jobs()
            stats["processing_jobs_recovered"] = len(recovered)
        except Exception as e:
            logger.error(f"Error recovering PROCESSING jobs: {e}")
            stats["errors"].append(f"Processing jobs: {e}")

        logger.info(
            f"Recovery complete: {stats['processing_jobs_recovered']} processing jobs recovered"
        )
        return stats

    def _recover_processing_jobs(self) -> list[Job]:
        """Fail every orphaned PROCESSING job and apply its retry decision."""
        recovered = []

        while True:
            batch = self.store.list_jobs_by_status(JobStatus.PROCESSING, limit=self.batch_size)
            if not batch:
                break

            progressed = False
            for job in batch:
                logger.warning(
                    f"Recovering orphaned job {job.job_id} "
                    f"(worker={job.worker_id}, started_at={job.started_at})"
                )
                try:
                    failed = self.state_machine.transition(
                        job, JobStatus.FAILED, error_message=WORKER_LOST_MESSAGE
                    )
                except (ConflictError, JobNotFoundError) as e:
                    logger.debug(f"Job {job.job_id} changed during recovery: {e}")
                    continue

                progressed = True
                self.retry_controller.on_job_failed(failed)
                recovered.append(failed)

            if not progressed or len(batch) < self.batch_size:
                break

        return recovered
