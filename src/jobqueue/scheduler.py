"""
Scheduler for time-based jobs.

Per tick:
1. Recurrence expansion: each active template whose next cron occurrence
   (computed from its last-fired marker) is due spawns one SCHEDULED instance.
2. Promotion: each SCHEDULED one-off job whose scheduled_time has arrived
   moves to PENDING.

Expansion runs first, so an instance for an occurrence that is already past
is promoted in the same tick.
"""

import logging
from typing import Optional

from .clock import Clock, SystemClock
from .cron import CronSchedule
from .entities import Job, JobStatus
from .errors import ConflictError, InvalidCronExpressionError, JobNotFoundError
from .interfaces import JobStore
from .state_machine import StateMachine


logger = logging.getLogger(__name__)


class JobScheduler:
    """
    Promotes due scheduled jobs and expands recurring templates.

    Racing ticks (two processes, or a tick overlapping a manual call) are
    safe: both promotion and expansion go through compare-and-set, and the
    loser skips the record.
    """

    def __init__(
        self,
        store: JobStore,
        state_machine: StateMachine,
        clock: Optional[Clock] = None,
        batch_size: int = 100,
    ):
        self.store = store
        self.state_machine = state_machine
        self.clock = clock or SystemClock()
        self.batch_size = batch_size
        self._schedules: dict[str, CronSchedule] = {}

    def tick(self) -> dict:
        """
        Run one scheduler pass.

        Returns:
            Counts of instances spawned and jobs promoted
        """
        spawned = self.expand_recurring()
        promoted = self.promote_due()
        return {"spawned": len(spawned), "promoted": len(promoted)}

    # =========================================================================
    # Promotion
    # =========================================================================

    def promote_due(self) -> list[Job]:
        """Move every due SCHEDULED one-off job to PENDING."""
        now = self.clock.now()
        promoted = []

        for job in self.store.find_due_scheduled(now, limit=self.batch_size):
            try:
                promoted.append(self.state_machine.transition(job, JobStatus.PENDING))
            except (ConflictError, JobNotFoundError) as e:
                logger.debug(f"Skipping promotion of job {job.job_id}: {e}")

        if promoted:
            logger.info(f"Promoted {len(promoted)} scheduled job(s) to PENDING")
        return promoted

    # =========================================================================
    # Recurrence Expansion
    # =========================================================================

    def expand_recurring(self) -> list[Job]:
        """Spawn one instance for every template whose next occurrence is due."""
        now = self.clock.now()
        spawned = []
        templates = self.store.list_templates()

        # Cancelled templates are no longer listed
        active = {template.job_id for template in templates}
        for job_id in set(self._schedules) - active:
            del self._schedules[job_id]

        for template in templates:
            instance = self._expand_one(template, now)
            if instance is not None:
                spawned.append(instance)

        return spawned

    def _expand_one(self, template: Job, now) -> Optional[Job]:
        try:
            schedule = self._schedule_for(template)
        except InvalidCronExpressionError as e:
            logger.error(f"Template {template.job_id} has an unusable cron expression: {e}")
            return None

        last_fired = template.last_fired_at or template.created_at
        fire_time = schedule.is_due(last_fired, now)
        if fire_time is None:
            return None

        try:
            instance = self.state_machine.expand_recurrence(template, fire_time)
        except (ConflictError, JobNotFoundError) as e:
            logger.debug(f"Occurrence {fire_time} of template {template.job_id} already handled: {e}")
            return None

        logger.info(
            f"Created instance {instance.job_id} of recurring job {template.job_id} "
            f"(type={template.job_type}, fire_time={fire_time.isoformat()})"
        )
        return instance

    def _schedule_for(self, template: Job) -> CronSchedule:
        schedule = self._schedules.get(template.job_id)
        if schedule is None or schedule.expression != template.cron_expression:
            schedule = CronSchedule(template.cron_expression)
            self._schedules[template.job_id] = schedule
        return schedule
