"""
Scheduler: turns job configs into armed triggers and registry records.

``Scheduler`` computes each job's cron expression (the converter for
one-off posts, passthrough for recurring templates), arms one cron
trigger per job on the shared facility and registers a ``pending``
``JobRecord``. Every firing goes through the dispatcher to the executor.

Architecture::

    ScheduleDocument -> Scheduler.schedule_document()
        -> TriggerFacility.arm_cron(job_id, expression, tz, fire)
        -> JobRegistry.put(JobRecord(state=PENDING))

    trigger fires -> Dispatcher.submit() -> Executor.execute(job_id)
"""

import logging
from datetime import datetime
from typing import Any, List, Optional

from postscheduler.exceptions import InvalidTimeSpec, SchedulerBaseError, ValidationError
from postscheduler.scheduling.context import SchedulerContext
from postscheduler.scheduling.executor import Executor
from postscheduler.scheduling.models import JobConfig, JobRecord
from postscheduler.scheduling.schedule_loader import ScheduleDocument
from postscheduler.scheduling.triggers import (
    is_past_due,
    to_cron_expression,
    validate_cron_pattern,
)

logger = logging.getLogger(__name__)


class Scheduler:
    """Arms triggers and registers records for scheduled jobs.

    Args:
        ctx: Shared scheduler context.
        executor: Executor invoked on each firing.
        dispatcher: Stage between firing and execution (defaults to
            the executor's dispatcher).
    """

    def __init__(
        self,
        ctx: SchedulerContext,
        executor: Executor,
        dispatcher: Any = None,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.dispatcher = dispatcher or executor.dispatcher

    # ================================================================
    # BULK SCHEDULING
    # ================================================================

    async def schedule_document(self, document: ScheduleDocument) -> List[str]:
        """Schedule every post and recurring template in ``document``.

        A job that fails to arm is logged and skipped; the rest are still
        scheduled.

        Returns:
            Ids of the jobs that were armed.
        """
        armed: List[str] = []
        for config in document.jobs:
            try:
                await self.schedule_job(config)
            except (SchedulerBaseError, ValidationError) as exc:
                logger.error("[SCHEDULER] Failed to schedule %s: %s", config.job_id, exc)
                await self.ctx.events.job_schedule_failed(config.job_id, exc)
                continue
            armed.append(config.job_id)

        logger.info(
            "[SCHEDULER] Scheduler started with %d armed jobs (%d failed)",
            len(armed),
            len(document.jobs) - len(armed),
        )
        return armed

    # ================================================================
    # SINGLE JOB
    # ================================================================

    def expression_for(self, config: JobConfig, now: Optional[datetime] = None) -> str:
        """Cron expression a job's trigger is armed with.

        Raises:
            InvalidTimeSpec: If the time cannot be converted, or a one-off
                time has already passed.
            InvalidCronPattern: If a recurring pattern cannot be parsed.
        """
        if config.is_recurring:
            return validate_cron_pattern(config.cron_pattern)

        expression = to_cron_expression(config.scheduled_time, config.timezone)
        now = now or self.ctx.facility.clock()
        if is_past_due(expression, config.timezone, config.scheduled_time, now):
            raise InvalidTimeSpec(
                f"Scheduled time {config.scheduled_time.isoformat()} has already passed"
            )
        return expression

    async def schedule_job(self, config: JobConfig) -> JobRecord:
        """Arm a trigger and register a pending record for ``config``.

        Re-scheduling an existing id disarms the earlier trigger and any
        pending retry trigger before replacing the record.

        Raises:
            InvalidTimeSpec: If the trigger cannot be computed.
            SchedulerBaseError: If shutdown has begun.
        """
        if self.ctx.shutting_down:
            raise SchedulerBaseError(f"Cannot schedule {config.job_id}: shutdown in progress")

        expression = self.expression_for(config)
        facility = self.ctx.facility
        registry = self.ctx.registry

        async with registry.lock:
            existing = registry.get(config.job_id)
            if existing is not None:
                facility.disarm(existing.trigger)
                facility.disarm(existing.retry_trigger)

            record = JobRecord(config=config, expression=expression)
            record.trigger = facility.arm_cron(
                config.job_id,
                expression,
                config.timezone,
                self._firing_callback(config.job_id, config.priority),
            )
            registry.put(record)

        logger.info(
            "[SCHEDULER] Scheduled %s with '%s' (%s) on %s",
            config.job_id,
            expression,
            config.timezone,
            ", ".join(p.value for p in config.platforms),
        )
        await self.ctx.events.job_scheduled(
            config.job_id,
            expression,
            config.timezone,
            [p.value for p in config.platforms],
            config.is_recurring,
        )
        return record

    async def unschedule(self, job_id: str) -> bool:
        """Disarm a job's triggers and drop its record.

        An execution already in flight runs to completion.

        Returns:
            ``False`` if the job was not registered.
        """
        async with self.ctx.registry.lock:
            record = self.ctx.registry.remove(job_id)
            if record is None:
                return False
            self.ctx.facility.disarm(record.trigger)
            self.ctx.facility.disarm(record.retry_trigger)
        logger.info("[SCHEDULER] Unscheduled %s", job_id)
        return True

    def _firing_callback(self, job_id: str, priority: str):
        async def fire() -> None:
            await self.dispatcher.submit(
                job_id, priority, lambda: self.executor.execute(job_id)
            )

        return fire


__all__ = ["Scheduler"]
