"""Scheduling subsystem: triggers, job lifecycle, execution, health and shutdown."""

from postscheduler.scheduling.context import HealthBoard, SchedulerContext
from postscheduler.scheduling.executor import Executor
from postscheduler.scheduling.health import HealthMonitor
from postscheduler.scheduling.models import JobConfig, JobKind, JobRecord, JobState
from postscheduler.scheduling.registry import JobRegistry
from postscheduler.scheduling.scheduler import Scheduler
from postscheduler.scheduling.shutdown import ShutdownCoordinator, ShutdownReport
from postscheduler.scheduling.triggers import TriggerFacility, to_cron_expression

__all__ = [
    "HealthBoard",
    "SchedulerContext",
    "Executor",
    "HealthMonitor",
    "JobConfig",
    "JobKind",
    "JobRecord",
    "JobState",
    "JobRegistry",
    "Scheduler",
    "ShutdownCoordinator",
    "ShutdownReport",
    "TriggerFacility",
    "to_cron_expression",
]
