"""
Scheduling data models: platforms, job lifecycle, outcomes, health.

Defines the core data structures used by the scheduling subsystem:
- ``JobState``: Lifecycle state of a job, with its legal transitions.
- ``JobConfig``: Immutable job descriptor produced by the schedule loader.
- ``JobRecord``: Mutable registry entry (config + trigger + state).
- ``ExecutionContext``: One firing of a job, with its outcome map.
- ``HealthSnapshot``: Read-mostly process status sample.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from postscheduler.exceptions import InvalidStateTransition, ValidationError
from postscheduler.models import ErrorType, Platform, RetryClass
from postscheduler.utils import utc_now


# =============================================================================
# ENUMS
# =============================================================================


class JobKind(Enum):
    """Whether a job fires once or on every match of its pattern."""

    ONE_OFF = "one_off"
    RECURRING = "recurring"


class JobState(Enum):
    """Lifecycle state of a scheduled job.

    Transitions:
        PENDING -> RUNNING -> COMPLETED
                           -> RETRYING -> RUNNING
                           -> FAILED
        COMPLETED / FAILED -> PENDING   (recurring jobs only)
    """

    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if state ends an execution."""
        return self in {JobState.COMPLETED, JobState.FAILED}


_TRANSITIONS: Dict[JobState, Tuple[JobState, ...]] = {
    JobState.PENDING: (JobState.RUNNING,),
    JobState.RUNNING: (JobState.COMPLETED, JobState.RETRYING, JobState.FAILED),
    JobState.RETRYING: (JobState.RUNNING,),
    JobState.COMPLETED: (JobState.PENDING,),
    JobState.FAILED: (JobState.PENDING,),
}


class ServiceHealth(Enum):
    """Health tag of a single collaborator."""

    INITIALIZING = "initializing"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ERROR = "error"


class OverallStatus(Enum):
    """Overall process status reported by the status surface."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    ERROR = "error"
    SHUTTING_DOWN = "shutting_down"


# =============================================================================
# JOB CONFIG
# =============================================================================


@dataclass(frozen=True)
class JobConfig:
    """Immutable descriptor for one schedulable job.

    Attributes:
        job_id: Registry identifier (``post_<id>`` or ``recurring_<id>``).
        kind: One-off or recurring.
        platforms: Target platforms, never empty.
        content: Literal post text. Takes precedence over ``file``.
        file: Reference to externally stored text, resolved at execution.
        images: Image references handed to the content processor.
        scheduled_time: Absolute publication time (one-off jobs).
        cron_pattern: Five-field trigger pattern (recurring jobs).
        timezone: IANA timezone used to localize the trigger.
        priority: Priority label, informational unless the priority
            dispatcher is enabled.
        variables: Template variable candidates (recurring jobs only).
    """

    job_id: str
    kind: JobKind
    platforms: Tuple[Platform, ...]
    content: Optional[str] = None
    file: Optional[str] = None
    images: Tuple[str, ...] = ()
    scheduled_time: Optional[datetime] = None
    cron_pattern: Optional[str] = None
    timezone: str = "UTC"
    priority: str = "normal"
    variables: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.platforms:
            raise ValidationError(f"Job {self.job_id}: at least one platform is required")
        if not self.content and not self.file:
            raise ValidationError(f"Job {self.job_id}: content or file is required")
        if self.kind is JobKind.ONE_OFF and self.scheduled_time is None:
            raise ValidationError(f"Job {self.job_id}: one-off jobs need a scheduled time")
        if self.kind is JobKind.RECURRING and not self.cron_pattern:
            raise ValidationError(f"Job {self.job_id}: recurring jobs need a trigger pattern")

    @property
    def is_recurring(self) -> bool:
        return self.kind is JobKind.RECURRING


# =============================================================================
# OUTCOMES & EXECUTION
# =============================================================================


@dataclass
class PlatformOutcome:
    """Result of publishing one job to one platform."""

    platform: Platform
    succeeded: bool
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    retryable: bool = False
    post_id: Optional[str] = None
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "error": self.error,
            "error_type": self.error_type.value if self.error_type else None,
            "retryable": self.retryable,
            "post_id": self.post_id,
            "attempts": self.attempts,
        }


@dataclass
class ExecutionContext:
    """A single firing of a job.

    Retries of the same firing reuse the context (and its resolved
    content) so already-published platforms are not posted twice.
    """

    attempt: int = 1
    content: Optional[str] = None
    outcomes: Dict[Platform, PlatformOutcome] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utc_now)

    def failures(self) -> Tuple[PlatformOutcome, ...]:
        return tuple(o for o in self.outcomes.values() if not o.succeeded)


@dataclass
class ExecutionResult:
    """What one execution pass produced, returned by the executor."""

    job_id: str
    state: JobState
    attempt: int
    outcomes: Dict[Platform, PlatformOutcome]
    started_at: datetime
    finished_at: datetime
    retry_delay: Optional[float] = None

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.COMPLETED


# =============================================================================
# JOB RECORD
# =============================================================================


@dataclass
class JobRecord:
    """Registry entry for a scheduled job.

    Attributes:
        config: The immutable descriptor.
        expression: Cron expression the trigger was armed with.
        state: Current lifecycle state.
        trigger: Handle of the armed cron trigger (``None`` once a
            one-off job has fired).
        retry_trigger: Handle of a pending one-shot retry trigger.
        started_at: When the current execution pass began.
        execution: Context of the firing in progress, if any.
        executions: Number of firings started over the record's life.
    """

    config: JobConfig
    expression: str
    state: JobState = JobState.PENDING
    trigger: Any = None
    retry_trigger: Any = None
    started_at: Optional[datetime] = None
    execution: Optional[ExecutionContext] = None
    executions: int = 0
    created_at: datetime = field(default_factory=utc_now)

    @property
    def job_id(self) -> str:
        return self.config.job_id

    @property
    def outcomes(self) -> Dict[Platform, PlatformOutcome]:
        """Outcome map of the current execution (empty when idle)."""
        if self.execution is None:
            return {}
        return self.execution.outcomes

    def transition(self, target: JobState) -> None:
        """Move to ``target`` if the lifecycle allows it.

        Raises:
            InvalidStateTransition: If ``target`` is not reachable from the
                current state, or a one-off job would return to pending.
        """
        allowed = _TRANSITIONS[self.state]
        if target not in allowed or (
            target is JobState.PENDING and not self.config.is_recurring
        ):
            raise InvalidStateTransition(self.job_id, self.state.value, target.value)
        self.state = target


# =============================================================================
# HEALTH SNAPSHOT
# =============================================================================


@dataclass(frozen=True)
class HealthSnapshot:
    """Point-in-time status sample. Replaced as a whole, never mutated."""

    status: OverallStatus
    services: Mapping[str, ServiceHealth]
    started_at: datetime
    last_check: Optional[datetime] = None
    running_jobs: int = 0
    armed_triggers: int = 0

    @property
    def uptime_seconds(self) -> int:
        reference = self.last_check or utc_now()
        return max(0, int((reference - self.started_at).total_seconds()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "services": {name: health.value for name, health in self.services.items()},
            "started_at": self.started_at.isoformat(),
            "uptime": self.uptime_seconds,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "running_jobs": self.running_jobs,
            "armed_triggers": self.armed_triggers,
        }


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "Platform",
    "JobKind",
    "JobState",
    "ErrorType",
    "RetryClass",
    "ServiceHealth",
    "OverallStatus",
    "JobConfig",
    "PlatformOutcome",
    "ExecutionContext",
    "ExecutionResult",
    "JobRecord",
    "HealthSnapshot",
]
