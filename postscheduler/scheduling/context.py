"""
Explicitly owned shared state for the scheduling engine.

``SchedulerContext`` bundles the two shared mutable structures (the job
registry and the health board) with the trigger facility, settings and
event log. Every component receives the context it works on; nothing in
the engine reaches for module-level state.
"""

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Optional

from postscheduler.config import Settings
from postscheduler.logging.event_logger import EventLogger
from postscheduler.scheduling.models import HealthSnapshot, OverallStatus
from postscheduler.scheduling.registry import JobRegistry
from postscheduler.scheduling.triggers import TriggerFacility
from postscheduler.utils import utc_now


class HealthBoard:
    """Holder of the current ``HealthSnapshot``.

    Snapshots are immutable and swapped whole under a thread lock, so
    readers on other threads never see a half-written sample.
    """

    def __init__(self, initial: Optional[HealthSnapshot] = None) -> None:
        self._lock = threading.Lock()
        self._snapshot = initial or HealthSnapshot(
            status=OverallStatus.STARTING,
            services={},
            started_at=utc_now(),
        )

    def publish(self, snapshot: HealthSnapshot) -> None:
        with self._lock:
            self._snapshot = snapshot

    def current(self) -> HealthSnapshot:
        with self._lock:
            return self._snapshot


@dataclass
class SchedulerContext:
    """Shared handles passed to Scheduler, Executor, Health Monitor and
    Shutdown Coordinator."""

    settings: Settings
    registry: JobRegistry = field(default_factory=JobRegistry)
    board: HealthBoard = field(default_factory=HealthBoard)
    facility: Optional[TriggerFacility] = None
    events: Optional[EventLogger] = None
    shutdown_flag: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self) -> None:
        if self.facility is None:
            self.facility = TriggerFacility(tick_seconds=self.settings.trigger_tick_seconds)
        if self.events is None:
            self.events = EventLogger(log_dir=self.settings.log_dir)

    @property
    def shutting_down(self) -> bool:
        return self.shutdown_flag.is_set()


__all__ = ["HealthBoard", "SchedulerContext"]
