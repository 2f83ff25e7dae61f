"""
Health monitor: periodic sampling into the shared ``HealthSnapshot``.

Each collaborator registers an async probe returning ``True`` when it is
usable. Probes are bounded by ``probe_timeout_seconds``; a timeout marks
the collaborator ``degraded`` rather than failing the sample.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, Mapping, Optional

from postscheduler.scheduling.context import SchedulerContext
from postscheduler.scheduling.models import HealthSnapshot, OverallStatus, ServiceHealth
from postscheduler.utils import utc_now

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]


class HealthMonitor:
    """Samples collaborator and registry state on a fixed interval.

    Args:
        ctx: Shared scheduler context (its ``board`` receives snapshots).
        probes: Service name -> async probe.
        platform_services: Names of the platform-client services. Overall
            status is ``degraded`` while none of them is healthy.
    """

    def __init__(
        self,
        ctx: SchedulerContext,
        probes: Mapping[str, Probe],
        platform_services: Iterable[str] = ("meta_client",),
    ) -> None:
        self.ctx = ctx
        self.probes: Dict[str, Probe] = dict(probes)
        self.platform_services = frozenset(platform_services)
        self._services: Dict[str, ServiceHealth] = {
            name: ServiceHealth.INITIALIZING for name in self.probes
        }
        self._started = False
        self._init_error: Optional[str] = None
        self._running = False
        self._stop_requested = False
        self._stop_event: Optional[asyncio.Event] = None
        self._last_status: Optional[OverallStatus] = None

    # ================================================================
    # STATUS
    # ================================================================

    def mark_started(self) -> None:
        """Initialization finished; overall status may now be ``running``."""
        self._started = True
        self.publish()

    def mark_initialization_failed(self, reason: str) -> None:
        """Record an unrecoverable startup failure (status ``error``)."""
        self._init_error = reason
        logger.error("[HEALTH] Initialization failed: %s", reason)
        self.publish()

    @property
    def services(self) -> Dict[str, ServiceHealth]:
        return dict(self._services)

    def overall_status(self) -> OverallStatus:
        if self._init_error is not None:
            return OverallStatus.ERROR
        if self.ctx.shutting_down:
            return OverallStatus.SHUTTING_DOWN
        if not self._started:
            return OverallStatus.STARTING
        if not any(
            self._services.get(name) is ServiceHealth.HEALTHY for name in self.platform_services
        ):
            return OverallStatus.DEGRADED
        return OverallStatus.RUNNING

    def publish(self) -> HealthSnapshot:
        """Overwrite the shared snapshot from current state, without probing."""
        previous = self.ctx.board.current()
        status = self.overall_status()
        snapshot = HealthSnapshot(
            status=status,
            services=dict(self._services),
            started_at=previous.started_at,
            last_check=utc_now(),
            running_jobs=self.ctx.registry.active_count,
            armed_triggers=self.ctx.facility.armed_count,
        )
        self.ctx.board.publish(snapshot)

        if status is OverallStatus.DEGRADED and self._last_status is not OverallStatus.DEGRADED:
            logger.warning("[HEALTH] Status degraded - no healthy platform services")
        elif status is not self._last_status:
            logger.info("[HEALTH] Status is now '%s'", status.value)
        self._last_status = status
        return snapshot

    # ================================================================
    # PROBING
    # ================================================================

    async def _probe(self, name: str, probe: Probe) -> ServiceHealth:
        timeout = self.ctx.settings.probe_timeout_seconds
        try:
            healthy = await asyncio.wait_for(probe(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("[HEALTH] Probe '%s' timed out after %.1fs", name, timeout)
            return ServiceHealth.DEGRADED
        except Exception as exc:
            logger.error("[HEALTH] Probe '%s' failed: %s", name, exc)
            return ServiceHealth.ERROR
        return ServiceHealth.HEALTHY if healthy else ServiceHealth.ERROR

    async def sample(self) -> HealthSnapshot:
        """Probe every collaborator and publish a fresh snapshot."""
        names = list(self.probes)
        results = await asyncio.gather(*(self._probe(n, self.probes[n]) for n in names))
        for name, health in zip(names, results):
            if self._services.get(name) is not health:
                logger.info("[HEALTH] Service '%s' is %s", name, health.value)
            self._services[name] = health
        return self.publish()

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Sample every ``health_check_interval_seconds`` until stopped."""
        if self._stop_requested:
            return
        self._running = True
        self._stop_event = asyncio.Event()
        interval = self.ctx.settings.health_check_interval_seconds
        logger.info("[HEALTH] Health monitor started (interval=%.0fs)", interval)

        while self._running:
            try:
                await self.sample()
            except asyncio.CancelledError:
                logger.info("[HEALTH] Health monitor cancelled")
                break
            except Exception:
                logger.exception("[HEALTH] Unexpected error while sampling health")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                logger.info("[HEALTH] Health monitor sleep cancelled")
                break

        logger.info("[HEALTH] Health monitor stopped")

    async def stop(self) -> None:
        self._stop_requested = True
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        logger.info("[HEALTH] Health monitor stop requested")


__all__ = ["HealthMonitor", "Probe"]
