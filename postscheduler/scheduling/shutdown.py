"""
Graceful shutdown: disarm everything, drain in-flight executions, release
resources.

The sequence runs at most once per process; repeated signals while it is
in progress are ignored.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple

from postscheduler.scheduling.context import SchedulerContext
from postscheduler.utils import elapsed_ms, utc_now

logger = logging.getLogger(__name__)

Closer = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class ShutdownReport:
    """What the shutdown sequence did.

    Attributes:
        reason: Why shutdown was requested (signal name, error, ...).
        disarmed: Number of triggers disarmed.
        abandoned: Jobs still executing when the drain timed out.
        duration_ms: Wall time of the whole sequence.
    """

    reason: str
    disarmed: int
    abandoned: Tuple[str, ...]
    duration_ms: int

    @property
    def clean(self) -> bool:
        return not self.abandoned


class ShutdownCoordinator:
    """Runs the shutdown sequence.

    Args:
        ctx: Shared scheduler context.
        monitor: Health monitor to stop (optional).
        dispatcher: Dispatcher to stop (optional).
        closers: Async callables releasing collaborator resources, such
            as an HTTP client's ``aclose``.
    """

    def __init__(
        self,
        ctx: SchedulerContext,
        monitor: Any = None,
        dispatcher: Any = None,
        closers: Iterable[Closer] = (),
    ) -> None:
        self.ctx = ctx
        self.monitor = monitor
        self.dispatcher = dispatcher
        self.closers: List[Closer] = list(closers)
        self.done = asyncio.Event()
        self.report: Optional[ShutdownReport] = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def shutdown(self, reason: str = "requested") -> Optional[ShutdownReport]:
        """Run the shutdown sequence once.

        Returns:
            The report, or the earlier report (``None`` while still in
            progress) on a duplicate call.
        """
        if self._started:
            logger.info("[SHUTDOWN] Shutdown already in progress, ignoring '%s'", reason)
            return self.report
        self._started = True
        started_at = utc_now()
        ctx = self.ctx

        # (a) Stop new executions from starting
        ctx.shutdown_flag.set()
        logger.info("[SHUTDOWN] Starting graceful shutdown (%s)", reason)
        if self.monitor is not None:
            self.monitor.publish()
        await ctx.events.shutdown_started(reason, sorted(ctx.registry.active_ids))

        # (b) Disarm every trigger and empty the registry
        disarmed = await self._disarm_all()

        # (c) Drain in-flight executions
        abandoned = await self._drain()

        # (d) Abandon what is left
        if abandoned:
            logger.warning(
                "[SHUTDOWN] Abandoning %d active job(s) after %.0fs: %s",
                len(abandoned),
                ctx.settings.drain_timeout_seconds,
                ", ".join(abandoned),
            )

        # (e) Release resources
        await self._stop_components()

        # (f) Report and signal exit
        self.report = ShutdownReport(
            reason=reason,
            disarmed=disarmed,
            abandoned=abandoned,
            duration_ms=elapsed_ms(started_at),
        )
        await self._record_completion()
        logger.info("[SHUTDOWN] Graceful shutdown completed (%dms)", self.report.duration_ms)
        self.done.set()
        return self.report

    async def wait(self) -> ShutdownReport:
        """Wait for the sequence (started elsewhere) to finish."""
        await self.done.wait()
        return self.report

    # ================================================================
    # STEPS
    # ================================================================

    async def _disarm_all(self) -> int:
        ctx = self.ctx
        async with ctx.registry.lock:
            records = ctx.registry.drain_all()

        disarmed = 0
        for record in records:
            for handle in (record.trigger, record.retry_trigger):
                if handle is None:
                    continue
                try:
                    if ctx.facility.disarm(handle):
                        disarmed += 1
                except Exception:
                    logger.exception("[SHUTDOWN] Failed to disarm trigger of %s", record.job_id)
            logger.debug("[SHUTDOWN] Stopped job %s", record.job_id)

        try:
            disarmed += ctx.facility.disarm_all()
        except Exception:
            logger.exception("[SHUTDOWN] Failed to disarm remaining triggers")

        logger.info(
            "[SHUTDOWN] Removed %d job(s), disarmed %d trigger(s)", len(records), disarmed
        )
        return disarmed

    async def _drain(self) -> Tuple[str, ...]:
        registry = self.ctx.registry
        settings = self.ctx.settings
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.drain_timeout_seconds

        while registry.active_count:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            logger.info("[SHUTDOWN] Waiting for %d active job(s) to complete", registry.active_count)
            await asyncio.sleep(min(settings.drain_poll_interval_seconds, remaining))

        return tuple(sorted(registry.active_ids))

    async def _stop_components(self) -> None:
        steps: List[Tuple[str, Closer]] = []
        if self.monitor is not None:
            steps.append(("health monitor", self.monitor.stop))
        steps.append(("trigger facility", self.ctx.facility.stop))
        if self.dispatcher is not None:
            steps.append(("dispatcher", self.dispatcher.stop))
        steps.extend((getattr(c, "__qualname__", repr(c)), c) for c in self.closers)

        for name, stop in steps:
            try:
                await stop()
            except Exception:
                logger.exception("[SHUTDOWN] Error stopping %s", name)

    async def _record_completion(self) -> None:
        events = self.ctx.events
        try:
            await events.shutdown_completed(list(self.report.abandoned), self.report.duration_ms)
        except Exception:
            logger.exception("[SHUTDOWN] Failed to record shutdown completion")


__all__ = ["ShutdownReport", "ShutdownCoordinator"]
