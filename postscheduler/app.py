"""
Application wiring for the post scheduler.

``SchedulerApp`` builds one explicit ``SchedulerContext`` and the
components that share it, then drives the startup sequence:

1. Validate platform credentials in the environment (warn only).
2. Probe every collaborator (services start ``initializing``).
3. Load and validate the schedule document. Failure here is fatal and
   leaves the health status at ``error``.
4. Start the dispatcher, the health monitor and the trigger facility.
5. Arm every job.
6. Report status ``running`` (or ``degraded`` without a healthy platform
   client).

Shutdown is delegated to ``ShutdownCoordinator`` and can be requested by
a signal or programmatically.
"""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from postscheduler.config import Settings, get_settings, validate_env
from postscheduler.exceptions import ConfigurationError, ScheduleValidationError
from postscheduler.logging.models import LogComponent
from postscheduler.scheduling.context import SchedulerContext
from postscheduler.scheduling.dispatch import build_dispatcher
from postscheduler.scheduling.executor import Executor
from postscheduler.scheduling.health import HealthMonitor
from postscheduler.scheduling.schedule_loader import ScheduleDocument, load_schedule
from postscheduler.scheduling.scheduler import Scheduler
from postscheduler.scheduling.shutdown import ShutdownCoordinator, ShutdownReport
from postscheduler.scheduling.status import build_health_status, build_metrics, build_status
from postscheduler.tools.content_processor import PlatformContentProcessor
from postscheduler.tools.file_reader import FileContentResolver
from postscheduler.tools.meta_client import MetaGraphClient

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = ("SIGTERM", "SIGINT", "SIGUSR2")


class SchedulerApp:
    """Owns the scheduler process lifecycle.

    Args:
        settings: Application settings (defaults to ``get_settings()``).
        schedule_path: Schedule document to load (defaults to
            ``settings.schedule_path``).
        resolver: Content resolver (defaults to ``FileContentResolver``).
        processor: Content processor (defaults to
            ``PlatformContentProcessor``).
        publisher: Platform publisher (defaults to ``MetaGraphClient``).
        ctx: Pre-built context, mainly for tests.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        schedule_path: Optional[Union[str, Path]] = None,
        resolver: Any = None,
        processor: Any = None,
        publisher: Any = None,
        ctx: Optional[SchedulerContext] = None,
    ) -> None:
        self.settings = settings or (ctx.settings if ctx else get_settings())
        self.schedule_path = Path(schedule_path or self.settings.schedule_path)
        self.ctx = ctx or SchedulerContext(settings=self.settings)

        self.resolver = resolver or FileContentResolver(self.settings.content_dir)
        self.processor = processor or PlatformContentProcessor(self.settings.image_dir)
        self.publisher = publisher or MetaGraphClient(
            timeout=self.settings.publish_timeout_seconds
        )

        self.dispatcher = build_dispatcher(self.settings)
        self.executor = Executor(
            self.ctx,
            resolver=self.resolver,
            processor=self.processor,
            publisher=self.publisher,
            dispatcher=self.dispatcher,
        )
        self.scheduler = Scheduler(self.ctx, self.executor)
        self.monitor = HealthMonitor(self.ctx, probes=self._probes())

        closers = []
        if hasattr(self.publisher, "aclose"):
            closers.append(self.publisher.aclose)
        self.coordinator = ShutdownCoordinator(
            self.ctx,
            monitor=self.monitor,
            dispatcher=self.dispatcher,
            closers=closers,
        )

        self.document: Optional[ScheduleDocument] = None
        self._tasks: List["asyncio.Task[None]"] = []
        self._signal_tasks: Set["asyncio.Task[Any]"] = set()

    def _probes(self) -> Dict[str, Any]:
        probes = {}
        for name, component in (
            ("meta_client", self.publisher),
            ("file_reader", self.resolver),
            ("content_processor", self.processor),
        ):
            probe = getattr(component, "probe", None)
            if probe is not None:
                probes[name] = probe
        return probes

    # ================================================================
    # STARTUP
    # ================================================================

    async def initialize(self) -> List[str]:
        """Run the startup sequence.

        Returns:
            Ids of the jobs that were armed.

        Raises:
            ConfigurationError: If the schedule file is missing or
                unparseable.
            ScheduleValidationError: If the schedule fails validation.
        """
        logger.info("[STARTUP] Starting post scheduler (schedule=%s)", self.schedule_path)
        validate_env(strict=False)

        await self.monitor.sample()

        try:
            self.document = load_schedule(
                self.schedule_path, default_timezone=self.settings.timezone
            )
        except (ConfigurationError, ScheduleValidationError) as exc:
            self.monitor.mark_initialization_failed(str(exc))
            await self.ctx.events.error(
                LogComponent.STARTUP,
                "Failed to load schedule",
                event="startup_failed",
                error=exc,
            )
            raise

        await self.dispatcher.start()
        self._tasks.append(asyncio.create_task(self.monitor.start(), name="health-monitor"))
        self._tasks.append(asyncio.create_task(self.ctx.facility.start(), name="trigger-facility"))

        armed = await self.scheduler.schedule_document(self.document)
        self.monitor.mark_started()

        status = self.ctx.board.current().status.value
        logger.info("[STARTUP] Post scheduler started (%d jobs armed, status=%s)", len(armed), status)
        await self.ctx.events.info(
            LogComponent.STARTUP,
            "Post scheduler started",
            event="startup_completed",
            data={"armed_jobs": armed, "status": status},
        )
        return armed

    # ================================================================
    # RUN / SHUTDOWN
    # ================================================================

    def install_signal_handlers(self) -> None:
        """Route SIGTERM, SIGINT and SIGUSR2 to :meth:`request_shutdown`."""
        loop = asyncio.get_running_loop()
        for name in SHUTDOWN_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            try:
                loop.add_signal_handler(signum, self._on_signal, name)
            except (NotImplementedError, RuntimeError):
                logger.warning("[STARTUP] Cannot install handler for %s on this platform", name)

    def _on_signal(self, name: str) -> None:
        logger.info("[SHUTDOWN] Received %s", name)
        task = asyncio.create_task(self.request_shutdown(name))
        self._signal_tasks.add(task)
        task.add_done_callback(self._signal_tasks.discard)

    async def request_shutdown(self, reason: str = "requested") -> Optional[ShutdownReport]:
        """Start (or join) the shutdown sequence."""
        return await self.coordinator.shutdown(reason)

    async def run(self) -> ShutdownReport:
        """Initialize, then serve until shutdown completes.

        Raises:
            ConfigurationError: See :meth:`initialize`.
            ScheduleValidationError: See :meth:`initialize`.
        """
        try:
            await self.initialize()
        except Exception:
            await self._abort_startup()
            raise

        self.install_signal_handlers()
        return await self.wait_closed()

    async def wait_closed(self) -> ShutdownReport:
        """Wait for shutdown to finish and the background loops to exit."""
        report = await self.coordinator.wait()
        await self._join_tasks()
        return report

    async def _abort_startup(self) -> None:
        for task in self._tasks:
            task.cancel()
        await self._join_tasks()
        if hasattr(self.publisher, "aclose"):
            await self.publisher.aclose()

    async def _join_tasks(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    # ================================================================
    # STATUS SURFACE
    # ================================================================

    def health(self) -> Dict[str, Any]:
        return build_health_status(self.ctx)

    def status(self) -> Dict[str, Any]:
        return build_status(self.ctx)

    def metrics(self) -> Dict[str, Any]:
        return build_metrics(self.ctx, self.publisher)


__all__ = ["SchedulerApp", "SHUTDOWN_SIGNALS"]
