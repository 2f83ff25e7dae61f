"""Structured event log written as JSON lines.

Provides the ``EventLogger`` class that records the scheduler's domain
events (``job_scheduled``, ``job_executed``, ``platform_error``, ...) as
JSON lines in local files (via ``aiofiles``).  A lightweight in-memory
ring buffer allows fast ``get_recent()`` queries, which the status
surface and tests rely on.

Unlike the stdlib operator log, every entry carries the job id and
platform it concerns so a single job's history can be reconstructed
from ``events.log`` alone.
"""

import logging
import traceback
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from postscheduler.logging.models import LogComponent, LogEntry, LogLevel
from postscheduler.utils import utc_now

logger = logging.getLogger(__name__)


class EventLogger:
    """Structured event log for the scheduling engine.

    Parameters:
        log_dir: Directory for log files (created if missing). ``None``
            keeps events in memory only.
        min_level: Entries below this level are dropped.
        max_recent: Ring buffer capacity.
    """

    def __init__(
        self,
        log_dir: Optional[str] = "logs",
        min_level: LogLevel = LogLevel.DEBUG,
        max_recent: int = 1000,
    ) -> None:
        self.log_dir = Path(log_dir) if log_dir is not None else None
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self.min_level = min_level

        # In-memory ring buffer for quick access
        self._recent: List[LogEntry] = []
        self._max_recent = max_recent

    @property
    def events_path(self) -> Optional[Path]:
        return self.log_dir / "events.log" if self.log_dir else None

    @property
    def errors_path(self) -> Optional[Path]:
        return self.log_dir / "errors.log" if self.log_dir else None

    @property
    def debug_path(self) -> Optional[Path]:
        return self.log_dir / "debug.log" if self.log_dir else None

    # ------------------------------------------------------------------
    # Core log method
    # ------------------------------------------------------------------

    async def log(
        self,
        level: LogLevel,
        component: LogComponent,
        message: str,
        event: Optional[str] = None,
        job_id: Optional[str] = None,
        platform: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
        duration_ms: Optional[int] = None,
    ) -> Optional[LogEntry]:
        """Record a structured entry and append it to the log files.

        Returns:
            The recorded entry, or ``None`` if below ``min_level``.
        """
        if level.value < self.min_level.value:
            return None

        entry = LogEntry(
            timestamp=utc_now(),
            level=level,
            component=component,
            message=message,
            event=event,
            job_id=job_id,
            platform=platform,
            data=data or {},
            duration_ms=duration_ms,
        )
        if error is not None:
            entry.error_type = type(error).__name__
            if error.__traceback__ is not None:
                entry.error_traceback = "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                )

        self._recent.append(entry)
        if len(self._recent) > self._max_recent:
            self._recent.pop(0)

        if self.log_dir is not None:
            await self._write_to_file(entry)

        return entry

    async def debug(self, component: LogComponent, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.DEBUG, component, message, **kwargs)

    async def info(self, component: LogComponent, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.INFO, component, message, **kwargs)

    async def warning(self, component: LogComponent, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.WARNING, component, message, **kwargs)

    async def error(self, component: LogComponent, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.ERROR, component, message, **kwargs)

    # ------------------------------------------------------------------
    # Domain events
    # ------------------------------------------------------------------

    async def job_scheduled(
        self,
        job_id: str,
        expression: str,
        timezone: str,
        platforms: List[str],
        recurring: bool,
    ) -> None:
        await self.log(
            LogLevel.INFO,
            LogComponent.SCHEDULER,
            f"Scheduled {'recurring' if recurring else 'one-off'} job with '{expression}' ({timezone})",
            event="job_scheduled",
            job_id=job_id,
            data={
                "expression": expression,
                "timezone": timezone,
                "platforms": platforms,
                "recurring": recurring,
            },
        )

    async def job_schedule_failed(self, job_id: str, error: BaseException) -> None:
        await self.log(
            LogLevel.ERROR,
            LogComponent.SCHEDULER,
            f"Failed to schedule job: {error}",
            event="job_schedule_failed",
            job_id=job_id,
            error=error,
        )

    async def job_started(self, job_id: str, attempt: int, platforms: List[str]) -> None:
        await self.log(
            LogLevel.INFO,
            LogComponent.EXECUTOR,
            f"Executing attempt {attempt} on {', '.join(platforms)}",
            event="job_started",
            job_id=job_id,
            data={"attempt": attempt, "platforms": platforms},
        )

    async def job_executed(
        self,
        job_id: str,
        state: str,
        attempt: int,
        outcomes: Dict[str, Dict[str, Any]],
        duration_ms: int,
    ) -> None:
        level = LogLevel.ERROR if state == "failed" else LogLevel.INFO
        await self.log(
            level,
            LogComponent.EXECUTOR,
            f"Execution pass finished in state '{state}'",
            event="job_executed",
            job_id=job_id,
            data={"state": state, "attempt": attempt, "outcomes": outcomes},
            duration_ms=duration_ms,
        )

    async def platform_post(self, job_id: str, platform: str, post_id: str, attempt: int) -> None:
        await self.log(
            LogLevel.INFO,
            LogComponent.PLATFORM,
            f"Published post {post_id}",
            event="platform_post",
            job_id=job_id,
            platform=platform,
            data={"post_id": post_id, "attempt": attempt},
        )

    async def platform_error(
        self,
        job_id: str,
        platform: str,
        error: BaseException,
        error_type: str,
        retryable: bool,
        attempt: int,
    ) -> None:
        await self.log(
            LogLevel.ERROR,
            LogComponent.PLATFORM,
            str(error),
            event="platform_error",
            job_id=job_id,
            platform=platform,
            data={"error_type": error_type, "retryable": retryable, "attempt": attempt},
            error=error,
        )

    async def job_retry_scheduled(
        self,
        job_id: str,
        attempt: int,
        delay_seconds: float,
        platforms: List[str],
    ) -> None:
        await self.log(
            LogLevel.WARNING,
            LogComponent.EXECUTOR,
            f"Retry {attempt + 1} scheduled in {delay_seconds:.0f}s",
            event="job_retry_scheduled",
            job_id=job_id,
            data={
                "next_attempt": attempt + 1,
                "delay_seconds": delay_seconds,
                "platforms": platforms,
            },
        )

    async def shutdown_started(self, reason: str, active_jobs: List[str]) -> None:
        await self.log(
            LogLevel.INFO,
            LogComponent.SHUTDOWN,
            f"Shutdown started ({reason})",
            event="shutdown_started",
            data={"reason": reason, "active_jobs": active_jobs},
        )

    async def shutdown_completed(self, abandoned: List[str], duration_ms: int) -> None:
        level = LogLevel.WARNING if abandoned else LogLevel.INFO
        await self.log(
            level,
            LogComponent.SHUTDOWN,
            "Shutdown completed" + (f", abandoned {len(abandoned)} job(s)" if abandoned else ""),
            event="shutdown_completed",
            data={"abandoned": abandoned},
            duration_ms=duration_ms,
        )

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def get_recent(
        self,
        limit: int = 20,
        level: Optional[LogLevel] = None,
        component: Optional[LogComponent] = None,
        event: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> List[LogEntry]:
        """Return recent entries from the in-memory ring buffer."""
        entries = self._recent.copy()

        if level is not None:
            entries = [e for e in entries if e.level == level]
        if component is not None:
            entries = [e for e in entries if e.component == component]
        if event is not None:
            entries = [e for e in entries if e.event == event]
        if job_id is not None:
            entries = [e for e in entries if e.job_id == job_id]

        return entries[-limit:]

    # ------------------------------------------------------------------
    # Private output methods
    # ------------------------------------------------------------------

    async def _write_to_file(self, entry: LogEntry) -> None:
        """Append the entry to the JSON log files.

        - ``events.log`` -- all entries
        - ``errors.log`` -- ERROR and CRITICAL only
        - ``debug.log``  -- DEBUG only
        """
        json_line = entry.to_json() + "\n"

        async with aiofiles.open(self.events_path, "a", encoding="utf-8") as f:
            await f.write(json_line)

        if entry.level.value >= LogLevel.ERROR.value:
            async with aiofiles.open(self.errors_path, "a", encoding="utf-8") as f:
                await f.write(json_line)

        if entry.level == LogLevel.DEBUG:
            async with aiofiles.open(self.debug_path, "a", encoding="utf-8") as f:
                await f.write(json_line)


__all__ = ["EventLogger"]
