"""Logging data models: LogLevel, LogComponent, LogEntry."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class LogLevel(Enum):
    """Log levels with numeric values for severity comparison.

    Values match the stdlib ``logging`` levels so entries can be mirrored
    to operator logs without a lookup.
    """

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @property
    def name_str(self) -> str:
        """Get lowercase name for display/serialization."""
        return self.name.lower()


class LogComponent(Enum):
    """System components that produce structured events."""

    STARTUP = "startup"
    CONFIG = "config"
    SCHEDULER = "scheduler"
    EXECUTOR = "executor"
    TRIGGER = "trigger"
    HEALTH = "health"
    SHUTDOWN = "shutdown"
    PLATFORM = "platform"
    CONTENT = "content"


@dataclass
class LogEntry:
    """Structured event record.

    One line in ``events.log``. ``event`` names the domain event
    (``job_scheduled``, ``platform_error``, ...); ``job_id`` and
    ``platform`` carry the context it happened in.
    """

    # Required fields
    timestamp: datetime
    level: LogLevel
    component: LogComponent
    message: str

    # Context
    event: Optional[str] = None
    job_id: Optional[str] = None
    platform: Optional[str] = None

    # Additional data
    data: Dict[str, Any] = field(default_factory=dict)

    # Error details
    error_type: Optional[str] = None
    error_traceback: Optional[str] = None

    # Performance
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "level_name": self.level.name_str,
            "component": self.component.value,
            "event": self.event,
            "message": self.message,
            "job_id": self.job_id,
            "platform": self.platform,
            "data": self.data,
            "error_type": self.error_type,
            "error_traceback": self.error_traceback,
            "duration_ms": self.duration_ms,
        }

    def to_json(self) -> str:
        """Serialize to a single JSON line for file logging."""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def to_readable(self) -> str:
        """Human-readable format for console output."""
        time_str = self.timestamp.strftime("%H:%M:%S")
        level_indicators = {
            LogLevel.DEBUG: "[DEBUG]",
            LogLevel.INFO: "[INFO]",
            LogLevel.WARNING: "[WARN]",
            LogLevel.ERROR: "[ERROR]",
            LogLevel.CRITICAL: "[CRIT]",
        }
        indicator = level_indicators.get(self.level, "[???]")
        msg = f"{indicator} [{time_str}] [{self.component.value}]"
        if self.job_id:
            msg += f" [{self.job_id}]"
        if self.platform:
            msg += f" [{self.platform}]"
        msg += f" {self.message}"
        if self.duration_ms:
            msg += f" ({self.duration_ms}ms)"
        return msg
