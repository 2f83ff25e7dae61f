"""
Read-only status views for external polling.

Payload shapes follow the service's ``/health``, ``/status`` and
``/metrics`` endpoints. Nothing here mutates the registry or board.
"""

from typing import Any, Dict, Optional

from postscheduler import __version__
from postscheduler.scheduling.context import SchedulerContext
from postscheduler.utils import utc_now


def build_health_status(ctx: SchedulerContext) -> Dict[str, Any]:
    """Current health snapshot plus timestamp and version."""
    payload = ctx.board.current().to_dict()
    payload["timestamp"] = utc_now().isoformat()
    payload["version"] = __version__
    return payload


def build_status(ctx: SchedulerContext) -> Dict[str, Any]:
    """Health plus registry counts and the effective configuration."""
    settings = ctx.settings
    payload = build_health_status(ctx)
    payload.update(
        {
            "active_jobs": ctx.registry.active_count,
            "scheduled_jobs": len(ctx.registry),
            "jobs_by_state": ctx.registry.count_by_state(),
            "config": {
                "timezone": settings.timezone,
                "retry_attempts": {
                    retry_class.value: policy.max_attempts
                    for retry_class, policy in settings.retry_policies.items()
                },
                "max_concurrent_jobs": settings.max_concurrent_jobs,
            },
        }
    )
    return payload


def build_metrics(ctx: SchedulerContext, publisher: Optional[Any] = None) -> Dict[str, Any]:
    """Counters for scraping. Includes the publisher's request budget when
    it exposes ``rate_limit_status()``."""
    snapshot = ctx.board.current()
    metrics: Dict[str, Any] = {
        "uptime": snapshot.uptime_seconds,
        "active_jobs": ctx.registry.active_count,
        "scheduled_jobs": len(ctx.registry),
        "armed_triggers": ctx.facility.armed_count,
        "in_flight_firings": ctx.facility.in_flight_count,
        "timestamp": utc_now().isoformat(),
    }
    if publisher is not None and hasattr(publisher, "rate_limit_status"):
        metrics["rate_limits"] = publisher.rate_limit_status()
    return metrics


__all__ = ["build_health_status", "build_status", "build_metrics"]
