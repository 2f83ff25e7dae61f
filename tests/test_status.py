"""Tests for the read-only status views."""

from unittest.mock import AsyncMock, MagicMock

from postscheduler import __version__
from postscheduler.config import Settings
from postscheduler.scheduling.models import JobRecord, JobState
from postscheduler.scheduling.status import build_health_status, build_metrics, build_status


class TestBuildHealthStatus:
    """Tests for build_health_status."""

    def test_includes_snapshot_and_version(self, ctx):
        payload = build_health_status(ctx)
        assert payload["status"] == "starting"
        assert payload["version"] == __version__
        assert "timestamp" in payload
        assert "uptime" in payload


class TestBuildStatus:
    """Tests for build_status."""

    def test_counts_and_config(self, ctx, make_config):
        record = JobRecord(config=make_config(), expression="0 13 15 6 *")
        record.transition(JobState.RUNNING)
        ctx.registry.put(record)
        ctx.registry.mark_active("post_1")

        payload = build_status(ctx)

        assert payload["active_jobs"] == 1
        assert payload["scheduled_jobs"] == 1
        assert payload["jobs_by_state"]["running"] == 1
        assert payload["config"]["timezone"] == "UTC"
        assert payload["config"]["retry_attempts"]["rate_limit"] == 5
        assert payload["config"]["retry_attempts"]["content_error"] == 1
        assert payload["config"]["max_concurrent_jobs"] is None

    def test_does_not_mutate_registry(self, ctx, make_config):
        ctx.registry.put(JobRecord(config=make_config(), expression="0 13 15 6 *"))
        build_status(ctx)
        assert ctx.registry.get("post_1").state is JobState.PENDING


class TestBuildMetrics:
    """Tests for build_metrics."""

    def test_counters(self, ctx):
        ctx.facility.arm_cron("recurring_1", "0 9 * * *", "UTC", AsyncMock())
        metrics = build_metrics(ctx)
        assert metrics["armed_triggers"] == 1
        assert metrics["in_flight_firings"] == 0
        assert metrics["active_jobs"] == 0
        assert "rate_limits" not in metrics

    def test_includes_publisher_rate_limits(self, ctx):
        publisher = MagicMock()
        publisher.rate_limit_status.return_value = {"facebook": {"requests_used": 3}}
        metrics = build_metrics(ctx, publisher)
        assert metrics["rate_limits"] == {"facebook": {"requests_used": 3}}

    def test_configured_concurrency_is_reported(self, ctx):
        ctx.settings = Settings(log_dir=None, max_concurrent_jobs=3)
        assert build_status(ctx)["config"]["max_concurrent_jobs"] == 3
