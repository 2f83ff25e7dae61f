"""Tests for the executor: execution passes, retries and job lifecycle.

Jobs are registered directly in the registry and fired by calling
``Executor.execute``; retry firings are driven by ``retry=True`` after
checking the one-shot retry trigger the executor armed.
"""

import asyncio
import random
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from postscheduler.exceptions import ContentValidationError, PlatformError
from postscheduler.logging.models import LogComponent
from postscheduler.models import ErrorType, Platform
from postscheduler.scheduling.executor import RETRY_KEY_SUFFIX, Executor
from postscheduler.scheduling.models import JobKind, JobRecord, JobState

FB = Platform.FACEBOOK
IG = Platform.INSTAGRAM


def _register(ctx, config, expression="0 13 15 6 *"):
    record = JobRecord(config=config, expression=expression)
    ctx.registry.put(record)
    return record


@pytest.fixture
def executor(ctx, resolver, processor, publisher):
    return Executor(ctx, resolver, processor, publisher, rng=random.Random(0))


# =============================================================================
# Successful passes
# =============================================================================


class TestSuccessfulExecution:
    """Tests for passes where every platform succeeds."""

    @pytest.mark.asyncio
    async def test_one_off_completes_and_is_removed(self, ctx, executor, publisher, make_config):
        _register(ctx, make_config())

        result = await executor.execute("post_1")

        assert result.state is JobState.COMPLETED
        assert result.succeeded is True
        assert set(result.outcomes) == {FB, IG}
        assert result.outcomes[FB].post_id == "facebook_123"
        assert result.outcomes[IG].post_id == "instagram_123"
        assert len(publisher.calls) == 2
        assert ctx.registry.get("post_1") is None
        assert ctx.registry.active_count == 0

    @pytest.mark.asyncio
    async def test_outcome_keys_equal_platforms(self, ctx, executor, make_config):
        _register(ctx, make_config(platforms=(IG,)))
        result = await executor.execute("post_1")
        assert set(result.outcomes) == {IG}

    @pytest.mark.asyncio
    async def test_file_content_is_resolved(self, ctx, executor, resolver, publisher, make_config):
        _register(ctx, make_config(content=None, file="post.txt", platforms=(FB,)))
        await executor.execute("post_1")
        assert resolver.calls == ["post.txt"]
        assert publisher.calls == [(FB, "Text from file")]

    @pytest.mark.asyncio
    async def test_inline_content_takes_precedence(self, ctx, executor, resolver, publisher, make_config):
        _register(ctx, make_config(content="Inline", file="post.txt", platforms=(FB,)))
        await executor.execute("post_1")
        assert resolver.calls == []
        assert publisher.calls == [(FB, "Inline")]

    @pytest.mark.asyncio
    async def test_recurring_returns_to_pending_with_empty_outcomes(self, ctx, executor, make_config):
        record = _register(
            ctx, make_config("recurring_1", kind=JobKind.RECURRING), expression="0 9 * * *"
        )

        result = await executor.execute("recurring_1")

        assert result.state is JobState.COMPLETED
        assert ctx.registry.get("recurring_1") is record
        assert record.state is JobState.PENDING
        assert record.outcomes == {}
        assert record.started_at is None
        assert record.executions == 1

    @pytest.mark.asyncio
    async def test_recurring_template_variables(self, ctx, executor, publisher, make_config):
        config = make_config(
            "recurring_1",
            kind=JobKind.RECURRING,
            content="Hello {city}",
            platforms=(FB,),
            variables={"city": ("Lisbon",)},
        )
        _register(ctx, config, expression="0 9 * * *")
        await executor.execute("recurring_1")
        assert publisher.calls == [(FB, "Hello Lisbon")]

    @pytest.mark.asyncio
    async def test_events_recorded(self, ctx, executor, make_config):
        _register(ctx, make_config())
        await executor.execute("post_1")

        events = [e.event for e in ctx.events.get_recent(job_id="post_1")]
        assert events[0] == "job_started"
        assert events.count("platform_post") == 2
        assert events[-1] == "job_executed"


# =============================================================================
# Failures and retries
# =============================================================================


class TestRetries:
    """Tests for retry decisions and retry firings."""

    @pytest.mark.asyncio
    async def test_rate_limit_on_one_platform_retries(self, ctx, clock, executor, publisher, make_config):
        publisher.script[FB] = [PlatformError("facebook", "limit", status=400, code=4)]
        record = _register(ctx, make_config())

        result = await executor.execute("post_1")

        assert result.state is JobState.RETRYING
        assert result.retry_delay == 300.0
        assert result.outcomes[FB].error_type is ErrorType.RATE_LIMIT
        assert result.outcomes[FB].retryable is True
        assert result.outcomes[IG].succeeded is True
        assert record.state is JobState.RETRYING
        assert ctx.registry.get("post_1") is record

        retry = ctx.facility.get("post_1" + RETRY_KEY_SUFFIX)
        assert retry is record.retry_trigger
        assert retry.next_fire == clock.now + timedelta(seconds=300)

        retry_events = ctx.events.get_recent(event="job_retry_scheduled")
        assert retry_events[-1].data["platforms"] == ["facebook"]

    @pytest.mark.asyncio
    async def test_retry_only_reattempts_failed_platform(self, ctx, executor, publisher, make_config):
        publisher.script[FB] = [PlatformError("facebook", "limit", code=4)]
        record = _register(ctx, make_config())
        await executor.execute("post_1")

        result = await executor.execute("post_1", retry=True)

        assert result.state is JobState.COMPLETED
        assert result.attempt == 2
        assert len(publisher.calls_for(FB)) == 2
        assert len(publisher.calls_for(IG)) == 1
        assert result.outcomes[FB].attempts == 2
        assert result.outcomes[IG].attempts == 1
        assert record.retry_trigger is None
        assert ctx.registry.get("post_1") is None

    @pytest.mark.asyncio
    async def test_content_error_fails_after_one_attempt(self, ctx, executor, publisher, make_config):
        publisher.script[FB] = [ContentValidationError("facebook: Content too long")]
        _register(ctx, make_config(platforms=(FB,)))

        result = await executor.execute("post_1")

        assert result.state is JobState.FAILED
        assert result.outcomes[FB].error_type is ErrorType.CONTENT_ERROR
        assert result.outcomes[FB].retryable is False
        assert len(publisher.calls) == 1
        assert ctx.facility.get("post_1" + RETRY_KEY_SUFFIX) is None
        assert ctx.registry.get("post_1") is None

    @pytest.mark.asyncio
    async def test_network_errors_exhaust_retries_with_backoff(self, ctx, clock, executor, publisher, make_config):
        publisher.script[FB] = [httpx.ConnectError("refused") for _ in range(4)]
        record = _register(ctx, make_config(platforms=(FB,)))

        result = await executor.execute("post_1")
        delays = [result.retry_delay]
        assert record.retry_trigger.next_fire == clock.now + timedelta(seconds=10)

        while result.state is JobState.RETRYING:
            result = await executor.execute("post_1", retry=True)
            delays.append(result.retry_delay)

        assert delays == [10.0, 20.0, 40.0, None]
        assert result.state is JobState.FAILED
        assert result.attempt == 4
        assert result.outcomes[FB].error_type is ErrorType.NETWORK_ERROR
        assert len(publisher.calls) == 4
        assert ctx.registry.get("post_1") is None

    @pytest.mark.asyncio
    async def test_publish_timeout_is_network_error(self, ctx, settings, executor, publisher, make_config):
        settings.publish_timeout_seconds = 0.01

        async def hang(platform, processed):
            await asyncio.sleep(1)

        publisher.publish = hang
        _register(ctx, make_config(platforms=(FB,)))

        result = await executor.execute("post_1")

        assert result.state is JobState.RETRYING
        assert result.outcomes[FB].error_type is ErrorType.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_missing_file_fails_every_platform(self, ctx, executor, publisher, make_config):
        _register(ctx, make_config(content=None, file="missing.txt"))

        result = await executor.execute("post_1")

        assert result.state is JobState.FAILED
        assert publisher.calls == []
        assert {p: o.error_type for p, o in result.outcomes.items()} == {
            FB: ErrorType.CONTENT_ERROR,
            IG: ErrorType.CONTENT_ERROR,
        }

    @pytest.mark.asyncio
    async def test_platform_failure_does_not_affect_sibling(self, ctx, executor, publisher, make_config):
        publisher.script[IG] = [PlatformError("instagram", "bad token", status=401)]
        _register(ctx, make_config())

        result = await executor.execute("post_1")

        assert result.outcomes[FB].succeeded is True
        assert result.outcomes[IG].error_type is ErrorType.AUTHENTICATION_ERROR
        assert result.state is JobState.FAILED

    @pytest.mark.asyncio
    async def test_recurring_failure_returns_to_pending(self, ctx, executor, publisher, make_config):
        publisher.script[FB] = [ContentValidationError("too long")]
        record = _register(
            ctx,
            make_config("recurring_1", kind=JobKind.RECURRING, platforms=(FB,)),
            expression="0 9 * * *",
        )

        result = await executor.execute("recurring_1")

        assert result.state is JobState.FAILED
        assert record.state is JobState.PENDING
        assert record.outcomes == {}

    @pytest.mark.asyncio
    async def test_failed_event_is_error_level(self, ctx, executor, publisher, make_config):
        publisher.script[FB] = [ContentValidationError("too long")]
        _register(ctx, make_config(platforms=(FB,)))
        await executor.execute("post_1")

        executed = ctx.events.get_recent(event="job_executed")[-1]
        assert executed.data["state"] == "failed"
        assert executed.level.name == "ERROR"
        assert ctx.events.get_recent(component=LogComponent.PLATFORM, event="platform_error")


# =============================================================================
# Ignored firings
# =============================================================================


class TestIgnoredFirings:
    """Tests for firings the executor must not act on."""

    @pytest.mark.asyncio
    async def test_unknown_job(self, executor, publisher):
        assert await executor.execute("post_missing") is None
        assert publisher.calls == []

    @pytest.mark.asyncio
    async def test_no_execution_after_shutdown_flag(self, ctx, executor, publisher, make_config):
        record = _register(ctx, make_config())
        ctx.shutdown_flag.set()

        assert await executor.execute("post_1") is None
        assert publisher.calls == []
        assert record.state is JobState.PENDING

    @pytest.mark.asyncio
    async def test_shutdown_while_waiting_for_registry_lock(self, ctx, executor, publisher, make_config):
        record = _register(ctx, make_config())

        async with ctx.registry.lock:
            firing = asyncio.create_task(executor.execute("post_1"))
            await asyncio.sleep(0)
            ctx.shutdown_flag.set()

        assert await firing is None
        assert publisher.calls == []
        assert record.state is JobState.PENDING
        assert ctx.registry.active_count == 0

    @pytest.mark.asyncio
    async def test_duplicate_firing_while_running(self, ctx, executor, publisher, make_config):
        release = asyncio.Event()
        original = publisher.publish

        async def slow(platform, processed):
            await release.wait()
            return await original(platform, processed)

        publisher.publish = slow
        _register(ctx, make_config("recurring_1", kind=JobKind.RECURRING, platforms=(FB,)), "0 9 * * *")

        first = asyncio.create_task(executor.execute("recurring_1"))
        while not ctx.registry.is_active("recurring_1"):
            await asyncio.sleep(0)

        assert await executor.execute("recurring_1") is None

        release.set()
        result = await first
        assert result.state is JobState.COMPLETED
        assert len(publisher.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_firing_for_pending_job_is_ignored(self, ctx, executor, publisher, make_config):
        _register(ctx, make_config())
        assert await executor.execute("post_1", retry=True) is None
        assert publisher.calls == []

    @pytest.mark.asyncio
    async def test_retry_not_armed_during_shutdown(self, ctx, executor, publisher, make_config):
        async def flagging_publish(platform, processed):
            ctx.shutdown_flag.set()
            raise PlatformError("facebook", "limit", code=4)

        publisher.publish = flagging_publish
        record = _register(ctx, make_config(platforms=(FB,)))

        result = await executor.execute("post_1")

        assert result.state is JobState.RETRYING
        assert record.retry_trigger is None
        assert ctx.facility.get("post_1" + RETRY_KEY_SUFFIX) is None


# =============================================================================
# Independence
# =============================================================================


class TestIndependence:
    """Tests that jobs do not affect one another."""

    @pytest.mark.asyncio
    async def test_two_recurring_jobs_are_independent(self, ctx, executor, publisher, make_config):
        publisher.script[FB] = [ContentValidationError("too long")]
        failing = _register(
            ctx, make_config("recurring_a", kind=JobKind.RECURRING, platforms=(FB,)), "0 9 * * *"
        )
        passing = _register(
            ctx, make_config("recurring_b", kind=JobKind.RECURRING, platforms=(IG,)), "0 10 * * *"
        )

        results = await asyncio.gather(
            executor.execute("recurring_a"), executor.execute("recurring_b")
        )

        assert [r.state for r in results] == [JobState.FAILED, JobState.COMPLETED]
        assert failing.state is JobState.PENDING
        assert passing.state is JobState.PENDING
        assert failing.executions == 1
        assert passing.executions == 1


# =============================================================================
# Event log and internal failures
# =============================================================================


class TestEventLogFailures:
    """Tests that a failing event log never wedges the job lifecycle."""

    @pytest.mark.asyncio
    async def test_recurring_returns_to_pending(self, ctx, executor, publisher, make_config, monkeypatch):
        monkeypatch.setattr(ctx.events, "job_executed", AsyncMock(side_effect=OSError("disk full")))
        record = _register(
            ctx, make_config("recurring_1", kind=JobKind.RECURRING, platforms=(FB,)), "0 9 * * *"
        )

        result = await executor.execute("recurring_1")

        assert result.state is JobState.COMPLETED
        assert record.state is JobState.PENDING
        assert ctx.registry.active_count == 0

        second = await executor.execute("recurring_1")
        assert second is not None
        assert second.state is JobState.COMPLETED
        assert len(publisher.calls) == 2

    @pytest.mark.asyncio
    async def test_one_off_is_removed(self, ctx, executor, make_config, monkeypatch):
        monkeypatch.setattr(ctx.events, "job_executed", AsyncMock(side_effect=OSError("disk full")))
        _register(ctx, make_config())

        result = await executor.execute("post_1")

        assert result.state is JobState.COMPLETED
        assert ctx.registry.get("post_1") is None
        assert ctx.registry.active_count == 0

    @pytest.mark.asyncio
    async def test_every_event_failing_still_publishes_and_retries(
        self, ctx, executor, publisher, make_config, monkeypatch
    ):
        for name in ("job_started", "platform_post", "platform_error", "job_executed", "job_retry_scheduled"):
            monkeypatch.setattr(ctx.events, name, AsyncMock(side_effect=OSError("disk full")))
        publisher.script[FB] = [PlatformError("facebook", "limit", status=400, code=4)]
        record = _register(ctx, make_config())

        result = await executor.execute("post_1")

        assert result.state is JobState.RETRYING
        assert result.outcomes[IG].succeeded is True
        assert result.outcomes[FB].error_type is ErrorType.RATE_LIMIT
        assert record.state is JobState.RETRYING
        assert record.retry_trigger is ctx.facility.get("post_1" + RETRY_KEY_SUFFIX)


class TestInternalFault:
    """Tests for unexpected errors outside the per-platform attempts."""

    @pytest.mark.asyncio
    async def test_fault_fails_every_platform_and_releases_job(
        self, ctx, executor, publisher, make_config, monkeypatch
    ):
        monkeypatch.setattr(executor, "_platforms_to_attempt", MagicMock(side_effect=RuntimeError("bug")))
        _register(ctx, make_config())

        result = await executor.execute("post_1")

        assert result.state is JobState.FAILED
        assert set(result.outcomes) == {FB, IG}
        for outcome in result.outcomes.values():
            assert outcome.succeeded is False
            assert outcome.error_type is ErrorType.UNKNOWN
            assert outcome.retryable is False
        assert publisher.calls == []
        assert ctx.registry.get("post_1") is None
        assert ctx.registry.active_count == 0

        executed = ctx.events.get_recent(event="job_executed")
        assert executed[-1].data["state"] == "failed"

    @pytest.mark.asyncio
    async def test_recurring_job_recovers_after_fault(self, ctx, executor, publisher, make_config):
        record = _register(
            ctx, make_config("recurring_1", kind=JobKind.RECURRING, platforms=(FB,)), "0 9 * * *"
        )
        executor._platforms_to_attempt = MagicMock(side_effect=RuntimeError("bug"))

        result = await executor.execute("recurring_1")
        assert result.state is JobState.FAILED
        assert record.state is JobState.PENDING

        del executor._platforms_to_attempt
        second = await executor.execute("recurring_1")
        assert second.state is JobState.COMPLETED
        assert publisher.calls == [(FB, "Hello world")]
