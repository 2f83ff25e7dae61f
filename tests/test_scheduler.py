"""Tests for the scheduler: arming triggers and registering jobs."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from postscheduler.exceptions import (
    InvalidCronPattern,
    InvalidTimeSpec,
    PlatformError,
    SchedulerBaseError,
)
from postscheduler.models import Platform
from postscheduler.scheduling.executor import RETRY_KEY_SUFFIX, Executor
from postscheduler.scheduling.models import JobKind, JobState
from postscheduler.scheduling.schedule_loader import ScheduleDocument
from postscheduler.scheduling.scheduler import Scheduler


@pytest.fixture
def executor(ctx, resolver, processor, publisher):
    return Executor(ctx, resolver, processor, publisher)


@pytest.fixture
def scheduler(ctx, executor):
    return Scheduler(ctx, executor)


class TestExpressionFor:
    """Tests for Scheduler.expression_for."""

    def test_one_off_is_pinned(self, scheduler, make_config):
        config = make_config(scheduled_time=datetime(2025, 6, 20, 8, 15, tzinfo=timezone.utc))
        assert scheduler.expression_for(config) == "15 8 20 6 *"

    def test_one_off_uses_job_timezone(self, scheduler, make_config):
        config = make_config(
            scheduled_time=datetime(2025, 6, 20, 8, 15, tzinfo=timezone.utc),
            timezone="Asia/Kolkata",
        )
        assert scheduler.expression_for(config) == "45 13 20 6 *"

    def test_recurring_passes_pattern_through(self, scheduler, make_config):
        config = make_config("recurring_1", kind=JobKind.RECURRING, cron_pattern="30 18 * * 5")
        assert scheduler.expression_for(config) == "30 18 * * 5"

    def test_past_one_off_rejected(self, scheduler, make_config, sample_utc_now):
        config = make_config(scheduled_time=sample_utc_now - timedelta(minutes=5))
        with pytest.raises(InvalidTimeSpec, match="already passed"):
            scheduler.expression_for(config)

    def test_invalid_pattern_rejected(self, scheduler, make_config):
        config = make_config("recurring_1", kind=JobKind.RECURRING, cron_pattern="whenever")
        with pytest.raises(InvalidCronPattern):
            scheduler.expression_for(config)


class TestScheduleJob:
    """Tests for Scheduler.schedule_job."""

    @pytest.mark.asyncio
    async def test_registers_pending_record_and_arms_trigger(self, ctx, scheduler, make_config, sample_utc_now):
        record = await scheduler.schedule_job(make_config())

        assert ctx.registry.get("post_1") is record
        assert record.state is JobState.PENDING
        assert record.expression == "0 13 15 6 *"
        assert record.trigger is ctx.facility.get("post_1")
        assert record.trigger.next_fire == sample_utc_now + timedelta(hours=1)

        scheduled = ctx.events.get_recent(event="job_scheduled")
        assert scheduled[-1].job_id == "post_1"
        assert scheduled[-1].data["expression"] == "0 13 15 6 *"

    @pytest.mark.asyncio
    async def test_naive_time_in_job_timezone(self, ctx, scheduler, make_config, sample_utc_now):
        config = make_config(scheduled_time=datetime(2025, 6, 15, 10, 0), timezone="America/New_York")

        record = await scheduler.schedule_job(config)

        assert record.expression == "0 10 15 6 *"
        assert record.trigger.next_fire == sample_utc_now + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_rescheduling_replaces_triggers(self, ctx, scheduler, make_config, sample_utc_now):
        first = await scheduler.schedule_job(make_config())
        retry = ctx.facility.arm_at("post_1" + RETRY_KEY_SUFFIX, sample_utc_now, first.trigger.callback)
        first.retry_trigger = retry

        second = await scheduler.schedule_job(
            make_config(scheduled_time=sample_utc_now + timedelta(hours=2))
        )

        assert first.trigger.armed is False
        assert retry.armed is False
        assert ctx.registry.get("post_1") is second
        assert ctx.facility.armed_count == 1

    @pytest.mark.asyncio
    async def test_refuses_during_shutdown(self, ctx, scheduler, make_config):
        ctx.shutdown_flag.set()
        with pytest.raises(SchedulerBaseError):
            await scheduler.schedule_job(make_config())
        assert len(ctx.registry) == 0

    @pytest.mark.asyncio
    async def test_unschedule(self, ctx, scheduler, make_config):
        record = await scheduler.schedule_job(make_config())
        assert await scheduler.unschedule("post_1") is True
        assert record.trigger.armed is False
        assert ctx.registry.get("post_1") is None
        assert await scheduler.unschedule("post_1") is False


class TestScheduleDocument:
    """Tests for Scheduler.schedule_document."""

    @pytest.mark.asyncio
    async def test_bad_job_is_skipped(self, ctx, scheduler, make_config, sample_utc_now):
        document = ScheduleDocument(
            posts=(
                make_config("post_late", scheduled_time=sample_utc_now - timedelta(hours=1)),
                make_config("post_ok"),
            ),
            recurring=(make_config("recurring_1", kind=JobKind.RECURRING),),
        )

        armed = await scheduler.schedule_document(document)

        assert armed == ["post_ok", "recurring_1"]
        assert "post_late" not in ctx.registry
        failed = ctx.events.get_recent(event="job_schedule_failed")
        assert [e.job_id for e in failed] == ["post_late"]


class TestFiring:
    """Tests for the trigger -> dispatcher -> executor path."""

    @pytest.mark.asyncio
    async def test_trigger_firing_executes_job(self, ctx, clock, scheduler, publisher, make_config):
        await scheduler.schedule_job(make_config())

        clock.advance(3600)
        ctx.facility.fire_due()
        await ctx.facility.join()

        assert len(publisher.calls) == 2
        assert "post_1" not in ctx.registry
        assert ctx.facility.armed_count == 0

    @pytest.mark.asyncio
    async def test_retry_trigger_reexecutes_job(self, ctx, clock, scheduler, publisher, make_config):
        publisher.script[Platform.FACEBOOK] = [PlatformError("facebook", "limit", code=4)]
        record = await scheduler.schedule_job(make_config())

        clock.advance(3600)
        ctx.facility.fire_due()
        await ctx.facility.join()
        assert record.state is JobState.RETRYING

        clock.advance(300)
        ctx.facility.fire_due()
        await ctx.facility.join()

        assert len(publisher.calls_for(Platform.FACEBOOK)) == 2
        assert len(publisher.calls_for(Platform.INSTAGRAM)) == 1
        assert "post_1" not in ctx.registry

    @pytest.mark.asyncio
    async def test_recurring_job_fires_again(self, ctx, clock, scheduler, publisher, make_config):
        await scheduler.schedule_job(
            make_config("recurring_1", kind=JobKind.RECURRING, cron_pattern="*/5 * * * *")
        )

        for _ in range(2):
            clock.advance(300)
            ctx.facility.fire_due()
            await ctx.facility.join()

        assert len(publisher.calls) == 4
        assert ctx.registry.get("recurring_1").executions == 2
        assert ctx.registry.get("recurring_1").state is JobState.PENDING

    @pytest.mark.asyncio
    async def test_slow_job_does_not_delay_other_triggers(self, ctx, clock, scheduler, publisher, make_config):
        release = asyncio.Event()
        original = publisher.publish

        async def publish(platform, processed):
            if processed.text == "slow":
                await release.wait()
            return await original(platform, processed)

        publisher.publish = publish
        await scheduler.schedule_job(make_config("post_slow", content="slow", platforms=(Platform.FACEBOOK,)))
        await scheduler.schedule_job(
            make_config(
                "post_fast",
                content="fast",
                platforms=(Platform.FACEBOOK,),
                scheduled_time=clock.now + timedelta(hours=1, minutes=1),
            )
        )

        clock.advance(3600)
        ctx.facility.fire_due()
        await asyncio.sleep(0.01)
        assert ctx.registry.is_active("post_slow")

        clock.advance(60)
        ctx.facility.fire_due()
        for _ in range(20):
            if "post_fast" not in ctx.registry:
                break
            await asyncio.sleep(0.01)
        assert "post_fast" not in ctx.registry
        assert ctx.registry.is_active("post_slow")

        release.set()
        await ctx.facility.join()
        assert "post_slow" not in ctx.registry
