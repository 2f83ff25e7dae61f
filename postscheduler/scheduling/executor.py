"""
Executor: runs a job when its trigger fires.

One call to :meth:`Executor.execute` is one execution pass:

1. Claim the job under the registry lock (``pending``/``retrying`` ->
   ``running``) and add it to the active set.
2. Resolve content once per firing (inline text, else the content
   resolver; recurring templates get variable substitution).
3. Process and publish to every platform still owed an attempt,
   concurrently. A platform failure is classified and recorded, never
   raised, so it cannot affect its siblings.
4. Aggregate: all platforms succeeded -> ``completed``; otherwise the
   retry policy picks ``retrying`` (a one-shot retry trigger is armed)
   or ``failed``.
5. Release the job from the active set, then remove a finished one-off
   job or return a recurring job to ``pending``.
"""

import asyncio
import logging
import random
from datetime import timedelta
from typing import Any, Optional, Tuple

from postscheduler.exceptions import ContentResolutionError
from postscheduler.models import ErrorType, Platform
from postscheduler.scheduling.context import SchedulerContext
from postscheduler.scheduling.dispatch import ImmediateDispatcher
from postscheduler.scheduling.interfaces import ContentProcessor, ContentResolver, Publisher
from postscheduler.scheduling.models import (
    ExecutionContext,
    ExecutionResult,
    JobRecord,
    JobState,
    PlatformOutcome,
)
from postscheduler.scheduling.retry_policy import classify_error, decide_retry, retry_class_for
from postscheduler.scheduling.templates import render_template
from postscheduler.utils import utc_now

logger = logging.getLogger(__name__)

RETRY_KEY_SUFFIX = "#retry"


class Executor:
    """Runs execution passes for registered jobs.

    Args:
        ctx: Shared scheduler context.
        resolver: Turns ``file`` references into text.
        processor: Adapts content to each platform.
        publisher: Publishes processed content.
        dispatcher: Stage retry firings go through (shared with the
            scheduler).
        rng: Random source for template variables.
    """

    def __init__(
        self,
        ctx: SchedulerContext,
        resolver: Optional[ContentResolver],
        processor: ContentProcessor,
        publisher: Publisher,
        dispatcher: Any = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.ctx = ctx
        self.resolver = resolver
        self.processor = processor
        self.publisher = publisher
        self.dispatcher = dispatcher or ImmediateDispatcher()
        self.rng = rng or random.Random()

    # ================================================================
    # ENTRY POINT
    # ================================================================

    async def execute(self, job_id: str, retry: bool = False) -> Optional[ExecutionResult]:
        """Run one execution pass of ``job_id``.

        Args:
            job_id: Registry id of the job.
            retry: ``True`` when fired by a retry trigger.

        Returns:
            The pass result, or ``None`` when the firing was ignored
            (shutdown, unknown id, duplicate or stale firing).
        """
        if self.ctx.shutting_down:
            logger.info("[EXECUTOR] Shutdown in progress, not starting %s", job_id)
            return None

        claimed = await self._claim(job_id, retry)
        if claimed is None:
            return None
        record, execution = claimed

        try:
            try:
                state, delay = await self._run_pass(record, execution)
            except Exception as exc:
                state, delay = self._internal_fault(record, execution, exc)
            return await self._finish(record, execution, state, delay)
        finally:
            self.ctx.registry.release(job_id)

    # ================================================================
    # CLAIM
    # ================================================================

    async def _claim(
        self, job_id: str, retry: bool
    ) -> Optional[Tuple[JobRecord, ExecutionContext]]:
        registry = self.ctx.registry
        async with registry.lock:
            if self.ctx.shutting_down:
                logger.info("[EXECUTOR] Shutdown in progress, not starting %s", job_id)
                return None
            record = registry.get(job_id)
            if record is None:
                logger.warning("[EXECUTOR] Fired for unknown job %s, ignoring", job_id)
                return None
            if record.state is JobState.RUNNING:
                logger.warning("[EXECUTOR] Job %s is already running, ignoring duplicate firing", job_id)
                return None

            expected = JobState.RETRYING if retry else JobState.PENDING
            if record.state is not expected:
                logger.warning(
                    "[EXECUTOR] Job %s is %s, ignoring %s firing",
                    job_id,
                    record.state.value,
                    "retry" if retry else "scheduled",
                )
                return None

            if retry:
                execution = record.execution
                execution.attempt += 1
                record.retry_trigger = None
            else:
                execution = ExecutionContext()
                record.execution = execution
                record.executions += 1
                if not record.config.is_recurring:
                    # A pinned one-off expression would match again next year
                    self.ctx.facility.disarm(record.trigger)
                    record.trigger = None

            record.transition(JobState.RUNNING)
            record.started_at = utc_now()
            registry.mark_active(job_id)
            return record, execution

    # ================================================================
    # EXECUTION PASS
    # ================================================================

    async def _run_pass(
        self, record: JobRecord, execution: ExecutionContext
    ) -> Tuple[JobState, Optional[float]]:
        config = record.config
        pending = self._platforms_to_attempt(record, execution)

        logger.info(
            "[EXECUTOR] Executing %s (attempt %d) on %s",
            config.job_id,
            execution.attempt,
            ", ".join(p.value for p in pending),
        )
        await self._record(
            "job_started", config.job_id, execution.attempt, [p.value for p in pending]
        )

        if execution.content is None:
            try:
                execution.content = await self._resolve_content(record)
            except Exception as exc:
                for platform in pending:
                    execution.outcomes[platform] = await self._failure(
                        record, execution, platform, exc
                    )
                return self._aggregate(execution)

        outcomes = await asyncio.gather(
            *(self._attempt(record, execution, platform) for platform in pending)
        )
        for outcome in outcomes:
            execution.outcomes[outcome.platform] = outcome
        return self._aggregate(execution)

    def _platforms_to_attempt(
        self, record: JobRecord, execution: ExecutionContext
    ) -> Tuple[Platform, ...]:
        """Platforms with no outcome yet, or a failure that may still be retried."""
        settings = self.ctx.settings
        platforms = []
        for platform in record.config.platforms:
            outcome = execution.outcomes.get(platform)
            if outcome is None:
                platforms.append(platform)
            elif not outcome.succeeded and outcome.retryable:
                policy = settings.policy_for(retry_class_for(outcome.error_type))
                if policy.has_attempts_left(outcome.attempts):
                    platforms.append(platform)
        return tuple(platforms)

    async def _resolve_content(self, record: JobRecord) -> str:
        config = record.config
        content = config.content
        if not content:
            if self.resolver is None:
                raise ContentResolutionError(f"No content resolver for file '{config.file}'")
            content = await self.resolver.resolve(config.file)
        if config.is_recurring and config.variables:
            content = render_template(content, config.variables, self.rng)
        return content

    async def _attempt(
        self, record: JobRecord, execution: ExecutionContext, platform: Platform
    ) -> PlatformOutcome:
        """Process and publish to one platform. Never raises."""
        job_id = record.job_id
        config = record.config
        try:
            processed = await self.processor.process(execution.content, config.images, platform)
            for warning in processed.warnings:
                logger.warning("[EXECUTOR] %s/%s: %s", job_id, platform.value, warning)
            receipt = await asyncio.wait_for(
                self.publisher.publish(platform, processed),
                timeout=self.ctx.settings.publish_timeout_seconds,
            )
        except Exception as exc:
            return await self._failure(record, execution, platform, exc)

        attempts = self._attempt_number(execution, platform)
        logger.info(
            "[EXECUTOR] Published %s to %s (post_id=%s)", job_id, platform.value, receipt.post_id
        )
        await self._record("platform_post", job_id, platform.value, receipt.post_id, attempts)
        return PlatformOutcome(
            platform=platform,
            succeeded=True,
            post_id=receipt.post_id,
            attempts=attempts,
        )

    async def _failure(
        self,
        record: JobRecord,
        execution: ExecutionContext,
        platform: Platform,
        exc: BaseException,
    ) -> PlatformOutcome:
        error_type, retryable = classify_error(exc)
        message = str(exc) or type(exc).__name__
        attempts = self._attempt_number(execution, platform)
        logger.warning(
            "[EXECUTOR] %s failed on %s (%s, retryable=%s): %s",
            record.job_id,
            platform.value,
            error_type.value,
            retryable,
            message,
        )
        await self._record(
            "platform_error", record.job_id, platform.value, exc, error_type.value, retryable, attempts
        )
        return PlatformOutcome(
            platform=platform,
            succeeded=False,
            error=message,
            error_type=error_type,
            retryable=retryable,
            attempts=attempts,
        )

    @staticmethod
    def _attempt_number(execution: ExecutionContext, platform: Platform) -> int:
        previous = execution.outcomes.get(platform)
        return previous.attempts + 1 if previous else 1

    def _aggregate(self, execution: ExecutionContext) -> Tuple[JobState, Optional[float]]:
        failures = execution.failures()
        if not failures:
            return JobState.COMPLETED, None
        decision = decide_retry(failures, execution.attempt, self.ctx.settings)
        if decision.retry:
            return JobState.RETRYING, decision.delay
        return JobState.FAILED, None

    def _internal_fault(
        self, record: JobRecord, execution: ExecutionContext, exc: Exception
    ) -> Tuple[JobState, Optional[float]]:
        logger.exception("[EXECUTOR] Internal error executing %s", record.job_id)
        for platform in record.config.platforms:
            if platform not in execution.outcomes:
                execution.outcomes[platform] = PlatformOutcome(
                    platform=platform,
                    succeeded=False,
                    error=f"Internal error: {exc}",
                    error_type=ErrorType.UNKNOWN,
                    retryable=False,
                    attempts=self._attempt_number(execution, platform),
                )
        return JobState.FAILED, None

    # ================================================================
    # FINISH
    # ================================================================

    async def _finish(
        self,
        record: JobRecord,
        execution: ExecutionContext,
        state: JobState,
        delay: Optional[float],
    ) -> ExecutionResult:
        ctx = self.ctx
        job_id = record.job_id
        result = ExecutionResult(
            job_id=job_id,
            state=state,
            attempt=execution.attempt,
            outcomes=dict(execution.outcomes),
            started_at=record.started_at,
            finished_at=utc_now(),
            retry_delay=delay,
        )

        logger.info(
            "[EXECUTOR] %s finished attempt %d in state '%s' (%dms)",
            job_id,
            execution.attempt,
            state.value,
            result.duration_ms,
        )
        async with ctx.registry.lock:
            ctx.registry.release(job_id)
            record.transition(state)

            if state is JobState.RETRYING:
                self._arm_retry(record, delay)
            elif record.config.is_recurring:
                record.transition(JobState.PENDING)
                record.execution = None
                record.started_at = None
            else:
                ctx.facility.disarm(record.trigger)
                record.trigger = None
                if ctx.registry.get(job_id) is record:
                    ctx.registry.remove(job_id)

        await self._record(
            "job_executed",
            job_id,
            state.value,
            execution.attempt,
            {p.value: o.to_dict() for p, o in result.outcomes.items()},
            result.duration_ms,
        )
        if state is JobState.RETRYING and record.retry_trigger is not None:
            await self._record(
                "job_retry_scheduled",
                job_id,
                execution.attempt,
                delay,
                [p.value for p in self._platforms_to_attempt(record, execution)],
            )
        return result

    async def _record(self, event: str, *args: Any) -> None:
        """Emit a structured event. A failing event log never interrupts a pass."""
        try:
            await getattr(self.ctx.events, event)(*args)
        except Exception:
            logger.exception("[EXECUTOR] Failed to record %s event", event)

    def _arm_retry(self, record: JobRecord, delay: float) -> None:
        job_id = record.job_id
        if self.ctx.shutting_down:
            logger.warning("[EXECUTOR] Shutdown in progress, not arming retry for %s", job_id)
            return
        when = self.ctx.facility.clock() + timedelta(seconds=delay)
        record.retry_trigger = self.ctx.facility.arm_at(
            job_id + RETRY_KEY_SUFFIX, when, self._retry_callback(record)
        )
        logger.info(
            "[EXECUTOR] Retry of %s armed for %s (in %.0fs)", job_id, when.isoformat(), delay
        )

    def _retry_callback(self, record: JobRecord):
        job_id = record.job_id
        priority = record.config.priority

        async def fire() -> None:
            await self.dispatcher.submit(
                job_id, priority, lambda: self.execute(job_id, retry=True)
            )

        return fire


__all__ = ["Executor", "RETRY_KEY_SUFFIX"]
