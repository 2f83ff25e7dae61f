"""Shared fixtures for the post scheduler test suite."""

from datetime import datetime, timedelta, timezone
from typing import Dict, List

import pytest

from postscheduler.config import Settings, reset_settings
from postscheduler.exceptions import ContentResolutionError
from postscheduler.logging.event_logger import EventLogger
from postscheduler.models import Platform, ProcessedContent, PublishReceipt
from postscheduler.scheduling.context import SchedulerContext
from postscheduler.scheduling.models import JobConfig, JobKind
from postscheduler.scheduling.triggers import TriggerFacility


# ---------------------------------------------------------------------------
# Ensure we don't hit real APIs during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear platform credentials and overrides so tests never hit real services."""
    keys = [
        "FACEBOOK_ACCESS_TOKEN",
        "FACEBOOK_PAGE_ID",
        "INSTAGRAM_ACCESS_TOKEN",
        "INSTAGRAM_ACCOUNT_ID",
        "TIMEZONE",
        "LOG_LEVEL",
        "SCHEDULE_PATH",
        "MAX_CONCURRENT_JOBS",
        "DRAIN_TIMEOUT_SECONDS",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()


# ---------------------------------------------------------------------------
# Common datetime fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def sample_utc_now():
    """A fixed UTC datetime for deterministic tests."""
    return datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for the trigger facility."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock(sample_utc_now):
    return FakeClock(sample_utc_now)


# ---------------------------------------------------------------------------
# Scheduler context
# ---------------------------------------------------------------------------
@pytest.fixture
def settings():
    """Settings with memory-only event log and short timeouts."""
    return Settings(
        log_dir=None,
        publish_timeout_seconds=5.0,
        probe_timeout_seconds=0.5,
        drain_timeout_seconds=1.0,
        drain_poll_interval_seconds=0.01,
    )


@pytest.fixture
def ctx(settings, clock):
    return SchedulerContext(
        settings=settings,
        facility=TriggerFacility(tick_seconds=0.01, clock=clock),
        events=EventLogger(log_dir=None),
    )


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------
class StubResolver:
    """Resolves file references from an in-memory mapping."""

    def __init__(self, texts: Dict[str, str] = None):
        self.texts = dict(texts or {})
        self.calls: List[str] = []

    async def resolve(self, ref: str) -> str:
        self.calls.append(ref)
        if ref not in self.texts:
            raise ContentResolutionError(f"Text file not found: {ref}")
        return self.texts[ref]


class PassthroughProcessor:
    """Returns the content unchanged."""

    async def process(self, content, images, platform):
        return ProcessedContent(platform=platform, text=content, images=tuple(images))


class ScriptedPublisher:
    """Publisher with scripted per-platform results.

    ``script[platform]`` is a list consumed one entry per call: an
    exception instance is raised, anything else is used as the post id.
    Platforms without remaining entries succeed.
    """

    def __init__(self, script=None):
        self.script = {p: list(v) for p, v in (script or {}).items()}
        self.calls: List[tuple] = []

    async def publish(self, platform, processed):
        self.calls.append((platform, processed.text))
        queue = self.script.get(platform)
        result = queue.pop(0) if queue else f"{platform.value}_123"
        if isinstance(result, BaseException):
            raise result
        return PublishReceipt(platform=platform, post_id=result)

    async def validate_connection(self, platform):
        return True

    def calls_for(self, platform):
        return [c for c in self.calls if c[0] is platform]


@pytest.fixture
def resolver():
    return StubResolver({"post.txt": "Text from file"})


@pytest.fixture
def processor():
    return PassthroughProcessor()


@pytest.fixture
def publisher():
    return ScriptedPublisher()


# ---------------------------------------------------------------------------
# Job configs
# ---------------------------------------------------------------------------
@pytest.fixture
def make_config(sample_utc_now):
    """Factory for JobConfig with sensible defaults."""

    def _make(job_id="post_1", kind=JobKind.ONE_OFF, **overrides):
        values = {
            "platforms": (Platform.FACEBOOK, Platform.INSTAGRAM),
            "content": "Hello world",
            "timezone": "UTC",
        }
        if kind is JobKind.ONE_OFF:
            values["scheduled_time"] = sample_utc_now + timedelta(hours=1)
        else:
            values["cron_pattern"] = "0 9 * * *"
        values.update(overrides)
        return JobConfig(job_id=job_id, kind=kind, **values)

    return _make
