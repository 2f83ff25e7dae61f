"""
Schedule document loading and validation.

A schedule document lists one-off posts and recurring templates::

    {"config": {"posts": [...], "recurring": [...], "settings": {...}}}

The ``config`` wrapper is optional and documents may be JSON or YAML.
Keys are accepted in camelCase (``scheduledTime``) or snake_case
(``scheduled_time``).

Validation collects every error before failing, so an operator sees all
problems in one startup attempt. Warnings are logged and never fatal.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from postscheduler.config import PLATFORM_LIMITS
from postscheduler.exceptions import (
    ConfigurationError,
    InvalidTimeSpec,
    ScheduleValidationError,
)
from postscheduler.models import Platform
from postscheduler.scheduling.models import JobConfig, JobKind
from postscheduler.scheduling.triggers import load_timezone, localize, validate_cron_pattern
from postscheduler.utils import ensure_utc, generate_id, utc_now

logger = logging.getLogger(__name__)

_HASHTAG_RE = re.compile(r"#[a-zA-Z0-9_]+")

_KEY_ALIASES = {
    "scheduled_time": "scheduledTime",
    "cron_pattern": "cronPattern",
}

# Lead time below which a post is flagged as imminent
NEAR_FUTURE = timedelta(minutes=5)
FAR_FUTURE = timedelta(days=365)


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass
class ValidationReport:
    """Errors and warnings found in a schedule document."""

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class ScheduleDocument:
    """A validated schedule, ready for the scheduler.

    Attributes:
        posts: One-off job configs, in document order.
        recurring: Recurring job configs, in document order.
        settings: The document's ``settings`` block, as written.
    """

    posts: Tuple[JobConfig, ...] = ()
    recurring: Tuple[JobConfig, ...] = ()
    settings: Mapping[str, Any] = field(default_factory=dict)

    @property
    def jobs(self) -> Tuple[JobConfig, ...]:
        return self.posts + self.recurring


# =============================================================================
# FILE LOADING
# =============================================================================


def read_schedule_file(path: Path) -> Dict[str, Any]:
    """
    Read a schedule file as a mapping.

    ``.yaml``/``.yml`` files are parsed with PyYAML, anything else as JSON.

    Raises:
        ConfigurationError: If the file is missing or cannot be parsed.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Schedule config not found: {path}")

    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Invalid format in schedule config {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"Schedule config {path} must be an object")
    logger.info("[SCHEDULER] Read schedule config: %s", path)
    return data


def _unwrap(document: Mapping[str, Any]) -> Any:
    if isinstance(document, Mapping) and isinstance(document.get("config"), Mapping):
        return document["config"]
    return document


def _normalize(descriptor: Mapping[str, Any]) -> Dict[str, Any]:
    return {_KEY_ALIASES.get(key, key): value for key, value in descriptor.items()}


# =============================================================================
# VALIDATION
# =============================================================================


def _check_timezone(name: Any) -> Optional[str]:
    if not isinstance(name, str):
        return f"Invalid timezone: {name}"
    try:
        load_timezone(name)
    except InvalidTimeSpec as exc:
        return str(exc)
    return None


def _check_platforms(platforms: Any) -> Optional[str]:
    if not isinstance(platforms, list) or not platforms:
        return "Must specify at least one platform"
    valid = [p.value for p in Platform]
    invalid = [str(p) for p in platforms if p not in valid]
    if invalid:
        return f"Invalid platforms: {', '.join(invalid)}. Valid platforms: {', '.join(valid)}"
    return None


def check_text_content(content: str, platform: Platform) -> Tuple[List[str], List[str]]:
    """Length and hashtag checks of literal text against a platform's limits."""
    errors: List[str] = []
    warnings: List[str] = []
    limits = PLATFORM_LIMITS[platform]

    length = len(content)
    if length > limits.max_text_length:
        errors.append(f"Content too long ({length}/{limits.max_text_length} characters)")
    elif length > limits.max_text_length * 0.9:
        warnings.append(f"Content approaching character limit ({length}/{limits.max_text_length})")

    hashtags = _HASHTAG_RE.findall(content)
    if len(hashtags) > limits.max_hashtags:
        warnings.append(
            f"Too many hashtags ({len(hashtags)}/{limits.max_hashtags}). "
            "Excess hashtags may not work."
        )
    return errors, warnings


def _check_common(
    label: str,
    item: Dict[str, Any],
    report: ValidationReport,
) -> None:
    """Checks shared by posts and recurring templates."""
    content = item.get("content")
    file_ref = item.get("file")

    if not content and not file_ref:
        report.errors.append(f'{label}: Must have either "content" or "file" specified')
    if content and file_ref:
        report.warnings.append(
            f'{label}: Both "content" and "file" specified, "content" will take precedence'
        )
    if content is not None and not isinstance(content, str):
        report.errors.append(f'{label}: "content" must be a string')
        content = None

    platforms = item.get("platforms")
    platform_error = _check_platforms(platforms)
    if platform_error:
        report.errors.append(f"{label}: {platform_error}")

    images = item.get("images")
    if images is not None:
        if not isinstance(images, list):
            report.errors.append(f'{label}: "images" must be a list')
        else:
            for index, image in enumerate(images):
                if not isinstance(image, str):
                    report.errors.append(f"{label}, Image {index}: Must be a string path")

    if content and not platform_error:
        for name in platforms:
            errors, warnings = check_text_content(content, Platform(name))
            report.errors.extend(f"{label}, Platform {name}: {e}" for e in errors)
            report.warnings.extend(f"{label}, Platform {name}: {w}" for w in warnings)


def _check_scheduled_time(
    label: str,
    value: Any,
    tz_name: str,
    now: datetime,
    report: ValidationReport,
) -> None:
    if not value:
        report.errors.append(f'{label}: Missing "scheduledTime"')
        return
    try:
        when = localize(value, tz_name)
    except InvalidTimeSpec as exc:
        report.errors.append(f"{label}: {exc}")
        return

    when_utc = ensure_utc(when)
    if when_utc < now:
        report.errors.append(f"{label}: Scheduled time must be in the future")
    elif when_utc < now + NEAR_FUTURE:
        report.warnings.append(f"{label}: Scheduled time is very soon (less than 5 minutes)")
    if when_utc > now + FAR_FUTURE:
        report.warnings.append(f"{label}: Scheduled time is more than 1 year in the future")


def _check_settings(settings: Any, report: ValidationReport) -> None:
    if not isinstance(settings, Mapping):
        report.errors.append('"settings" must be an object')
        return
    if "timezone" in settings:
        error = _check_timezone(settings["timezone"])
        if error:
            report.errors.append(error)
    for key in ("retryAttempts", "retryDelay"):
        value = settings.get(key)
        if value is not None and (
            isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0
        ):
            report.errors.append(f"{key} must be a non-negative number")


def validate_schedule(
    document: Mapping[str, Any],
    default_timezone: str = "UTC",
    now: Optional[datetime] = None,
) -> ValidationReport:
    """
    Validate a schedule document without building job configs.

    Args:
        document: Parsed document, with or without the ``config`` wrapper.
        default_timezone: Zone for descriptors that name none (overridden
            by ``settings.timezone`` in the document).
        now: Reference time for future-time checks.

    Returns:
        Every error and warning found.
    """
    report = ValidationReport()
    now = ensure_utc(now or utc_now())
    config = _unwrap(document)

    if not isinstance(config, Mapping):
        report.errors.append("Schedule config must be a valid object")
        return report

    posts = config.get("posts")
    if not isinstance(posts, list):
        report.errors.append('Schedule config must contain a "posts" array')
        return report

    recurring = config.get("recurring") or []
    if not isinstance(recurring, list):
        report.errors.append('"recurring" must be an array')
        recurring = []

    if not posts and not recurring:
        report.warnings.append("No posts found in schedule config")

    settings = config.get("settings") or {}
    _check_settings(settings, report)
    if isinstance(settings, Mapping) and isinstance(settings.get("timezone"), str):
        default_timezone = settings["timezone"]

    for index, raw in enumerate(posts):
        label = f"Post {index}"
        if not isinstance(raw, Mapping):
            report.errors.append(f"{label}: Must be an object")
            continue
        item = _normalize(raw)
        _check_common(label, item, report)

        tz_name = item.get("timezone") or default_timezone
        tz_error = _check_timezone(tz_name)
        if tz_error:
            report.errors.append(f"{label}: {tz_error}")
            continue
        _check_scheduled_time(label, item.get("scheduledTime"), tz_name, now, report)

    for index, raw in enumerate(recurring):
        label = f"Recurring {index}"
        if not isinstance(raw, Mapping):
            report.errors.append(f"{label}: Must be an object")
            continue
        item = _normalize(raw)
        _check_common(label, item, report)

        tz_error = _check_timezone(item.get("timezone") or default_timezone)
        if tz_error:
            report.errors.append(f"{label}: {tz_error}")

        pattern = item.get("cronPattern")
        if not pattern:
            report.errors.append(f'{label}: Missing "cronPattern"')
        else:
            try:
                validate_cron_pattern(pattern)
            except InvalidTimeSpec as exc:
                report.errors.append(f"{label}: {exc}")

        variables = item.get("variables")
        if variables is not None:
            if not isinstance(variables, Mapping) or not all(
                isinstance(values, list) for values in variables.values()
            ):
                report.errors.append(f'{label}: "variables" must map names to lists')

    return report


# =============================================================================
# BUILDING
# =============================================================================


def _job_config(
    item: Dict[str, Any],
    kind: JobKind,
    default_timezone: str,
) -> JobConfig:
    tz_name = item.get("timezone") or default_timezone
    prefix = "recurring" if kind is JobKind.RECURRING else "post"
    descriptor_id = item.get("id")
    job_id = f"{prefix}_{descriptor_id if descriptor_id not in (None, '') else generate_id()}"

    scheduled_time = None
    if kind is JobKind.ONE_OFF:
        scheduled_time = localize(item["scheduledTime"], tz_name)

    variables = {
        name: tuple(str(v) for v in values)
        for name, values in (item.get("variables") or {}).items()
    }

    return JobConfig(
        job_id=job_id,
        kind=kind,
        platforms=tuple(Platform(p) for p in item["platforms"]),
        content=item.get("content") or None,
        file=item.get("file") or None,
        images=tuple(item.get("images") or ()),
        scheduled_time=scheduled_time,
        cron_pattern=item.get("cronPattern") if kind is JobKind.RECURRING else None,
        timezone=tz_name,
        priority=item.get("priority") or "normal",
        variables=variables,
    )


def build_schedule(
    document: Mapping[str, Any],
    default_timezone: str = "UTC",
    now: Optional[datetime] = None,
) -> ScheduleDocument:
    """
    Validate a parsed document and turn it into job configs.

    Raises:
        ScheduleValidationError: Listing every validation error.
    """
    report = validate_schedule(document, default_timezone=default_timezone, now=now)
    for warning in report.warnings:
        logger.warning("[SCHEDULER] Schedule config: %s", warning)
    if not report.is_valid:
        raise ScheduleValidationError(report.errors)

    config = _unwrap(document)
    settings = dict(config.get("settings") or {})
    default_timezone = settings.get("timezone") or default_timezone

    posts = tuple(
        _job_config(_normalize(raw), JobKind.ONE_OFF, default_timezone)
        for raw in config["posts"]
    )
    recurring = tuple(
        _job_config(_normalize(raw), JobKind.RECURRING, default_timezone)
        for raw in config.get("recurring") or []
    )

    seen = set()
    for job in posts + recurring:
        if job.job_id in seen:
            logger.warning("[SCHEDULER] Duplicate job id %s, later entry replaces earlier", job.job_id)
        seen.add(job.job_id)

    logger.info(
        "[SCHEDULER] Loaded %d scheduled posts and %d recurring posts",
        len(posts),
        len(recurring),
    )
    return ScheduleDocument(posts=posts, recurring=recurring, settings=settings)


def load_schedule(
    path: Path,
    default_timezone: str = "UTC",
    now: Optional[datetime] = None,
) -> ScheduleDocument:
    """Read, validate and build the schedule at ``path``."""
    return build_schedule(read_schedule_file(path), default_timezone=default_timezone, now=now)


__all__ = [
    "ValidationReport",
    "ScheduleDocument",
    "read_schedule_file",
    "check_text_content",
    "validate_schedule",
    "build_schedule",
    "load_schedule",
]
