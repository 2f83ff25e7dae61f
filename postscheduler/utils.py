"""
Shared utility functions used throughout the post scheduler.

Provides:
    - utc_now(): Timezone-aware UTC datetime
    - generate_id(): UUID4 string generator (for descriptors without an id)
    - ensure_utc(dt): Convert any datetime to timezone-aware UTC
    - elapsed_ms(start): Milliseconds elapsed since an aware datetime
"""

from datetime import datetime, timezone
import uuid


# ===========================================================================
# TIMEZONE UTILITIES
# All internal timestamps are timezone-aware UTC
# ===========================================================================


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    ALWAYS use this instead of ``datetime.now()`` or ``datetime.utcnow()``
    so trigger comparisons never mix naive and aware values.

    Returns:
        Timezone-aware datetime in UTC.
    """
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """
    Generate a unique ID for job descriptors that do not carry one.

    Returns:
        A unique UUID string.
    """
    return str(uuid.uuid4())


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure a datetime is timezone-aware in UTC.

    Args:
        dt: Datetime to convert (naive or aware).

    Returns:
        Timezone-aware datetime in UTC.
    """
    if dt.tzinfo is None:
        # Assume naive datetime is UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def elapsed_ms(start: datetime) -> int:
    """Milliseconds between ``start`` and now."""
    return int((utc_now() - ensure_utc(start)).total_seconds() * 1000)
