"""
Shared data types for the post scheduler.

Types used by both the configuration tables and the scheduling engine,
plus the value objects exchanged with external collaborators.

Hierarchy of types
------------------
- **Enums**: ``Platform``, ``ErrorType``, ``RetryClass``
- **Collaborator payloads**: ``ProcessedContent``, ``PublishReceipt``
- **Helpers**: ``parse_platform``
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from postscheduler.exceptions import UnsupportedPlatformError


# =============================================================================
# ENUMS
# =============================================================================


class Platform(Enum):
    """Publishing targets supported by the scheduler."""

    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"


class ErrorType(Enum):
    """Classification of a single platform attempt failure."""

    RATE_LIMIT = "rate_limit"
    NETWORK_ERROR = "network_error"
    AUTHENTICATION_ERROR = "authentication_error"
    PERMISSION_ERROR = "permission_error"
    CONTENT_ERROR = "content_error"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    UNKNOWN = "unknown"


class RetryClass(Enum):
    """Failure group that owns an attempt limit and backoff schedule."""

    RATE_LIMIT = "rate_limit"
    NETWORK_ERROR = "network_error"
    AUTHENTICATION_ERROR = "authentication_error"
    CONTENT_ERROR = "content_error"
    OTHER = "other"


def parse_platform(value: Any) -> Platform:
    """
    Convert a platform identifier to ``Platform``.

    Raises:
        UnsupportedPlatformError: If ``value`` is not a supported platform.
    """
    if isinstance(value, Platform):
        return value
    try:
        return Platform(str(value).lower())
    except ValueError as exc:
        raise UnsupportedPlatformError(
            f"Unsupported platform: {value}. "
            f"Valid platforms: {', '.join(p.value for p in Platform)}"
        ) from exc


# =============================================================================
# COLLABORATOR PAYLOADS
# =============================================================================


@dataclass(frozen=True)
class ProcessedContent:
    """Platform-adapted content ready for publishing.

    Attributes:
        platform: Target platform.
        text: Adapted post text.
        images: Validated image paths, in posting order.
        warnings: Non-fatal findings from content processing.
    """

    platform: Platform
    text: str
    images: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def primary_image(self) -> Optional[str]:
        return self.images[0] if self.images else None


@dataclass(frozen=True)
class PublishReceipt:
    """Success token returned by a publisher."""

    platform: Platform
    post_id: str
    raw: Dict[str, Any] = field(default_factory=dict)


__all__ = [
    "Platform",
    "ErrorType",
    "RetryClass",
    "parse_platform",
    "ProcessedContent",
    "PublishReceipt",
]
