"""
Custom exception classes for the post scheduler.

Exceptions follow the fail-fast philosophy: no silent fallbacks, surface
errors immediately with clear context for debugging.

Hierarchy:
    Exception
    +-- SchedulerBaseError (base for all scheduler-specific errors)
    |   +-- InvalidTimeSpec
    |   |   +-- InvalidCronPattern
    |   +-- InvalidStateTransition
    |   +-- ContentResolutionError
    |   +-- ContentValidationError
    |   +-- PlatformError
    |   +-- UnsupportedPlatformError
    +-- ValidationError (ValueError)
    |   +-- ScheduleValidationError
    +-- ConfigurationError
"""

from typing import List, Optional


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class SchedulerBaseError(Exception):
    """Base exception for all scheduler-related errors."""

    pass


# =============================================================================
# CORE EXCEPTIONS
# =============================================================================


class ValidationError(ValueError):
    """Raised when input validation fails."""

    pass


class ConfigurationError(Exception):
    """Raised when system configuration is invalid."""

    pass


class ScheduleValidationError(ValidationError):
    """Raised when a schedule document fails validation.

    Attributes:
        errors: Every validation error found in the document.
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(
            f"Invalid schedule configuration: {', '.join(self.errors)}"
        )


# =============================================================================
# TIMING EXCEPTIONS
# =============================================================================


class InvalidTimeSpec(SchedulerBaseError):
    """Raised when a timestamp cannot be localized to a trigger expression."""

    pass


class InvalidCronPattern(InvalidTimeSpec):
    """Raised when a recurring trigger pattern is not parseable."""

    pass


class InvalidStateTransition(SchedulerBaseError):
    """Raised when a job is moved between states that are not connected.

    Attributes:
        job_id: Identifier of the job.
        current: State the job was in.
        target: State that was requested.
    """

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(
            f"Job '{job_id}' cannot move from '{current}' to '{target}'"
        )


# =============================================================================
# CONTENT EXCEPTIONS
# =============================================================================


class ContentResolutionError(SchedulerBaseError):
    """Raised when a content file reference cannot be read."""

    pass


class ContentValidationError(SchedulerBaseError):
    """Raised when content does not satisfy a platform's limits."""

    pass


# =============================================================================
# PLATFORM EXCEPTIONS
# =============================================================================


class PlatformError(SchedulerBaseError):
    """Raised by a publisher when a platform call fails.

    Attributes:
        platform: Platform identifier (``"facebook"``, ``"instagram"``).
        status: HTTP status code, if a response was received.
        code: Graph API error code from the response body, if any.
        error_type: Explicit classification overriding the code tables
            (e.g. ``"rate_limit"`` for the local request budget).
    """

    def __init__(
        self,
        platform: str,
        message: str,
        status: Optional[int] = None,
        code: Optional[int] = None,
        error_type: Optional[str] = None,
    ):
        self.platform = platform
        self.status = status
        self.code = code
        self.error_type = error_type
        super().__init__(f"{platform}: {message}")


class UnsupportedPlatformError(SchedulerBaseError):
    """Raised when a platform identifier is not in the supported set."""

    pass


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Base
    "SchedulerBaseError",
    # Core
    "ValidationError",
    "ConfigurationError",
    "ScheduleValidationError",
    # Timing
    "InvalidTimeSpec",
    "InvalidCronPattern",
    "InvalidStateTransition",
    # Content
    "ContentResolutionError",
    "ContentValidationError",
    # Platform
    "PlatformError",
    "UnsupportedPlatformError",
]
