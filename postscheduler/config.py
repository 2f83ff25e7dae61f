"""
Centralized configuration loader for the post scheduler.

Loads settings from YAML files and environment variables, providing
sensible defaults when configuration files are absent.

Provides:
    - RetryPolicy: Attempt limit and backoff schedule for one retry class
    - RETRY_POLICIES: Default policy per RetryClass (immutable)
    - GRAPH_ERROR_CODES / HTTP_STATUS_CODES: Error classification tables
    - PLATFORM_LIMITS: Text and image limits per platform
    - PRIORITY_RANKS: Priority label to dispatch rank
    - Settings: Global application settings loaded from YAML + env vars
    - get_settings(): Cached accessor for Settings
    - validate_env(): Startup validation of platform credentials
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from dotenv import load_dotenv

from postscheduler.exceptions import ConfigurationError
from postscheduler.models import ErrorType, Platform, RetryClass

# ---------------------------------------------------------------------------
# Load .env file (no-op if file does not exist)
# ---------------------------------------------------------------------------
load_dotenv()

# ---------------------------------------------------------------------------
# Project root directory (parent of postscheduler/)
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


# ===========================================================================
# RETRY POLICIES
# ===========================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempt limit and exponential backoff for one retry class.

    ``max_attempts`` counts the first attempt, so ``1`` means never retry.
    Delays are in seconds.
    """

    max_attempts: int
    base_delay: float
    multiplier: float
    max_delay: float

    def delay_for(self, attempt: int) -> float:
        """
        Backoff before the retry that follows ``attempt``.

        ``base_delay * multiplier ** (attempt - 1)`` capped at ``max_delay``.
        """
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def has_attempts_left(self, attempt: int) -> bool:
        """Whether another attempt is allowed after ``attempt`` attempts."""
        return attempt < self.max_attempts


RETRY_POLICIES: Mapping[RetryClass, RetryPolicy] = MappingProxyType({
    RetryClass.RATE_LIMIT: RetryPolicy(max_attempts=5, base_delay=300.0, multiplier=2.0, max_delay=1800.0),
    RetryClass.NETWORK_ERROR: RetryPolicy(max_attempts=4, base_delay=10.0, multiplier=2.0, max_delay=60.0),
    RetryClass.AUTHENTICATION_ERROR: RetryPolicy(max_attempts=2, base_delay=120.0, multiplier=1.5, max_delay=300.0),
    # Content errors are never retried
    RetryClass.CONTENT_ERROR: RetryPolicy(max_attempts=1, base_delay=0.0, multiplier=1.0, max_delay=0.0),
    RetryClass.OTHER: RetryPolicy(max_attempts=3, base_delay=30.0, multiplier=2.0, max_delay=300.0),
})


# ErrorType -> RetryClass grouping
RETRY_CLASS_FOR_ERROR: Mapping[ErrorType, RetryClass] = MappingProxyType({
    ErrorType.RATE_LIMIT: RetryClass.RATE_LIMIT,
    ErrorType.NETWORK_ERROR: RetryClass.NETWORK_ERROR,
    ErrorType.SERVER_ERROR: RetryClass.NETWORK_ERROR,
    ErrorType.AUTHENTICATION_ERROR: RetryClass.AUTHENTICATION_ERROR,
    ErrorType.PERMISSION_ERROR: RetryClass.AUTHENTICATION_ERROR,
    ErrorType.CONTENT_ERROR: RetryClass.CONTENT_ERROR,
    ErrorType.CLIENT_ERROR: RetryClass.CONTENT_ERROR,
    ErrorType.NOT_FOUND: RetryClass.CONTENT_ERROR,
    ErrorType.UNKNOWN: RetryClass.OTHER,
})


# ===========================================================================
# ERROR CODE TABLES
# ===========================================================================


@dataclass(frozen=True)
class ErrorCodeInfo:
    """Classification of a single platform error code."""

    error_type: ErrorType
    message: str
    retryable: bool


# Graph API error codes (``error.code`` in the response body)
GRAPH_ERROR_CODES: Mapping[int, ErrorCodeInfo] = MappingProxyType({
    1: ErrorCodeInfo(ErrorType.AUTHENTICATION_ERROR, "API Unknown", False),
    2: ErrorCodeInfo(ErrorType.AUTHENTICATION_ERROR, "API Service", True),
    4: ErrorCodeInfo(ErrorType.RATE_LIMIT, "Application request limit reached", True),
    10: ErrorCodeInfo(ErrorType.PERMISSION_ERROR, "Permission denied", False),
    17: ErrorCodeInfo(ErrorType.RATE_LIMIT, "User request limit reached", True),
    24: ErrorCodeInfo(ErrorType.CONTENT_ERROR, "Too many calls to the same media", True),
    36: ErrorCodeInfo(ErrorType.CONTENT_ERROR, "Invalid image", False),
    100: ErrorCodeInfo(ErrorType.CLIENT_ERROR, "Invalid parameter", False),
    190: ErrorCodeInfo(ErrorType.AUTHENTICATION_ERROR, "Invalid OAuth access token", False),
    200: ErrorCodeInfo(ErrorType.PERMISSION_ERROR, "Permissions error", False),
    368: ErrorCodeInfo(ErrorType.AUTHENTICATION_ERROR, "The action attempted has been deemed abusive", False),
    506: ErrorCodeInfo(ErrorType.CONTENT_ERROR, "Duplicate status message", False),
    613: ErrorCodeInfo(ErrorType.RATE_LIMIT, "Rate limit exceeded", True),
    9007: ErrorCodeInfo(ErrorType.CONTENT_ERROR, "Media posted too frequently", True),
})

# HTTP status codes, consulted when the body carries no known error code
HTTP_STATUS_CODES: Mapping[int, ErrorCodeInfo] = MappingProxyType({
    400: ErrorCodeInfo(ErrorType.CLIENT_ERROR, "Bad Request", False),
    401: ErrorCodeInfo(ErrorType.AUTHENTICATION_ERROR, "Unauthorized", False),
    403: ErrorCodeInfo(ErrorType.PERMISSION_ERROR, "Forbidden", False),
    404: ErrorCodeInfo(ErrorType.NOT_FOUND, "Not Found", False),
    429: ErrorCodeInfo(ErrorType.RATE_LIMIT, "Too Many Requests", True),
    500: ErrorCodeInfo(ErrorType.SERVER_ERROR, "Internal Server Error", True),
    502: ErrorCodeInfo(ErrorType.SERVER_ERROR, "Bad Gateway", True),
    503: ErrorCodeInfo(ErrorType.SERVER_ERROR, "Service Unavailable", True),
    504: ErrorCodeInfo(ErrorType.SERVER_ERROR, "Gateway Timeout", True),
})


# ===========================================================================
# PLATFORM LIMITS
# ===========================================================================


@dataclass(frozen=True)
class PlatformLimits:
    """Publishing limits for one platform."""

    max_text_length: int
    max_hashtags: int
    max_images: int
    image_formats: Tuple[str, ...]
    max_image_bytes: int
    requires_image: bool = False
    requests_per_hour: int = 200


PLATFORM_LIMITS: Mapping[Platform, PlatformLimits] = MappingProxyType({
    Platform.FACEBOOK: PlatformLimits(
        max_text_length=63206,
        max_hashtags=30,
        max_images=10,
        image_formats=("jpeg", "jpg", "png", "gif", "webp"),
        max_image_bytes=100 * 1024 * 1024,
    ),
    Platform.INSTAGRAM: PlatformLimits(
        max_text_length=2200,
        max_hashtags=30,
        max_images=10,
        image_formats=("jpeg", "jpg", "png"),
        max_image_bytes=30 * 1024 * 1024,
        requires_image=True,
    ),
})


# ===========================================================================
# PRIORITIES
# ===========================================================================

# Lower rank = dispatched first when the priority dispatcher is enabled
PRIORITY_RANKS: Mapping[str, int] = MappingProxyType({
    "immediate": 1,
    "high": 2,
    "normal": 3,
    "low": 4,
    "background": 5,
})

DEFAULT_PRIORITY = "normal"


# ===========================================================================
# GLOBAL SETTINGS
# ===========================================================================


def _parse_retry_policies(raw: Dict[str, Any]) -> Dict[RetryClass, RetryPolicy]:
    """
    Merge YAML retry policy overrides onto ``RETRY_POLICIES``.

    Raises:
        ConfigurationError: On unknown classes, bad values, or a
            ``content_error`` policy allowing more than one attempt.
    """
    policies = dict(RETRY_POLICIES)
    for class_name, values in raw.items():
        try:
            retry_class = RetryClass(class_name)
        except ValueError as exc:
            raise ConfigurationError(
                f"Unknown retry class '{class_name}'. "
                f"Valid classes: {[c.value for c in RetryClass]}"
            ) from exc
        if not isinstance(values, dict):
            raise ConfigurationError(f"Retry policy '{class_name}' must be a mapping")
        current = policies[retry_class]
        try:
            policy = RetryPolicy(
                max_attempts=int(values.get("max_attempts", current.max_attempts)),
                base_delay=float(values.get("base_delay", current.base_delay)),
                multiplier=float(values.get("multiplier", current.multiplier)),
                max_delay=float(values.get("max_delay", current.max_delay)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid retry policy '{class_name}': {exc}") from exc
        if policy.max_attempts < 1:
            raise ConfigurationError(f"Retry policy '{class_name}': max_attempts must be >= 1")
        policies[retry_class] = policy

    if policies[RetryClass.CONTENT_ERROR].max_attempts != 1:
        raise ConfigurationError("Retry policy 'content_error' must allow exactly one attempt")
    return policies


@dataclass
class Settings:
    """
    Global application settings.

    Loaded from ``config/settings.yaml`` when available, falling back to
    sensible defaults. Environment variables override YAML values for
    deployment-specific configuration.
    """

    # Timezone used when a descriptor does not name one
    timezone: str = "UTC"

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    # Content locations
    schedule_path: str = "content/schedule.json"
    content_dir: str = "content/posts"
    image_dir: str = "content/images"

    # Health monitoring (seconds)
    health_check_interval_seconds: float = 60.0
    probe_timeout_seconds: float = 5.0

    # Execution (seconds)
    publish_timeout_seconds: float = 120.0
    trigger_tick_seconds: float = 1.0

    # Shutdown drain (seconds)
    drain_timeout_seconds: float = 30.0
    drain_poll_interval_seconds: float = 1.0

    # None = every due job runs immediately
    max_concurrent_jobs: Optional[int] = None

    retry_policies: Dict[RetryClass, RetryPolicy] = field(
        default_factory=lambda: dict(RETRY_POLICIES)
    )

    def policy_for(self, retry_class: RetryClass) -> RetryPolicy:
        return self.retry_policies[retry_class]

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "Settings":
        """
        Load settings from a YAML file.

        If the file does not exist, returns an instance with all defaults.
        Environment variables override YAML values for specific keys.

        Args:
            path: Path to the YAML file. Defaults to
                ``<PROJECT_ROOT>/config/settings.yaml``.

        Returns:
            Populated Settings instance.

        Raises:
            ConfigurationError: If the YAML file exists but cannot be parsed
                or holds invalid values.
        """
        path = path or PROJECT_ROOT / "config" / "settings.yaml"

        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    f"Failed to parse settings YAML at {path}: {exc}"
                ) from exc

        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings YAML at {path} must be a mapping")

        # -----------------------------------------------------------------
        # Environment variable overrides
        # -----------------------------------------------------------------
        env_overrides = {
            "TIMEZONE": ("timezone", str),
            "LOG_LEVEL": ("log_level", str),
            "SCHEDULE_PATH": ("schedule_path", str),
            "MAX_CONCURRENT_JOBS": ("max_concurrent_jobs", int),
            "DRAIN_TIMEOUT_SECONDS": ("drain_timeout_seconds", float),
        }
        for env_key, (attr_name, cast_fn) in env_overrides.items():
            env_val = os.environ.get(env_key)
            if env_val is not None:
                try:
                    data[attr_name] = cast_fn(env_val)
                except (ValueError, TypeError) as exc:
                    raise ConfigurationError(
                        f"Invalid value for env var {env_key}='{env_val}': {exc}"
                    ) from exc

        retry_policies = _parse_retry_policies(data.pop("retry", None) or {})

        kwargs: Dict[str, Any] = {}
        for name in cls.__dataclass_fields__:
            if name == "retry_policies" or name not in data:
                continue
            kwargs[name] = data[name]

        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            logger.warning("Ignoring unknown settings keys: %s", sorted(unknown))

        settings = cls(retry_policies=retry_policies, **kwargs)
        if settings.max_concurrent_jobs is not None and settings.max_concurrent_jobs < 1:
            raise ConfigurationError("max_concurrent_jobs must be >= 1 when set")
        return settings


# ===========================================================================
# SINGLETON SETTINGS ACCESSOR
# ===========================================================================

_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the cached Settings.

    On first call, loads from ``config/settings.yaml`` (or defaults).
    Subsequent calls return the cached instance.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """
    Reset the cached Settings.

    Useful for testing or when configuration files have been updated
    at runtime.
    """
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# ENVIRONMENT VARIABLE VALIDATION
# ===========================================================================

# Platform credentials; missing values limit functionality but do not abort
REQUIRED_ENV_VARS: List[str] = [
    "FACEBOOK_ACCESS_TOKEN",
    "FACEBOOK_PAGE_ID",
    "INSTAGRAM_ACCESS_TOKEN",
]

OPTIONAL_ENV_VARS: List[str] = [
    "INSTAGRAM_ACCOUNT_ID",
    "TIMEZONE",
]


def validate_env(strict: bool = False) -> Dict[str, bool]:
    """
    Validate that platform credentials are set.

    Args:
        strict: If ``True``, raise ``ConfigurationError`` when any required
            variable is missing. Otherwise log a warning and continue with
            limited functionality.

    Returns:
        Dict mapping variable name to presence status (``True`` if set).

    Raises:
        ConfigurationError: If ``strict=True`` and required vars are missing.
    """
    status: Dict[str, bool] = {}
    missing: List[str] = []

    for var in REQUIRED_ENV_VARS:
        present = bool(os.environ.get(var))
        status[var] = present
        if not present:
            missing.append(var)

    for var in OPTIONAL_ENV_VARS:
        status[var] = bool(os.environ.get(var))

    if missing:
        if strict:
            raise ConfigurationError(
                f"Missing required environment variables: {missing}. "
                f"Copy .env.example to .env and fill in the values."
            )
        logger.warning("Missing environment variables: %s", ", ".join(missing))
        logger.warning("Application will run with limited functionality")

    return status


# ===========================================================================
# PUBLIC API
# ===========================================================================

__all__ = [
    # Retry
    "RetryPolicy",
    "RETRY_POLICIES",
    "RETRY_CLASS_FOR_ERROR",
    # Error tables
    "ErrorCodeInfo",
    "GRAPH_ERROR_CODES",
    "HTTP_STATUS_CODES",
    # Platforms
    "PlatformLimits",
    "PLATFORM_LIMITS",
    # Priorities
    "PRIORITY_RANKS",
    "DEFAULT_PRIORITY",
    # Settings
    "Settings",
    "get_settings",
    "reset_settings",
    # Environment validation
    "validate_env",
    "REQUIRED_ENV_VARS",
    "OPTIONAL_ENV_VARS",
    # Constants
    "PROJECT_ROOT",
]
