"""
Failure classification and retry decisions.

``classify_error`` maps an exception raised by a collaborator to an
``ErrorType`` and a retryable flag using the static tables in
``postscheduler.config``. ``decide_retry`` turns the failures of one
execution pass into a retry delay (or ``None`` for a terminal failure).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Tuple

import httpx

from postscheduler.config import (
    GRAPH_ERROR_CODES,
    HTTP_STATUS_CODES,
    RETRY_CLASS_FOR_ERROR,
    Settings,
)
from postscheduler.exceptions import (
    ContentResolutionError,
    ContentValidationError,
    PlatformError,
)
from postscheduler.models import ErrorType, RetryClass
from postscheduler.scheduling.models import PlatformOutcome

logger = logging.getLogger(__name__)

# Explicitly reported error types that may succeed on a later attempt
_TRANSIENT_TYPES = frozenset({
    ErrorType.RATE_LIMIT,
    ErrorType.NETWORK_ERROR,
    ErrorType.SERVER_ERROR,
})


def classify_error(exc: BaseException) -> Tuple[ErrorType, bool]:
    """
    Classify a platform-attempt failure.

    Order: explicit ``PlatformError.error_type``, Graph error code table,
    HTTP status table, status ranges (5xx server, 4xx client), transport
    errors and timeouts, content errors, otherwise ``unknown``.

    Returns:
        ``(error_type, retryable)``.
    """
    if isinstance(exc, PlatformError):
        if exc.error_type:
            try:
                error_type = ErrorType(exc.error_type)
            except ValueError:
                logger.warning("Unknown error type '%s' reported by %s", exc.error_type, exc.platform)
            else:
                return error_type, error_type in _TRANSIENT_TYPES
        if exc.code is not None and exc.code in GRAPH_ERROR_CODES:
            info = GRAPH_ERROR_CODES[exc.code]
            return info.error_type, info.retryable
        if exc.status is not None:
            if exc.status in HTTP_STATUS_CODES:
                info = HTTP_STATUS_CODES[exc.status]
                return info.error_type, info.retryable
            if 500 <= exc.status < 600:
                return ErrorType.SERVER_ERROR, True
            if 400 <= exc.status < 500:
                return ErrorType.CLIENT_ERROR, False
        return ErrorType.UNKNOWN, True

    if isinstance(exc, (httpx.TransportError, httpx.TimeoutException, asyncio.TimeoutError)):
        return ErrorType.NETWORK_ERROR, True

    if isinstance(exc, (ContentValidationError, ContentResolutionError)):
        return ErrorType.CONTENT_ERROR, False

    return ErrorType.UNKNOWN, True


def retry_class_for(error_type: ErrorType) -> RetryClass:
    return RETRY_CLASS_FOR_ERROR[error_type]


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of the retry policy for one execution pass.

    Attributes:
        retry: Whether another pass should run.
        delay: Seconds until that pass (``0`` when not retrying).
        classes: Retry classes that still had attempts left.
    """

    retry: bool
    delay: float = 0.0
    classes: Tuple[RetryClass, ...] = ()


def decide_retry(
    failures: Iterable[PlatformOutcome],
    attempt: int,
    settings: Settings,
) -> RetryDecision:
    """
    Decide whether a job with failed platforms retries after ``attempt``.

    A failure keeps the job alive when it is retryable and its retry
    class allows more than ``attempt`` attempts. The delay is the
    longest backoff among those classes.
    """
    classes = []
    delay = 0.0
    for outcome in failures:
        if outcome.succeeded or not outcome.retryable or outcome.error_type is None:
            continue
        retry_class = retry_class_for(outcome.error_type)
        policy = settings.policy_for(retry_class)
        if not policy.has_attempts_left(attempt):
            continue
        classes.append(retry_class)
        delay = max(delay, policy.delay_for(attempt))

    if not classes:
        return RetryDecision(retry=False)
    return RetryDecision(retry=True, delay=delay, classes=tuple(dict.fromkeys(classes)))


__all__ = [
    "classify_error",
    "retry_class_for",
    "RetryDecision",
    "decide_retry",
]
