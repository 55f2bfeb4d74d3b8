"""Retry policies and the error classifier shared by every retrying layer.

Errors are classified into three dispositions. Transient failures (network, timeouts,
408/5xx) are ``RETRY_SHORT``; quota rejections (429, RESOURCE_EXHAUSTED) are
``RETRY_LONG``; everything else is ``FATAL``. A policy names the dispositions it retries,
so the generic step policy and the rate-limited dispatcher never both back off on the
same error.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import requests

from ..exceptions import (
    ConfigurationError,
    JobAbortedError,
    QuotaExceededError,
    TransientError,
    ValidationError,
)
from ..utils.logging import get_logger

__all__ = [
    "DEFAULT_RETRY_POLICY",
    "NO_RETRY",
    "ErrorDisposition",
    "RetryPolicy",
    "classify_error",
    "is_quota_exceeded",
    "is_retryable",
    "retry_after_seconds",
    "run_with_retry",
]

LOGGER = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 500, 502, 503, 504})
QUOTA_STATUS_CODE = 429

QUOTA_PATTERNS = (
    "429",
    "resource_exhausted",
    "resource exhausted",
    "quota exceeded",
    "rate limit",
    "too many requests",
)
TRANSIENT_PATTERNS = (
    "network",
    "fetch failed",
    "connection error",
    "connection reset",
    "connection refused",
    "econnreset",
    "econnrefused",
    "etimedout",
    "socket hang up",
    "enotfound",
    "timeout",
    "timed out",
    "internal server error",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "deadline exceeded",
    "unavailable",
    "file processing failed",
    "json parse",
    "unexpected token",
    "invalid json",
)


class ErrorDisposition(str, Enum):
    RETRY_SHORT = "retry-short"
    RETRY_LONG = "retry-long"
    FATAL = "fatal"


Classifier = Callable[[BaseException], ErrorDisposition]
Sleeper = Callable[[float], Awaitable[Any]]


def status_code_of(exc: BaseException) -> int | None:
    """Return an HTTP status carried by the exception or its ``response``."""
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def retry_after_seconds(exc: BaseException) -> float | None:
    """Extract a server-provided retry-after hint in seconds, when present."""
    if isinstance(exc, QuotaExceededError) and exc.retry_after is not None:
        return max(0.0, float(exc.retry_after))
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    raw_value = headers.get("Retry-After") or headers.get("retry-after")
    if raw_value is None:
        return None
    try:
        return max(0.0, float(raw_value))
    except (TypeError, ValueError):
        return None


def classify_error(exc: BaseException) -> ErrorDisposition:
    if isinstance(exc, (JobAbortedError, ConfigurationError, ValidationError)):
        return ErrorDisposition.FATAL
    if isinstance(exc, QuotaExceededError):
        return ErrorDisposition.RETRY_LONG

    status = status_code_of(exc)
    if status == QUOTA_STATUS_CODE:
        return ErrorDisposition.RETRY_LONG
    if status in RETRYABLE_STATUS_CODES:
        return ErrorDisposition.RETRY_SHORT
    if status is not None and 400 <= status < 500:
        return ErrorDisposition.FATAL

    if isinstance(
        exc,
        (
            TransientError,
            requests.ConnectionError,
            requests.Timeout,
            ConnectionError,
            TimeoutError,
        ),
    ):
        return ErrorDisposition.RETRY_SHORT

    message = str(exc).lower()
    if any(pattern in message for pattern in QUOTA_PATTERNS):
        return ErrorDisposition.RETRY_LONG
    if any(pattern in message for pattern in TRANSIENT_PATTERNS):
        return ErrorDisposition.RETRY_SHORT
    return ErrorDisposition.FATAL


def is_retryable(exc: BaseException) -> bool:
    """True for transient errors. Quota errors are excluded."""
    return classify_error(exc) is ErrorDisposition.RETRY_SHORT


def is_quota_exceeded(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorDisposition.RETRY_LONG


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Attempt ceiling and exponential backoff for one retrying call site."""

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float | None = None
    retry_on: frozenset[ErrorDisposition] = field(
        default_factory=lambda: frozenset({ErrorDisposition.RETRY_SHORT})
    )
    honor_retry_after: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        if self.base_delay < 0 or self.backoff_multiplier < 1:
            raise ValueError("Retry delays must be non-negative and non-shrinking.")

    def delay_for(self, attempt: int, exc: BaseException | None = None) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        delay = self.base_delay * (self.backoff_multiplier ** (attempt - 1))
        if self.honor_retry_after and exc is not None:
            hint = retry_after_seconds(exc)
            if hint is not None:
                delay = hint
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def should_retry(self, attempt: int, disposition: ErrorDisposition) -> bool:
        return attempt < self.max_attempts and disposition in self.retry_on


DEFAULT_RETRY_POLICY = RetryPolicy()
NO_RETRY = RetryPolicy(max_attempts=1)


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    classifier: Classifier = classify_error,
    label: str = "operation",
    sleep: Sleeper = asyncio.sleep,
) -> T:
    """Await ``operation`` until it succeeds, the policy gives up or the error is not retried."""
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            disposition = classifier(exc)
            if not policy.should_retry(attempt, disposition):
                if attempt > 1:
                    LOGGER.error(
                        "%s failed after %d attempt(s) (%s): %s",
                        label,
                        attempt,
                        disposition.value,
                        exc,
                    )
                raise
            delay = policy.delay_for(attempt, exc)
            LOGGER.warning(
                "%s failed on attempt %d/%d (%s: %s); retrying in %.1fs",
                label,
                attempt,
                policy.max_attempts,
                disposition.value,
                exc,
                delay,
            )
            await sleep(delay)
            attempt += 1
