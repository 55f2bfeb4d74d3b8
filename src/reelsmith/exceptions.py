"""Exception types and failure classification for Reelsmith."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

__all__ = [
    "ConfigurationError",
    "FailureCategory",
    "FailureClassification",
    "InvalidTransitionError",
    "JobAbortedError",
    "JobAlreadyRunningError",
    "JobFatalError",
    "JobNotFoundError",
    "QueueFullError",
    "QuotaExceededError",
    "ReelsmithError",
    "SpeedMatchError",
    "StorageError",
    "TransientError",
    "ValidationError",
    "classify_failure",
]


class ReelsmithError(Exception):
    """Base class for all errors raised by Reelsmith."""


class TransientError(ReelsmithError):
    """A network, timeout or upstream 5xx failure worth retrying after a short pause."""


class QuotaExceededError(ReelsmithError):
    """The quota-constrained AI rejected the call (HTTP 429 or equivalent)."""

    def __init__(self, message: str = "quota exceeded", *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ConfigurationError(ReelsmithError):
    """Job or service configuration is missing or invalid."""


class ValidationError(ReelsmithError):
    """Input data (analysis output, segment timing, narration text) is structurally invalid."""


class SpeedMatchError(ValidationError):
    """No narration candidate carries a usable duration."""


class JobFatalError(ReelsmithError):
    """The job cannot continue, e.g. every segment failed."""


class StorageError(ReelsmithError):
    """Persistent store failure (SQLite errors, missing rows)."""


class JobAbortedError(ReelsmithError):
    """The running job's abort signal was raised."""

    def __init__(self, message: str = "job aborted") -> None:
        super().__init__(message)


class QueueFullError(ReelsmithError):
    """The admission queue already holds the maximum number of running jobs."""


class JobAlreadyRunningError(ReelsmithError):
    """The job already holds the execution lock in this process."""


class JobNotFoundError(ReelsmithError):
    """No job exists with the requested identifier."""


class InvalidTransitionError(ReelsmithError):
    """A job status change would move the lifecycle backwards."""


class FailureCategory(str, Enum):
    RETRYABLE = "retryable"
    CONFIG = "config"
    INPUT = "input"
    SYSTEM = "system"
    ABORTED = "aborted"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class FailureClassification:
    """Category and operator guidance persisted on a failed job."""

    category: FailureCategory
    guidance: str
    retryable: bool


_GUIDANCE: dict[FailureCategory, str] = {
    FailureCategory.RETRYABLE: (
        "A temporary upstream problem (network, timeout or quota) stopped the job. "
        "Reset the job and run it again later."
    ),
    FailureCategory.CONFIG: (
        "Service configuration is missing or was rejected. "
        "Check API credentials, permissions and the services factory setting."
    ),
    FailureCategory.INPUT: (
        "The source media or the analysis output could not be used. "
        "Check the input videos and the segment timings returned by the analysis."
    ),
    FailureCategory.SYSTEM: (
        "A local storage or filesystem error occurred. "
        "Check disk space, file permissions and the database file."
    ),
    FailureCategory.ABORTED: "The job was aborted before it finished.",
    FailureCategory.UNKNOWN: "An unexpected error occurred. Inspect the step history for details.",
}

_MESSAGE_PATTERNS: tuple[tuple[FailureCategory, tuple[str, ...]], ...] = (
    (
        FailureCategory.RETRYABLE,
        (
            "network",
            "timeout",
            "timed out",
            "rate limit",
            "quota",
            "resource_exhausted",
            "429",
            "503",
            "temporar",
            "unavailable",
        ),
    ),
    (
        FailureCategory.CONFIG,
        ("api key", "401", "403", "permission", "unauthorized", "not configured"),
    ),
    (
        FailureCategory.INPUT,
        ("invalid video", "invalid url", "404", "not found", "invalid_argument"),
    ),
    (
        FailureCategory.SYSTEM,
        ("database", "sqlite", "internal error", "enoent", "no such file", "disk"),
    ),
)


def classify_failure(exc: BaseException, *, transient: bool = False) -> FailureClassification:
    """Map an exception that ended a job to a category and human-readable guidance.

    ``transient`` carries the retry classifier's verdict so errors the retry layer treats
    as temporary (bare timeouts, HTTP 5xx, quota) are reported as retryable even when their
    message says nothing useful.
    """
    category = _category_for(exc, transient)
    return FailureClassification(
        category=category,
        guidance=_GUIDANCE[category],
        retryable=category is FailureCategory.RETRYABLE,
    )


def _category_for(exc: BaseException, transient: bool) -> FailureCategory:
    if isinstance(exc, JobAbortedError):
        return FailureCategory.ABORTED
    if isinstance(exc, (TransientError, QuotaExceededError, TimeoutError, ConnectionError)):
        return FailureCategory.RETRYABLE
    if isinstance(exc, ConfigurationError):
        return FailureCategory.CONFIG
    if isinstance(exc, ValidationError):
        return FailureCategory.INPUT
    if isinstance(exc, (StorageError, FileNotFoundError, PermissionError, IsADirectoryError)):
        return FailureCategory.SYSTEM
    if transient:
        return FailureCategory.RETRYABLE

    message = str(exc).lower()
    for category, patterns in _MESSAGE_PATTERNS:
        if any(pattern in message for pattern in patterns):
            return category
    return FailureCategory.UNKNOWN
