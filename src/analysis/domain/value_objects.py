"""
Analysis Value Objects
======================

Immutable value objects for the analysis domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from src.config import TaskStatus
from src.core import (
    ConfigurationException,
    PermanentAnalysisError,
    ValidationException,
    RateLimitedException,
    RemoteAPIException,
)


# ========== Raw remote response ==========

@dataclass(frozen=True)
class StructuredJson:
    """Response body that arrived as a JSON object."""
    payload: Dict[str, Any]


@dataclass(frozen=True)
class RawText:
    """Response body that could only be kept as text."""
    text: str


RawResponse = Union[StructuredJson, RawText]


@dataclass(frozen=True)
class RemoteResponse:
    """
    One answer from the remote analysis endpoint.

    ``content`` is the assistant message text; ``envelope`` is the whole
    response body, kept for retrieval provenance and auditing.
    """
    content: str
    envelope: RawResponse
    duration_ms: int
    model: Optional[str] = None


# ========== Normalized results ==========

@dataclass(frozen=True)
class AnalysisResult:
    """Fields extracted from a remote analysis answer."""
    summary: Optional[str] = None
    confidence_score: Optional[float] = None
    tags: List[str] = field(default_factory=list)
    sentiment: Optional[str] = None
    priority_suggestion: Optional[str] = None
    suggested_response: Optional[str] = None
    suggested_actions: List[str] = field(default_factory=list)
    source_files: List[str] = field(default_factory=list)

    @property
    def is_degraded(self) -> bool:
        return False

    def with_reply(self, reply: Optional[str]) -> "AnalysisResult":
        """Return a copy carrying a generated reply suggestion."""
        return replace(self, suggested_response=reply)

    def to_summary_fields(self) -> Dict[str, Any]:
        """Map the result onto the task record's summary fields."""
        return {
            "confidence_score": self.confidence_score,
            "suggested_priority": self.priority_suggestion,
            "sentiment_detected": self.sentiment,
            "tags_generated": list(self.tags),
            "has_suggested_response": bool(self.suggested_response),
        }


@dataclass(frozen=True)
class NormalizedResult(AnalysisResult):
    """Result parsed from JSON, directly or after repair."""
    repaired: bool = False


@dataclass(frozen=True)
class DegradedResult(AnalysisResult):
    """Low-confidence fallback used when the answer is not parseable JSON."""

    @property
    def is_degraded(self) -> bool:
        return True


# ========== Retry policy ==========

@dataclass(frozen=True)
class RetryDecision:
    """How the orchestrator treats one failed attempt."""
    error_kind: str
    retryable: bool
    max_attempts: int


@dataclass(frozen=True)
class RetryPolicy:
    """
    Per-error-class attempt budgets and exponential backoff.

    Budgets count attempts, not re-tries: a budget of 3 means the task fails
    for good on its third failed attempt.
    """
    rate_limit_max_attempts: int = 3
    api_error_max_attempts: int = 2
    default_max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            rate_limit_max_attempts=settings.rate_limit_max_attempts,
            api_error_max_attempts=settings.api_error_max_attempts,
            default_max_attempts=settings.default_max_retries,
            backoff_base_seconds=settings.retry_backoff_base_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )

    def classify(self, error: BaseException) -> RetryDecision:
        """Pick the attempt budget governing ``error``."""
        if isinstance(error, (ConfigurationException, PermanentAnalysisError)):
            return RetryDecision("permanent", retryable=False, max_attempts=0)
        if isinstance(error, RateLimitedException):
            return RetryDecision("rate_limited", retryable=True, max_attempts=self.rate_limit_max_attempts)
        if isinstance(error, RemoteAPIException):
            return RetryDecision("remote_api", retryable=True, max_attempts=self.api_error_max_attempts)
        return RetryDecision("unknown", retryable=True, max_attempts=self.default_max_attempts)

    def backoff_seconds(self, retry_count: int) -> float:
        """Delay before attempt ``retry_count + 1`` (2s, 4s, 8s... by default)."""
        exponent = max(retry_count, 1) - 1
        return self.backoff_base_seconds * (self.backoff_multiplier ** exponent)


# ========== Orchestrator results ==========

@dataclass(frozen=True)
class TaskHandle:
    """Returned when a task was queued."""
    task_id: str
    owner_id: str
    batch_id: str
    correlation_id: Optional[str]
    status: str = TaskStatus.QUEUED


@dataclass(frozen=True)
class AlreadyInProgress:
    """Returned instead of a handle when the ticket already has active work."""
    owner_id: str
    task_id: str
    status: str


@dataclass(frozen=True)
class BulkEnqueueResult:
    """Outcome of a bulk submission."""
    batch_id: str
    queued: List[TaskHandle] = field(default_factory=list)
    skipped: List[AlreadyInProgress] = field(default_factory=list)
    not_found: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BatchProgress:
    """Aggregate progress over the tasks of one submission."""
    key: str
    status: str
    total: int = 0
    completed: int = 0
    failed: int = 0
    processing: int = 0
    dismissed: int = 0

    @property
    def processed(self) -> int:
        return self.completed + self.failed

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 0
        return round(self.processed / self.total * 100)

    @classmethod
    def from_statuses(cls, key: str, statuses: List[str]) -> "BatchProgress":
        """Count task statuses; nothing is stored between polls."""
        if not statuses:
            return cls(key=key, status="not_started")

        completed = sum(1 for s in statuses if s == TaskStatus.COMPLETED)
        failed = sum(1 for s in statuses if s == TaskStatus.FAILED)
        dismissed = sum(1 for s in statuses if s == TaskStatus.DISMISSED)
        processing = sum(
            1 for s in statuses
            if s in (TaskStatus.QUEUED, TaskStatus.PROCESSING, TaskStatus.RETRYING)
        )

        return cls(
            key=key,
            status="in_progress" if processing else "completed",
            total=len(statuses),
            completed=completed,
            failed=failed,
            processing=processing,
            dismissed=dismissed,
        )


@dataclass(frozen=True)
class TaskFilter:
    """
    Listing filter.

    ``date_range`` is either a named window (``today``, ``week``,
    ``month``) or an explicit ``(start, end)`` pair of datetimes.
    """
    status: Optional[str] = None
    kind: Optional[str] = None
    owner_id: Optional[str] = None
    date_range: Union[str, Tuple[datetime, datetime], None] = None

    def window(self, now: datetime) -> Tuple[Optional[datetime], Optional[datetime]]:
        """Resolve ``date_range`` into (start, end) bounds on ``created_at``."""
        if self.date_range is None or self.date_range == "all":
            return None, None
        if isinstance(self.date_range, tuple):
            start, end = self.date_range
            return start, end
        if self.date_range == "today":
            return now.replace(hour=0, minute=0, second=0, microsecond=0), None
        if self.date_range == "week":
            return now - timedelta(days=7), None
        if self.date_range == "month":
            return now - timedelta(days=30), None
        raise ValidationException(f"Unknown date range: {self.date_range}")


@dataclass(frozen=True)
class TaskPage:
    """One page of task records, newest activity first."""
    items: List[Any]
    total: int
    page: int
    per_page: int

    @property
    def pages(self) -> int:
        if self.per_page <= 0:
            return 0
        return (self.total + self.per_page - 1) // self.per_page


@dataclass(frozen=True)
class JobStatistics:
    """Dashboard figures for the background job queue."""
    total: int
    by_status: Dict[str, int]
    recent_24h: int
    success_rate: float
    average_duration_ms: int
    top_error_types: List[Tuple[str, int]]
