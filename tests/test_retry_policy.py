from datetime import datetime, timedelta, timezone

import pytest

from src.analysis.domain import BatchProgress, RetryPolicy, TaskFilter
from src.config import TaskStatus
from src.core import (
    ConfigurationException,
    PermanentAnalysisError,
    RateLimitedException,
    RemoteAPIException,
    UnknownAnalysisError,
    ValidationException,
)


@pytest.fixture
def policy():
    return RetryPolicy()


@pytest.mark.parametrize(
    "error, kind, retryable, attempts",
    [
        (RateLimitedException("slow down"), "rate_limited", True, 3),
        (RemoteAPIException("bad gateway", status_code=502), "remote_api", True, 2),
        (UnknownAnalysisError("timeout"), "unknown", True, 3),
        (KeyError("surprise"), "unknown", True, 3),
        (ConfigurationException("DO_AGENT_ENDPOINT not configured"), "permanent", False, 0),
        (PermanentAnalysisError("AI analysis returned no results"), "permanent", False, 0),
    ],
)
def test_classify(policy, error, kind, retryable, attempts):
    decision = policy.classify(error)

    assert decision.error_kind == kind
    assert decision.retryable is retryable
    assert decision.max_attempts == attempts


def test_backoff_doubles(policy):
    assert [policy.backoff_seconds(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]
    assert policy.backoff_seconds(0) == 2.0


def test_progress_counts_statuses():
    progress = BatchProgress.from_statuses("b1", [
        TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PROCESSING, TaskStatus.QUEUED
    ])

    assert progress.status == "in_progress"
    assert progress.total == 4
    assert progress.processing == 2
    assert progress.processed == 2
    assert progress.percentage == 50


def test_progress_completed_when_nothing_is_active():
    progress = BatchProgress.from_statuses("b1", [TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.COMPLETED])

    assert progress.status == "completed"
    assert progress.percentage == 100


def test_progress_rounds_percentage():
    progress = BatchProgress.from_statuses("b1", [TaskStatus.COMPLETED, TaskStatus.QUEUED, TaskStatus.QUEUED])

    assert progress.percentage == 33


def test_progress_for_unknown_key():
    progress = BatchProgress.from_statuses("missing", [])

    assert progress.status == "not_started"
    assert progress.percentage == 0


def test_filter_windows():
    now = datetime(2026, 3, 10, 15, 30, tzinfo=timezone.utc)

    assert TaskFilter().window(now) == (None, None)
    assert TaskFilter(date_range="today").window(now) == (datetime(2026, 3, 10, tzinfo=timezone.utc), None)
    assert TaskFilter(date_range="week").window(now) == (now - timedelta(days=7), None)
    assert TaskFilter(date_range="month").window(now) == (now - timedelta(days=30), None)

    start, end = now - timedelta(hours=1), now
    assert TaskFilter(date_range=(start, end)).window(now) == (start, end)


def test_filter_rejects_unknown_window():
    with pytest.raises(ValidationException):
        TaskFilter(date_range="decade").window(datetime.now(timezone.utc))
