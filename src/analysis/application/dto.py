"""
Analysis Application DTOs
=========================

Data Transfer Objects for the analysis API layer.

Pydantic models for request/response validation. Domain objects are
converted with ``from_domain`` class methods.
"""

from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Dict, Any, Literal
from datetime import datetime


# ========== Type Aliases for Literals ==========
TaskStatusStr = Literal["queued", "processing", "completed", "failed", "retrying", "dismissed"]
TaskKindStr = Literal["analysis", "response_generation", "bulk_analysis"]
DateRangeStr = Literal["all", "today", "week", "month"]


# ========== Request DTOs ==========

class BulkAnalyzeRequest(BaseModel):
    """Request model for bulk analysis."""
    ticket_ids: List[str] = Field(..., min_length=1, description="Tickets to analyze")

    @field_validator("ticket_ids")
    @classmethod
    def validate_ids(cls, v: List[str]) -> List[str]:
        """Reject blank IDs."""
        if any(not ticket_id.strip() for ticket_id in v):
            raise ValueError("ticket_ids must not contain blank values")
        return v


# ========== Response DTOs ==========

class EnqueueResponse(BaseModel):
    """Response model for a single enqueue."""
    status: Literal["queued", "already_in_progress"]
    ticket_id: str
    task_id: str
    task_status: str
    batch_id: Optional[str] = None
    correlation_id: Optional[str] = None

    @classmethod
    def from_domain(cls, result: Any) -> "EnqueueResponse":
        """Create from a TaskHandle or AlreadyInProgress."""
        from src.analysis.domain import TaskHandle

        if isinstance(result, TaskHandle):
            return cls(
                status="queued",
                ticket_id=result.owner_id,
                task_id=result.task_id,
                task_status=result.status,
                batch_id=result.batch_id,
                correlation_id=result.correlation_id
            )
        return cls(
            status="already_in_progress",
            ticket_id=result.owner_id,
            task_id=result.task_id,
            task_status=result.status
        )


class BulkEnqueueResponse(BaseModel):
    """Response model for bulk analysis."""
    batch_id: str
    queued: List[EnqueueResponse]
    skipped: List[EnqueueResponse]
    not_found: List[str]
    total_queued: int

    @classmethod
    def from_domain(cls, result: Any) -> "BulkEnqueueResponse":
        return cls(
            batch_id=result.batch_id,
            queued=[EnqueueResponse.from_domain(h) for h in result.queued],
            skipped=[EnqueueResponse.from_domain(s) for s in result.skipped],
            not_found=list(result.not_found),
            total_queued=len(result.queued)
        )


class ProgressResponse(BaseModel):
    """Response model for submission progress polling."""
    batch_id: str
    status: str
    total: int
    completed: int
    failed: int
    processing: int
    dismissed: int
    processed: int
    percentage: int

    @classmethod
    def from_domain(cls, progress: Any) -> "ProgressResponse":
        return cls(
            batch_id=progress.key,
            status=progress.status,
            total=progress.total,
            completed=progress.completed,
            failed=progress.failed,
            processing=progress.processing,
            dismissed=progress.dismissed,
            processed=progress.processed,
            percentage=progress.percentage
        )


class TaskSummaryResponse(BaseModel):
    """Task record as shown in listings."""
    id: str
    ticket_id: str
    batch_id: Optional[str]
    kind: TaskKindStr
    status: TaskStatusStr
    endpoint: Optional[str] = None
    model: Optional[str] = None
    confidence_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    suggested_priority: Optional[str] = None
    sentiment_detected: Optional[str] = None
    tags_generated: List[str] = []
    has_suggested_response: bool = False
    total_duration_ms: Optional[int] = None
    retry_count: int
    max_retries: int
    error_summary: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, task: Any) -> "TaskSummaryResponse":
        return cls(
            id=task.id,
            ticket_id=task.owner_id,
            batch_id=task.batch_id,
            kind=task.kind,
            status=task.status,
            endpoint=task.endpoint,
            model=task.model,
            confidence_score=task.confidence_score,
            suggested_priority=task.suggested_priority,
            sentiment_detected=task.sentiment_detected,
            tags_generated=list(task.tags_generated),
            has_suggested_response=task.has_suggested_response,
            total_duration_ms=task.total_duration_ms,
            retry_count=task.retry_count,
            max_retries=task.max_retries,
            error_summary=task.error_summary,
            created_at=task.created_at,
            updated_at=task.updated_at
        )


class TaskDetailResponse(TaskSummaryResponse):
    """Full task record."""
    correlation_id: Optional[str] = None
    remote_call_duration_ms: Optional[int] = None
    parse_duration_ms: Optional[int] = None
    reply_duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    error_class: Optional[str] = None
    error_backtrace: List[str] = []
    high_confidence: bool = False
    current_step: Optional[Dict[str, Any]] = None
    source_files: List[str] = []
    processing_steps: List[Dict[str, Any]] = []
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, task: Any) -> "TaskDetailResponse":
        base = TaskSummaryResponse.from_domain(task).model_dump()
        return cls(
            **base,
            correlation_id=task.correlation_id,
            remote_call_duration_ms=task.remote_call_duration_ms,
            parse_duration_ms=task.parse_duration_ms,
            reply_duration_ms=task.reply_duration_ms,
            error_message=task.error_message,
            error_class=task.error_class,
            error_backtrace=list(task.error_backtrace),
            high_confidence=task.high_confidence,
            current_step=task.latest_step(),
            source_files=task.source_files,
            processing_steps=list(task.processing_steps),
            started_at=task.started_at,
            completed_at=task.completed_at
        )


class TaskListResponse(BaseModel):
    """One page of task records."""
    items: List[TaskSummaryResponse]
    total: int
    page: int
    per_page: int
    pages: int
    has_next_page: bool
    has_prev_page: bool

    @classmethod
    def from_domain(cls, page: Any) -> "TaskListResponse":
        return cls(
            items=[TaskSummaryResponse.from_domain(t) for t in page.items],
            total=page.total,
            page=page.page,
            per_page=page.per_page,
            pages=page.pages,
            has_next_page=page.page < page.pages,
            has_prev_page=page.page > 1
        )


class TaskLogsResponse(BaseModel):
    """Debug view of a task."""
    task_id: str
    ticket_id: str
    status: str
    processing_steps: List[Dict[str, Any]]
    console_logs: List[Dict[str, Any]]
    retrieval_items: List[Dict[str, Any]]
    retrieval_sources_summary: str
    request_payload: Dict[str, Any]
    response_payload: Dict[str, Any]

    @classmethod
    def from_domain(cls, logs: Dict[str, Any]) -> "TaskLogsResponse":
        data = dict(logs)
        data["ticket_id"] = data.pop("owner_id")
        return cls(**data)


class ErrorTypeCount(BaseModel):
    """Occurrences of one error class."""
    error_class: str
    count: int


class JobStatisticsResponse(BaseModel):
    """Response model for job dashboard statistics."""
    total_jobs: int
    queued: int
    processing: int
    completed: int
    failed: int
    retrying: int
    dismissed: int
    recent_24h: int
    success_rate: float
    avg_processing_time_ms: int
    top_error_types: List[ErrorTypeCount]

    @classmethod
    def from_domain(cls, stats: Any) -> "JobStatisticsResponse":
        by_status = stats.by_status
        return cls(
            total_jobs=stats.total,
            queued=by_status.get("queued", 0),
            processing=by_status.get("processing", 0),
            completed=by_status.get("completed", 0),
            failed=by_status.get("failed", 0),
            retrying=by_status.get("retrying", 0),
            dismissed=by_status.get("dismissed", 0),
            recent_24h=stats.recent_24h,
            success_rate=stats.success_rate,
            avg_processing_time_ms=stats.average_duration_ms,
            top_error_types=[
                ErrorTypeCount(error_class=name, count=count)
                for name, count in stats.top_error_types
            ]
        )


class DismissFailedResponse(BaseModel):
    """Response model for dismissing failed jobs."""
    dismissed: int
    message: str
