"""
Analysis Controllers (API Routes)
=================================

FastAPI routes for background AI ticket analysis.

Controllers are thin - they delegate to the AnalysisOrchestrator kept in
``app.state``. Application exceptions are mapped to HTTP status codes by
the shared exception handler.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse

from src.analysis.application import (
    AnalysisOrchestrator,
    BulkAnalyzeRequest,
    EnqueueResponse,
    BulkEnqueueResponse,
    ProgressResponse,
    TaskDetailResponse,
    TaskListResponse,
    TaskLogsResponse,
    JobStatisticsResponse,
    DismissFailedResponse,
)
from src.analysis.application.dto import TaskStatusStr, TaskKindStr, DateRangeStr
from src.analysis.domain import AlreadyInProgress, TaskFilter
from src.config import TaskKind
from src.core import ConfigurationException

from src.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)
router = APIRouter(prefix="/analysis", tags=["AI Analysis"])

DEFAULT_ACTOR = "API User"


# ========== Example payloads for Swagger ==========

ENQUEUE_RESPONSE_EXAMPLE = {
    "status": "queued",
    "ticket_id": "123e4567-e89b-12d3-a456-426614174000",
    "task_id": "9b2f4c1e-5a7d-4e3b-8f21-0c6d5e4a3b21",
    "task_status": "queued",
    "batch_id": "9b2f4c1e-5a7d-4e3b-8f21-0c6d5e4a3b21",
    "correlation_id": "5d41402abc4b2a76b9719d911017c592"
}

PROGRESS_RESPONSE_EXAMPLE = {
    "batch_id": "9b2f4c1e-5a7d-4e3b-8f21-0c6d5e4a3b21",
    "status": "in_progress",
    "total": 4,
    "completed": 2,
    "failed": 1,
    "processing": 1,
    "dismissed": 0,
    "processed": 3,
    "percentage": 75
}


# ========== Dependencies ==========

def get_orchestrator(request: Request) -> AnalysisOrchestrator:
    """Get the orchestrator created at startup."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise ConfigurationException("Analysis orchestrator not initialized")
    return orchestrator


def get_actor(x_actor: str = Header(default=DEFAULT_ACTOR, alias="X-Actor")) -> str:
    """Name of the user performing the request, recorded in activities."""
    return x_actor.strip() or DEFAULT_ACTOR


def _enqueue_response(result) -> JSONResponse:
    body = EnqueueResponse.from_domain(result)
    code = status.HTTP_409_CONFLICT if isinstance(result, AlreadyInProgress) else status.HTTP_202_ACCEPTED
    return JSONResponse(status_code=code, content=body.model_dump(mode="json"))


# ========== Enqueue ==========

@router.post(
    "/tickets/{ticket_id}/analyze",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue AI analysis of a ticket",
    description="""
    Queue a background AI analysis for one ticket.

    Returns **409** with the active task when the ticket already has a
    queued, processing or retrying analysis.
    """,
    responses={
        202: {"content": {"application/json": {"example": ENQUEUE_RESPONSE_EXAMPLE}}},
        404: {"description": "Ticket not found"},
        409: {"description": "Analysis already in progress"}
    }
)
async def analyze_ticket(
    ticket_id: str,
    actor: str = Depends(get_actor),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    result = await orchestrator.enqueue(ticket_id, actor, TaskKind.ANALYSIS)
    return _enqueue_response(result)


@router.post(
    "/tickets/{ticket_id}/reply",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a suggested reply for a ticket",
    responses={
        404: {"description": "Ticket not found"},
        409: {"description": "AI work already in progress"}
    }
)
async def generate_reply(
    ticket_id: str,
    actor: str = Depends(get_actor),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    result = await orchestrator.enqueue(ticket_id, actor, TaskKind.RESPONSE_GENERATION)
    return _enqueue_response(result)


@router.post(
    "/bulk",
    response_model=BulkEnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue AI analysis for many tickets",
    description="""
    Queue analysis for up to 100 tickets as one submission. Tickets with
    active work are reported in `skipped`, unknown tickets in `not_found`.
    """
)
async def bulk_analyze(
    request: BulkAnalyzeRequest,
    actor: str = Depends(get_actor),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    with log_latency(logger, "bulk_enqueue", tickets=len(request.ticket_ids)):
        result = await orchestrator.enqueue_bulk(request.ticket_ids, actor)
    return BulkEnqueueResponse.from_domain(result)


# ========== Progress ==========

@router.get(
    "/tickets/{ticket_id}/progress",
    response_model=ProgressResponse,
    summary="Progress of the latest submission including a ticket",
    responses={200: {"content": {"application/json": {"example": PROGRESS_RESPONSE_EXAMPLE}}}}
)
async def ticket_progress(
    ticket_id: str,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    progress = await orchestrator.progress_for_owner(ticket_id)
    return ProgressResponse.from_domain(progress)


@router.get(
    "/batches/{batch_id}/progress",
    response_model=ProgressResponse,
    summary="Progress of a submission"
)
async def batch_progress(
    batch_id: str,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    progress = await orchestrator.progress(batch_id)
    return ProgressResponse.from_domain(progress)


# ========== Jobs (administration) ==========

@router.get(
    "/jobs",
    response_model=TaskListResponse,
    summary="List background analysis jobs",
    description="""
    Paginated job list, most recently updated first.

    **Filters**: `status`, `kind`, `ticket_id`, `date` (`all`, `today`, `week`, `month`)
    """
)
async def list_jobs(
    status_filter: Optional[TaskStatusStr] = Query(default=None, alias="status"),
    kind: Optional[TaskKindStr] = Query(default=None),
    ticket_id: Optional[str] = Query(default=None),
    date: DateRangeStr = Query(default="all"),
    page: int = Query(default=1, ge=1),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    task_filter = TaskFilter(
        status=status_filter,
        kind=kind,
        owner_id=ticket_id,
        date_range=date
    )
    result = await orchestrator.list_tasks(task_filter, page)
    return TaskListResponse.from_domain(result)


@router.get(
    "/jobs/stats",
    response_model=JobStatisticsResponse,
    summary="Job queue statistics"
)
async def job_stats(orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)):
    stats = await orchestrator.job_statistics()
    return JobStatisticsResponse.from_domain(stats)


@router.post(
    "/jobs/dismiss-failed",
    response_model=DismissFailedResponse,
    summary="Dismiss every failed job"
)
async def dismiss_failed_jobs(
    actor: str = Depends(get_actor),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    count = await orchestrator.dismiss_failed(actor)
    return DismissFailedResponse(dismissed=count, message=f"Dismissed {count} failed jobs")


@router.get(
    "/jobs/{task_id}",
    response_model=TaskDetailResponse,
    summary="Get a job",
    responses={404: {"description": "Job not found"}}
)
async def get_job(
    task_id: str,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    task = await orchestrator.get_task(task_id)
    return TaskDetailResponse.from_domain(task)


@router.get(
    "/jobs/{task_id}/logs",
    response_model=TaskLogsResponse,
    summary="Debug trail of a job",
    responses={404: {"description": "Job not found"}}
)
async def get_job_logs(
    task_id: str,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    logs = await orchestrator.task_logs(task_id)
    return TaskLogsResponse.from_domain(logs)


@router.post(
    "/jobs/{task_id}/retry",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry a failed job",
    responses={
        404: {"description": "Job not found"},
        409: {"description": "Job is not failed"}
    }
)
async def retry_job(
    task_id: str,
    actor: str = Depends(get_actor),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator)
):
    handle = await orchestrator.retry(task_id, actor)
    logger.info("Job retry requested", extra={"task_id": task_id, "actor": actor})
    return EnqueueResponse.from_domain(handle)


# Export router
analysis_router = router
