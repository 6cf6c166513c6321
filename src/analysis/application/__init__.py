"""
Analysis Application Layer
==========================

Application layer for the ticket AI analysis module.

Contains:
- Services: Business logic orchestration
- DTOs: Data transfer objects for API serialization
"""

from src.analysis.application.dto import (
    BulkAnalyzeRequest,
    EnqueueResponse,
    BulkEnqueueResponse,
    ProgressResponse,
    TaskSummaryResponse,
    TaskDetailResponse,
    TaskListResponse,
    TaskLogsResponse,
    JobStatisticsResponse,
    DismissFailedResponse,
)
from src.analysis.application.services import (
    AnalysisOrchestrator,
    TicketAnalysisService,
    TaskTracker,
    AnalysisOutcome,
    AnalysisStores,
    StoreProvider,
    ClientFactory,
    ITaskRepository,
    IOwnerDirectory,
    IRemoteAnalysisClient,
    IJobDispatcher,
)

__all__ = [
    # DTOs
    "BulkAnalyzeRequest",
    "EnqueueResponse",
    "BulkEnqueueResponse",
    "ProgressResponse",
    "TaskSummaryResponse",
    "TaskDetailResponse",
    "TaskListResponse",
    "TaskLogsResponse",
    "JobStatisticsResponse",
    "DismissFailedResponse",
    # Services
    "AnalysisOrchestrator",
    "TicketAnalysisService",
    "TaskTracker",
    "AnalysisOutcome",
    "AnalysisStores",
    "StoreProvider",
    "ClientFactory",
    # Interfaces
    "ITaskRepository",
    "IOwnerDirectory",
    "IRemoteAnalysisClient",
    "IJobDispatcher",
]
