"""
Analysis Domain Layer
=====================

Domain layer for the ticket AI analysis module.

Contains:
- Entities: AnalysisTask (background task record), TicketSnapshot, AnalysisProjection
- Value Objects: raw response union, normalized results, retry policy, progress
- Domain Services: ResponseNormalizer, AnalysisPromptBuilder

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from src.analysis.domain.entities import (
    AnalysisTask,
    TicketSnapshot,
    AnalysisProjection,
    AnalysisPromptBuilder,
    MAX_CONSOLE_LOGS,
    FINAL_FAILURE_STEP,
)
from src.analysis.domain.value_objects import (
    StructuredJson,
    RawText,
    RawResponse,
    RemoteResponse,
    AnalysisResult,
    NormalizedResult,
    DegradedResult,
    RetryDecision,
    RetryPolicy,
    TaskHandle,
    AlreadyInProgress,
    BulkEnqueueResult,
    BatchProgress,
    TaskFilter,
    TaskPage,
    JobStatistics,
)
from src.analysis.domain.normalizer import (
    ResponseNormalizer,
    repair_json_text,
    extract_retrieval,
)

__all__ = [
    # Entities
    "AnalysisTask",
    "TicketSnapshot",
    "AnalysisProjection",
    "AnalysisPromptBuilder",
    "MAX_CONSOLE_LOGS",
    "FINAL_FAILURE_STEP",
    # Value Objects
    "StructuredJson",
    "RawText",
    "RawResponse",
    "RemoteResponse",
    "AnalysisResult",
    "NormalizedResult",
    "DegradedResult",
    "RetryDecision",
    "RetryPolicy",
    "TaskHandle",
    "AlreadyInProgress",
    "BulkEnqueueResult",
    "BatchProgress",
    "TaskFilter",
    "TaskPage",
    "JobStatistics",
    # Domain Services
    "ResponseNormalizer",
    "repair_json_text",
    "extract_retrieval",
]
