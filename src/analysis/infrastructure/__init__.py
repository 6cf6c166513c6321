"""
Analysis Infrastructure Layer
=============================

Infrastructure implementations for background AI analysis:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer and unit-of-work provider
- External: Agent client adapter and worker pool
"""

from src.analysis.infrastructure.models import (
    AnalysisTaskModel,
    TicketModel,
    TicketActivityModel,
    AnalysisProjectionModel,
)
from src.analysis.infrastructure.repositories import (
    SQLAlchemyAnalysisTaskRepository,
    SQLAlchemyOwnerDirectory,
    sqlalchemy_store_provider,
)
from src.analysis.infrastructure.external import (
    RemoteAnalysisClient,
    AnalysisWorkerPool,
    build_client_factory,
    AGENT_EXTRA_BODY,
)

__all__ = [
    "AnalysisTaskModel",
    "TicketModel",
    "TicketActivityModel",
    "AnalysisProjectionModel",
    "SQLAlchemyAnalysisTaskRepository",
    "SQLAlchemyOwnerDirectory",
    "sqlalchemy_store_provider",
    "RemoteAnalysisClient",
    "AnalysisWorkerPool",
    "build_client_factory",
    "AGENT_EXTRA_BODY",
]
