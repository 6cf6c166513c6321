"""
Ticket AI Analysis Service - Main Application
=============================================

Background AI analysis for customer support tickets.

Modules:
- AI Analysis: queue, run, retry and administer AI analysis jobs

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Orchestrator, services and DTOs
- Domain: Task record, normalizer, retry policy
- Infrastructure: Database, LLM client, worker pool
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from src.config import settings
from src.core import ApplicationException

# Infrastructure
from src.infrastructure.database import (
    init_database, close_database, create_tables, get_session_maker
)

# Analysis Module
from src.analysis.application import AnalysisOrchestrator
from src.analysis.domain import RetryPolicy
from src.analysis.infrastructure import (
    AnalysisWorkerPool,
    build_client_factory,
    sqlalchemy_store_provider,
)
from src.analysis.interfaces import analysis_router

# Logging and middleware
from src.shared.infrastructure.logging import setup_logging, get_logger
from src.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler
)

logger = get_logger(__name__)


def build_orchestrator(worker_pool: AnalysisWorkerPool) -> AnalysisOrchestrator:
    """Wire the orchestrator to the database, the agent client and the workers."""
    return AnalysisOrchestrator(
        stores=sqlalchemy_store_provider(get_session_maker()),
        client_factory=build_client_factory(settings),
        dispatcher=worker_pool,
        policy=RetryPolicy.from_settings(settings),
        reply_confidence_threshold=settings.reply_confidence_threshold,
        bulk_max_size=settings.bulk_max_size,
        per_page=settings.jobs_per_page
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database
    3. Create database tables
    4. Start the analysis worker pool
    5. Re-dispatch unfinished tasks

    SHUTDOWN:
    1. Stop the worker pool
    2. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Ticket Analysis Service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()

    # Create tables (for development - use migrations in production)
    logger.info("Creating database tables")
    try:
        await create_tables()
    except Exception as e:
        logger.warning(f"Database not available - running in degraded mode: {e}")

    if settings.mock_llm:
        logger.warning("Mock LLM enabled - no calls to the AI agent will be made")
    elif not settings.do_agent_endpoint or not settings.do_agent_access_key:
        logger.warning("AI agent not configured - analysis jobs will fail until DO_AGENT_* is set")

    worker_pool = AnalysisWorkerPool(concurrency=settings.worker_concurrency)
    orchestrator = build_orchestrator(worker_pool)
    await worker_pool.start(orchestrator.perform, orchestrator.finalize_failure)

    # Dispatch state is in memory; pick up work a previous process left behind
    try:
        await orchestrator.recover_pending()
    except Exception as e:
        logger.warning(f"Could not recover unfinished analysis tasks: {e}")

    # Store services in app state for dependency injection
    app.state.settings = settings
    app.state.worker_pool = worker_pool
    app.state.orchestrator = orchestrator

    logger.info("Ticket Analysis Service started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Ticket Analysis Service")

    await worker_pool.stop()
    await close_database()

    logger.info("Ticket Analysis Service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Ticket AI Analysis API",
    description="""
    ## Background AI Analysis for Support Tickets

    Queue AI analysis of tickets, poll progress and administer the job queue.

    ---

    ### 🤖 Analysis Module

    **Endpoints:**
    - `POST /analysis/tickets/{id}/analyze` - Queue analysis of a ticket
    - `POST /analysis/tickets/{id}/reply` - Queue a suggested reply
    - `POST /analysis/bulk` - Queue analysis for up to 100 tickets
    - `GET /analysis/tickets/{id}/progress` - Poll progress for a ticket
    - `GET /analysis/batches/{batch_id}/progress` - Poll progress of a submission
    - `GET /analysis/jobs` - List jobs
    - `GET /analysis/jobs/stats` - Job statistics
    - `GET /analysis/jobs/{id}` / `GET /analysis/jobs/{id}/logs` - Job details and debug trail
    - `POST /analysis/jobs/{id}/retry` - Retry a failed job
    - `POST /analysis/jobs/dismiss-failed` - Dismiss all failed jobs

    **Retry policy:** rate limits up to 3 attempts, API errors up to 2,
    unknown errors up to 3, backoff 2s, 4s, 8s. Configuration errors and
    empty answers fail immediately.

    Send the acting user's name in the `X-Actor` header.
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware (from shared) ===
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(analysis_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "worker_pool": "running (4 workers, 0 pending)",
                        "llm_client": "configured"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Returns service health status including worker pool state and
    whether the AI agent is configured.
    """
    worker_pool = getattr(request.app.state, "worker_pool", None)
    if worker_pool is not None and worker_pool.is_running:
        pool_check = f"running ({worker_pool.concurrency} workers, {worker_pool.pending} pending)"
    else:
        pool_check = "stopped"

    if settings.mock_llm:
        llm_check = "mock"
    elif settings.do_agent_endpoint and settings.do_agent_access_key:
        llm_check = "configured"
    else:
        llm_check = "not_configured"

    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": {
            "worker_pool": pool_check,
            "llm_client": llm_check
        }
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Ticket AI Analysis Service",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "analysis": {
                "prefix": "/analysis",
                "endpoints": [
                    "POST /analysis/tickets/{id}/analyze - Queue analysis",
                    "POST /analysis/tickets/{id}/reply - Queue reply generation",
                    "POST /analysis/bulk - Queue bulk analysis",
                    "GET /analysis/jobs - List jobs"
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
