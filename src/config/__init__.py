"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="ticket-analysis-service", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/tickets",
        description="Database connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== AI Agent Endpoint ==========
    do_agent_endpoint: Optional[str] = Field(
        default=None,
        description="Base URL of the OpenAI-compatible agent endpoint"
    )
    do_agent_access_key: Optional[str] = Field(
        default=None,
        description="Access key for the agent endpoint"
    )
    agent_model: str = Field(
        default="agent",
        description="Model name sent to the agent endpoint"
    )
    agent_timeout_seconds: float = Field(
        default=60.0,
        description="HTTP timeout for a single agent call",
        ge=1.0,
        le=600.0
    )
    mock_llm: bool = Field(
        default=False,
        description="Use mock LLM responses for testing (no API calls)"
    )

    # ========== LLM Settings ==========
    analysis_max_tokens: int = Field(default=1500, description="Max tokens for ticket analysis", ge=1, le=8000)
    analysis_temperature: float = Field(default=0.3, description="Temperature for ticket analysis", ge=0.0, le=1.0)
    reply_max_tokens: int = Field(default=800, description="Max tokens for reply generation", ge=1, le=8000)
    reply_temperature: float = Field(default=0.4, description="Temperature for reply generation", ge=0.0, le=1.0)
    reply_confidence_threshold: float = Field(
        default=0.7,
        description="Minimum analysis confidence before a reply suggestion is generated",
        ge=0.0,
        le=1.0
    )

    # ========== Background Jobs ==========
    worker_concurrency: int = Field(default=4, description="Number of analysis workers", ge=1, le=64)
    default_max_retries: int = Field(default=3, description="Attempt budget for unclassified errors", ge=1)
    rate_limit_max_attempts: int = Field(default=3, description="Attempt budget for rate-limited calls", ge=1)
    api_error_max_attempts: int = Field(default=2, description="Attempt budget for remote API errors", ge=1)
    retry_backoff_base_seconds: float = Field(default=2.0, description="Delay before the first retry", gt=0)
    retry_backoff_multiplier: float = Field(default=2.0, description="Growth factor between retries", ge=1.0)
    bulk_max_size: int = Field(default=100, description="Maximum tickets per bulk submission", ge=1)
    jobs_per_page: int = Field(default=20, description="Page size for job listings", ge=1, le=200)

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class TaskStatus(str):
    """Background task lifecycle statuses."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    DISMISSED = "dismissed"


class TaskKind(str):
    """Kinds of background AI work."""
    ANALYSIS = "analysis"
    RESPONSE_GENERATION = "response_generation"
    BULK_ANALYSIS = "bulk_analysis"


class StepStatus(str):
    """Processing step states."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


class LogLevel(str):
    """Console log levels stored on a task."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class Sentiment(str):
    """Customer sentiment detected by the analysis."""
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    VERY_NEGATIVE = "very_negative"


class PrioritySuggestion(str):
    """Ticket priority suggested by the analysis."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ActivityAction(str):
    """Audit trail actions appended to a ticket."""
    QUEUED = "ai_queued"
    BULK_QUEUED = "ai_analysis_queued_bulk"
    ANALYZED = "ai_analyzed"
    REPLY_GENERATED = "ai_response_generated"
    FAILED = "ai_analysis_failed"
    RETRIED = "ai_analysis_retried"
    DISMISSED = "ai_analysis_dismissed"


SYSTEM_ACTOR = "AI System"


# ========== Lists for validation ==========

VALID_TASK_STATUSES = [
    TaskStatus.QUEUED, TaskStatus.PROCESSING, TaskStatus.COMPLETED,
    TaskStatus.FAILED, TaskStatus.RETRYING, TaskStatus.DISMISSED
]
ACTIVE_TASK_STATUSES = [TaskStatus.QUEUED, TaskStatus.PROCESSING, TaskStatus.RETRYING]
VALID_TASK_KINDS = [
    TaskKind.ANALYSIS, TaskKind.RESPONSE_GENERATION, TaskKind.BULK_ANALYSIS
]
VALID_SENTIMENTS = [
    Sentiment.POSITIVE, Sentiment.NEUTRAL,
    Sentiment.NEGATIVE, Sentiment.VERY_NEGATIVE
]
VALID_PRIORITY_SUGGESTIONS = [
    PrioritySuggestion.LOW, PrioritySuggestion.MEDIUM,
    PrioritySuggestion.HIGH, PrioritySuggestion.URGENT
]
