"""
Analysis Infrastructure Models
==============================

SQLAlchemy ORM models for the analysis module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.

The ticket tables are a minimal stand-in for the ticketing system that
owns tickets: content for prompts, an activity trail and the cached
analysis projection.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, String, DateTime, Boolean, Integer, Float, Text, Uuid, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from src.infrastructure.database import Base
from src.config import TaskKind, TaskStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisTaskModel(Base):
    """
    Database model for AnalysisTask entity.

    Maps to the 'analysis_tasks' table.
    """
    __tablename__ = "analysis_tasks"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Owning ticket (not owned by this module)
    owner_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    batch_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    kind: Mapped[str] = mapped_column(String(50), nullable=False, default=TaskKind.ANALYSIS)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=TaskStatus.QUEUED)

    # Remote backend
    endpoint: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Dispatcher job id; unique when present, many NULLs allowed
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)

    # Request/response bodies and retrieval provenance
    request_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    response_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    retrieval_items: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)

    # Debug trail
    processing_steps: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    console_logs: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)

    # Timings (ms)
    total_duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    remote_call_duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    parse_duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reply_duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Result summary
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    suggested_priority: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    sentiment_detected: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    tags_generated: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    has_suggested_response: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Errors
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_class: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_backtrace: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_analysis_tasks_owner_created", "owner_id", "created_at"),
        Index("ix_analysis_tasks_status_kind", "status", "kind"),
        Index("ix_analysis_tasks_updated", "updated_at"),
    )


class TicketModel(Base):
    """
    Database model for the ticket fields the analysis needs.

    Maps to the 'tickets' table.
    """
    __tablename__ = "tickets"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    ticket_number: Mapped[Optional[str]] = mapped_column(String(50), unique=True, nullable=True)

    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_mood: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    product_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    issue_category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class TicketActivityModel(Base):
    """
    Audit trail entry of a ticket.

    Maps to the 'ticket_activities' table.
    """
    __tablename__ = "ticket_activities"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    ticket_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    performed_by: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    performed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AnalysisProjectionModel(Base):
    """
    Latest analysis state of a ticket, one row per ticket.

    Maps to the 'ticket_analysis_projections' table.
    """
    __tablename__ = "ticket_analysis_projections"

    ticket_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tickets.id", ondelete="CASCADE"),
        primary_key=True
    )
    task_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    analysis_status: Mapped[str] = mapped_column(String(50), nullable=False)
    status_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    sentiment: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    priority_suggestion: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    tags: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    suggested_actions: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    suggested_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_files: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
