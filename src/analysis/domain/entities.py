"""
Analysis Domain Entities
========================

Domain entities for the ticket AI analysis module.

Contains the background task record that tracks one asynchronous analysis
attempt from enqueue to a terminal state, the snapshot of the ticket it is
performed on behalf of, and the read-side projection of the latest result.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Any, Dict
from uuid import uuid4

from src.config import TaskStatus, TaskKind, StepStatus, LogLevel


MAX_CONSOLE_LOGS = 100
MAX_BACKTRACE_FRAMES = 20
HIGH_CONFIDENCE_THRESHOLD = 0.85
FINAL_FAILURE_STEP = "final_failure"

# Summary fields accepted by mark_completed
SUMMARY_FIELDS = (
    "total_duration_ms",
    "remote_call_duration_ms",
    "parse_duration_ms",
    "reply_duration_ms",
    "confidence_score",
    "suggested_priority",
    "sentiment_detected",
    "tags_generated",
    "has_suggested_response",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AnalysisTask:
    """
    Background task record for one AI analysis attempt.

    Holds the full lifecycle of the work: request sent, response received,
    parsed result summary, timings, errors and the append-only debug trail
    (processing steps and console logs).

    Mutation methods never refuse a transition. Every call is simply
    recorded, so e.g. ``mark_completed`` on a dismissed task yields a
    completed task.
    """

    # Identity
    id: str
    owner_id: str
    kind: str = TaskKind.ANALYSIS
    status: str = TaskStatus.QUEUED
    batch_id: Optional[str] = None

    # Remote backend
    endpoint: Optional[str] = None
    model: Optional[str] = None
    correlation_id: Optional[str] = None

    # Verbatim request/response bodies keyed by call purpose
    request_payload: Dict[str, Any] = field(default_factory=dict)
    response_payload: Dict[str, Any] = field(default_factory=dict)
    retrieval_items: List[Dict[str, Any]] = field(default_factory=list)

    # Debug trail
    processing_steps: List[Dict[str, Any]] = field(default_factory=list)
    console_logs: List[Dict[str, Any]] = field(default_factory=list)

    # Timings (milliseconds)
    total_duration_ms: Optional[int] = None
    remote_call_duration_ms: Optional[int] = None
    parse_duration_ms: Optional[int] = None
    reply_duration_ms: Optional[int] = None

    # Result summary
    confidence_score: Optional[float] = None
    suggested_priority: Optional[str] = None
    sentiment_detected: Optional[str] = None
    tags_generated: List[str] = field(default_factory=list)
    has_suggested_response: bool = False

    # Errors
    error_message: Optional[str] = None
    error_class: Optional[str] = None
    error_backtrace: List[str] = field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 3

    # Timestamps
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        owner_id: str,
        kind: str = TaskKind.ANALYSIS,
        max_retries: int = 3,
        batch_id: Optional[str] = None,
        correlation_id: Optional[str] = None
    ) -> "AnalysisTask":
        """Create a new queued task for a ticket."""
        task_id = str(uuid4())
        return cls(
            id=task_id,
            owner_id=owner_id,
            kind=kind,
            status=TaskStatus.QUEUED,
            batch_id=batch_id or task_id,
            correlation_id=correlation_id,
            max_retries=max_retries
        )

    # ========== Status ==========

    @property
    def in_progress(self) -> bool:
        return self.status in (TaskStatus.QUEUED, TaskStatus.PROCESSING, TaskStatus.RETRYING)

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.DISMISSED)

    @property
    def can_retry(self) -> bool:
        """Only failed tasks can be re-enqueued by an operator."""
        return self.status == TaskStatus.FAILED

    @property
    def high_confidence(self) -> bool:
        return self.confidence_score is not None and self.confidence_score >= HIGH_CONFIDENCE_THRESHOLD

    # ========== Transitions ==========

    def mark_processing(self) -> None:
        """Record that a worker picked the task up."""
        self.status = TaskStatus.PROCESSING
        if self.started_at is None:
            self.started_at = _utcnow()
        self._touch()

    def mark_completed(self, summary: Optional[Dict[str, Any]] = None) -> None:
        """
        Set status to completed and merge known summary fields.

        Unknown keys are ignored. A confidence score is clamped into
        [0.0, 1.0] when stored on the record.
        """
        self.status = TaskStatus.COMPLETED
        for key, value in (summary or {}).items():
            if key not in SUMMARY_FIELDS:
                continue
            if key == "confidence_score" and value is not None:
                value = min(1.0, max(0.0, float(value)))
            if key == "tags_generated":
                value = list(value or [])
            setattr(self, key, value)
        self.completed_at = _utcnow()
        self._touch()

    def mark_failed(
        self,
        error: BaseException,
        retry_count: int = 0,
        max_retries: Optional[int] = None
    ) -> None:
        """
        Record a failed attempt.

        Status becomes ``retrying`` while ``retry_count < max_retries`` and
        ``failed`` otherwise. An explicit ``max_retries`` replaces the stored
        attempt budget.
        """
        if max_retries is not None:
            self.max_retries = max_retries
        self.retry_count = retry_count
        self.status = TaskStatus.RETRYING if retry_count < self.max_retries else TaskStatus.FAILED
        self.error_message = str(error) or type(error).__name__
        self.error_class = type(error).__name__
        frames = traceback.format_tb(error.__traceback__) if error.__traceback__ else []
        self.error_backtrace = [frame.rstrip() for frame in frames[-MAX_BACKTRACE_FRAMES:]]
        if self.status == TaskStatus.FAILED:
            self.completed_at = _utcnow()
        self._touch()

    def mark_dismissed(self) -> None:
        self.status = TaskStatus.DISMISSED
        self._touch()

    def reset_for_retry(self, correlation_id: str, max_retries: int) -> None:
        """Put a failed task back in the queue with a clean error state."""
        self.status = TaskStatus.QUEUED
        self.correlation_id = correlation_id
        self.retry_count = 0
        self.max_retries = max_retries
        self.error_message = None
        self.error_class = None
        self.error_backtrace = []
        self.completed_at = None
        self.processing_steps = [
            step for step in self.processing_steps
            if step.get("name") != FINAL_FAILURE_STEP
        ]
        self._touch()

    # ========== Debug trail ==========

    def append_step(
        self,
        name: str,
        description: str,
        status: str = StepStatus.IN_PROGRESS,
        duration_ms: Optional[int] = None
    ) -> Dict[str, Any]:
        """Add a processing step, or update the existing step with that name."""
        entry = {
            "name": name,
            "description": description,
            "status": str(status),
            "timestamp": _utcnow().isoformat(),
            "duration_ms": duration_ms,
        }
        for index, step in enumerate(self.processing_steps):
            if step.get("name") == name:
                self.processing_steps[index] = {**step, **entry}
                break
        else:
            self.processing_steps.append(entry)
        self._touch()
        return entry

    def append_log(self, message: str, level: str = LogLevel.DEBUG) -> None:
        """Append a console log line, keeping only the most recent entries."""
        self.console_logs.append({
            "timestamp": _utcnow().isoformat(),
            "level": level,
            "message": message,
        })
        if len(self.console_logs) > MAX_CONSOLE_LOGS:
            self.console_logs = self.console_logs[-MAX_CONSOLE_LOGS:]
        self._touch()

    def latest_step(self) -> Optional[Dict[str, Any]]:
        return self.processing_steps[-1] if self.processing_steps else None

    def step_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        for step in self.processing_steps:
            if step.get("name") == name:
                return step
        return None

    # ========== Derived data ==========

    @property
    def source_files(self) -> List[str]:
        """Unique retrieval filenames in first-seen order."""
        files: List[str] = []
        for item in self.retrieval_items:
            filename = item.get("filename") if isinstance(item, dict) else None
            if filename and filename not in files:
                files.append(filename)
        return files

    @property
    def retrieval_sources_summary(self) -> str:
        sources = self.source_files
        if not sources:
            return "No sources"
        if len(sources) <= 3:
            return ", ".join(sources)
        return f"{', '.join(sources[:2])} and {len(sources) - 2} more"

    @property
    def error_summary(self) -> Optional[str]:
        if self.status != TaskStatus.FAILED:
            return None
        message = self.error_message or ""
        if len(message) > 100:
            message = message[:97] + "..."
        return f"{self.error_class}: {message}"

    @property
    def total_duration_seconds(self) -> Optional[float]:
        if self.total_duration_ms is None:
            return None
        return round(self.total_duration_ms / 1000.0, 2)

    @property
    def remote_call_duration_seconds(self) -> Optional[float]:
        if self.remote_call_duration_ms is None:
            return None
        return round(self.remote_call_duration_ms / 1000.0, 2)

    def _touch(self) -> None:
        self.updated_at = _utcnow()


@dataclass
class TicketSnapshot:
    """
    Read-only view of the ticket an analysis is performed for.

    The ticket itself is owned by the ticketing system; the analysis module
    only needs its content to build prompts.
    """
    id: str
    subject: str
    description: str
    priority: Optional[str] = None
    customer_name: Optional[str] = None
    customer_mood: Optional[str] = None
    product_model: Optional[str] = None
    issue_category: Optional[str] = None
    ticket_number: Optional[str] = None

    @property
    def display_ref(self) -> str:
        return self.ticket_number or self.id


@dataclass
class AnalysisProjection:
    """
    Latest analysis state cached next to a ticket for display.

    Rebuilt from the task record after every status change and never read
    back by the pipeline itself. Result fields left as ``None`` keep the
    value already stored for the ticket.
    """
    owner_id: str
    task_id: str
    analysis_status: str
    status_updated_at: datetime = field(default_factory=_utcnow)
    error_message: Optional[str] = None

    # Result fields
    summary: Optional[str] = None
    confidence_score: Optional[float] = None
    sentiment: Optional[str] = None
    priority_suggestion: Optional[str] = None
    tags: Optional[List[str]] = None
    suggested_actions: Optional[List[str]] = None
    suggested_response: Optional[str] = None
    source_files: Optional[List[str]] = None

    RESULT_FIELDS = (
        "summary", "confidence_score", "sentiment", "priority_suggestion",
        "tags", "suggested_actions", "suggested_response", "source_files",
    )

    @classmethod
    def from_task(cls, task: AnalysisTask, result: Any = None) -> "AnalysisProjection":
        """Build a projection from a task and, when available, its normalized result."""
        projection = cls(
            owner_id=task.owner_id,
            task_id=task.id,
            analysis_status=task.status,
            error_message=task.error_message if task.status != TaskStatus.COMPLETED else None
        )
        if result is not None:
            projection.summary = result.summary
            projection.confidence_score = task.confidence_score
            projection.sentiment = result.sentiment
            projection.priority_suggestion = result.priority_suggestion
            projection.tags = list(result.tags)
            projection.suggested_actions = list(result.suggested_actions)
            projection.suggested_response = result.suggested_response
            projection.source_files = list(result.source_files)
        return projection

    def result_values(self) -> Dict[str, Any]:
        """Result fields that carry a value."""
        values = {}
        for name in self.RESULT_FIELDS:
            value = getattr(self, name)
            if value is not None:
                values[name] = value
        return values


class AnalysisPromptBuilder:
    """
    Builds prompts for ticket analysis and reply generation.

    Following DRY principle - all prompt logic in one place. The agent
    handles its system prompt internally, so only user messages are built.
    """

    CATEGORY_GUIDELINES = """**PRIORITY LEVELS** (choose one):
- "low": General questions, feature requests, non-urgent maintenance
- "medium": Product issues affecting usability but not blocking
- "high": Critical functionality problems, frustrated customers
- "urgent": Complete product failure, angry customers, business impact

**SENTIMENT CATEGORIES** (choose one):
- "positive": Happy, satisfied, complimentary customers
- "neutral": Informational, matter-of-fact inquiries
- "negative": Frustrated, concerned, disappointed customers
- "very_negative": Angry, furious, threatening to cancel/return

**ISSUE TAGS** (choose 2-4 short kebab-case tags)

**CONFIDENCE SCORE GUIDANCE**:
- 0.9-1.0: Clear technical issue with obvious solution
- 0.7-0.9: Identifiable problem with likely solution
- 0.5-0.7: Complex issue requiring investigation
- 0.3-0.5: Unclear problem or missing information
- 0.0-0.3: Cannot determine issue or solution"""

    @classmethod
    def build_analysis_prompt(cls, ticket: TicketSnapshot) -> str:
        """Build the analysis prompt asking for a JSON answer."""
        mood = ticket.customer_mood or "neutral"
        mood_phrase = "concern" if mood == "neutral" else f"{mood} mood"
        return f"""Analyze this support ticket and return your analysis in JSON format:

TICKET DETAILS:
Subject: {ticket.subject}
Description: {ticket.description}
Product Model: {ticket.product_model or 'Unknown'}
Issue Category: {ticket.issue_category or 'Unknown'}
Priority: {ticket.priority or 'Unknown'}
Customer: {ticket.customer_name or 'Customer'}
Customer Mood: {mood}

**CATEGORY GUIDELINES:**
{cls.CATEGORY_GUIDELINES}

Return ONLY valid JSON in this exact format:
{{
  "priority_suggestion": "low|medium|high|urgent",
  "tags": ["tag1", "tag2", "tag3"],
  "sentiment": "positive|neutral|negative|very_negative",
  "summary": "Brief analysis summary",
  "suggested_actions": ["action1", "action2"],
  "confidence_score": 0.85,
  "suggested_response": "Empathetic customer response acknowledging their {mood_phrase} and providing clear next steps",
  "source_files": ["filename1.md", "filename2.md"]
}}"""

    @classmethod
    def build_reply_prompt(
        cls,
        ticket: TicketSnapshot,
        analysis_summary: Optional[str] = None,
        additional_context: Optional[str] = None
    ) -> str:
        """Build the prompt for a natural-language reply suggestion."""
        sections = [
            "Generate a helpful, empathetic response to this customer support ticket:",
            f"CUSTOMER ISSUE:\n{ticket.description}",
            f"CUSTOMER MOOD: {ticket.customer_mood or 'neutral'}",
        ]
        if analysis_summary:
            sections.append(f"AI ANALYSIS:\n{analysis_summary}")
        if additional_context:
            sections.append(f"ADDITIONAL CONTEXT:\n{additional_context}")
        sections.append("""Guidelines:
- Be empathetic and acknowledge the customer's frustration
- Provide clear, actionable steps
- Match the tone to the customer's mood (more patient if frustrated)
- Offer escalation if the issue is complex

Generate a professional customer service response:""")
        return "\n\n".join(sections)
