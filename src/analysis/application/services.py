"""
Analysis Application Services
=============================

Application services for background AI ticket analysis.

Orchestrates business logic between domain entities, repositories, the
remote analysis client and the job dispatcher:

- TaskTracker: persists step/log/request/response updates on a task record
- TicketAnalysisService: one analysis (or reply) run against the agent
- AnalysisOrchestrator: enqueue, execute, retry policy and admin operations
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional, Union
from uuid import uuid4

from src.analysis.domain import (
    AnalysisTask,
    TicketSnapshot,
    AnalysisProjection,
    AnalysisPromptBuilder,
    AnalysisResult,
    RemoteResponse,
    ResponseNormalizer,
    RetryPolicy,
    TaskHandle,
    AlreadyInProgress,
    BulkEnqueueResult,
    BatchProgress,
    TaskFilter,
    TaskPage,
    JobStatistics,
    FINAL_FAILURE_STEP,
    extract_retrieval,
)
from src.config import (
    TaskStatus,
    TaskKind,
    StepStatus,
    LogLevel,
    ActivityAction,
    SYSTEM_ACTOR,
    ACTIVE_TASK_STATUSES,
    VALID_TASK_KINDS,
)
from src.core import (
    PermanentAnalysisError,
    ResourceNotFoundException,
    InvalidTaskStateException,
    ValidationException,
)
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Repository Interfaces ==========

class ITaskRepository(ABC):
    """Interface for task record storage."""

    @abstractmethod
    async def get_by_id(self, task_id: str) -> Optional[AnalysisTask]:
        """Get a task by ID."""

    @abstractmethod
    async def add(self, task: AnalysisTask) -> AnalysisTask:
        """Store a new task."""

    @abstractmethod
    async def save(self, task: AnalysisTask) -> None:
        """Write all fields of an existing task."""

    @abstractmethod
    async def find_active_for_owner(self, owner_id: str) -> Optional[AnalysisTask]:
        """Get the most recent queued/processing/retrying task of a ticket."""

    @abstractmethod
    async def latest_for_owner(self, owner_id: str) -> Optional[AnalysisTask]:
        """Get the most recently created task of a ticket."""

    @abstractmethod
    async def list(self, task_filter: TaskFilter, page: int, per_page: int) -> TaskPage:
        """List tasks, most recently updated first."""

    @abstractmethod
    async def list_by_status(self, status: str) -> List[AnalysisTask]:
        """Get all tasks in a status."""

    @abstractmethod
    async def statuses_for_batch(self, batch_id: str) -> List[str]:
        """Get the current status of every task of a submission."""

    @abstractmethod
    async def statistics(self, now: datetime) -> JobStatistics:
        """Compute dashboard statistics."""


class IOwnerDirectory(ABC):
    """Interface to the ticketing system that owns analysed tickets."""

    @abstractmethod
    async def find(self, owner_id: str) -> Optional[TicketSnapshot]:
        """Get a ticket, or None when it does not exist."""

    @abstractmethod
    async def append_activity(
        self,
        owner_id: str,
        actor: str,
        action: str,
        description: str,
        performed_at: datetime
    ) -> None:
        """Append an entry to the ticket's audit trail."""

    @abstractmethod
    async def update_projection(self, projection: AnalysisProjection) -> None:
        """Store the latest analysis state for display next to the ticket."""


class IRemoteAnalysisClient(ABC):
    """Interface for the remote text-generation endpoint."""

    endpoint_name: str = "agent"
    model_name: Optional[str] = None

    @abstractmethod
    async def analyze(
        self,
        prompt: str,
        tracker: Optional["TaskTracker"] = None,
        options: Optional[Dict[str, Any]] = None
    ) -> RemoteResponse:
        """Send one analysis request."""

    @abstractmethod
    async def generate_reply(
        self,
        prompt: str,
        tracker: Optional["TaskTracker"] = None,
        options: Optional[Dict[str, Any]] = None
    ) -> RemoteResponse:
        """Send one reply-generation request."""


class IJobDispatcher(ABC):
    """Interface for handing task executions to workers."""

    @abstractmethod
    async def dispatch(self, task_id: str, delay_seconds: float = 0.0) -> None:
        """Run ``perform(task_id)`` on a worker, after an optional delay."""


@dataclass
class AnalysisStores:
    """Repositories sharing one unit of work."""
    tasks: ITaskRepository
    owners: IOwnerDirectory
    commit: Callable[[], Any]
    rollback: Callable[[], Any]


StoreProvider = Callable[[], AsyncContextManager[AnalysisStores]]
ClientFactory = Callable[[], IRemoteAnalysisClient]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


# ========== Task Tracker ==========

_LOG_LEVELS = {
    LogLevel.DEBUG: logger.debug,
    LogLevel.INFO: logger.info,
    LogLevel.WARN: logger.warning,
    LogLevel.ERROR: logger.error,
}


class TaskTracker:
    """
    Persists the debug trail of one running task.

    Every step, log line and request/response record is written to the
    task and committed right away so polling clients see live progress.
    Log lines also go to the application logger.
    """

    def __init__(self, task: AnalysisTask, stores: AnalysisStores):
        self.task = task
        self._stores = stores

    async def save(self) -> None:
        await self._stores.tasks.save(self.task)
        await self._stores.commit()

    async def step(
        self,
        name: str,
        description: str,
        status: str = StepStatus.IN_PROGRESS,
        duration_ms: Optional[int] = None
    ) -> None:
        self.task.append_step(name, description, status, duration_ms)
        suffix = f" ({duration_ms}ms)" if duration_ms is not None else ""
        logger.info(
            f"{name}: {description}{suffix}",
            extra={"task_id": self.task.id, "step": name, "step_status": str(status)}
        )
        await self.save()

    async def log(self, message: str, level: str = LogLevel.DEBUG) -> None:
        self.task.append_log(message, level)
        log = _LOG_LEVELS.get(level, logger.debug)
        log(message, extra={"task_id": self.task.id, "correlation_id": self.task.correlation_id})
        await self.save()

    async def record_request(self, purpose: str, body: Dict[str, Any]) -> None:
        """Store the full outbound request body under ``purpose``."""
        self.task.request_payload = {**self.task.request_payload, purpose: body}
        await self.save()

    async def record_response(
        self,
        purpose: str,
        body: Dict[str, Any],
        duration_ms: int,
        retrieval_items: Optional[List[Dict[str, Any]]] = None
    ) -> None:
        """Store the full inbound response body and call duration under ``purpose``."""
        self.task.response_payload = {**self.task.response_payload, purpose: body}
        if purpose == "reply_generation":
            self.task.reply_duration_ms = duration_ms
        else:
            self.task.remote_call_duration_ms = duration_ms
        if retrieval_items:
            self.task.retrieval_items = list(retrieval_items)
        await self.save()


# ========== Analysis Service ==========

@dataclass
class AnalysisOutcome:
    """Result of one run plus its timings."""
    result: AnalysisResult
    remote_call_duration_ms: Optional[int] = None
    parse_duration_ms: Optional[int] = None
    reply_duration_ms: Optional[int] = None

    def summary_fields(self, total_duration_ms: int) -> Dict[str, Any]:
        fields = self.result.to_summary_fields()
        fields.update({
            "total_duration_ms": total_duration_ms,
            "remote_call_duration_ms": self.remote_call_duration_ms,
            "parse_duration_ms": self.parse_duration_ms,
            "reply_duration_ms": self.reply_duration_ms,
        })
        return fields


class TicketAnalysisService:
    """
    Runs one analysis of a ticket against the remote agent.

    Errors of the main remote call propagate to the caller (the
    orchestrator decides about retries). The follow-up reply generation is
    best effort: its failure is logged and the analysis result is kept.
    """

    def __init__(
        self,
        client: IRemoteAnalysisClient,
        normalizer: Optional[ResponseNormalizer] = None,
        reply_confidence_threshold: float = 0.7
    ):
        self._client = client
        self._normalizer = normalizer or ResponseNormalizer()
        self._reply_threshold = reply_confidence_threshold

    async def analyze(self, ticket: TicketSnapshot, tracker: TaskTracker) -> AnalysisOutcome:
        """
        Analyze a ticket and, for confident results, suggest a reply.

        Raises:
            PermanentAnalysisError: the agent answered with no content
            RateLimitedException, RemoteAPIException, UnknownAnalysisError:
                the analysis call failed
        """
        await tracker.step("prompt_creation", "Creating AI analysis prompt")
        prompt = AnalysisPromptBuilder.build_analysis_prompt(ticket)
        await tracker.step(
            "prompt_creation", f"Prompt created ({len(prompt)} characters)", StepStatus.COMPLETED
        )

        await tracker.step("remote_analysis", "Calling AI agent")
        response = await self._client.analyze(prompt, tracker)
        await tracker.step(
            "remote_analysis", "AI response received", StepStatus.COMPLETED, response.duration_ms
        )

        if not response.content.strip():
            raise PermanentAnalysisError("AI analysis returned no results")

        await tracker.step("response_parsing", "Parsing AI response and extracting data")
        parse_start = time.perf_counter()
        retrieval_items = extract_retrieval(response.envelope)
        result = self._normalizer.normalize(response.content, retrieval_items)
        parse_ms = _elapsed_ms(parse_start)
        description = "Analysis parsed successfully"
        if result.is_degraded:
            description = "Response was not valid JSON, using fallback summary"
            await tracker.log("JSON fixes didn't work, using fallback", LogLevel.WARN)
        await tracker.step("response_parsing", description, StepStatus.COMPLETED, parse_ms)

        outcome = AnalysisOutcome(
            result=result,
            remote_call_duration_ms=response.duration_ms,
            parse_duration_ms=parse_ms,
        )

        if result.confidence_score is not None and result.confidence_score >= self._reply_threshold:
            await self._suggest_reply(ticket, tracker, outcome)
        else:
            await tracker.log("Skipping response generation (confidence too low)")

        return outcome

    async def reply(
        self,
        ticket: TicketSnapshot,
        tracker: TaskTracker,
        analysis_summary: Optional[str] = None
    ) -> AnalysisOutcome:
        """Generate a reply suggestion only; errors propagate."""
        await tracker.step("reply_generation", "Generating suggested customer response")
        prompt = AnalysisPromptBuilder.build_reply_prompt(ticket, analysis_summary)
        response = await self._client.generate_reply(prompt, tracker)
        reply = response.content.strip()
        if not reply:
            raise PermanentAnalysisError("Reply generation returned no content")
        await tracker.step(
            "reply_generation", "Customer response generated", StepStatus.COMPLETED, response.duration_ms
        )
        return AnalysisOutcome(
            result=AnalysisResult(suggested_response=reply),
            reply_duration_ms=response.duration_ms,
        )

    async def _suggest_reply(
        self,
        ticket: TicketSnapshot,
        tracker: TaskTracker,
        outcome: AnalysisOutcome
    ) -> None:
        await tracker.step("reply_generation", "Generating suggested customer response")
        prompt = AnalysisPromptBuilder.build_reply_prompt(ticket, outcome.result.summary)
        try:
            response = await self._client.generate_reply(prompt, tracker)
        except Exception as e:
            logger.warning(
                "Response generation failed during analysis",
                extra={"task_id": tracker.task.id, "error": str(e), "error_class": type(e).__name__},
                exc_info=True
            )
            await tracker.step("reply_generation", f"Failed: {e}", StepStatus.ERROR)
            await tracker.log(f"Response generation failed: {e}", LogLevel.WARN)
            return

        reply = response.content.strip()
        outcome.reply_duration_ms = response.duration_ms
        if reply:
            outcome.result = outcome.result.with_reply(reply)
            await tracker.step(
                "reply_generation", "Customer response generated", StepStatus.COMPLETED, response.duration_ms
            )
        else:
            await tracker.step("reply_generation", "No response generated", StepStatus.COMPLETED)


# ========== Orchestrator ==========

EnqueueResult = Union[TaskHandle, AlreadyInProgress]


class AnalysisOrchestrator:
    """
    Owns the task state machine.

    queued -> processing -> completed | retrying | failed, retrying ->
    processing, failed -> dismissed (operator action). The orchestrator is
    the only component deciding between retry and terminal failure, and
    every execution leaves the task record in a terminal or retry-pending
    state.
    """

    def __init__(
        self,
        stores: StoreProvider,
        client_factory: ClientFactory,
        dispatcher: Optional[IJobDispatcher] = None,
        policy: Optional[RetryPolicy] = None,
        normalizer: Optional[ResponseNormalizer] = None,
        reply_confidence_threshold: float = 0.7,
        bulk_max_size: int = 100,
        per_page: int = 20
    ):
        self._stores = stores
        self._client_factory = client_factory
        self.dispatcher = dispatcher
        self._policy = policy or RetryPolicy()
        self._normalizer = normalizer or ResponseNormalizer()
        self._reply_threshold = reply_confidence_threshold
        self._bulk_max_size = bulk_max_size
        self._per_page = per_page

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    # ========== Enqueue ==========

    async def enqueue(
        self,
        owner_id: str,
        actor: str,
        kind: str = TaskKind.ANALYSIS
    ) -> EnqueueResult:
        """
        Queue analysis work for a ticket.

        Returns AlreadyInProgress instead of creating a second task while
        the ticket has a queued, processing or retrying task. The check is
        not atomic with the insert.

        Raises:
            ResourceNotFoundException: the ticket does not exist
            ValidationException: unknown task kind
        """
        if kind not in VALID_TASK_KINDS:
            raise ValidationException(f"Unknown task kind: {kind}")

        async with self._stores() as stores:
            if await stores.owners.find(owner_id) is None:
                raise ResourceNotFoundException("Ticket", owner_id)

            result = await self._create_task(stores, owner_id, actor, kind)
            await stores.commit()
            if isinstance(result, TaskHandle):
                await self._project_handle(stores, result)

        if isinstance(result, TaskHandle):
            await self._dispatch(result.task_id)
        return result

    async def enqueue_bulk(self, owner_ids: List[str], actor: str) -> BulkEnqueueResult:
        """
        Queue analysis for many tickets as one submission.

        Tickets with active work are skipped, unknown tickets are reported.

        Raises:
            ValidationException: too many tickets in one submission
        """
        unique_ids = list(dict.fromkeys(owner_ids))
        if not unique_ids:
            raise ValidationException("No tickets selected for analysis")
        if len(unique_ids) > self._bulk_max_size:
            raise ValidationException(
                f"Too many tickets ({len(unique_ids)}). Bulk operations are limited "
                f"to {self._bulk_max_size} tickets",
                {"requested": len(unique_ids), "limit": self._bulk_max_size}
            )

        batch_id = str(uuid4())
        queued: List[TaskHandle] = []
        skipped: List[AlreadyInProgress] = []
        not_found: List[str] = []

        async with self._stores() as stores:
            for owner_id in unique_ids:
                if await stores.owners.find(owner_id) is None:
                    not_found.append(owner_id)
                    continue
                result = await self._create_task(
                    stores, owner_id, actor, TaskKind.BULK_ANALYSIS, batch_id=batch_id
                )
                if isinstance(result, AlreadyInProgress):
                    skipped.append(result)
                else:
                    queued.append(result)
            await stores.commit()
            for handle in queued:
                await self._project_handle(stores, handle)

        for handle in queued:
            await self._dispatch(handle.task_id)

        logger.info(
            "Bulk analysis queued",
            extra={
                "batch_id": batch_id,
                "queued": len(queued),
                "skipped": len(skipped),
                "not_found": len(not_found),
            }
        )
        return BulkEnqueueResult(batch_id=batch_id, queued=queued, skipped=skipped, not_found=not_found)

    async def _create_task(
        self,
        stores: AnalysisStores,
        owner_id: str,
        actor: str,
        kind: str,
        batch_id: Optional[str] = None
    ) -> EnqueueResult:
        active = await stores.tasks.find_active_for_owner(owner_id)
        if active is not None:
            logger.info(
                "Analysis already in progress",
                extra={"owner_id": owner_id, "task_id": active.id, "status": active.status}
            )
            return AlreadyInProgress(owner_id=owner_id, task_id=active.id, status=active.status)

        task = AnalysisTask.create(
            owner_id=owner_id,
            kind=kind,
            max_retries=self._policy.default_max_attempts,
            batch_id=batch_id,
            correlation_id=uuid4().hex
        )
        task.append_log(f"Queued by {actor}", LogLevel.INFO)
        await stores.tasks.add(task)

        if kind == TaskKind.BULK_ANALYSIS:
            action, description = ActivityAction.BULK_QUEUED, f"Bulk AI analysis queued by {actor}"
        elif kind == TaskKind.RESPONSE_GENERATION:
            action, description = ActivityAction.QUEUED, f"AI response generation queued by {actor}"
        else:
            action, description = ActivityAction.QUEUED, f"AI analysis queued by {actor}"
        await stores.owners.append_activity(owner_id, actor, action, description, _utcnow())

        logger.info(
            "Analysis queued",
            extra={"owner_id": owner_id, "task_id": task.id, "kind": kind, "correlation_id": task.correlation_id}
        )
        return TaskHandle(
            task_id=task.id,
            owner_id=owner_id,
            batch_id=task.batch_id,
            correlation_id=task.correlation_id,
            status=task.status
        )

    # ========== Execution ==========

    async def perform(self, task_id: str) -> None:
        """
        Execute one attempt of a task.

        A missing ticket aborts silently (log only) without touching the
        task. Any exception of the attempt is recorded on the task and
        turned into a retry or a terminal failure.
        """
        async with self._stores() as stores:
            task = await stores.tasks.get_by_id(task_id)
            if task is None:
                logger.error("Analysis task not found", extra={"task_id": task_id})
                return
            if task.status == TaskStatus.DISMISSED:
                logger.info("Skipping dismissed analysis task", extra={"task_id": task_id})
                return
            if task.status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
                logger.warning(
                    "Skipping finished analysis task",
                    extra={"task_id": task_id, "status": task.status}
                )
                return

            ticket = await stores.owners.find(task.owner_id)
            if ticket is None:
                logger.error(
                    "AI analysis skipped: ticket not found",
                    extra={"task_id": task_id, "owner_id": task.owner_id}
                )
                return

            tracker = TaskTracker(task, stores)
            task.mark_processing()
            await tracker.log(f"Starting AI analysis for ticket {ticket.display_ref}", LogLevel.INFO)
            await self._project(stores, task)

            start_time = time.perf_counter()
            try:
                await tracker.step("ai_analysis_start", "Starting AI analysis")
                client = self._client_factory()
                task.endpoint = client.endpoint_name
                task.model = client.model_name
                service = TicketAnalysisService(client, self._normalizer, self._reply_threshold)
                if task.kind == TaskKind.RESPONSE_GENERATION:
                    outcome = await service.reply(ticket, tracker)
                else:
                    outcome = await service.analyze(ticket, tracker)
            except Exception as e:
                await self._handle_failure(stores, tracker, e)
                return

            total_ms = _elapsed_ms(start_time)
            await tracker.step("ai_analysis_start", "AI analysis finished", StepStatus.COMPLETED, total_ms)
            await self._complete(stores, tracker, ticket, outcome, total_ms)

    async def _complete(
        self,
        stores: AnalysisStores,
        tracker: TaskTracker,
        ticket: TicketSnapshot,
        outcome: AnalysisOutcome,
        total_ms: int
    ) -> None:
        task = tracker.task
        task.mark_completed(outcome.summary_fields(total_ms))
        await tracker.log(f"AI analysis completed in {total_ms}ms", LogLevel.INFO)

        if task.kind == TaskKind.RESPONSE_GENERATION:
            action = ActivityAction.REPLY_GENERATED
            description = "AI suggested response generated"
            projection = AnalysisProjection.from_task(task)
            projection.suggested_response = outcome.result.suggested_response
        else:
            confidence = round((task.confidence_score or 0) * 100)
            action = ActivityAction.ANALYZED
            description = f"AI analysis completed with {confidence}% confidence"
            projection = AnalysisProjection.from_task(task, outcome.result)

        await stores.owners.append_activity(task.owner_id, SYSTEM_ACTOR, action, description, _utcnow())
        await stores.commit()
        await self._project(stores, task, projection)

        logger.info(
            "AI analysis completed",
            extra={
                "task_id": task.id,
                "owner_id": ticket.id,
                "confidence_score": task.confidence_score,
                "total_duration_ms": total_ms,
            }
        )

    async def _handle_failure(
        self,
        stores: AnalysisStores,
        tracker: TaskTracker,
        error: Exception
    ) -> None:
        task = tracker.task
        decision = self._policy.classify(error)
        retry_count = task.retry_count + 1
        extra = {
            "task_id": task.id,
            "owner_id": task.owner_id,
            "error_kind": decision.error_kind,
            "retry_count": retry_count,
        }

        if decision.error_kind == "unknown":
            logger.exception(f"Unexpected error in AI analysis: {error}", extra=extra)
        else:
            logger.warning(f"AI analysis attempt failed: {error}", extra=extra)

        task.append_step("ai_analysis_start", f"Failed: {error}", StepStatus.ERROR)
        task.mark_failed(error, retry_count, max_retries=decision.max_attempts)
        level = LogLevel.WARN if task.status == TaskStatus.RETRYING else LogLevel.ERROR
        await tracker.log(f"{decision.error_kind} error: {error}", level)
        await self._project(stores, task)

        if task.status == TaskStatus.RETRYING:
            delay = self._policy.backoff_seconds(retry_count)
            await tracker.log(
                f"Attempt {retry_count}/{task.max_retries} failed, retrying in {delay:g}s", LogLevel.WARN
            )
            await self._dispatch(task.id, delay)
        else:
            await self._finalize_failure(stores, tracker, error)

    async def _finalize_failure(
        self,
        stores: AnalysisStores,
        tracker: TaskTracker,
        error: BaseException
    ) -> None:
        """Record the terminal failure once, however many times it is called."""
        task = tracker.task
        if task.step_by_name(FINAL_FAILURE_STEP) is not None:
            return

        if task.status != TaskStatus.FAILED:
            task.mark_failed(error, max(task.retry_count, task.max_retries))
        await tracker.step(FINAL_FAILURE_STEP, f"All retries exhausted: {error}", StepStatus.ERROR)
        await tracker.log(f"All retries exhausted: {error}", LogLevel.ERROR)

        await stores.owners.append_activity(
            task.owner_id,
            SYSTEM_ACTOR,
            ActivityAction.FAILED,
            f"AI analysis failed after retries: {type(error).__name__}",
            _utcnow()
        )
        await stores.commit()
        await self._project(stores, task)

        logger.error(
            "AI analysis permanently failed",
            extra={"task_id": task.id, "owner_id": task.owner_id, "error_class": type(error).__name__}
        )

    async def finalize_failure(self, task_id: str, error: BaseException) -> None:
        """
        Final failure hook for workers whose execution raised.

        Safe to call after the per-attempt handler already finalized the task.
        """
        async with self._stores() as stores:
            task = await stores.tasks.get_by_id(task_id)
            if task is None or task.status == TaskStatus.DISMISSED:
                return
            if task.status == TaskStatus.RETRYING:
                return
            await self._finalize_failure(stores, TaskTracker(task, stores), error)

    # ========== Queries ==========

    async def get_task(self, task_id: str) -> AnalysisTask:
        async with self._stores() as stores:
            task = await stores.tasks.get_by_id(task_id)
        if task is None:
            raise ResourceNotFoundException("Analysis task", task_id)
        return task

    async def list_tasks(
        self,
        task_filter: Optional[TaskFilter] = None,
        page: int = 1,
        per_page: Optional[int] = None
    ) -> TaskPage:
        if page < 1:
            raise ValidationException("page must be >= 1")
        async with self._stores() as stores:
            return await stores.tasks.list(task_filter or TaskFilter(), page, per_page or self._per_page)

    async def progress(self, batch_id: str) -> BatchProgress:
        """Aggregate status counts of one submission."""
        async with self._stores() as stores:
            statuses = await stores.tasks.statuses_for_batch(batch_id)
        return BatchProgress.from_statuses(batch_id, statuses)

    async def progress_for_owner(self, owner_id: str) -> BatchProgress:
        """Progress of the submission that most recently included the ticket."""
        async with self._stores() as stores:
            latest = await stores.tasks.latest_for_owner(owner_id)
            if latest is None:
                return BatchProgress.from_statuses(owner_id, [])
            statuses = await stores.tasks.statuses_for_batch(latest.batch_id)
        return BatchProgress.from_statuses(latest.batch_id, statuses)

    async def job_statistics(self) -> JobStatistics:
        async with self._stores() as stores:
            return await stores.tasks.statistics(_utcnow())

    async def task_logs(self, task_id: str) -> Dict[str, Any]:
        """Debug view of a task: steps, console logs and retrieval data."""
        task = await self.get_task(task_id)
        return {
            "task_id": task.id,
            "owner_id": task.owner_id,
            "status": task.status,
            "processing_steps": list(task.processing_steps),
            "console_logs": list(task.console_logs),
            "retrieval_items": list(task.retrieval_items),
            "retrieval_sources_summary": task.retrieval_sources_summary,
            "request_payload": task.request_payload,
            "response_payload": task.response_payload,
        }

    # ========== Administration ==========

    async def retry(self, task_id: str, actor: str) -> TaskHandle:
        """
        Re-enqueue a failed task with a clean error state.

        Raises:
            ResourceNotFoundException: unknown task
            InvalidTaskStateException: the task is not failed, or its ticket
                already has active work
        """
        async with self._stores() as stores:
            task = await stores.tasks.get_by_id(task_id)
            if task is None:
                raise ResourceNotFoundException("Analysis task", task_id)
            if not task.can_retry:
                raise InvalidTaskStateException(task_id, task.status, "retry")
            active = await stores.tasks.find_active_for_owner(task.owner_id)
            if active is not None:
                logger.warning(
                    "Manual retry refused: ticket has an active analysis task",
                    extra={"task_id": task_id, "active_task_id": active.id, "owner_id": task.owner_id}
                )
                raise InvalidTaskStateException(
                    task_id, task.status, "retry", f"ticket already has active task {active.id}"
                )

            task.reset_for_retry(uuid4().hex, self._policy.default_max_attempts)
            task.append_log(f"Manually retried by {actor}", LogLevel.INFO)
            await stores.tasks.save(task)
            await stores.owners.append_activity(
                task.owner_id,
                actor,
                ActivityAction.RETRIED,
                f"AI analysis manually retried by {actor}",
                _utcnow()
            )
            await stores.commit()
            await self._project(stores, task)

        logger.info("Analysis task retried", extra={"task_id": task_id, "actor": actor})
        await self._dispatch(task.id)
        return TaskHandle(
            task_id=task.id,
            owner_id=task.owner_id,
            batch_id=task.batch_id,
            correlation_id=task.correlation_id,
            status=task.status
        )

    async def dismiss_failed(self, actor: str) -> int:
        """Move every failed task to dismissed. Returns how many were dismissed."""
        async with self._stores() as stores:
            failed = await stores.tasks.list_by_status(TaskStatus.FAILED)
            for task in failed:
                task.mark_dismissed()
                task.append_log(f"Dismissed by {actor}", LogLevel.INFO)
                await stores.tasks.save(task)
                await stores.owners.append_activity(
                    task.owner_id,
                    actor,
                    ActivityAction.DISMISSED,
                    f"Failed AI analysis dismissed by {actor}",
                    _utcnow()
                )
            await stores.commit()
            for task in failed:
                latest = await stores.tasks.latest_for_owner(task.owner_id)
                if latest is None or latest.id == task.id:
                    await self._project(stores, task)

        logger.info("Failed analysis tasks dismissed", extra={"count": len(failed), "actor": actor})
        return len(failed)

    # ========== Recovery ==========

    async def recover_pending(self) -> int:
        """
        Dispatch again every task the database still shows as active.

        Dispatch state lives in memory only, so work left queued, retrying
        or processing by a stopped process would otherwise never run and
        would keep its ticket locked behind the duplication guard. Retry
        counts are kept, so recovered tasks stay within their budgets.
        Returns how many tasks were dispatched.
        """
        async with self._stores() as stores:
            pending: List[AnalysisTask] = []
            for status in ACTIVE_TASK_STATUSES:
                pending.extend(await stores.tasks.list_by_status(status))
            for task in pending:
                task.append_log(f"Re-dispatched after restart (was {task.status})", LogLevel.WARN)
                await stores.tasks.save(task)
            await stores.commit()

        for task in pending:
            await self._dispatch(task.id)

        if pending:
            logger.warning("Recovered unfinished analysis tasks", extra={"count": len(pending)})
        return len(pending)

    # ========== Helpers ==========

    async def _dispatch(self, task_id: str, delay_seconds: float = 0.0) -> None:
        if self.dispatcher is None:
            logger.warning("No job dispatcher configured", extra={"task_id": task_id})
            return
        await self.dispatcher.dispatch(task_id, delay_seconds)

    async def _project(
        self,
        stores: AnalysisStores,
        task: AnalysisTask,
        projection: Optional[AnalysisProjection] = None
    ) -> None:
        """Update the ticket's read-side projection; failures leave the task untouched."""
        try:
            await stores.owners.update_projection(projection or AnalysisProjection.from_task(task))
            await stores.commit()
        except Exception:
            await stores.rollback()
            logger.exception(
                "Failed to update analysis projection",
                extra={"task_id": task.id, "owner_id": task.owner_id}
            )

    async def _project_handle(self, stores: AnalysisStores, handle: TaskHandle) -> None:
        await self._project(stores, AnalysisTask(
            id=handle.task_id,
            owner_id=handle.owner_id,
            status=handle.status,
            batch_id=handle.batch_id
        ))
