"""
Analysis External Services
==========================

Integrations with systems outside the analysis module:

- RemoteAnalysisClient: analysis and reply calls against the agent endpoint
- AnalysisWorkerPool: asyncio workers with APScheduler-delayed retries
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from src.analysis.application import IRemoteAnalysisClient, IJobDispatcher, ClientFactory, TaskTracker
from src.analysis.domain import RemoteResponse, StructuredJson, RawText, extract_retrieval
from src.config import LogLevel, settings as default_settings
from src.infrastructure.llm import ILLMClient, create_llm_client
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# Agent-specific request flags: return retrieval and function-call
# provenance, leave guardrail details out.
AGENT_EXTRA_BODY: Dict[str, Any] = {
    "include_retrieval_info": True,
    "include_functions_info": True,
    "include_guardrails_info": False,
}


class RemoteAnalysisClient(IRemoteAnalysisClient):
    """
    Thin adapter between the task pipeline and the agent LLM client.

    Performs exactly one HTTP request per call; retries belong to the
    orchestrator. The full request and response bodies are recorded on the
    task through the tracker.
    """

    def __init__(self, llm: ILLMClient, settings: Any = None):
        self._llm = llm
        self._settings = settings or default_settings
        self.endpoint_name = llm.endpoint_name
        self.model_name = llm.model

    async def analyze(
        self,
        prompt: str,
        tracker: Optional[TaskTracker] = None,
        options: Optional[Dict[str, Any]] = None
    ) -> RemoteResponse:
        options = options or {}
        return await self._call(
            "analysis",
            prompt,
            tracker,
            max_tokens=options.get("max_tokens", self._settings.analysis_max_tokens),
            temperature=options.get("temperature", self._settings.analysis_temperature)
        )

    async def generate_reply(
        self,
        prompt: str,
        tracker: Optional[TaskTracker] = None,
        options: Optional[Dict[str, Any]] = None
    ) -> RemoteResponse:
        options = options or {}
        return await self._call(
            "reply_generation",
            prompt,
            tracker,
            max_tokens=options.get("max_tokens", self._settings.reply_max_tokens),
            temperature=options.get("temperature", self._settings.reply_temperature)
        )

    async def _call(
        self,
        purpose: str,
        prompt: str,
        tracker: Optional[TaskTracker],
        max_tokens: int,
        temperature: float
    ) -> RemoteResponse:
        messages = [{"role": "user", "content": prompt}]
        body = {
            "model": self.model_name,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": False,
            **AGENT_EXTRA_BODY,
        }

        if tracker is not None:
            await tracker.record_request(purpose, body)
            await tracker.log(
                f"Sending {purpose} request ({len(prompt)} characters, max_tokens={max_tokens})"
            )

        try:
            result = await self._llm.chat_completion(
                messages,
                temperature=temperature,
                max_tokens=max_tokens,
                operation=purpose,
                extra_body=dict(AGENT_EXTRA_BODY)
            )
        except Exception as e:
            if tracker is not None:
                await tracker.log(f"{purpose} request failed: {type(e).__name__}: {e}", LogLevel.ERROR)
            raise

        if isinstance(result.raw, dict):
            envelope = StructuredJson(result.raw)
            response_body = result.raw
        else:
            envelope = RawText(result.content)
            response_body = {"raw_response": result.content}

        if tracker is not None:
            await tracker.record_response(
                purpose, response_body, result.latency_ms, extract_retrieval(envelope)
            )
            await tracker.log(
                f"{purpose} response received in {result.latency_ms}ms "
                f"({result.completion_tokens} completion tokens)"
            )

        return RemoteResponse(
            content=result.content,
            envelope=envelope,
            duration_ms=result.latency_ms,
            model=result.model
        )


def build_client_factory(settings: Any = None) -> ClientFactory:
    """
    Client factory used by the orchestrator for each execution.

    A missing endpoint or access key surfaces as ConfigurationException on
    the attempt, which fails the task without retries.
    """

    def factory() -> IRemoteAnalysisClient:
        return RemoteAnalysisClient(create_llm_client(settings), settings)

    return factory


TaskHandler = Callable[[str], Awaitable[None]]
FailureHandler = Callable[[str, BaseException], Awaitable[None]]


class AnalysisWorkerPool(IJobDispatcher):
    """
    Fixed pool of asyncio workers consuming task IDs from a queue.

    Delayed dispatches (retry backoff) are held by an APScheduler
    ``date`` job that puts the ID on the queue when due. There is no
    ordering guarantee between tasks.
    """

    def __init__(self, concurrency: int = 4, scheduler: Optional[AsyncIOScheduler] = None):
        self.concurrency = concurrency
        self._scheduler = scheduler
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._handler: Optional[TaskHandler] = None
        self._on_failure: Optional[FailureHandler] = None
        self._running = False

    async def start(self, handler: TaskHandler, on_failure: Optional[FailureHandler] = None) -> None:
        """Start the workers and the retry scheduler."""
        if self._running:
            logger.warning("Analysis worker pool already running")
            return

        self._handler = handler
        self._on_failure = on_failure
        self._queue = asyncio.Queue()
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()
        if not self._scheduler.running:
            self._scheduler.start()

        self._workers = [
            asyncio.create_task(self._worker(index), name=f"analysis-worker-{index}")
            for index in range(self.concurrency)
        ]
        self._running = True

        logger.info("Analysis worker pool started", extra={"concurrency": self.concurrency})

    async def stop(self) -> None:
        """Stop workers and drop pending delayed jobs."""
        if not self._running:
            return

        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._running = False

        logger.info("Analysis worker pool stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def dispatch(self, task_id: str, delay_seconds: float = 0.0) -> None:
        """Queue a task now, or after ``delay_seconds``."""
        if not self._running or self._queue is None:
            logger.warning(
                "Dispatch while worker pool is stopped; task is picked up at next start",
                extra={"task_id": task_id}
            )
            return

        if delay_seconds <= 0:
            self._queue.put_nowait(task_id)
            logger.debug("Analysis task dispatched", extra={"task_id": task_id})
            return

        run_date = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        self._scheduler.add_job(
            self._enqueue_later,
            "date",
            run_date=run_date,
            args=[task_id],
            misfire_grace_time=None
        )
        logger.info(
            "Analysis task scheduled for retry",
            extra={"task_id": task_id, "delay_seconds": delay_seconds}
        )

    async def join(self) -> None:
        """Wait until every queued task has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _enqueue_later(self, task_id: str) -> None:
        if self._queue is not None:
            self._queue.put_nowait(task_id)

    async def _worker(self, index: int) -> None:
        while True:
            task_id = await self._queue.get()
            try:
                await self._handler(task_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(
                    "Analysis worker crashed while executing task",
                    extra={"task_id": task_id, "worker": index}
                )
                if self._on_failure is not None:
                    await self._report_failure(task_id, e)
            finally:
                self._queue.task_done()

    async def _report_failure(self, task_id: str, error: BaseException) -> None:
        try:
            await self._on_failure(task_id, error)
        except Exception:
            logger.exception("Failed to record final task failure", extra={"task_id": task_id})
