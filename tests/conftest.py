"""
Shared fixtures: in-memory SQLite database, scripted LLM and a dispatcher
that records jobs instead of running them.
"""

import json
from typing import Any, List, Optional
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from src.analysis.application import AnalysisOrchestrator, IJobDispatcher
from src.analysis.domain import RetryPolicy
from src.analysis.infrastructure import (
    RemoteAnalysisClient,
    SQLAlchemyOwnerDirectory,
    TicketModel,
    sqlalchemy_store_provider,
)
from src.config import settings
from src.infrastructure.database import create_session_maker, create_tables, get_session_context
from src.infrastructure.llm import ChatCompletionResult, ILLMClient


ANALYSIS_JSON = {
    "priority_suggestion": "high",
    "tags": ["battery", "charging"],
    "sentiment": "negative",
    "summary": "Customer's device stops charging after firmware update.",
    "suggested_actions": ["Roll back firmware", "Replace charger"],
    "confidence_score": 0.92,
    "suggested_response": None,
    "source_files": ["charging.md"],
}

REPLY_TEXT = "Hi Dana, sorry about the charging trouble. Please try rolling back the firmware."


def completion(content: str, retrieval: Optional[List[dict]] = None, latency_ms: int = 120) -> ChatCompletionResult:
    """Build a completion result shaped like the agent's response body."""
    raw = {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "model": "agent-model",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}}],
        "retrieval": {"retrieved_data": retrieval or []},
    }
    return ChatCompletionResult(
        content=content,
        model="agent-model",
        prompt_tokens=50,
        completion_tokens=25,
        latency_ms=latency_ms,
        raw=raw
    )


def analysis_completion(**overrides: Any) -> ChatCompletionResult:
    payload = {**ANALYSIS_JSON, **overrides}
    return completion(
        json.dumps(payload),
        retrieval=[{"filename": "troubleshooting.md", "score": 0.8}, {"filename": "charging.md"}]
    )


class ScriptedLLM(ILLMClient):
    """LLM returning (or raising) queued outcomes per operation."""

    endpoint_name = "agent"
    model = "agent-model"

    def __init__(self, analysis: Optional[List[Any]] = None, reply: Optional[List[Any]] = None):
        self.outcomes = {"analysis": list(analysis or []), "reply_generation": list(reply or [])}
        self.calls: List[dict] = []

    async def chat_completion(
        self,
        messages,
        temperature=0.3,
        max_tokens=1000,
        operation="chat_completion",
        extra_body=None
    ):
        self.calls.append({
            "operation": operation,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "extra_body": extra_body,
        })
        queue = self.outcomes[operation]
        if not queue:
            raise AssertionError(f"unexpected {operation} call")
        outcome = queue.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call["operation"] == operation)


class RecordingDispatcher(IJobDispatcher):
    """Keeps dispatched jobs so tests can run them one by one."""

    def __init__(self):
        self.pending: List[tuple] = []
        self.history: List[tuple] = []

    async def dispatch(self, task_id: str, delay_seconds: float = 0.0) -> None:
        self.pending.append((task_id, delay_seconds))
        self.history.append((task_id, delay_seconds))


async def drain(orchestrator: AnalysisOrchestrator, dispatcher: RecordingDispatcher) -> None:
    """Run every dispatched job, including retries dispatched while running."""
    while dispatcher.pending:
        task_id, _delay = dispatcher.pending.pop(0)
        await orchestrator.perform(task_id)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest.fixture
def store_provider(session_maker):
    return sqlalchemy_store_provider(session_maker)


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def orchestrator(store_provider, llm, dispatcher):
    return AnalysisOrchestrator(
        stores=store_provider,
        client_factory=lambda: RemoteAnalysisClient(llm, settings),
        dispatcher=dispatcher,
        policy=RetryPolicy()
    )


@pytest.fixture
def make_ticket(session_maker):
    async def factory(**fields: Any) -> str:
        values = {
            "id": uuid4(),
            "subject": "Device stopped charging",
            "description": "Since the last firmware update my device no longer charges.",
            "priority": "medium",
            "customer_name": "Dana",
            "customer_mood": "frustrated",
            "product_model": "X200",
            "issue_category": "hardware",
        }
        values.update(fields)
        async with get_session_context(session_maker) as session:
            session.add(TicketModel(**values))
        return str(values["id"])

    return factory


@pytest.fixture
def activities(session_maker):
    async def fetch(ticket_id: str) -> List[Any]:
        async with session_maker() as session:
            return await SQLAlchemyOwnerDirectory(session).list_activities(ticket_id)

    return fetch


@pytest.fixture
def projection(session_maker):
    async def fetch(ticket_id: str) -> Any:
        async with session_maker() as session:
            return await SQLAlchemyOwnerDirectory(session).get_projection(ticket_id)

    return fetch
