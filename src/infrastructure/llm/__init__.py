"""
LLM Client Infrastructure
==========================

Wrapper for the OpenAI-compatible agent endpoint providing a clean interface
for chat completions.

This module abstracts the LLM client implementation following the
Dependency Inversion Principle - the application layer depends on
abstractions, not concrete implementations.

Every call is a single HTTP request. The SDK's own retries are disabled
because the background job orchestrator owns the retry policy. Errors are
normalized into three kinds:

- RateLimitedException: HTTP 429
- RemoteAPIException: any other 4xx/5xx
- UnknownAnalysisError: everything else (timeouts, connection errors, ...)
"""

import json
import time
from typing import List, Optional, Any
from abc import ABC, abstractmethod

import httpx
import openai
from openai import AsyncOpenAI

from src.config import settings
from src.core import (
    ConfigurationException,
    RateLimitedException,
    RemoteAPIException,
    UnknownAnalysisError,
)
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ChatCompletionResult:
    """Result of a chat completion."""

    def __init__(
        self,
        content: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: int,
        raw: Optional[dict] = None
    ):
        self.content = content
        self.model = model
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.total_tokens = prompt_tokens + completion_tokens
        self.latency_ms = latency_ms
        # Full response body as returned by the endpoint
        self.raw = raw


class ILLMClient(ABC):
    """
    Interface for LLM client operations.

    Following Interface Segregation Principle - only methods
    actually needed by the application are defined.
    """

    endpoint_name: str = "agent"
    model: Optional[str] = None

    @abstractmethod
    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 1000,
        operation: str = "chat_completion",
        extra_body: Optional[dict] = None
    ) -> ChatCompletionResult:
        """Generate chat completion."""


class AgentLLMClient(ILLMClient):
    """
    Client for the managed AI agent endpoint.

    The agent speaks the OpenAI chat completions protocol, so the async
    OpenAI SDK is used with a custom base URL. Retrieval provenance returned
    by the agent lives in extra fields of the response body and is kept in
    ``ChatCompletionResult.raw``.
    """

    endpoint_name = "agent"

    def __init__(
        self,
        endpoint: Optional[str] = None,
        access_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self._endpoint = endpoint or settings.do_agent_endpoint
        self._access_key = access_key or settings.do_agent_access_key

        if not self._endpoint:
            raise ConfigurationException("DO_AGENT_ENDPOINT not configured")
        if not self._access_key:
            raise ConfigurationException("DO_AGENT_ACCESS_KEY not configured")

        self._client = AsyncOpenAI(
            api_key=self._access_key,
            base_url=self._endpoint.rstrip("/"),
            max_retries=0,
            timeout=timeout or settings.agent_timeout_seconds,
            http_client=http_client
        )
        self._model = model or settings.agent_model

    @property
    def model(self) -> str:
        return self._model

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 1000,
        operation: str = "chat_completion",
        extra_body: Optional[dict] = None
    ) -> ChatCompletionResult:
        """
        Generate chat completion through the agent endpoint.

        Args:
            messages: List of message dicts with 'role' and 'content'
            temperature: Sampling temperature (0-1)
            max_tokens: Maximum tokens to generate
            operation: Operation name used in logs
            extra_body: Additional agent-specific request fields

        Returns:
            ChatCompletionResult with generated text and the raw body

        Raises:
            RateLimitedException: HTTP 429
            RemoteAPIException: any other HTTP error status
            UnknownAnalysisError: any other failure
        """
        start_time = time.perf_counter()

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                extra_body=extra_body
            )
        except openai.RateLimitError as e:
            raise RateLimitedException(
                f"Rate limit exceeded: {e.message}",
                status_code=e.status_code,
                details={"operation": operation}
            ) from e
        except openai.APIStatusError as e:
            raise RemoteAPIException(
                f"API error: {e.message}",
                status_code=e.status_code,
                details={"operation": operation, "body": _safe_body(e.body)}
            ) from e
        except Exception as e:
            raise UnknownAnalysisError(
                f"{operation} failed: {e}",
                details={"operation": operation, "error_class": type(e).__name__}
            ) from e

        latency_ms = int((time.perf_counter() - start_time) * 1000)

        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""

        prompt_tokens = response.usage.prompt_tokens if response.usage else 0
        completion_tokens = response.usage.completion_tokens if response.usage else 0

        logger.info(
            "Agent call completed",
            extra={
                "operation": operation,
                "model": self._model,
                "latency_ms": latency_ms,
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
            }
        )

        return ChatCompletionResult(
            content=content,
            model=response.model or self._model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
            raw=response.model_dump()
        )


def _safe_body(body: Any) -> Any:
    """Keep error bodies JSON-compatible for the task record."""
    if body is None or isinstance(body, (dict, list, str, int, float, bool)):
        return body
    return str(body)


class MockLLMClient(ILLMClient):
    """
    Mock LLM client for local runs and tests.

    Returns predictable responses without calling external APIs.
    """

    endpoint_name = "agent"
    model = "mock-model"

    def __init__(self, confidence: float = 0.92):
        self._confidence = confidence

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 1000,
        operation: str = "chat_completion",
        extra_body: Optional[dict] = None
    ) -> ChatCompletionResult:
        """Return mock response based on operation type."""

        if "reply" in operation.lower():
            content = (
                "Hello,\n\nThank you for reaching out. We have reviewed your request "
                "and our team is working on it. We will follow up shortly.\n\n"
                "Best regards,\nSupport Team"
            )
            retrieval = []
        else:
            mock_response = {
                "tags": ["mock", "analysis"],
                "summary": "Mock: customer reports an issue that needs follow-up.",
                "sentiment": "neutral",
                "priority_suggestion": "medium",
                "suggested_response": None,
                "confidence_score": self._confidence,
                "suggested_actions": ["Review the ticket"],
                "source_files": ["faq.md"],
            }
            content = json.dumps(mock_response, indent=2)
            retrieval = [{"filename": "faq.md", "score": 0.9}]

        raw = {
            "id": "mock-completion",
            "object": "chat.completion",
            "model": "mock-model",
            "choices": [
                {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
            ],
            "retrieval": {"retrieved_data": retrieval},
        }

        return ChatCompletionResult(
            content=content,
            model="mock-model",
            prompt_tokens=100,
            completion_tokens=len(content.split()),
            latency_ms=100,
            raw=raw
        )


def create_llm_client(config: Any = None) -> ILLMClient:
    """
    Build the LLM client described by ``config`` (application settings by default).

    Raises:
        ConfigurationException: when the agent endpoint or key is missing
    """
    config = config or settings
    if config.mock_llm:
        return MockLLMClient()
    return AgentLLMClient(
        endpoint=config.do_agent_endpoint,
        access_key=config.do_agent_access_key,
        model=config.agent_model,
        timeout=config.agent_timeout_seconds
    )


__all__ = [
    "ChatCompletionResult",
    "ILLMClient",
    "AgentLLMClient",
    "MockLLMClient",
    "create_llm_client",
]
