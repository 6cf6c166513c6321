import json

import httpx
import pytest

from src.config import settings
from src.core import (
    ConfigurationException,
    RateLimitedException,
    RemoteAPIException,
    UnknownAnalysisError,
)
from src.infrastructure.llm import AgentLLMClient, MockLLMClient, create_llm_client


ENDPOINT = "https://agent.example.test/api/v1/"

COMPLETION_BODY = {
    "id": "chatcmpl-42",
    "object": "chat.completion",
    "created": 1700000000,
    "model": "agent-model",
    "choices": [
        {
            "index": 0,
            "message": {"role": "assistant", "content": '{"summary": "ok"}'},
            "finish_reason": "stop",
        }
    ],
    "usage": {"prompt_tokens": 12, "completion_tokens": 5, "total_tokens": 17},
    "retrieval": {"retrieved_data": [{"filename": "faq.md", "score": 0.7}]},
}


def _client(handler) -> AgentLLMClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AgentLLMClient(endpoint=ENDPOINT, access_key="secret", model="agent-model", http_client=http_client)


async def test_successful_call_keeps_full_body():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=COMPLETION_BODY)

    client = _client(handler)
    result = await client.chat_completion(
        [{"role": "user", "content": "hi"}],
        temperature=0.3,
        max_tokens=1500,
        operation="analysis",
        extra_body={"include_retrieval_info": True}
    )

    assert result.content == '{"summary": "ok"}'
    assert result.prompt_tokens == 12
    assert result.completion_tokens == 5
    assert result.raw["retrieval"]["retrieved_data"][0]["filename"] == "faq.md"

    assert len(requests) == 1
    request = requests[0]
    assert request.url.path == "/api/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer secret"
    body = json.loads(request.content)
    assert body["max_tokens"] == 1500
    assert body["include_retrieval_info"] is True


async def test_rate_limit_is_not_retried_by_the_sdk():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    with pytest.raises(RateLimitedException) as exc_info:
        await _client(handler).chat_completion([{"role": "user", "content": "hi"}])

    assert exc_info.value.status_code == 429
    assert len(calls) == 1


async def test_server_error_maps_to_remote_api_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": {"message": "unavailable"}})

    with pytest.raises(RemoteAPIException) as exc_info:
        await _client(handler).chat_completion([{"role": "user", "content": "hi"}])

    assert exc_info.value.status_code == 503


async def test_client_error_maps_to_remote_api_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "bad request"}})

    with pytest.raises(RemoteAPIException) as exc_info:
        await _client(handler).chat_completion([{"role": "user", "content": "hi"}])

    assert exc_info.value.status_code == 400


async def test_connection_failure_is_unknown_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UnknownAnalysisError):
        await _client(handler).chat_completion([{"role": "user", "content": "hi"}])


def test_missing_endpoint_is_configuration_error(monkeypatch):
    monkeypatch.setattr(settings, "do_agent_endpoint", None)

    with pytest.raises(ConfigurationException, match="DO_AGENT_ENDPOINT"):
        AgentLLMClient(access_key="secret")


def test_missing_access_key_is_configuration_error(monkeypatch):
    monkeypatch.setattr(settings, "do_agent_access_key", None)

    with pytest.raises(ConfigurationException, match="DO_AGENT_ACCESS_KEY"):
        AgentLLMClient(endpoint=ENDPOINT)


def test_mock_llm_setting_selects_mock_client(monkeypatch):
    monkeypatch.setattr(settings, "mock_llm", True)

    assert isinstance(create_llm_client(), MockLLMClient)


async def test_mock_client_returns_analysis_json():
    result = await MockLLMClient(confidence=0.8).chat_completion([], operation="analysis")

    assert json.loads(result.content)["confidence_score"] == 0.8
    assert result.raw["retrieval"]["retrieved_data"]
