import asyncio

from src.analysis.infrastructure import AnalysisWorkerPool, RemoteAnalysisClient, build_client_factory
from src.config import settings
from src.infrastructure.llm import AgentLLMClient, MockLLMClient

from tests.conftest import ScriptedLLM, analysis_completion


async def test_dispatched_tasks_run_on_workers():
    handled = []

    async def handler(task_id):
        handled.append(task_id)

    pool = AnalysisWorkerPool(concurrency=2)
    await pool.start(handler)
    try:
        for task_id in ("t1", "t2", "t3"):
            await pool.dispatch(task_id)
        await asyncio.wait_for(pool.join(), timeout=5)
    finally:
        await pool.stop()

    assert sorted(handled) == ["t1", "t2", "t3"]
    assert pool.is_running is False


async def test_delayed_dispatch_runs_later():
    done = asyncio.Event()

    async def handler(task_id):
        done.set()

    pool = AnalysisWorkerPool(concurrency=1)
    await pool.start(handler)
    try:
        await pool.dispatch("t1", delay_seconds=0.1)
        assert pool.pending == 0
        await asyncio.wait_for(done.wait(), timeout=5)
    finally:
        await pool.stop()


async def test_crashing_handler_reports_final_failure():
    failures = []

    async def handler(task_id):
        raise RuntimeError("lost database connection")

    async def on_failure(task_id, error):
        failures.append((task_id, type(error).__name__))

    pool = AnalysisWorkerPool(concurrency=1)
    await pool.start(handler, on_failure)
    try:
        await pool.dispatch("t1")
        await asyncio.wait_for(pool.join(), timeout=5)
    finally:
        await pool.stop()

    assert failures == [("t1", "RuntimeError")]


async def test_remote_client_without_tracker():
    llm = ScriptedLLM(analysis=[analysis_completion()])
    client = RemoteAnalysisClient(llm, settings)

    response = await client.analyze("Analyze this ticket")

    assert response.duration_ms == 120
    assert response.envelope.payload["retrieval"]["retrieved_data"][0]["filename"] == "troubleshooting.md"
    assert llm.calls[0]["max_tokens"] == settings.analysis_max_tokens
    assert llm.calls[0]["messages"] == [{"role": "user", "content": "Analyze this ticket"}]


def test_client_factory_uses_given_settings():
    custom = settings.model_copy(update={
        "mock_llm": False,
        "do_agent_endpoint": "https://custom-agent.example.test/api/v1",
        "do_agent_access_key": "custom-key",
        "agent_model": "custom-model",
    })

    client = build_client_factory(custom)()

    assert isinstance(client._llm, AgentLLMClient)
    assert client._llm._endpoint == "https://custom-agent.example.test/api/v1"
    assert client.model_name == "custom-model"


def test_client_factory_honours_mock_setting():
    mocked = settings.model_copy(update={"mock_llm": True})

    client = build_client_factory(mocked)()

    assert isinstance(client._llm, MockLLMClient)
    assert client.model_name == "mock-model"


async def test_dispatch_while_stopped_is_dropped_without_error():
    pool = AnalysisWorkerPool(concurrency=1)

    await pool.dispatch("t1")

    assert pool.pending == 0
