import httpx
import pytest

from src.main import app
from src.config import TaskStatus

from tests.conftest import analysis_completion, completion, drain


@pytest.fixture
async def client(orchestrator):
    app.state.orchestrator = orchestrator
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.state.orchestrator = None


async def test_analyze_queues_task(client, make_ticket, dispatcher):
    ticket_id = await make_ticket()

    response = await client.post(f"/analysis/tickets/{ticket_id}/analyze", headers={"X-Actor": "alice"})

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "queued"
    assert body["ticket_id"] == ticket_id
    assert dispatcher.history == [(body["task_id"], 0.0)]
    assert "X-Correlation-ID" in response.headers


async def test_analyze_twice_conflicts(client, make_ticket):
    ticket_id = await make_ticket()
    first = await client.post(f"/analysis/tickets/{ticket_id}/analyze")

    second = await client.post(f"/analysis/tickets/{ticket_id}/analyze")

    assert second.status_code == 409
    assert second.json()["status"] == "already_in_progress"
    assert second.json()["task_id"] == first.json()["task_id"]


async def test_analyze_unknown_ticket(client):
    response = await client.post("/analysis/tickets/0b7c2a3e-1111-4222-8333-444455556666/analyze")

    assert response.status_code == 404
    assert response.json()["error_type"] == "ResourceNotFoundException"


async def test_bulk_and_batch_progress(client, make_ticket, orchestrator, dispatcher, llm):
    tickets = [await make_ticket(), await make_ticket()]
    llm.outcomes["analysis"].extend([analysis_completion(confidence_score=0.5)] * 2)

    response = await client.post("/analysis/bulk", json={"ticket_ids": tickets + ["missing"]})

    assert response.status_code == 202
    body = response.json()
    assert body["total_queued"] == 2
    assert body["not_found"] == ["missing"]

    await drain(orchestrator, dispatcher)

    progress = await client.get(f"/analysis/batches/{body['batch_id']}/progress")
    assert progress.json()["status"] == "completed"
    assert progress.json()["percentage"] == 100

    by_ticket = await client.get(f"/analysis/tickets/{tickets[0]}/progress")
    assert by_ticket.json()["batch_id"] == body["batch_id"]


async def test_bulk_over_limit_is_unprocessable(client):
    ids = [f"ticket-{index}" for index in range(101)]

    response = await client.post("/analysis/bulk", json={"ticket_ids": ids})

    assert response.status_code == 422


async def test_job_views(client, make_ticket, orchestrator, dispatcher, llm):
    ticket_id = await make_ticket()
    llm.outcomes["analysis"].append(completion(""))
    queued = await client.post(f"/analysis/tickets/{ticket_id}/analyze")
    task_id = queued.json()["task_id"]
    await drain(orchestrator, dispatcher)

    listing = await client.get("/analysis/jobs", params={"status": "failed"})
    assert listing.status_code == 200
    assert listing.json()["total"] == 1
    assert listing.json()["items"][0]["error_summary"].startswith("PermanentAnalysisError")

    detail = await client.get(f"/analysis/jobs/{task_id}")
    assert detail.json()["status"] == TaskStatus.FAILED
    assert detail.json()["ticket_id"] == ticket_id
    assert detail.json()["current_step"]["name"] == "final_failure"

    logs = await client.get(f"/analysis/jobs/{task_id}/logs")
    assert logs.json()["ticket_id"] == ticket_id
    assert logs.json()["console_logs"]

    stats = await client.get("/analysis/jobs/stats")
    assert stats.json()["failed"] == 1
    assert stats.json()["success_rate"] == 0.0


async def test_unknown_job_is_not_found(client):
    response = await client.get("/analysis/jobs/does-not-exist")

    assert response.status_code == 404


async def test_invalid_status_filter_is_rejected(client):
    response = await client.get("/analysis/jobs", params={"status": "exploded"})

    assert response.status_code == 422


async def test_retry_and_dismiss(client, make_ticket, orchestrator, dispatcher, llm):
    ticket_id = await make_ticket()
    llm.outcomes["analysis"].extend([completion(""), completion("")])
    task_id = (await client.post(f"/analysis/tickets/{ticket_id}/analyze")).json()["task_id"]
    await drain(orchestrator, dispatcher)

    retried = await client.post(f"/analysis/jobs/{task_id}/retry", headers={"X-Actor": "bob"})
    assert retried.status_code == 202
    assert retried.json()["task_status"] == TaskStatus.QUEUED

    conflict = await client.post(f"/analysis/jobs/{task_id}/retry")
    assert conflict.status_code == 409

    await drain(orchestrator, dispatcher)
    dismissed = await client.post("/analysis/jobs/dismiss-failed", headers={"X-Actor": "admin"})
    assert dismissed.status_code == 200
    assert dismissed.json()["dismissed"] == 1


async def test_missing_orchestrator_is_service_unavailable(client):
    app.state.orchestrator = None

    response = await client.get("/analysis/jobs/stats")

    assert response.status_code == 503


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
