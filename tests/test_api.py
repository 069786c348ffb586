"""Tests for the HTTP API — jobs, executions, events and dispatch."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from taskbot.api.app import create_app


@pytest_asyncio.fixture
async def client(runtime):
    app = create_app(runtime)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    await runtime.bus.shutdown()


def _spec(agent_id, **overrides):
    spec = {
        "agent_id": agent_id,
        "job_type": "reminder",
        "title": "Pay rent",
        "run_at": "2026-01-01T09:00:00Z",
        "action_type": "notify",
        "action_payload": {"message": "Rent is due"},
    }
    spec.update(overrides)
    return spec


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["scheduler_running"] is False
    assert body["active_jobs"] == 0


# ── Jobs ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_and_get_job(client, agent_id):
    resp = await client.post("/jobs", json=_spec(agent_id))
    assert resp.status_code == 201
    job = resp.json()
    assert job["schedule_type"] == "once"
    assert job["next_run_at"] == "2026-01-01T09:00:00.000000Z"
    assert job["timezone"] == "UTC"

    fetched = await client.get(f"/jobs/{job['id']}")
    assert fetched.json()["title"] == "Pay rent"


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"run_at": None},
    {"cron_expression": "0 9 * * *"},
    {"run_at": None, "cron_expression": "not a cron"},
    {"timezone": "Nowhere/Special"},
    {"action_type": "sms"},
])
async def test_create_job_rejects_bad_specs(client, agent_id, store, overrides):
    resp = await client.post("/jobs", json=_spec(agent_id, **overrides))
    assert resp.status_code == 422
    assert store.count_rows("scheduled_jobs") == 0


@pytest.mark.asyncio
async def test_missing_job_is_404(client):
    assert (await client.get("/jobs/nope")).status_code == 404
    assert (await client.delete("/jobs/nope")).status_code == 404
    assert (await client.get("/jobs/nope/executions")).status_code == 404


@pytest.mark.asyncio
async def test_list_jobs_filters(client, agent_id):
    await client.post("/jobs", json=_spec(agent_id))
    await client.post("/jobs", json=_spec(
        agent_id, job_type="recurring", run_at=None, cron_expression="0 9 * * *", title="Daily",
    ))
    resp = await client.get("/jobs", params={"job_type": "recurring"})
    assert [j["title"] for j in resp.json()] == ["Daily"]
    assert len((await client.get("/jobs", params={"agent_id": agent_id})).json()) == 2


@pytest.mark.asyncio
async def test_pause_and_cancel(client, agent_id):
    job = (await client.post("/jobs", json=_spec(
        agent_id, job_type="recurring", run_at=None, cron_expression="0 9 * * *",
    ))).json()

    paused = await client.patch(f"/jobs/{job['id']}", json={"status": "paused"})
    assert paused.json()["status"] == "paused"

    cancelled = await client.delete(f"/jobs/{job['id']}")
    assert cancelled.json()["status"] == "cancelled"
    again = await client.patch(f"/jobs/{job['id']}", json={"status": "active"})
    assert again.status_code == 422


# ── Dispatch & events ────────────────────────────────────────


@pytest.mark.asyncio
async def test_dispatch_tick_runs_due_job(client, agent_id, runtime, store):
    job = (await client.post("/jobs", json=_spec(agent_id))).json()
    resp = await client.post("/dispatch/tick")
    assert resp.json() == {"dispatched": 1}
    await runtime.bus.shutdown()

    executions = (await client.get(f"/jobs/{job['id']}/executions")).json()
    assert len(executions) == 1
    assert executions[0]["state"] == "success"
    assert store.list_notifications(agent_id)[0]["content"] == "**Reminder:** Rent is due"


@pytest.mark.asyncio
async def test_event_accepted(client, agent_id):
    resp = await client.post(
        "/events/task/process.start",
        json={"data": {"taskId": "no-such-task", "agentId": agent_id}},
    )
    assert resp.status_code == 202
    assert resp.json() == {"name": "task/process.start", "accepted": True}


@pytest.mark.asyncio
async def test_unknown_event(client):
    resp = await client.post("/events/task/explode", json={"data": {}})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_invalid_event_payload(client):
    resp = await client.post("/events/task/process.start", json={"data": {"taskId": "t1"}})
    assert resp.status_code == 422
