"""Tests for JobScheduler — due-job polling and the APScheduler lifecycle."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from langchain_core.messages import AIMessage

from taskbot.core.timeutil import to_iso, utc_now

UTC = timezone.utc
ACHAT = "taskbot.core.providers.litellm.achat"
FIRE = datetime(2026, 1, 1, 9, 0, 30, tzinfo=UTC)


def _reminder(runtime, agent_id, title="Stretch"):
    return runtime.jobs.create_job({
        "agent_id": agent_id,
        "job_type": "reminder",
        "title": title,
        "run_at": "2026-01-01T09:00:00Z",
        "action_type": "notify",
    })


@pytest.mark.asyncio
async def test_tick_dispatches_due_jobs(runtime, store, agent_id):
    job = _reminder(runtime, agent_id)
    assert await runtime.scheduler.tick(FIRE) == 1
    await runtime.bus.shutdown()

    executions = store.list_executions(job["id"])
    assert len(executions) == 1
    assert executions[0]["state"] == "success"
    assert store.get_job(job["id"])["status"] == "completed"


@pytest.mark.asyncio
async def test_tick_skips_claimed_jobs(runtime, agent_id):
    job = _reminder(runtime, agent_id)
    assert runtime.jobs.claim(job, FIRE)
    assert await runtime.scheduler.tick(FIRE) == 0


@pytest.mark.asyncio
async def test_tick_ignores_future_jobs(runtime, agent_id):
    _reminder(runtime, agent_id)
    assert await runtime.scheduler.tick(datetime(2026, 1, 1, 8, 0, tzinfo=UTC)) == 0


@pytest.mark.asyncio
async def test_overlapping_ticks_emit_once(runtime, store, agent_id):
    job = _reminder(runtime, agent_id)
    first = await runtime.scheduler.tick(FIRE)
    second = await runtime.scheduler.tick(FIRE)
    await runtime.bus.shutdown()
    assert first + second == 1
    assert len(store.list_executions(job["id"])) == 1


@pytest.mark.asyncio
async def test_send_failure_releases_claim(runtime, store, agent_id, monkeypatch):
    job = _reminder(runtime, agent_id)

    def broken_send(name, data):
        raise RuntimeError("bus down")

    monkeypatch.setattr(runtime.bus, "send", broken_send)
    assert await runtime.scheduler.tick(FIRE) == 0
    assert store.get_job(job["id"])["locked_until"] is None


@pytest.mark.asyncio
async def test_start_stop(runtime):
    assert not runtime.scheduler.running
    runtime.scheduler.start()
    assert runtime.scheduler.running
    runtime.scheduler.stop()
    assert not runtime.scheduler.running


@pytest.mark.asyncio
async def test_runtime_lifecycle(runtime, agent_id, store):
    await runtime.start(scheduler=False)
    job = _reminder(runtime, agent_id)
    await runtime.scheduler.tick(FIRE)
    await runtime.stop()
    assert store.get_job(job["id"])["status"] == "completed"
    # activity writes are flushed on stop
    assert runtime.recorder._task is None


def _agent_job(runtime, agent_id, run_at, **kw):
    return runtime.jobs.create_job({
        "agent_id": agent_id,
        "job_type": "one_time",
        "title": "Weekly report",
        "run_at": to_iso(run_at),
        "action_type": "agent_task",
        "action_payload": {"instruction": "Write the weekly report"},
        **kw,
    })


@pytest.mark.asyncio
async def test_long_run_is_not_dispatched_twice(runtime, store, agent_id):
    t0 = utc_now()
    job = _agent_job(runtime, agent_id, t0 - timedelta(minutes=1))
    started, gate = asyncio.Event(), asyncio.Event()

    async def slow_reply(*args, **kwargs):
        started.set()
        await gate.wait()
        return AIMessage(content="Report written.")

    with patch(ACHAT, new=AsyncMock(side_effect=slow_reply)) as achat:
        assert await runtime.scheduler.tick(t0) == 1
        await asyncio.wait_for(started.wait(), timeout=5)
        # the claim has expired but the first run is still going
        later = t0 + timedelta(seconds=runtime.config.background.dispatcher.claim_ttl_s + 60)
        assert await runtime.scheduler.tick(later) == 0
        gate.set()
        await runtime.bus.shutdown()

    assert achat.await_count == 1
    assert [e["state"] for e in store.list_executions(job["id"])] == ["success"]
    assert store.get_job(job["id"])["status"] == "completed"


@pytest.mark.asyncio
async def test_lock_contention_waits_for_task_lock(runtime, store, agent_id):
    t0 = utc_now()
    task = store.create_task(agent_id, "Busy", assignee_type="agent")
    runtime.runstate.acquire(task["id"])
    job = _agent_job(runtime, agent_id, t0 - timedelta(minutes=1), task_id=task["id"])

    with patch(ACHAT, new_callable=AsyncMock) as achat:
        assert await runtime.scheduler.tick(t0) == 1
        await runtime.bus.shutdown()
        for minutes in (1, 10, 29):
            assert await runtime.scheduler.tick(t0 + timedelta(minutes=minutes)) == 0
        achat.assert_not_called()
    assert len(store.list_executions(job["id"])) == 1

    lock_ttl = runtime.config.background.task_worker.lock_ttl_minutes
    assert await runtime.scheduler.tick(t0 + timedelta(minutes=lock_ttl + 1)) == 1
    await runtime.bus.shutdown()
