"""Tests for JobDispatcher + ActionHandlers — one execution end to end."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from langchain_core.messages import AIMessage

from taskbot.core.runtime import Runtime
from taskbot.memory.models import decode_action


def _job(runtime, agent_id, action_type="notify", payload=None, **kw):
    spec = {
        "agent_id": agent_id,
        "job_type": "reminder",
        "title": "Pay rent",
        "run_at": "2026-01-01T09:00:00Z",
        "action_type": action_type,
        "action_payload": payload or {},
        **kw,
    }
    return runtime.jobs.create_job(spec)


def _webhook_runtime(cfg, store, handler):
    return Runtime(cfg, db=store, http_transport=httpx.MockTransport(handler))


# ── notify ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_notify_delivers_reminder(runtime, store, agent_id):
    job = _job(runtime, agent_id, payload={"message": "Rent is due"})
    execution = await runtime.dispatcher.execute(job, "exec-1")

    assert execution["state"] == "success"
    conv = store.list_conversations(agent_id)[0]
    assert conv["title"] == "Scheduled: Pay rent"
    msg = store.get_messages(conv["id"])[0]
    assert msg["role"] == "assistant"
    assert msg["content"] == "**Reminder:** Rent is due"
    assert msg["metadata"] == {"type": "scheduled_notification", "job_id": job["id"]}
    note = store.list_notifications(agent_id)[0]
    assert note["type"] == "reminder"
    assert note["link_id"] == conv["id"]

    after = store.get_job(job["id"])
    assert after["status"] == "completed"
    assert after["run_count"] == 1


@pytest.mark.asyncio
async def test_notify_includes_linked_task(runtime, store, agent_id):
    task = store.create_task(agent_id, "Rent", due_date="2026-01-31T20:00:00Z")
    job = _job(runtime, agent_id, task_id=task["id"])
    await runtime.dispatcher.execute(job, "exec-1")
    content = store.list_notifications(agent_id)[0]["content"]
    assert "**Reminder:** Pay rent" in content
    assert "**Task:** Rent" in content
    assert "**Due:** Sat, Jan 31, 8:00 PM" in content


@pytest.mark.asyncio
async def test_finished_execution_replay_is_noop(runtime, store, agent_id):
    job = _job(runtime, agent_id)
    first = await runtime.dispatcher.execute(job, "exec-1")
    again = await runtime.dispatcher.execute(job, "exec-1")
    assert again["state"] == first["state"] == "success"
    assert store.count_rows("messages") == 1
    assert store.count_rows("notifications") == 1
    assert store.count_rows("job_executions") == 1


@pytest.mark.asyncio
async def test_handler_replay_skips_completed_steps(runtime, store, agent_id):
    job = _job(runtime, agent_id)
    store.create_execution("exec-1", job["id"], agent_id)
    action = decode_action("notify", job["action_payload"])
    first = await runtime.actions.run(job, action, "exec-1")
    second = await runtime.actions.run(job, action, "exec-1")
    assert first["conversation_id"] == second["conversation_id"]
    assert store.count_rows("conversations") == 1
    assert store.count_rows("messages") == 1
    assert store.count_rows("notifications") == 1


# ── webhook ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_webhook_posts_job_payload(cfg, store, agent_id):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(204)

    runtime = _webhook_runtime(cfg, store, handler)
    job = _job(
        runtime, agent_id, "webhook",
        {"url": "https://hooks.example.com/x", "body": {"k": "v"}, "headers": {"X-Token": "t"}},
    )
    execution = await runtime.dispatcher.execute(job, "exec-1")

    assert execution["state"] == "success"
    assert execution["result"] == {"status": 204}
    sent = json.loads(requests[0].content)
    assert sent == {"job_id": job["id"], "job_type": "reminder", "title": "Pay rent", "k": "v"}
    assert requests[0].headers["X-Token"] == "t"


@pytest.mark.asyncio
async def test_webhook_error_status_fails_without_retry(cfg, store, agent_id):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    runtime = _webhook_runtime(cfg, store, handler)
    job = _job(runtime, agent_id, "webhook", {"url": "https://hooks.example.com/x"})
    execution = await runtime.dispatcher.execute(job, "exec-1")

    assert execution["state"] == "failed"
    assert execution["error"] == "Webhook returned 500"
    assert len(calls) == 1
    after = store.get_job(job["id"])
    assert after["failure_count"] == 1
    assert after["status"] == "active"
    assert after["next_run_at"] == job["next_run_at"]
    note = store.list_notifications(agent_id)[0]
    assert note["type"] == "job_failed"
    assert note["title"] == "Scheduled job failed: Pay rent"


@pytest.mark.asyncio
async def test_transient_error_is_retried(cfg, store, agent_id):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200)

    runtime = _webhook_runtime(cfg, store, handler)
    job = _job(runtime, agent_id, "webhook", {"url": "https://hooks.example.com/x"})
    execution = await runtime.dispatcher.execute(job, "exec-1")

    assert execution["state"] == "success"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_transient_error_exhausts_attempts(cfg, store, agent_id):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("down", request=request)

    runtime = _webhook_runtime(cfg, store, handler)
    job = _job(runtime, agent_id, "webhook", {"url": "https://hooks.example.com/x"})
    execution = await runtime.dispatcher.execute(job, "exec-1")

    assert execution["state"] == "failed"
    assert len(calls) == cfg.background.dispatcher.max_attempts


@pytest.mark.asyncio
async def test_breaker_pauses_recurring_job(cfg, store, agent_id):
    runtime = _webhook_runtime(cfg, store, lambda request: httpx.Response(503))
    job = _job(
        runtime, agent_id, "webhook", {"url": "https://hooks.example.com/x"},
        job_type="recurring", run_at=None, cron_expression="0 * * * *",
    )
    for i in range(3):
        await runtime.dispatcher.execute(store.get_job(job["id"]), f"exec-{i}")

    after = store.get_job(job["id"])
    assert after["status"] == "paused"
    assert after["failure_count"] == 3
    assert "paused" in store.list_notifications(agent_id)[0]["content"]


@pytest.mark.asyncio
async def test_unknown_action_type_fails(runtime, store, agent_id):
    job = store.insert_job({
        "agent_id": agent_id, "job_type": "reminder", "title": "Odd", "schedule_type": "once",
        "timezone": "UTC", "next_run_at": "2026-01-01T09:00:00.000000Z", "action_type": "sms",
    })
    execution = await runtime.dispatcher.execute(job, "exec-1")
    assert execution["state"] == "failed"
    assert execution["error"] == "Unknown action type: sms"


# ── agent_task ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_agent_task_runs_agent(runtime, store, agent_id):
    task = store.create_task(agent_id, "Draft summary", assignee_type="agent")
    job = _job(
        runtime, agent_id, "agent_task",
        {"instruction": "Summarize my week", "taskId": task["id"]},
        job_type="one_time", task_id=task["id"],
    )
    reply = AIMessage(content="Here is your summary.")
    with patch("taskbot.core.providers.litellm.achat", new_callable=AsyncMock, return_value=reply):
        execution = await runtime.dispatcher.execute(job, "exec-1")

    assert execution["state"] == "success"
    assert execution["result"]["text"] == "Here is your summary."
    conv = store.list_conversations(agent_id)[0]
    msgs = store.get_messages(conv["id"])
    assert msgs[0]["content"] == "[Scheduled Task: Pay rent]\n\nSummarize my week"
    assert msgs[-1]["content"] == "Here is your summary."
    assert store.get_task(task["id"])["agent_run_state"] == "completed"
    assert store.list_notifications(agent_id)[0]["type"] == "task_update"
    assert store.list_activity(agent_id, "cron_execution")


@pytest.mark.asyncio
async def test_agent_task_lock_contention_defers(runtime, store, agent_id):
    task = store.create_task(agent_id, "Busy", assignee_type="agent")
    locked = runtime.runstate.acquire(task["id"])
    job = _job(
        runtime, agent_id, "agent_task",
        {"instruction": "Check", "taskId": task["id"]}, task_id=task["id"],
    )
    runtime.jobs.claim(job)
    with patch("taskbot.core.providers.litellm.achat", new_callable=AsyncMock) as achat:
        execution = await runtime.dispatcher.execute(job, "exec-1")
        achat.assert_not_called()

    assert execution["state"] == "failed"
    assert "locked" in execution["error"]
    after = store.get_job(job["id"])
    assert after["failure_count"] == 0
    # requeued until the task lock runs out
    assert after["locked_until"] == locked["lock_expires_at"]
    assert after["status"] == "active"


@pytest.mark.asyncio
async def test_agent_task_llm_error_fails_task(runtime, store, agent_id):
    task = store.create_task(agent_id, "Doomed", assignee_type="agent")
    job = _job(
        runtime, agent_id, "agent_task",
        {"instruction": "Try", "taskId": task["id"]}, task_id=task["id"],
    )
    error = AIMessage(content="Error calling LLM: rate limited")
    with patch("taskbot.core.providers.litellm.achat", new_callable=AsyncMock, return_value=error):
        execution = await runtime.dispatcher.execute(job, "exec-1")

    assert execution["state"] == "failed"
    assert "rate limited" in execution["error"]
    after = store.get_task(task["id"])
    assert after["agent_run_state"] == "failed"
    assert after["lock_expires_at"] is None
    comments = store.list_comments(task_id=task["id"])
    assert len(comments) == 1
    assert comments[0]["author_type"] == "system"
    assert comments[0]["content"].startswith('Scheduled job "Pay rent" failed:')


@pytest.mark.asyncio
async def test_agent_task_concurrency_is_capped(cfg, store, agent_id):
    cfg.background.dispatcher.agent_task_concurrency = 2
    runtime = Runtime(cfg, db=store)
    jobs = [
        _job(runtime, agent_id, "agent_task", {"instruction": f"Digest {i}"}, job_type="one_time")
        for i in range(4)
    ]
    opened = asyncio.Event()
    active = peak = 0

    async def held_reply(*args, **kwargs):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        try:
            await opened.wait()
        finally:
            active -= 1
        return AIMessage(content="Digest sent.")

    with patch("taskbot.core.providers.litellm.achat", new=AsyncMock(side_effect=held_reply)):
        runs = asyncio.gather(*(
            runtime.dispatcher.execute(job, f"exec-{i}") for i, job in enumerate(jobs)
        ))
        for _ in range(200):
            if active >= 2:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        assert active == 2
        opened.set()
        executions = await runs

    assert peak == 2
    assert [e["state"] for e in executions] == ["success"] * 4
