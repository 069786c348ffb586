"""Tests for the tool factory and the tool groups agents run with."""

import json

import httpx
import pytest

from taskbot.agent.tools import ToolContext, make_tools
from taskbot.core.config.schema import MailConfig
from taskbot.core.mail import ResendMailer


@pytest.fixture
def ctx(runtime, agent_id):
    return runtime.tool_context(agent_id)


def _tool(ctx, name, groups=None):
    registry = make_tools(ctx, groups)
    found = registry.get(name)
    assert found is not None, f"{name} not registered"
    return found


# ════════════════════════════════════════════════════════════
# REGISTRY
# ════════════════════════════════════════════════════════════


def test_catalog_marks_missing_collaborators(ctx):
    registry = make_tools(ctx)
    catalog = {row["name"]: row for row in registry.get_catalog()}
    assert catalog["create_task"]["available"] is True
    assert catalog["send_email"]["available"] is False
    assert catalog["send_email"]["requires"] == ["mailer"]
    # run tools need a task
    assert catalog["mark_task_complete"]["available"] is False
    assert "send_email" not in registry


def test_run_group_bound_to_task(runtime, agent_id, store):
    task = store.create_task(agent_id, "Report", assignee_type="agent")
    registry = make_tools(runtime.tool_context(agent_id, task_id=task["id"]), ["run"])
    assert registry.get_tools_for_groups(["run"]) == {
        "log_progress", "mark_task_complete", "request_human_input",
        "schedule_follow_up", "search_context",
    }


def test_scheduling_needs_jobs(store, agent_id, cfg):
    registry = make_tools(ToolContext(agent_id=agent_id, db=store, config=cfg), ["scheduling"])
    assert len(registry) == 0
    assert "schedule_reminder" in registry.get_group_tool_names("scheduling")


def test_unknown_group(ctx):
    with pytest.raises(KeyError):
        make_tools(ctx, ["teleport"])


# ════════════════════════════════════════════════════════════
# TASKS
# ════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_create_and_list_tasks(ctx, store, agent_id):
    result = await _tool(ctx, "create_task").ainvoke(
        {"title": "Book flights", "priority": "high", "assignee_type": "agent"}
    )
    assert result["success"] is True
    task = store.get_task(result["task"]["id"])
    assert task["assignee_id"] == agent_id
    assert task["priority"] == "high"

    listed = await _tool(ctx, "list_tasks").ainvoke({})
    assert listed["count"] == 1
    assert listed["tasks"][0]["title"] == "Book flights"


@pytest.mark.asyncio
async def test_create_task_unknown_project(ctx):
    result = await _tool(ctx, "create_task").ainvoke({"title": "x", "project_id": "nope"})
    assert result == {"success": False, "error": "Project not found"}


@pytest.mark.asyncio
async def test_subtask_blocked_by_parent(ctx, store, agent_id):
    parent = store.create_task(agent_id, "Plan trip")
    result = await _tool(ctx, "create_subtask").ainvoke(
        {"parent_task_id": parent["id"], "title": "Pick hotel"}
    )
    sub = store.get_task(result["subtask"]["id"])
    assert sub["blocked_by"] == [parent["id"]]
    assert sub["assignee_type"] == "agent"
    assert store.list_comments(task_id=parent["id"])[0]["comment_type"] == "progress"


@pytest.mark.asyncio
async def test_status_change_leaves_comment(ctx, store, agent_id):
    task = store.create_task(agent_id, "Call bank")
    result = await _tool(ctx, "update_task").ainvoke({"task_id": task["id"], "status": "done"})
    assert result["task"]["status"] == "done"
    assert store.get_task(task["id"])["completed_at"] is not None
    comment = store.list_comments(task_id=task["id"])[0]
    assert comment["content"] == "Status changed from todo to done"


@pytest.mark.asyncio
async def test_update_requires_fields(ctx, store, agent_id):
    task = store.create_task(agent_id, "Idle")
    result = await _tool(ctx, "update_task").ainvoke({"task_id": task["id"]})
    assert result["error"] == "No fields to update"


@pytest.mark.asyncio
async def test_tasks_scoped_to_agent(runtime, store, agent_id):
    other = store.create_agent("u2")
    foreign = store.create_task(other, "Not yours")
    ctx = runtime.tool_context(agent_id)
    assert (await _tool(ctx, "get_task").ainvoke({"task_id": foreign["id"]}))["success"] is False
    assert (await _tool(ctx, "delete_task").ainvoke({"task_id": foreign["id"]}))["success"] is False
    assert store.get_task(foreign["id"]) is not None


# ════════════════════════════════════════════════════════════
# SCHEDULING
# ════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_reminder_uses_agent_timezone(runtime, store):
    agent = store.create_agent("u-chi", timezone="America/Chicago")
    ctx = runtime.tool_context(agent)
    result = await _tool(ctx, "schedule_reminder").ainvoke(
        {"title": "Stand up", "run_at": "2026-01-31T20:00:00Z"}
    )
    assert result["success"] is True
    assert result["reminder"]["scheduled_for"] == "Sat, Jan 31, 2:00 PM"
    job = store.get_job(result["reminder"]["id"])
    assert job["timezone"] == "America/Chicago"
    assert job["action_payload"]["message"] == "Stand up"


@pytest.mark.asyncio
async def test_recurring_reminder(ctx, store):
    result = await _tool(ctx, "schedule_reminder").ainvoke(
        {"title": "Water plants", "cron_expression": "0 8 * * *"}
    )
    assert result["reminder"]["type"] == "recurring"
    job = store.get_job(result["reminder"]["id"])
    assert job["schedule_type"] == "cron"
    assert job["job_type"] == "recurring"


@pytest.mark.asyncio
async def test_reminder_rejects_both_schedules(ctx, store):
    result = await _tool(ctx, "schedule_reminder").ainvoke(
        {"title": "x", "run_at": "2026-01-31T20:00:00Z", "cron_expression": "0 8 * * *"}
    )
    assert result["success"] is False
    assert store.count_rows("scheduled_jobs") == 0


@pytest.mark.asyncio
async def test_reminder_rejects_bad_cron(ctx):
    result = await _tool(ctx, "schedule_reminder").ainvoke(
        {"title": "x", "cron_expression": "every day"}
    )
    assert result["success"] is False


@pytest.mark.asyncio
async def test_schedule_agent_task(ctx, store, agent_id):
    task = store.create_task(agent_id, "Weekly report", assignee_type="agent")
    result = await _tool(ctx, "schedule_agent_task").ainvoke({
        "title": "Report",
        "instruction": "Compile the weekly report",
        "cron_expression": "0 9 * * 1",
        "task_id": task["id"],
    })
    job = store.get_job(result["job"]["id"])
    assert job["action_type"] == "agent_task"
    assert job["action_payload"]["taskId"] == task["id"]
    assert job["task_id"] == task["id"]


@pytest.mark.asyncio
async def test_cancel_other_agents_job(runtime, store, agent_id):
    other = store.create_agent("u2")
    mine = runtime.tool_context(other)
    created = await _tool(mine, "schedule_reminder").ainvoke(
        {"title": "Theirs", "run_at": "2026-01-31T20:00:00Z"}
    )
    ctx = runtime.tool_context(agent_id)
    result = await _tool(ctx, "cancel_scheduled_job").ainvoke({"job_id": created["reminder"]["id"]})
    assert result == {"success": False, "error": "Scheduled job not found or access denied"}
    assert store.get_job(created["reminder"]["id"])["status"] == "active"


@pytest.mark.asyncio
async def test_pause_via_update(ctx, store):
    created = await _tool(ctx, "schedule_reminder").ainvoke(
        {"title": "Daily", "cron_expression": "0 8 * * *"}
    )
    result = await _tool(ctx, "update_scheduled_job").ainvoke(
        {"job_id": created["reminder"]["id"], "status": "paused"}
    )
    assert result["job"]["status"] == "paused"


# ════════════════════════════════════════════════════════════
# RUN TOOLS
# ════════════════════════════════════════════════════════════


@pytest.fixture
def run_ctx(runtime, store, agent_id):
    task = store.create_task(agent_id, "Research vendors", assignee_type="agent")
    runtime.runstate.acquire(task["id"])
    return runtime.tool_context(agent_id, task_id=task["id"])


@pytest.mark.asyncio
async def test_mark_task_complete(run_ctx, store):
    result = await _tool(run_ctx, "mark_task_complete", ["run"]).ainvoke(
        {"resolution": "Shortlisted three vendors"}
    )
    assert result["success"] is True
    assert result["stopped"] is True
    assert store.get_task(run_ctx.task_id)["status"] == "done"


@pytest.mark.asyncio
async def test_request_human_input(run_ctx, store, agent_id):
    result = await _tool(run_ctx, "request_human_input", ["run"]).ainvoke(
        {"question": "What budget?"}
    )
    assert result["stopped"] is True
    task = store.get_task(run_ctx.task_id)
    assert task["status"] == "waiting_on"
    assert task["agent_run_state"] == "needs_input"
    assert store.list_notifications(agent_id)[0]["type"] == "input_needed"


@pytest.mark.asyncio
async def test_log_progress(run_ctx, store):
    await _tool(run_ctx, "log_progress", ["run"]).ainvoke({"content": "Compared prices"})
    assert store.list_comments(task_id=run_ctx.task_id)[0]["content"] == "Compared prices"


@pytest.mark.asyncio
async def test_schedule_follow_up(run_ctx, store):
    result = await _tool(run_ctx, "schedule_follow_up", ["run"]).ainvoke(
        {"reason": "Waiting on quotes", "check_at": "2026-02-02T15:00:00Z"}
    )
    assert result["success"] is True
    job = store.get_job(result["job_id"])
    assert job["job_type"] == "follow_up"
    assert job["action_type"] == "agent_task"
    assert job["task_id"] == run_ctx.task_id
    note = store.list_comments(task_id=run_ctx.task_id)[0]
    assert note["content"].startswith("Scheduled follow-up for")


@pytest.mark.asyncio
async def test_schedule_follow_up_bad_date(run_ctx):
    result = await _tool(run_ctx, "schedule_follow_up", ["run"]).ainvoke(
        {"reason": "x", "check_at": "next tuesday"}
    )
    assert result["success"] is False


@pytest.mark.asyncio
async def test_search_context_without_embedder(run_ctx):
    result = await _tool(run_ctx, "search_context", ["run"]).ainvoke({"query": "vendors"})
    assert result == {"success": False, "error": "Semantic search is unavailable"}


# ════════════════════════════════════════════════════════════
# EMAIL
# ════════════════════════════════════════════════════════════


@pytest.fixture
def sent():
    return []


@pytest.fixture
def mail_ctx(runtime, agent_id, sent):
    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(request)
        return httpx.Response(200, json={"id": f"msg-{len(sent)}"})

    mailer = ResendMailer(
        MailConfig(api_key="re_test", from_address="bot@example.com"),
        transport=httpx.MockTransport(handler),
    )
    ctx = runtime.tool_context(agent_id)
    ctx.mailer = mailer
    return ctx


@pytest.mark.asyncio
async def test_send_email(mail_ctx, sent, store, agent_id):
    result = await _tool(mail_ctx, "send_email").ainvoke(
        {"to": "bob@example.com", "subject": "Hi", "body": "Hello Bob"}
    )
    assert result["message_id"] == "msg-1"
    assert sent[0].headers["Authorization"] == "Bearer re_test"
    assert json.loads(sent[0].content)["to"] == ["bob@example.com"]
    outbound = store.list_emails(agent_id, direction="outbound")
    assert outbound[0]["to_address"] == "bob@example.com"


@pytest.mark.asyncio
async def test_reply_threads_and_marks_read(mail_ctx, sent, store, agent_id):
    inbound = store.insert_email(
        agent_id, "bob@example.com", "bot@example.com", "Quote", "Price?", message_id="<m1>"
    )
    await _tool(mail_ctx, "reply_to_email").ainvoke({"email_id": inbound["id"], "body": "$10"})
    body = json.loads(sent[0].content)
    assert body["subject"] == "Re: Quote"
    assert body["headers"]["In-Reply-To"] == "<m1>"
    assert store.get_email(inbound["id"])["is_read"] == 1


@pytest.mark.asyncio
async def test_send_failure_is_reported(mail_ctx, store, agent_id):
    mail_ctx.mailer = ResendMailer(
        MailConfig(api_key="re_test", from_address="bot@example.com"),
        transport=httpx.MockTransport(lambda request: httpx.Response(422, json={})),
    )
    result = await _tool(mail_ctx, "send_email").ainvoke(
        {"to": "bob@example.com", "subject": "Hi", "body": "x"}
    )
    assert result == {"success": False, "error": "Mail provider returned 422"}
    assert store.list_emails(agent_id, direction="outbound") == []


@pytest.mark.asyncio
async def test_create_task_from_email(runtime, store, agent_id):
    email = store.insert_email(agent_id, "bob@example.com", "bot@example.com", "Invoice", "Pay by Friday")
    ctx = runtime.tool_context(agent_id, email_id=email["id"])
    result = await _tool(ctx, "create_task_from_email", ["email_links"]).ainvoke(
        {"title": "Pay invoice"}
    )
    assert store.get_email(email["id"])["task_id"] == result["task"]["id"]
    assert store.list_activity(agent_id, "task_created")
