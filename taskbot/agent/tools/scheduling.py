"""Scheduling tools — reminders, scheduled agent tasks and follow-ups."""

from __future__ import annotations

from typing import Any, Literal

from langchain_core.tools import tool

from taskbot.agent.tools.context import ToolContext, failure, truncate
from taskbot.core.cron.jobs import BOTH_SCHEDULES, JobStore
from taskbot.core.cron.schedule import format_local, normalize_run_at
from taskbot.core.errors import TaskbotError
from taskbot.core.timeutil import parse_iso


def _check_schedule(run_at: str | None, cron_expression: str | None, noun: str) -> str | None:
    if not run_at and not cron_expression:
        return f"Must provide either 'run_at' for one-time or 'cron_expression' for recurring {noun}"
    if run_at and cron_expression:
        return BOTH_SCHEDULES
    return None


def make_scheduling_tools(ctx: ToolContext) -> list:
    """Scheduling tools. Empty list when the context has no JobStore."""
    if ctx.jobs is None:
        return []
    jobs: JobStore = ctx.jobs
    db = ctx.db

    def _when(job: dict[str, Any]) -> str:
        return format_local(parse_iso(job["next_run_at"]), job["timezone"])

    def _link_check(task_id: str | None, project_id: str | None) -> str | None:
        if task_id and db.get_task(task_id, ctx.agent_id) is None:
            return "Task not found"
        if project_id and db.get_project(project_id, ctx.agent_id) is None:
            return "Project not found"
        return None

    @tool
    def schedule_reminder(
        title: str,
        message: str | None = None,
        run_at: str | None = None,
        cron_expression: str | None = None,
        task_id: str | None = None,
        project_id: str | None = None,
    ) -> dict:
        """Schedule a reminder: the user simply gets a message at the given time.
        Use run_at (UTC ISO datetime ending in Z, e.g. '2026-01-31T20:00:00Z') for a
        one-time reminder, or cron_expression (e.g. '0 8 * * *' for 8am daily, '0 9 * * 1'
        for 9am Mondays) for a recurring one."""
        error = _check_schedule(run_at, cron_expression, "reminders") or _link_check(task_id, project_id)
        if error:
            return failure(error)
        try:
            job = jobs.create_job({
                "agent_id": ctx.agent_id,
                "job_type": "reminder" if run_at else "recurring",
                "title": title,
                "description": message,
                "run_at": run_at,
                "cron_expression": cron_expression,
                "timezone": ctx.tz,
                "action_type": "notify",
                "action_payload": {"message": message or title, "preferred_channel": "app"},
                "task_id": task_id,
                "project_id": project_id,
            })
        except TaskbotError as e:
            return failure(str(e))

        when = _when(job)
        if run_at:
            return {
                "success": True,
                "reminder": {"id": job["id"], "title": title, "scheduled_for": when,
                             "timezone": job["timezone"], "type": "one-time"},
                "message": f'Reminder set for {when} ({job["timezone"]}): "{title}"',
            }
        return {
            "success": True,
            "reminder": {"id": job["id"], "title": title, "schedule": cron_expression,
                         "next_run": when, "timezone": job["timezone"], "type": "recurring"},
            "message": f'Recurring reminder created: "{title}" - next: {when} ({job["timezone"]})',
        }

    @tool
    def schedule_agent_task(
        title: str,
        instruction: str,
        run_at: str | None = None,
        cron_expression: str | None = None,
        task_id: str | None = None,
        project_id: str | None = None,
    ) -> dict:
        """Schedule work for the agent to EXECUTE later with full tool access; results
        arrive in a new conversation. Use run_at (UTC ISO datetime ending in Z) for
        one-time work or cron_expression for recurring work."""
        error = _check_schedule(run_at, cron_expression, "tasks") or _link_check(task_id, project_id)
        if error:
            return failure(error)
        try:
            job = jobs.create_job({
                "agent_id": ctx.agent_id,
                "job_type": "one_time" if run_at else "recurring",
                "title": title,
                "description": instruction,
                "run_at": run_at,
                "cron_expression": cron_expression,
                "timezone": ctx.tz,
                "action_type": "agent_task",
                "action_payload": {"instruction": instruction, "taskId": task_id,
                                   "preferred_channel": "app"},
                "task_id": task_id,
                "project_id": project_id,
            })
        except TaskbotError as e:
            return failure(str(e))

        when = _when(job)
        summary = {"id": job["id"], "title": title, "instruction": truncate(instruction, 100),
                   "timezone": job["timezone"]}
        if run_at:
            summary.update(scheduled_for=when, type="one-time")
            message = (
                f'Agent task scheduled for {when} ({job["timezone"]}): "{title}" - '
                "I will execute this and send you the results in a new conversation."
            )
        else:
            summary.update(schedule=cron_expression, next_run=when, type="recurring")
            message = (
                f'Recurring agent task created: "{title}" - next execution: {when} '
                f'({job["timezone"]}). Each run will start a new conversation with results.'
            )
        return {"success": True, "job": summary, "message": message}

    @tool
    def schedule_task_follow_up(
        task_id: str, reason: str, check_at: str, instruction: str | None = None
    ) -> dict:
        """Schedule a check-back on a task at a specific time (ISO datetime). Use when
        waiting on external events such as an email reply."""
        return create_follow_up(ctx, task_id, reason, check_at, instruction)

    @tool
    def list_scheduled_jobs(
        status: Literal["active", "paused", "completed", "cancelled", "all"] = "active",
        job_type: Literal["reminder", "follow_up", "recurring", "one_time"] | None = None,
    ) -> dict:
        """List scheduled jobs: reminders, follow-ups, one-time and recurring agent tasks."""
        rows = jobs.list_jobs(
            ctx.agent_id, status=None if status == "all" else status, job_type=job_type
        )
        out = [
            {
                "id": j["id"],
                "title": j["title"],
                "type": j["job_type"],
                "schedule_type": j["schedule_type"],
                "next_run": format_local(parse_iso(j["next_run_at"]), ctx.tz),
                "cron_expression": j["cron_expression"],
                "status": j["status"],
                "failure_count": j["failure_count"],
            }
            for j in rows
        ]
        return {"success": True, "jobs": out, "count": len(out)}

    @tool
    def cancel_scheduled_job(job_id: str) -> dict:
        """Cancel a scheduled job (reminder, follow-up or recurring job)."""
        try:
            job = jobs.cancel_job(job_id, ctx.agent_id)
        except TaskbotError:
            return failure("Scheduled job not found or access denied")
        return {"success": True, "message": f'Cancelled: "{job["title"]}"', "cancelled_job_id": job_id}

    @tool
    def update_scheduled_job(
        job_id: str,
        title: str | None = None,
        run_at: str | None = None,
        cron_expression: str | None = None,
        status: Literal["active", "paused"] | None = None,
    ) -> dict:
        """Update a scheduled job's timing or title, or pause/resume it."""
        patch = {
            k: v for k, v in
            {"title": title, "run_at": run_at, "cron_expression": cron_expression, "status": status}.items()
            if v is not None
        }
        try:
            job = jobs.update_job(job_id, patch, agent_id=ctx.agent_id)
        except TaskbotError as e:
            return failure(str(e))
        return {
            "success": True,
            "job": {"id": job["id"], "title": job["title"], "status": job["status"],
                    "next_run": format_local(parse_iso(job["next_run_at"]), ctx.tz)},
            "message": f'Updated scheduled job: "{job["title"]}"',
        }

    return [
        schedule_reminder,
        schedule_agent_task,
        schedule_task_follow_up,
        list_scheduled_jobs,
        cancel_scheduled_job,
        update_scheduled_job,
    ]


def create_follow_up(
    ctx: ToolContext,
    task_id: str,
    reason: str,
    check_at: str,
    instruction: str | None = None,
) -> dict[str, Any]:
    """One-time ``follow_up`` agent task on ``task_id`` plus a note on the task."""
    try:
        when = normalize_run_at(check_at)
    except TaskbotError:
        return failure("Invalid date format. Use ISO format like '2026-01-15T10:00:00Z'")
    task = ctx.db.get_task(task_id, ctx.agent_id)
    if task is None:
        return failure("Task not found")
    try:
        job = ctx.jobs.create_job({
            "agent_id": ctx.agent_id,
            "job_type": "follow_up",
            "title": f"Follow-up: {task['title']}",
            "description": reason,
            "run_at": check_at,
            "timezone": ctx.tz,
            "action_type": "agent_task",
            "action_payload": {
                "instruction": instruction or f'Follow up on task "{task["title"]}": {reason}',
                "taskId": task_id,
            },
            "task_id": task_id,
        })
    except TaskbotError as e:
        return failure(str(e))
    local = format_local(when, ctx.tz)
    ctx.db.add_comment(
        f"Scheduled follow-up for {local}: {reason}", task_id=task_id,
        author_type="agent", author_id=ctx.agent_id, comment_type="note",
    )
    return {
        "success": True,
        "job_id": job["id"],
        "task_id": task_id,
        "task_title": task["title"],
        "scheduled_for": job["next_run_at"],
        "message": f"Follow-up scheduled for {local}",
    }
