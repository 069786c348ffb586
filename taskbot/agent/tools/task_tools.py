"""Task tools — CRUD over tasks with re-embedding on text changes."""

from __future__ import annotations

from typing import Any, Literal

from langchain_core.tools import tool

from taskbot.agent.tools.context import ToolContext, failure
from taskbot.core.timeutil import now_iso

Priority = Literal["high", "medium", "low"]
TaskStatus = Literal["todo", "in_progress", "waiting_on", "done"]
Assignee = Literal["user", "agent"]

_OPEN_STATUSES = ["todo", "in_progress", "waiting_on"]


def task_summary(task: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": task["id"],
        "title": task["title"],
        "status": task["status"],
        "priority": task["priority"],
        "due_date": task.get("due_date"),
        "project_id": task.get("project_id"),
        "assignee_type": task.get("assignee_type"),
    }


def make_task_tools(ctx: ToolContext) -> list:
    """Create task tools bound to ``ctx.agent_id``."""
    db = ctx.db

    @tool
    async def create_task(
        title: str,
        description: str | None = None,
        priority: Priority = "medium",
        due_date: str | None = None,
        project_id: str | None = None,
        assignee_type: Assignee = "user",
        blocked_by: list[str] | None = None,
    ) -> dict:
        """Create a new task, optionally in a project and assigned to the user or the agent."""
        if project_id and db.get_project(project_id, ctx.agent_id) is None:
            return failure("Project not found")
        task = db.create_task(
            ctx.agent_id,
            title,
            description=description,
            priority=priority,
            due_date=due_date,
            project_id=project_id,
            assignee_type=assignee_type,
            assignee_id=ctx.resolve_assignee(assignee_type),
            blocked_by=blocked_by,
            embedding=await ctx.embed(title, description),
        )
        return {
            "success": True,
            "task": task_summary(task),
            "message": f'Created task "{title}"',
        }

    @tool
    def list_tasks(
        status: Literal["todo", "in_progress", "waiting_on", "done", "open", "all"] = "open",
        project_id: str | None = None,
        assignee_type: Assignee | None = None,
        limit: int = 20,
    ) -> dict:
        """List tasks. status='open' (default) excludes done tasks; 'all' includes everything."""
        if status == "open":
            statuses = _OPEN_STATUSES
        elif status == "all":
            statuses = None
        else:
            statuses = [status]
        tasks = db.list_tasks(
            ctx.agent_id, statuses=statuses, project_id=project_id,
            assignee_type=assignee_type, limit=limit,
        )
        return {"success": True, "tasks": [task_summary(t) for t in tasks], "count": len(tasks)}

    @tool
    def get_task(task_id: str) -> dict:
        """Get a task's full details including its latest comments."""
        task = db.get_task(task_id, ctx.agent_id)
        if task is None:
            return failure("Task not found")
        comments = db.list_comments(task_id=task_id, limit=5)
        return {
            "success": True,
            "task": {
                **task_summary(task),
                "description": task.get("description"),
                "blocked_by": task.get("blocked_by") or [],
                "agent_run_state": task["agent_run_state"],
                "completed_at": task.get("completed_at"),
                "created_at": task["created_at"],
            },
            "comments": [
                {"type": c["comment_type"], "author": c["author_type"], "content": c["content"]}
                for c in comments
            ],
        }

    @tool
    async def update_task(
        task_id: str,
        title: str | None = None,
        description: str | None = None,
        status: TaskStatus | None = None,
        priority: Priority | None = None,
        due_date: str | None = None,
        project_id: str | None = None,
        assignee_type: Assignee | None = None,
        blocked_by: list[str] | None = None,
    ) -> dict:
        """Update a task's details, status, or assignment. Only the given fields change."""
        current = db.get_task(task_id, ctx.agent_id)
        if current is None:
            return failure("Task not found")

        fields: dict[str, Any] = {}
        if title:
            fields["title"] = title
        if description is not None:
            fields["description"] = description
        if status:
            fields["status"] = status
            if status == "done":
                fields["completed_at"] = now_iso()
        if priority:
            fields["priority"] = priority
        if due_date is not None:
            fields["due_date"] = due_date or None
        if project_id is not None:
            fields["project_id"] = project_id or None
        if assignee_type is not None:
            fields["assignee_type"] = assignee_type
            fields["assignee_id"] = ctx.resolve_assignee(assignee_type)
        if blocked_by is not None:
            fields["blocked_by"] = blocked_by
        if not fields:
            return failure("No fields to update")

        if title or description is not None:
            embedding = await ctx.embed(
                title or current["title"],
                description if description is not None else current.get("description"),
            )
            if embedding is not None:
                fields["embedding"] = embedding

        task = db.update_task(task_id, fields, ctx.agent_id)
        if status and status != current["status"]:
            db.add_comment(
                f"Status changed from {current['status']} to {status}",
                task_id=task_id, author_type="agent", author_id=ctx.agent_id,
                comment_type="status_change",
            )
        return {"success": True, "task": task_summary(task), "message": f'Updated task "{task["title"]}"'}

    @tool
    def complete_task(task_id: str, resolution: str | None = None) -> dict:
        """Mark a task as done, with an optional resolution note."""
        task = db.update_task(
            task_id, {"status": "done", "completed_at": now_iso()}, ctx.agent_id
        )
        if task is None:
            return failure("Task not found")
        if resolution:
            db.add_comment(
                resolution, task_id=task_id, author_type="agent",
                author_id=ctx.agent_id, comment_type="resolution",
            )
        return {"success": True, "task": task_summary(task), "message": f'Completed "{task["title"]}"'}

    @tool
    def delete_task(task_id: str) -> dict:
        """Delete a task permanently."""
        task = db.get_task(task_id, ctx.agent_id)
        if task is None or not db.delete_task(task_id, ctx.agent_id):
            return failure("Task not found")
        return {"success": True, "message": f'Deleted task "{task["title"]}"', "deleted_task_id": task_id}

    @tool
    async def create_subtask(
        parent_task_id: str,
        title: str,
        description: str | None = None,
        priority: Priority = "medium",
        assignee_type: Assignee = "agent",
    ) -> dict:
        """Create a subtask linked to a parent task. Useful for breaking down complex work."""
        parent = db.get_task(parent_task_id, ctx.agent_id)
        if parent is None:
            return failure("Parent task not found")
        subtask = db.create_task(
            ctx.agent_id,
            title,
            description=description,
            priority=priority,
            project_id=parent.get("project_id"),
            assignee_type=assignee_type,
            assignee_id=ctx.resolve_assignee(assignee_type),
            blocked_by=[parent_task_id],
            embedding=await ctx.embed(title, description),
        )
        db.add_comment(
            f'Created subtask: "{title}"', task_id=parent_task_id,
            author_type="agent", author_id=ctx.agent_id, comment_type="progress",
        )
        return {
            "success": True,
            "subtask": {
                "id": subtask["id"],
                "title": subtask["title"],
                "parent_task_id": parent_task_id,
                "parent_task_title": parent["title"],
            },
            "message": f'Created subtask "{title}" under "{parent["title"]}"',
        }

    return [create_task, list_tasks, get_task, update_task, complete_task, delete_task, create_subtask]
