"""Comment tools — the append-only activity trail on tasks and projects."""

from __future__ import annotations

from typing import Literal

from langchain_core.tools import tool

from taskbot.agent.tools.context import ToolContext, failure

CommentType = Literal["progress", "question", "note", "resolution", "status_change"]


def make_comment_tools(ctx: ToolContext) -> list:
    db = ctx.db

    @tool
    def add_comment(
        content: str,
        task_id: str | None = None,
        project_id: str | None = None,
        comment_type: CommentType = "note",
    ) -> dict:
        """Add a comment to a task or project (exactly one of task_id / project_id)."""
        if bool(task_id) == bool(project_id):
            return failure("Provide exactly one of task_id or project_id")
        if task_id and db.get_task(task_id, ctx.agent_id) is None:
            return failure("Task not found")
        if project_id and db.get_project(project_id, ctx.agent_id) is None:
            return failure("Project not found")
        comment = db.add_comment(
            content, task_id=task_id, project_id=project_id,
            author_type="agent", author_id=ctx.agent_id, comment_type=comment_type,
        )
        return {"success": True, "comment_id": comment["id"], "message": "Comment added"}

    @tool
    def list_comments(task_id: str | None = None, project_id: str | None = None, limit: int = 20) -> dict:
        """List comments on a task or project to see the activity history (newest first)."""
        if not task_id and not project_id:
            return failure("Provide task_id or project_id")
        comments = db.list_comments(task_id=task_id, project_id=project_id, limit=limit)
        return {
            "success": True,
            "comments": [
                {
                    "id": c["id"],
                    "type": c["comment_type"],
                    "author": c["author_type"],
                    "content": c["content"],
                    "created_at": c["created_at"],
                }
                for c in comments
            ],
            "count": len(comments),
        }

    return [add_comment, list_comments]
