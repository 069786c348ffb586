"""Project tools — CRUD over projects."""

from __future__ import annotations

from typing import Any, Literal

from langchain_core.tools import tool

from taskbot.agent.tools.context import ToolContext, failure
from taskbot.agent.tools.task_tools import task_summary

Priority = Literal["high", "medium", "low"]
ProjectStatus = Literal["active", "completed", "archived"]


def _project_summary(project: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": project["id"],
        "title": project["title"],
        "status": project["status"],
        "priority": project["priority"],
        "description": project.get("description"),
    }


def make_project_tools(ctx: ToolContext) -> list:
    db = ctx.db

    @tool
    async def create_project(
        title: str, description: str | None = None, priority: Priority = "medium"
    ) -> dict:
        """Create a new project to track work."""
        project = db.create_project(
            ctx.agent_id, title, description=description, priority=priority,
            embedding=await ctx.embed(title, description),
        )
        return {"success": True, "project": _project_summary(project), "message": f'Created project "{title}"'}

    @tool
    def list_projects(status: ProjectStatus | None = None) -> dict:
        """List all projects, optionally filtered by status."""
        projects = db.list_projects(ctx.agent_id, status=status)
        return {"success": True, "projects": [_project_summary(p) for p in projects], "count": len(projects)}

    @tool
    def get_project(project_id: str) -> dict:
        """Get details of a specific project by ID, including its tasks."""
        project = db.get_project(project_id, ctx.agent_id)
        if project is None:
            return failure("Project not found")
        tasks = db.list_tasks(ctx.agent_id, project_id=project_id)
        return {
            "success": True,
            "project": _project_summary(project),
            "tasks": [task_summary(t) for t in tasks],
        }

    @tool
    async def update_project(
        project_id: str,
        title: str | None = None,
        description: str | None = None,
        status: ProjectStatus | None = None,
        priority: Priority | None = None,
    ) -> dict:
        """Update an existing project's title, description, status, or priority."""
        current = db.get_project(project_id, ctx.agent_id)
        if current is None:
            return failure("Project not found")
        fields: dict[str, Any] = {}
        if title:
            fields["title"] = title
        if description is not None:
            fields["description"] = description
        if status:
            fields["status"] = status
        if priority:
            fields["priority"] = priority
        if not fields:
            return failure("No fields to update")
        if title or description is not None:
            embedding = await ctx.embed(
                title or current["title"],
                description if description is not None else current.get("description"),
            )
            if embedding is not None:
                fields["embedding"] = embedding
        project = db.update_project(project_id, fields, ctx.agent_id)
        return {"success": True, "project": _project_summary(project), "message": f'Updated project "{project["title"]}"'}

    @tool
    def delete_project(project_id: str, delete_tasks: bool = False) -> dict:
        """Delete a project. Its tasks are unlinked unless delete_tasks is true."""
        project = db.get_project(project_id, ctx.agent_id)
        if project is None or not db.delete_project(project_id, ctx.agent_id, delete_tasks):
            return failure("Project not found")
        suffix = " and its tasks" if delete_tasks else ""
        return {"success": True, "message": f'Deleted project "{project["title"]}"{suffix}'}

    return [create_project, list_projects, get_project, update_project, delete_project]
