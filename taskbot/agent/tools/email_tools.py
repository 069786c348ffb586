"""Email tools — inbox access, outbound mail, and linking an inbound email to work."""

from __future__ import annotations

from typing import Any, Literal

from langchain_core.tools import tool

from taskbot.agent.tools.context import ToolContext, failure, truncate
from taskbot.core.errors import TaskbotError
from taskbot.core.timeutil import now_iso

Priority = Literal["high", "medium", "low"]
TaskStatus = Literal["todo", "in_progress", "waiting_on", "done"]


def _email_summary(email: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": email["id"],
        "from": email["from_address"],
        "subject": email["subject"],
        "preview": truncate(email["body"], 150),
        "is_read": bool(email["is_read"]),
        "received_at": email["created_at"],
    }


def make_email_tools(ctx: ToolContext) -> list:
    """Mailbox tools. Empty list when no mailer is configured."""
    if ctx.mailer is None:
        return []
    db = ctx.db
    mailer = ctx.mailer

    @tool
    def check_email(unread_only: bool = True, limit: int = 10) -> dict:
        """Check the agent's inbox. Returns the most recent emails first."""
        emails = db.list_emails(ctx.agent_id, unread_only=unread_only, limit=limit)
        return {"success": True, "emails": [_email_summary(e) for e in emails], "count": len(emails)}

    @tool
    def get_email_details(email_id: str) -> dict:
        """Get the full content of one email."""
        email = db.get_email(email_id, ctx.agent_id)
        if email is None:
            return failure("Email not found")
        return {
            "success": True,
            "email": {
                **_email_summary(email),
                "to": email["to_address"],
                "body": email["body"],
                "project_id": email["project_id"],
                "task_id": email["task_id"],
            },
        }

    @tool
    async def send_email(to: str, subject: str, body: str) -> dict:
        """Send a new email from the agent's address."""
        try:
            message_id = await mailer.send(to, subject, body)
        except TaskbotError as e:
            return failure(str(e))
        db.insert_email(
            ctx.agent_id, mailer.from_address, to, subject, body,
            direction="outbound", message_id=message_id,
        )
        return {"success": True, "message_id": message_id, "message": f"Email sent to {to}"}

    @tool
    async def reply_to_email(email_id: str, body: str) -> dict:
        """Reply to an email in the same thread."""
        original = db.get_email(email_id, ctx.agent_id)
        if original is None:
            return failure("Email not found")
        subject = original["subject"] or ""
        if not subject.lower().startswith("re:"):
            subject = f"Re: {subject}"
        try:
            message_id = await mailer.send(
                original["from_address"], subject, body, in_reply_to=original["message_id"]
            )
        except TaskbotError as e:
            return failure(str(e))
        db.insert_email(
            ctx.agent_id, mailer.from_address, original["from_address"], subject, body,
            direction="outbound", message_id=message_id, in_reply_to=original["message_id"],
        )
        db.update_email(email_id, {"is_read": 1})
        return {"success": True, "message_id": message_id, "message": f"Replied to {original['from_address']}"}

    @tool
    def mark_email_as_read(email_id: str) -> dict:
        """Mark an email as read."""
        if db.update_email(email_id, {"is_read": 1}, ctx.agent_id) is None:
            return failure("Email not found")
        return {"success": True, "message": "Email marked as read"}

    return [check_email, get_email_details, send_email, reply_to_email, mark_email_as_read]


def make_email_link_tools(ctx: ToolContext) -> list:
    """Tools that tie the email being processed (``ctx.email_id``) to projects and tasks."""
    if ctx.email_id is None:
        return []
    db = ctx.db
    email_id = ctx.email_id

    def _email() -> dict[str, Any]:
        return db.get_email(email_id) or {}

    @tool
    def link_email_to_project(project_id: str, reason: str | None = None) -> dict:
        """Link this email to a project when it is clearly about that project."""
        project = db.get_project(project_id, ctx.agent_id)
        if project is None:
            return failure("Project not found or not accessible")
        db.update_email(email_id, {"project_id": project_id})
        db.log_activity(
            ctx.agent_id, "system", f"Linked email to project: {project['title']}",
            description=reason or f"Email linked to project {project['title']}",
            source="email", project_id=project_id,
            metadata={"email_id": email_id, "link_type": "email_to_project"},
        )
        return {"success": True, "message": f"Email linked to project: {project['title']}",
                "project_title": project["title"]}

    @tool
    def link_email_to_task(task_id: str, add_comment: bool = True, comment: str | None = None) -> dict:
        """Link this email to an existing task it discusses."""
        task = db.get_task(task_id, ctx.agent_id)
        if task is None:
            return failure("Task not found or not accessible")
        db.update_email(email_id, {"task_id": task_id})
        if add_comment:
            email = _email()
            db.add_comment(
                comment or f"Related email from {email.get('from_address')}: {email.get('subject')}",
                task_id=task_id, author_type="agent", author_id=ctx.agent_id, comment_type="note",
            )
        db.log_activity(
            ctx.agent_id, "system", f"Linked email to task: {task['title']}",
            source="email", task_id=task_id,
            metadata={"email_id": email_id, "link_type": "email_to_task"},
        )
        return {"success": True, "message": f"Email linked to task: {task['title']}"}

    @tool
    async def create_task_from_email(
        title: str,
        description: str | None = None,
        priority: Priority = "medium",
        project_id: str | None = None,
        assignee_type: Literal["user", "agent"] = "agent",
    ) -> dict:
        """Create a new task from this email's content and link the email to it."""
        if project_id and db.get_project(project_id, ctx.agent_id) is None:
            return failure("Project not found")
        task = db.create_task(
            ctx.agent_id, title, description=description, priority=priority,
            project_id=project_id, assignee_type=assignee_type,
            assignee_id=ctx.resolve_assignee(assignee_type),
            embedding=await ctx.embed(title, description),
        )
        db.update_email(email_id, {"task_id": task["id"]})
        db.log_activity(
            ctx.agent_id, "task_created", f"Created task from email: {title}",
            description=f"Task created based on email from {_email().get('from_address')}",
            source="email", task_id=task["id"], project_id=project_id,
            metadata={"email_id": email_id},
        )
        return {"success": True, "task": {"id": task["id"], "title": title, "status": task["status"]},
                "message": f'Created task "{title}" from email'}

    @tool
    def update_task_from_email(task_id: str, comment: str, status: TaskStatus | None = None) -> dict:
        """Update an existing task based on information in this email."""
        if db.get_task(task_id, ctx.agent_id) is None:
            return failure("Task not found")
        if status:
            fields: dict[str, Any] = {"status": status}
            if status == "done":
                fields["completed_at"] = now_iso()
            db.update_task(task_id, fields, ctx.agent_id)
        db.add_comment(
            comment, task_id=task_id, author_type="agent", author_id=ctx.agent_id,
            comment_type="status_change" if status else "note",
        )
        suffix = f" to {status}" if status else ""
        return {"success": True, "message": f"Updated task {task_id}{suffix}"}

    return [link_email_to_project, link_email_to_task, create_task_from_email, update_task_from_email]
