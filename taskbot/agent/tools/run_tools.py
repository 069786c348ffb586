"""Run tools — available to a background run working on one task."""

from __future__ import annotations

from typing import Literal

from langchain_core.tools import tool

from taskbot.agent.tools.context import ToolContext, failure, truncate
from taskbot.agent.tools.scheduling import create_follow_up
from taskbot.core.errors import TaskbotError


def make_run_tools(ctx: ToolContext) -> list:
    """Tools bound to ``ctx.task_id``. Requires the run-state coordinator."""
    if ctx.runstate is None or ctx.task_id is None:
        return []
    db = ctx.db
    runstate = ctx.runstate
    task_id = ctx.task_id

    @tool
    def log_progress(content: str, comment_type: Literal["progress", "note", "question"] = "progress") -> dict:
        """Log a progress update on the current task: what you are doing or have done."""
        comment = db.add_comment(
            content, task_id=task_id, author_type="agent",
            author_id=ctx.agent_id, comment_type=comment_type,
        )
        return {"success": True, "comment_id": comment["id"],
                "message": f"Progress logged: {truncate(content, 100)}"}

    @tool
    def mark_task_complete(resolution: str) -> dict:
        """Mark the current task as complete with a summary of what was done. Ends this run."""
        try:
            return runstate.mark_complete(task_id, resolution, ctx.agent_id)
        except TaskbotError as e:
            return failure(str(e))

    @tool
    def request_human_input(question: str) -> dict:
        """Ask the user a question when you are blocked. The task waits for their
        answer and this run ends."""
        try:
            return runstate.request_input(task_id, question, ctx.agent_id)
        except TaskbotError as e:
            return failure(str(e))

    @tool
    async def search_context(query: str) -> dict:
        """Search memory, tasks and projects for information relevant to this task."""
        embedding = await ctx.embed(query)
        if embedding is None:
            return failure("Semantic search is unavailable")
        threshold = ctx.config.background.task_worker.related_threshold
        rows = db.search_embeddings(embedding, ctx.agent_id, match_count=8, match_threshold=threshold)
        rows = [r for r in rows if r["source_id"] != task_id]
        lines = [
            f"- [{r['source_type']}] {r['title']}: {truncate(r['content'], 150)}" for r in rows
        ]
        return {
            "success": True,
            "results": "\n".join(lines) or "No relevant context found",
            "count": len(rows),
        }

    tools = [log_progress, mark_task_complete, request_human_input, search_context]

    if ctx.jobs is not None:
        @tool
        def schedule_follow_up(reason: str, check_at: str, instruction: str | None = None) -> dict:
            """Schedule yourself to check back on this task at a specific time (ISO
            datetime). Use when waiting for external events like email replies."""
            return create_follow_up(ctx, task_id, reason, check_at, instruction)

        tools.insert(3, schedule_follow_up)

    return tools
