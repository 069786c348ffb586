"""ProjectWorker — multi-task work sessions on one project."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from loguru import logger

from taskbot.agent.loop import AgentLoop
from taskbot.agent.tools import DEFAULT_GROUPS, make_tools
from taskbot.core.background.task_worker import blocker_statuses, is_unblocked
from taskbot.core.errors import ActionExecutionFailure, AlreadyLocked, NotFoundError
from taskbot.core.events import ProjectWorkEvent

if TYPE_CHECKING:
    from taskbot.core.runtime import Runtime

_OPEN = ["todo", "in_progress"]


class ProjectWorker:
    """Works through a project's open tasks in priority order.

    At most ``project_work.concurrency`` sessions run per project. Each
    task gets its own bounded agent run; its output goes to the session
    conversation and a progress comment. A project with no open tasks
    left is marked completed.
    """

    def __init__(self, runtime: Runtime):
        self.rt = runtime
        self._slots: dict[str, asyncio.Semaphore] = {}

    def _slot(self, project_id: str) -> asyncio.Semaphore:
        if project_id not in self._slots:
            self._slots[project_id] = asyncio.Semaphore(self.rt.config.background.project_work.concurrency)
        return self._slots[project_id]

    async def handle_event(self, data: dict[str, Any]) -> dict[str, Any]:
        event = ProjectWorkEvent.model_validate(data)
        return await self.run(event.project_id, event.agent_id, event.instruction)

    async def run(self, project_id: str, agent_id: str, instruction: str | None = None) -> dict[str, Any]:
        """Run one work session.

        Raises
        ------
        NotFoundError
            The project does not exist for this agent.
        """
        rt = self.rt
        cfg = rt.config.background.project_work
        async with self._slot(project_id):
            project = rt.db.get_project(project_id, agent_id)
            if project is None:
                raise NotFoundError(f"Project not found: {project_id}")
            logger.info(f"Project work started: {project['title']} ({project_id})")

            open_tasks = rt.db.list_tasks(
                agent_id, statuses=_OPEN, project_id=project_id, by_priority=True
            )
            statuses = blocker_statuses(rt.db, open_tasks)
            tasks = [t for t in open_tasks if is_unblocked(t, statuses)][: cfg.max_tasks]

            if not tasks:
                return self._finish_empty(project, agent_id, bool(open_tasks))

            conversation = rt.db.create_conversation(
                agent_id, f"Project Work: {project['title']}", channel_type="app"
            )
            system_prompt = rt.context.build(agent_id, channel="project")
            results: list[dict[str, Any]] = []
            for i, task in enumerate(tasks):
                if i:
                    await asyncio.sleep(cfg.cooldown_s)
                results.append(
                    await self._work_task(project, task, conversation["id"], system_prompt, instruction)
                )

            succeeded = sum(1 for r in results if r["success"])
            summary = f"Processed {len(results)} tasks ({succeeded} successful)"
            rt.recorder.log(
                agent_id,
                "project_work",
                f"Project work: {project['title']}",
                description=summary,
                source="cron",
                metadata={"results": results},
                conversation_id=conversation["id"],
                project_id=project_id,
            )
            rt.db.create_notification(
                agent_id,
                "project_update",
                f"Project work session completed: {project['title']}",
                content=summary,
                link_type="project",
                link_id=project_id,
            )
            logger.info(f"Project work finished: {project['title']} — {summary}")
            return {
                "success": True,
                "conversation_id": conversation["id"],
                "tasks_processed": len(results),
                "results": results,
            }

    def _finish_empty(self, project: dict[str, Any], agent_id: str, blocked: bool) -> dict[str, Any]:
        db = self.rt.db
        if blocked:
            logger.info(f"Project {project['id']}: all open tasks are blocked")
            return {"success": True, "message": "All open tasks are blocked", "tasks_processed": 0}
        if db.list_tasks(agent_id, statuses=["waiting_on"], project_id=project["id"], limit=1):
            return {"success": True, "message": "No pending tasks", "tasks_processed": 0}
        db.update_project(project["id"], {"status": "completed"}, agent_id)
        db.create_notification(
            agent_id,
            "project_update",
            f"Project completed: {project['title']}",
            content="All tasks have been completed.",
            link_type="project",
            link_id=project["id"],
        )
        logger.info(f"Project completed: {project['title']}")
        return {"success": True, "message": "No pending tasks", "completed": True, "tasks_processed": 0}

    async def _work_task(
        self,
        project: dict[str, Any],
        task: dict[str, Any],
        conversation_id: str,
        system_prompt: str,
        instruction: str | None,
    ) -> dict[str, Any]:
        rt = self.rt
        agent_id = task["agent_id"]
        summary = {"task_id": task["id"], "title": task["title"]}
        try:
            rt.runstate.acquire(task["id"])
        except (AlreadyLocked, NotFoundError) as e:
            logger.info(f"Skipping task {task['id']} in project {project['id']}: {e}")
            return {**summary, "success": False, "error": str(e)}

        try:
            rt.db.update_task(task["id"], {"status": "in_progress"})
            ctx = rt.tool_context(
                agent_id, conversation_id=conversation_id,
                task_id=task["id"], project_id=project["id"],
            )
            registry = make_tools(ctx, groups=DEFAULT_GROUPS + ["run"])
            loop = AgentLoop(
                rt.config,
                system_prompt,
                tools=registry.get_all_tools(),
                max_steps=rt.config.background.step_limits.project,
                recorder=rt.recorder,
                agent_id=agent_id,
                conversation_id=conversation_id,
                task_id=task["id"],
            )
            result = await loop.run(_project_task_prompt(project, task, instruction))
            if result.text.startswith("Error calling LLM") and not result.tool_calls:
                raise ActionExecutionFailure(result.text)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(f"Project work on task {task['id']} failed: {error}")
            rt.db.add_comment(
                f"Encountered an error while working on this task: {error}",
                task_id=task["id"], author_type="agent", author_id=agent_id, comment_type="note",
            )
            rt.runstate.release(task["id"], "failed", error)
            return {**summary, "success": False, "error": error}

        rt.runstate.finalize(task["id"], success=True)
        text = result.text or "(no response)"
        rt.db.add_message(
            conversation_id,
            "assistant",
            f"**Working on task: {task['title']}**\n\n{text}",
            metadata={"type": "project_work", "task_id": task["id"], "project_id": project["id"]},
        )
        rt.db.add_comment(
            text[:1000], task_id=task["id"], author_type="agent",
            author_id=agent_id, comment_type="progress",
        )
        return {**summary, "success": True}


def _project_task_prompt(project: dict[str, Any], task: dict[str, Any], instruction: str | None) -> str:
    lines = [
        f'You are working on the project "{project["title"]}".',
        "",
        f"Current task: {task['title']}",
    ]
    if task.get("description"):
        lines.append(f"Description: {task['description']}")
    lines.append(f"Priority: {task.get('priority') or 'medium'}")
    if instruction:
        lines += ["", f"Additional instructions: {instruction}"]
    lines += [
        "",
        "Work on this task. Use your tools to research if needed, create subtasks "
        "if the work is complex, and log progress as you go. Call mark_task_complete "
        "when the task is done, or request_human_input if you are blocked.",
    ]
    return "\n".join(lines)
