"""TaskWorker — background processing of agent-assigned tasks."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, Any

from loguru import logger

from taskbot.agent.context import build_task_prompt, gather_task_context
from taskbot.agent.loop import AgentLoop, AgentResult
from taskbot.agent.tools import DEFAULT_GROUPS, make_tools
from taskbot.core.errors import ActionExecutionFailure, AlreadyLocked, NotFoundError
from taskbot.core.events import TASK_PROCESS, TaskProcessEvent
from taskbot.core.timeutil import to_iso, utc_now
from taskbot.memory.store import MemoryStore

if TYPE_CHECKING:
    from taskbot.core.runtime import Runtime


def is_unblocked(task: dict[str, Any], statuses: dict[str, str]) -> bool:
    """True when every blocker is ``done``. A blocker that no longer exists keeps the task blocked."""
    return all(statuses.get(b) == "done" for b in task.get("blocked_by") or [])


def blocker_statuses(db: MemoryStore, tasks: list[dict[str, Any]]) -> dict[str, str]:
    ids = sorted({b for t in tasks for b in (t.get("blocked_by") or [])})
    return db.get_task_statuses(ids)


class TaskWorker:
    """Runs the agent on one task at a time per lock.

    ``sweep`` finds runnable tasks and emits ``task/process.start``;
    ``process`` acquires the task lock, runs the agent with the run tools
    and applies the post-run rule. Processing is capped per agent.
    """

    def __init__(self, runtime: Runtime):
        self.rt = runtime
        self._slots: dict[str, asyncio.Semaphore] = {}

    def _slot(self, agent_id: str) -> asyncio.Semaphore:
        if agent_id not in self._slots:
            limit = self.rt.config.background.task_worker.per_agent_concurrency
            self._slots[agent_id] = asyncio.Semaphore(limit)
        return self._slots[agent_id]

    async def handle_event(self, data: dict[str, Any]) -> AgentResult | None:
        event = TaskProcessEvent.model_validate(data)
        return await self.process(event.task_id, event.agent_id)

    # ── Sweep ───────────────────────────────────────────────

    async def sweep(self, now: datetime | None = None) -> int:
        """Emit ``task/process.start`` for ready tasks. Returns the count emitted."""
        now = now or utc_now()
        db = self.rt.db
        batch = self.rt.config.background.task_worker.batch_size
        candidates = db.list_runnable_agent_tasks(to_iso(now), limit=batch * 4)
        statuses = blocker_statuses(db, candidates)
        ready = [t for t in candidates if is_unblocked(t, statuses)][:batch]

        sent = 0
        for task in ready:
            self.rt.recorder.log(
                task["agent_id"],
                "task_updated",
                f"Starting background processing: {task['title']}",
                description=f"Processing task with priority: {task['priority']}",
                source="cron",
                status="started",
                metadata={"previous_status": task["status"]},
                task_id=task["id"],
            )
            try:
                self.rt.bus.send(TASK_PROCESS, {"task_id": task["id"], "agent_id": task["agent_id"]})
            except Exception as e:
                logger.error(f"Failed to emit task {task['id']}: {e}")
                self.rt.runstate.release(task["id"], "failed", str(e))
                continue
            sent += 1
        if sent:
            logger.info(f"Task sweep: {sent} task(s) queued")
        return sent

    # ── Process ─────────────────────────────────────────────

    async def process(self, task_id: str, agent_id: str) -> AgentResult | None:
        """Work one task. Returns None when the task is missing or already locked."""
        rt = self.rt
        async with self._slot(agent_id):
            if rt.db.get_task(task_id, agent_id) is None:
                logger.warning(f"Task {task_id} not found for agent {agent_id}")
                return None
            try:
                task = rt.runstate.acquire(task_id)
            except (AlreadyLocked, NotFoundError) as e:
                logger.info(f"Skipping task {task_id}: {e}")
                return None

            try:
                result = await self._run(task)
            except Exception as e:
                rt.runstate.finalize(task_id, success=False, error=str(e) or type(e).__name__)
                rt.recorder.log(
                    agent_id, "task_updated", f"Background processing failed: {task['title']}",
                    description=str(e), source="cron", status="failed", task_id=task_id,
                )
                return None

            rt.runstate.finalize(task_id, success=True)
            rt.recorder.log(
                agent_id,
                "task_updated",
                f"Background processing finished: {task['title']}",
                description=result.text[:500],
                source="cron",
                metadata={
                    "steps": result.steps,
                    "tools_used": sorted(result.called_tools),
                    "stopped": result.stopped,
                },
                task_id=task_id,
            )
            return result

    async def _run(self, task: dict[str, Any]) -> AgentResult:
        rt = self.rt
        agent_id = task["agent_id"]
        if task["status"] == "todo":
            task = rt.db.update_task(task["id"], {"status": "in_progress"}) or task

        ctx = rt.tool_context(agent_id, task_id=task["id"], project_id=task.get("project_id"))
        registry = make_tools(ctx, groups=DEFAULT_GROUPS + ["run"])
        context = await gather_task_context(
            rt.db, task, rt.embedder, rt.config.background.task_worker.related_threshold
        )
        loop = AgentLoop(
            rt.config,
            rt.context.build(agent_id, channel="task"),
            tools=registry.get_all_tools(),
            max_steps=rt.config.background.step_limits.task,
            recorder=rt.recorder,
            agent_id=agent_id,
            task_id=task["id"],
        )
        result = await loop.run(build_task_prompt(context))
        if result.text.startswith("Error calling LLM") and not result.tool_calls:
            raise ActionExecutionFailure(result.text)

        if not result.stopped and result.text:
            rt.db.add_comment(
                result.text[:1000], task_id=task["id"], author_type="agent",
                author_id=agent_id, comment_type="progress",
            )
        logger.info(
            f"Task {task['id']} run: {result.steps} step(s), "
            f"{len(result.tool_calls)} tool call(s), stopped={result.stopped}"
        )
        return result
