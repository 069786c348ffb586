"""Action handlers — what a scheduled job does when it fires."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import httpx
from loguru import logger

from taskbot.agent.context import build_task_prompt, gather_task_context
from taskbot.agent.loop import AgentLoop
from taskbot.agent.tools import DEFAULT_GROUPS, make_tools
from taskbot.core.cron.schedule import format_local
from taskbot.core.cron.steps import StepRunner
from taskbot.core.errors import ActionExecutionFailure, UnknownActionType
from taskbot.core.timeutil import parse_iso
from taskbot.memory.models import AgentTaskAction, JobAction, NotifyAction, WebhookAction

if TYPE_CHECKING:
    from taskbot.core.runtime import Runtime


class ActionHandlers:
    """Routes a decoded job action to its handler.

    Every side effect runs as a named step so a replayed execution id
    picks up after the last completed step instead of repeating it.
    Conversations and messages also carry idempotency keys derived from
    the execution id.
    """

    def __init__(self, runtime: Runtime):
        self.rt = runtime
        limit = runtime.config.background.dispatcher.agent_task_concurrency
        self._agent_slots = asyncio.Semaphore(limit)

    async def run(self, job: dict[str, Any], action: JobAction, execution_id: str) -> dict[str, Any]:
        steps = StepRunner(self.rt.db, execution_id)
        if isinstance(action, NotifyAction):
            return await self.notify(job, action, steps)
        if isinstance(action, AgentTaskAction):
            return await self.agent_task(job, action, steps)
        if isinstance(action, WebhookAction):
            return await self.webhook(job, action, steps)
        raise UnknownActionType(getattr(action, "action_type", type(action).__name__))

    # ── notify ──────────────────────────────────────────────

    async def notify(self, job: dict[str, Any], action: NotifyAction, steps: StepRunner) -> dict[str, Any]:
        db = self.rt.db
        content = f"**Reminder:** {action.message or job['title']}"
        task = db.get_task(job["task_id"]) if job.get("task_id") else None
        if task:
            content += f"\n\n**Task:** {task['title']}"
            if task.get("due_date"):
                content += f"\n**Due:** {self._format_due(task['due_date'], job['timezone'])}"

        conversation = await steps.run(
            "create-conversation", self._new_conversation, job, steps.execution_id
        )
        await steps.run(
            "save-message",
            db.add_message,
            conversation["id"],
            "assistant",
            content,
            metadata={"type": "scheduled_notification", "job_id": job["id"]},
            idempotency_key=f"{steps.execution_id}:message",
        )
        await steps.run(
            "notify",
            db.create_notification,
            job["agent_id"],
            "reminder",
            job["title"],
            content=content,
            link_type="conversation",
            link_id=conversation["id"],
        )
        logger.info(f"Reminder delivered: job={job['id']} conversation={conversation['id']}")
        return {"conversation_id": conversation["id"], "message": content}

    # ── agent_task ──────────────────────────────────────────

    async def agent_task(
        self, job: dict[str, Any], action: AgentTaskAction, steps: StepRunner
    ) -> dict[str, Any]:
        """Run the agent on the job's instruction.

        Raises
        ------
        AlreadyLocked
            The linked task is being processed by another run.
        """
        rt = self.rt
        task_id = action.task_id or job.get("task_id")
        async with self._agent_slots:
            if task_id:
                rt.runstate.acquire(task_id)
            try:
                conversation = await steps.run(
                    "create-conversation", self._new_conversation, job, steps.execution_id
                )
                user_text = f"[Scheduled Task: {job['title']}]\n\n{action.instruction}"
                await steps.run(
                    "save-user-message",
                    rt.db.add_message,
                    conversation["id"],
                    "user",
                    user_text,
                    metadata={"type": "scheduled_task", "job_id": job["id"]},
                    idempotency_key=f"{steps.execution_id}:user",
                )
                outcome = await steps.run(
                    "agent-run", self._run_agent, job, action, conversation["id"], task_id, user_text
                )
            except Exception as e:
                # the dispatcher comments on the task when the job fails
                if task_id:
                    rt.runstate.release(task_id, "failed", str(e) or type(e).__name__)
                raise
            if task_id:
                rt.runstate.finalize(task_id, success=True)

        await steps.run(
            "save-reply",
            rt.db.add_message,
            conversation["id"],
            "assistant",
            outcome["text"],
            metadata={"type": "scheduled_task_result", "job_id": job["id"]},
            idempotency_key=f"{steps.execution_id}:reply",
        )
        await steps.run(
            "notify",
            rt.db.create_notification,
            job["agent_id"],
            "task_update",
            f"Scheduled task completed: {job['title']}",
            content=outcome["text"][:500],
            link_type="conversation",
            link_id=conversation["id"],
        )
        rt.recorder.log(
            job["agent_id"],
            "cron_execution",
            f"Scheduled task: {job['title']}",
            description=outcome["text"][:500],
            source="cron",
            metadata={"steps": outcome["steps"], "tool_calls": outcome["tool_calls"]},
            conversation_id=conversation["id"],
            task_id=task_id,
            job_id=job["id"],
        )
        return {"conversation_id": conversation["id"], **outcome}

    async def _run_agent(
        self,
        job: dict[str, Any],
        action: AgentTaskAction,
        conversation_id: str,
        task_id: str | None,
        user_text: str,
    ) -> dict[str, Any]:
        rt = self.rt
        agent_id = job["agent_id"]
        ctx = rt.tool_context(
            agent_id,
            conversation_id=conversation_id,
            task_id=task_id,
            project_id=action.project_id or job.get("project_id"),
        )
        groups = DEFAULT_GROUPS + (["run"] if task_id else [])
        registry = make_tools(ctx, groups=groups)

        prompt = user_text
        task = rt.db.get_task(task_id) if task_id else None
        if task:
            context = await gather_task_context(
                rt.db, task, rt.embedder, rt.config.background.task_worker.related_threshold
            )
            prompt += "\n\n" + build_task_prompt(context)

        loop = AgentLoop(
            rt.config,
            rt.context.build(agent_id, channel="job"),
            tools=registry.get_all_tools(),
            max_steps=rt.config.background.step_limits.job,
            recorder=rt.recorder,
            agent_id=agent_id,
            conversation_id=conversation_id,
            task_id=task_id,
        )
        result = await loop.run(prompt)
        if result.text.startswith("Error calling LLM") and not result.tool_calls:
            raise ActionExecutionFailure(result.text)
        return {
            "text": result.text or "Scheduled task finished.",
            "steps": result.steps,
            "stopped": result.stopped,
            "tool_calls": len(result.tool_calls),
        }

    # ── webhook ─────────────────────────────────────────────

    async def webhook(self, job: dict[str, Any], action: WebhookAction, steps: StepRunner) -> dict[str, Any]:
        return await steps.run("webhook", self._post_webhook, job, action)

    async def _post_webhook(self, job: dict[str, Any], action: WebhookAction) -> dict[str, Any]:
        payload = {
            "job_id": job["id"],
            "job_type": job["job_type"],
            "title": job["title"],
            **action.body,
        }
        timeout = self.rt.config.background.dispatcher.webhook_timeout_s
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout), transport=self.rt.http_transport
        ) as client:
            resp = await client.post(action.url, json=payload, headers=action.headers)
        if not resp.is_success:
            raise ActionExecutionFailure(f"Webhook returned {resp.status_code}")
        logger.info(f"Webhook delivered: job={job['id']} → {action.url} ({resp.status_code})")
        return {"status": resp.status_code}

    # ── helpers ─────────────────────────────────────────────

    def _new_conversation(self, job: dict[str, Any], execution_id: str) -> dict[str, Any]:
        return self.rt.db.create_conversation(
            job["agent_id"],
            f"Scheduled: {job['title']}",
            channel_type="app",
            idempotency_key=f"{execution_id}:conversation",
        )

    @staticmethod
    def _format_due(due_date: str, tz: str) -> str:
        try:
            return format_local(parse_iso(due_date), tz)
        except ValueError:
            return due_date
