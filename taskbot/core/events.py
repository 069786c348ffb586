"""In-process event bus carrying the background trigger events."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

JOB_EXECUTE = "job/scheduled.execute"
PROJECT_WORK = "project/work.start"
TASK_PROCESS = "task/process.start"
EMAIL_PROCESS = "email/received.process"

Handler = Callable[[dict[str, Any]], Awaitable[Any]]


# ════════════════════════════════════════════════════════════
# EVENT PAYLOADS
# ════════════════════════════════════════════════════════════


class _Event(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class JobExecuteEvent(_Event):
    job: dict[str, Any]
    execution_id: str


class ProjectWorkEvent(_Event):
    project_id: str = Field(alias="projectId")
    agent_id: str = Field(alias="agentId")
    instruction: str | None = None


class TaskProcessEvent(_Event):
    task_id: str = Field(alias="taskId")
    agent_id: str = Field(alias="agentId")


class EmailReceivedEvent(_Event):
    email_id: str = Field(alias="emailId")
    agent_id: str = Field(alias="agentId")
    from_address: str = Field(default="", alias="fromAddress")
    subject: str = ""
    recipient_type: str = Field(default="to", alias="recipientType")


EVENT_MODELS: dict[str, type[BaseModel]] = {
    JOB_EXECUTE: JobExecuteEvent,
    PROJECT_WORK: ProjectWorkEvent,
    TASK_PROCESS: TaskProcessEvent,
    EMAIL_PROCESS: EmailReceivedEvent,
}


class UnknownEvent(KeyError):
    pass


class EventBus:
    """Fire-and-track event dispatch.

    ``send`` validates the payload, then runs every handler for the event
    as its own asyncio task. ``shutdown`` waits for in-flight handlers.
    """

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = {}
        self._tasks: set[asyncio.Task] = set()

    def on(self, name: str, handler: Handler) -> None:
        if name not in EVENT_MODELS:
            raise UnknownEvent(name)
        self._handlers.setdefault(name, []).append(handler)

    def send(self, name: str, data: dict[str, Any]) -> list[asyncio.Task]:
        """Validate and dispatch. Raises ``UnknownEvent`` or pydantic ``ValidationError``."""
        model = EVENT_MODELS.get(name)
        if model is None:
            raise UnknownEvent(name)
        payload = model.model_validate(data).model_dump()
        handlers = self._handlers.get(name, [])
        if not handlers:
            logger.warning(f"Event {name} has no handlers")
        tasks = []
        for handler in handlers:
            task = asyncio.create_task(self._run(name, handler, payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        logger.debug(f"Event sent: {name} → {len(tasks)} handler(s)")
        return tasks

    @staticmethod
    async def _run(name: str, handler: Handler, payload: dict[str, Any]) -> None:
        try:
            await handler(payload)
        except Exception as e:
            logger.error(f"Handler for {name} failed: {e}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        """Wait for all running handlers to finish."""
        if not self._tasks:
            return
        logger.info(f"Waiting for {len(self._tasks)} event handler(s) to finish")
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
