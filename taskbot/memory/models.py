"""Pydantic data models — jobs, action payloads, API shapes."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from taskbot.core.errors import ActionExecutionFailure, UnknownActionType

JobType = Literal["reminder", "follow_up", "recurring", "one_time"]
ScheduleType = Literal["once", "cron"]
JobStatus = Literal["active", "paused", "completed", "cancelled"]
ExecutionState = Literal["running", "success", "failed"]

ACTION_TYPES = ("notify", "agent_task", "webhook")


# ════════════════════════════════════════════════════════════
# ACTION PAYLOADS (tagged union on action_type)
# ════════════════════════════════════════════════════════════


class NotifyAction(BaseModel):
    action_type: Literal["notify"] = "notify"
    message: str | None = None
    preferred_channel: str | None = None


class AgentTaskAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action_type: Literal["agent_task"] = "agent_task"
    instruction: str
    task_id: str | None = Field(default=None, alias="taskId")
    project_id: str | None = Field(default=None, alias="projectId")
    preferred_channel: str | None = None


class WebhookAction(BaseModel):
    action_type: Literal["webhook"] = "webhook"
    url: str
    body: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)


JobAction = Annotated[
    Union[NotifyAction, AgentTaskAction, WebhookAction],
    Field(discriminator="action_type"),
]

_action_adapter = TypeAdapter(JobAction)


def decode_action(action_type: str, payload: dict[str, Any] | None) -> JobAction:
    """Decode a stored payload into its typed action.

    Raises
    ------
    UnknownActionType
        ``action_type`` is not one of notify/agent_task/webhook.
    ActionExecutionFailure
        The payload does not match the action's shape.
    """
    if action_type not in ACTION_TYPES:
        raise UnknownActionType(action_type)
    data = dict(payload or {})
    data["action_type"] = action_type
    try:
        return _action_adapter.validate_python(data)
    except PydanticValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or action_type}: {err['msg']}"
            for err in e.errors()
        )
        raise ActionExecutionFailure(f"Invalid {action_type} payload: {errors}") from e


# ════════════════════════════════════════════════════════════
# JOB RECORDS
# ════════════════════════════════════════════════════════════


class JobSpec(BaseModel):
    """Input for creating a scheduled job. Exactly one of run_at/cron_expression."""

    agent_id: str
    job_type: JobType
    title: str
    description: str | None = None
    run_at: str | None = None
    cron_expression: str | None = None
    timezone: str | None = None
    action_type: str
    action_payload: dict[str, Any] = Field(default_factory=dict)
    task_id: str | None = None
    project_id: str | None = None
    conversation_id: str | None = None


class JobUpdate(BaseModel):
    """Partial job update. Unset fields are left untouched."""

    title: str | None = None
    description: str | None = None
    run_at: str | None = None
    cron_expression: str | None = None
    timezone: str | None = None
    status: Literal["active", "paused"] | None = None
    action_payload: dict[str, Any] | None = None


class ScheduledJob(BaseModel):
    id: str
    agent_id: str
    job_type: JobType
    title: str
    description: str | None = None
    schedule_type: ScheduleType
    run_at: str | None = None
    cron_expression: str | None = None
    timezone: str
    next_run_at: str
    action_type: str
    action_payload: dict[str, Any] = Field(default_factory=dict)
    task_id: str | None = None
    project_id: str | None = None
    conversation_id: str | None = None
    status: JobStatus
    failure_count: int = 0
    last_error: str | None = None
    last_run_at: str | None = None
    run_count: int = 0
    created_at: str
    updated_at: str


class JobExecution(BaseModel):
    id: str
    job_id: str
    agent_id: str
    state: ExecutionState
    step_cursor: str | None = None
    result: Any = None
    error: str | None = None
    started_at: str
    finished_at: str | None = None


# ════════════════════════════════════════════════════════════
# API REQUEST / RESPONSE
# ════════════════════════════════════════════════════════════


class EventRequest(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)


class EventResponse(BaseModel):
    name: str
    accepted: bool


class TickResponse(BaseModel):
    dispatched: int


class HealthResponse(BaseModel):
    status: str
    scheduler_running: bool
    version: str = ""
    active_jobs: int = 0
