"""Error taxonomy for the job engine and agent tools.

Business failures (validation, not-found, lock contention, handler failure)
derive from ``TaskbotError`` and are recovered locally. Anything else is an
infrastructure fault and propagates to the dispatcher's retry wrapper.
"""

from __future__ import annotations


class TaskbotError(Exception):
    """Base class for expected, business-level failures."""


class ValidationError(TaskbotError):
    """Malformed schedule spec, bad cron expression or unparsable datetime."""


class NotFoundError(TaskbotError):
    """Referenced task/project/job does not exist or belongs to another agent."""


class ActionExecutionFailure(TaskbotError):
    """A notify/agent_task/webhook handler failed."""


class UnknownActionType(ActionExecutionFailure):
    def __init__(self, action_type: str):
        super().__init__(f"Unknown action type: {action_type}")
        self.action_type = action_type


class LockContention(TaskbotError):
    """Another background run owns the resource."""


class AlreadyLocked(LockContention):
    def __init__(self, task_id: str, expires_at: str | None = None):
        msg = f"Task {task_id} is locked by another run"
        if expires_at:
            msg += f" until {expires_at}"
        super().__init__(msg)
        self.task_id = task_id
        self.expires_at = expires_at


class ToolExecutionError(TaskbotError):
    """A tool raised while executing inside the agent loop."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name
