"""Task run-state coordinator — the only writer of agent_run_state and the task lock."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from taskbot.core.config.schema import Config
from taskbot.core.errors import AlreadyLocked, NotFoundError, ValidationError
from taskbot.core.timeutil import now_iso, to_iso, utc_now
from taskbot.memory.store import MemoryStore

TERMINAL_STATES = ("completed", "failed", "needs_input")


class TaskRunStateCoordinator:
    """Guards tasks against concurrent background processing.

    The lock is ``lock_expires_at`` on the task row. A live (future) value
    means one background run owns the task; expired values are free.
    ``agent_run_state`` (idle → running → completed|failed|needs_input) is
    independent of the user-facing ``status``.
    """

    def __init__(self, db: MemoryStore, config: Config):
        self.db = db
        self.config = config

    def acquire(
        self, task_id: str, ttl_minutes: int | None = None, now: datetime | None = None
    ) -> dict[str, Any]:
        """Claim the task with one conditional UPDATE.

        Raises
        ------
        AlreadyLocked
            A live lock exists.
        NotFoundError
            No such task.
        """
        now = now or utc_now()
        ttl = ttl_minutes or self.config.background.task_worker.lock_ttl_minutes
        expires = to_iso(now + timedelta(minutes=ttl))
        if not self.db.try_lock_task(task_id, to_iso(now), expires):
            task = self.db.get_task(task_id)
            if task is None:
                raise NotFoundError(f"Task not found: {task_id}")
            raise AlreadyLocked(task_id, task.get("lock_expires_at"))
        logger.debug(f"Task {task_id} locked until {expires}")
        return self.db.get_task(task_id)

    def release(self, task_id: str, terminal_state: str, failure_reason: str | None = None) -> None:
        if terminal_state not in TERMINAL_STATES:
            raise ValidationError(f"Invalid terminal run state: {terminal_state}")
        self.db.release_task_lock(task_id, terminal_state, failure_reason)
        logger.debug(f"Task {task_id} released → {terminal_state}")

    def finalize(self, task_id: str, success: bool, error: str | None = None) -> None:
        """Post-run rule.

        Success: a task still ``running`` becomes ``completed`` (terminal
        tools may already have set completed/needs_input). Failure: the task
        becomes ``failed`` and gets a system comment.
        """
        if success:
            self.db.release_task_lock(task_id, "completed", only_if_running=True)
            return
        reason = error or "Unknown error"
        self.db.release_task_lock(task_id, "failed", reason, only_if_running=True)
        self.db.add_comment(
            f"Task processing failed: {reason}",
            task_id=task_id,
            author_type="system",
            comment_type="note",
        )
        logger.warning(f"Task {task_id} processing failed: {reason}")

    # ── Terminal tool effects ────────────────────────────────

    def mark_complete(self, task_id: str, resolution: str, agent_id: str | None = None) -> dict[str, Any]:
        """Close the task and stop the current run."""
        task = self._get(task_id, agent_id)
        self.db.update_task(task_id, {"status": "done", "completed_at": now_iso()})
        self.db.release_task_lock(task_id, "completed")
        self.db.add_comment(
            resolution, task_id=task_id, author_type="agent",
            author_id=task["agent_id"], comment_type="resolution",
        )
        self.db.create_notification(
            task["agent_id"], "task_update", f"Task completed: {task['title']}",
            content=resolution, link_type="task", link_id=task_id,
        )
        logger.info(f"Task {task_id} marked complete")
        return {
            "success": True,
            "stopped": True,
            "task": {"id": task_id, "title": task["title"], "status": "done"},
            "message": "Task marked as complete",
        }

    def request_input(self, task_id: str, question: str, agent_id: str | None = None) -> dict[str, Any]:
        """Park the task waiting on the user and stop the current run."""
        task = self._get(task_id, agent_id)
        self.db.update_task(task_id, {"status": "waiting_on"})
        self.db.release_task_lock(task_id, "needs_input")
        self.db.add_comment(
            f"**Waiting for input:** {question}", task_id=task_id,
            author_type="agent", author_id=task["agent_id"], comment_type="question",
        )
        self.db.create_notification(
            task["agent_id"], "input_needed", f"Input needed: {task['title']}",
            content=question, link_type="task", link_id=task_id,
        )
        logger.info(f"Task {task_id} waiting for input")
        return {
            "success": True,
            "stopped": True,
            "task": {"id": task_id, "title": task["title"], "status": "waiting_on"},
            "message": "Question sent to user; stopping until they respond",
        }

    def _get(self, task_id: str, agent_id: str | None) -> dict[str, Any]:
        task = self.db.get_task(task_id, agent_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task
