"""SQLite persistence gateway for TaskBot.

Tables:
    agents, conversations, messages, projects, tasks, comments,
    scheduled_jobs, job_executions, execution_steps,
    activity_log, notifications, memories, feedback_items, emails

Every write is a narrow, field-level UPDATE. Concurrency-sensitive
transitions (task locks, job claims, execution finalize) are single
conditional UPDATEs checked through ``rowcount``.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import numpy as np
from loguru import logger

from taskbot.core.timeutil import now_iso

_TASK_FIELDS = frozenset({
    "title", "description", "status", "priority", "due_date", "project_id",
    "assignee_type", "assignee_id", "blocked_by", "agent_run_state",
    "lock_expires_at", "last_agent_run_at", "failure_reason", "completed_at",
    "embedding",
})
_PROJECT_FIELDS = frozenset({"title", "description", "status", "priority", "embedding"})
_JOB_FIELDS = frozenset({
    "title", "description", "job_type", "schedule_type", "run_at",
    "cron_expression", "timezone", "next_run_at", "action_type",
    "action_payload", "task_id", "project_id", "conversation_id", "status",
    "failure_count", "last_error", "last_run_at", "run_count", "locked_until",
})
_EMAIL_FIELDS = frozenset({
    "is_read", "processed_by_agent", "project_id", "task_id", "conversation_id",
})
_JSON_COLUMNS = frozenset({"blocked_by", "embedding", "action_payload", "metadata", "result", "output"})


def _new_id() -> str:
    return str(uuid.uuid4())


def _dump(value: Any) -> str | None:
    return None if value is None else json.dumps(value, default=str)


def _row(row: sqlite3.Row | None, drop: tuple[str, ...] = ("embedding",)) -> dict[str, Any] | None:
    """sqlite Row → dict, decoding JSON columns."""
    if row is None:
        return None
    d = dict(row)
    for key in drop:
        d.pop(key, None)
    for key in _JSON_COLUMNS & d.keys():
        if isinstance(d[key], str):
            try:
                d[key] = json.loads(d[key])
            except json.JSONDecodeError:
                pass
    return d


class MemoryStore:
    """SQLite store — single source of truth."""

    def __init__(self, db_path: str = "data/taskbot.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"MemoryStore initialized: {db_path}")

    @contextmanager
    def _get_conn(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.executescript(_SCHEMA)
            self._migrate(conn)
            conn.commit()

    def _migrate(self, conn) -> None:
        """Add columns missing in existing databases."""
        job_cols = {
            row[1] for row in conn.execute("PRAGMA table_info(scheduled_jobs)").fetchall()
        }
        for col, ddl in [
            ("run_count", "INTEGER DEFAULT 0"),
            ("last_run_at", "TEXT"),
            ("locked_until", "TEXT"),
        ]:
            if col not in job_cols:
                conn.execute(f"ALTER TABLE scheduled_jobs ADD COLUMN {col} {ddl}")

    def _update(
        self,
        table: str,
        allowed: frozenset[str],
        row_id: str,
        fields: dict[str, Any],
        agent_id: str | None = None,
    ) -> bool:
        """Narrow UPDATE of whitelisted columns. Returns True if a row changed."""
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown {table} fields: {sorted(unknown)}")
        if not fields:
            return False
        sets = [f"{col} = ?" for col in fields]
        params: list[Any] = [
            _dump(v) if col in _JSON_COLUMNS else v for col, v in fields.items()
        ]
        sets.append("updated_at = ?")
        params.append(now_iso())
        sql = f"UPDATE {table} SET {', '.join(sets)} WHERE id = ?"
        params.append(row_id)
        if agent_id is not None:
            sql += " AND agent_id = ?"
            params.append(agent_id)
        with self._get_conn() as conn:
            cur = conn.execute(sql, params)
            conn.commit()
        return cur.rowcount > 0

    # ════════════════════════════════════════════════════════════
    # AGENTS
    # ════════════════════════════════════════════════════════════

    def create_agent(
        self,
        user_id: str,
        name: str = "TaskBot",
        user_name: str | None = None,
        user_email: str | None = None,
        timezone: str | None = None,
        instructions: str | None = None,
        agent_id: str | None = None,
    ) -> str:
        agent_id = agent_id or _new_id()
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO agents
                   (id, user_id, name, user_name, user_email, timezone, instructions, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (agent_id, user_id, name, user_name, user_email, timezone,
                 instructions, now_iso()),
            )
            conn.commit()
        logger.info(f"Agent created: {agent_id} (user={user_id})")
        return agent_id

    def get_agent(self, agent_id: str) -> dict[str, Any] | None:
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return _row(row)

    # ════════════════════════════════════════════════════════════
    # CONVERSATIONS & MESSAGES
    # ════════════════════════════════════════════════════════════

    def create_conversation(
        self,
        agent_id: str,
        title: str,
        channel_type: str = "app",
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Create a conversation.

        With an ``idempotency_key`` a second call returns the conversation
        created by the first instead of inserting a duplicate.
        """
        now = now_iso()
        with self._get_conn() as conn:
            conn.execute(
                """INSERT OR IGNORE INTO conversations
                   (id, agent_id, title, channel_type, idempotency_key, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (_new_id(), agent_id, title, channel_type, idempotency_key, now, now),
            )
            conn.commit()
            if idempotency_key:
                row = conn.execute(
                    "SELECT * FROM conversations WHERE idempotency_key = ?",
                    (idempotency_key,),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM conversations WHERE rowid = last_insert_rowid()"
                ).fetchone()
        return _row(row)

    def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        return _row(row)

    def list_conversations(
        self, agent_id: str, since: str | None = None, limit: int = 5
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM conversations WHERE agent_id = ?"
        params: list[Any] = [agent_id]
        if since:
            sql += " AND updated_at >= ?"
            params.append(since)
        sql += " ORDER BY updated_at DESC LIMIT ?"
        params.append(limit)
        with self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row(r) for r in rows]

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> int:
        """Append a message. Returns its id (the existing id on a duplicate key)."""
        now = now_iso()
        with self._get_conn() as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO messages
                   (conversation_id, role, content, metadata, idempotency_key, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (conversation_id, role, content, _dump(metadata), idempotency_key, now),
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, conversation_id),
            )
            conn.commit()
            if cur.rowcount == 0 and idempotency_key:
                row = conn.execute(
                    "SELECT id FROM messages WHERE idempotency_key = ?", (idempotency_key,)
                ).fetchone()
                return row["id"]
            return cur.lastrowid or 0

    def get_messages(
        self, conversation_id: str, limit: int | None = None
    ) -> list[dict[str, Any]]:
        sql = """SELECT id, role, content, metadata, created_at FROM messages
                 WHERE conversation_id = ? ORDER BY id ASC"""
        params: list[Any] = [conversation_id]
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        with self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row(r) for r in rows]

    # ════════════════════════════════════════════════════════════
    # PROJECTS
    # ════════════════════════════════════════════════════════════

    def create_project(
        self,
        agent_id: str,
        title: str,
        description: str | None = None,
        priority: str = "medium",
        status: str = "active",
        embedding: list[float] | None = None,
    ) -> dict[str, Any]:
        project_id = _new_id()
        now = now_iso()
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO projects
                   (id, agent_id, title, description, status, priority, embedding,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (project_id, agent_id, title, description, status, priority,
                 _dump(embedding), now, now),
            )
            conn.commit()
        return self.get_project(project_id)

    def get_project(self, project_id: str, agent_id: str | None = None) -> dict[str, Any] | None:
        sql = "SELECT * FROM projects WHERE id = ?"
        params: list[Any] = [project_id]
        if agent_id is not None:
            sql += " AND agent_id = ?"
            params.append(agent_id)
        with self._get_conn() as conn:
            row = conn.execute(sql, params).fetchone()
        return _row(row)

    def list_projects(self, agent_id: str, status: str | None = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM projects WHERE agent_id = ?"
        params: list[Any] = [agent_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at DESC"
        with self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row(r) for r in rows]

    def update_project(
        self, project_id: str, fields: dict[str, Any], agent_id: str | None = None
    ) -> dict[str, Any] | None:
        if not self._update("projects", _PROJECT_FIELDS, project_id, fields, agent_id):
            return None
        return self.get_project(project_id)

    def delete_project(self, project_id: str, agent_id: str, delete_tasks: bool = False) -> bool:
        with self._get_conn() as conn:
            if delete_tasks:
                conn.execute(
                    "DELETE FROM tasks WHERE project_id = ? AND agent_id = ?",
                    (project_id, agent_id),
                )
            else:
                conn.execute(
                    "UPDATE tasks SET project_id = NULL WHERE project_id = ? AND agent_id = ?",
                    (project_id, agent_id),
                )
            cur = conn.execute(
                "DELETE FROM projects WHERE id = ? AND agent_id = ?", (project_id, agent_id)
            )
            conn.commit()
        return cur.rowcount > 0

    # ════════════════════════════════════════════════════════════
    # TASKS
    # ════════════════════════════════════════════════════════════

    def create_task(
        self,
        agent_id: str,
        title: str,
        description: str | None = None,
        priority: str = "medium",
        status: str = "todo",
        due_date: str | None = None,
        project_id: str | None = None,
        assignee_type: str = "user",
        assignee_id: str | None = None,
        blocked_by: list[str] | None = None,
        embedding: list[float] | None = None,
    ) -> dict[str, Any]:
        task_id = _new_id()
        now = now_iso()
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO tasks
                   (id, agent_id, project_id, title, description, status, priority,
                    due_date, assignee_type, assignee_id, blocked_by, embedding,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (task_id, agent_id, project_id, title, description, status, priority,
                 due_date, assignee_type, assignee_id, _dump(blocked_by or []),
                 _dump(embedding), now, now),
            )
            conn.commit()
        return self.get_task(task_id)

    def get_task(self, task_id: str, agent_id: str | None = None) -> dict[str, Any] | None:
        sql = "SELECT * FROM tasks WHERE id = ?"
        params: list[Any] = [task_id]
        if agent_id is not None:
            sql += " AND agent_id = ?"
            params.append(agent_id)
        with self._get_conn() as conn:
            row = conn.execute(sql, params).fetchone()
        return _row(row)

    def list_tasks(
        self,
        agent_id: str,
        statuses: list[str] | None = None,
        project_id: str | None = None,
        assignee_type: str | None = None,
        limit: int | None = None,
        by_priority: bool = False,
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM tasks WHERE agent_id = ?"
        params: list[Any] = [agent_id]
        if statuses:
            sql += f" AND status IN ({','.join('?' for _ in statuses)})"
            params.extend(statuses)
        if project_id:
            sql += " AND project_id = ?"
            params.append(project_id)
        if assignee_type:
            sql += " AND assignee_type = ?"
            params.append(assignee_type)
        if by_priority:
            sql += f" ORDER BY {_PRIORITY_ORDER}, created_at ASC"
        else:
            sql += " ORDER BY created_at DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        with self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row(r) for r in rows]

    def update_task(
        self, task_id: str, fields: dict[str, Any], agent_id: str | None = None
    ) -> dict[str, Any] | None:
        """Update only the given task fields. Returns the task, or None if missing."""
        if not self._update("tasks", _TASK_FIELDS, task_id, fields, agent_id):
            return None
        return self.get_task(task_id)

    def delete_task(self, task_id: str, agent_id: str) -> bool:
        with self._get_conn() as conn:
            cur = conn.execute(
                "DELETE FROM tasks WHERE id = ? AND agent_id = ?", (task_id, agent_id)
            )
            conn.commit()
        return cur.rowcount > 0

    def get_task_statuses(self, task_ids: list[str]) -> dict[str, str]:
        """Map of existing task id → status. Missing ids are absent."""
        if not task_ids:
            return {}
        placeholders = ",".join("?" for _ in task_ids)
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT id, status FROM tasks WHERE id IN ({placeholders})", task_ids
            ).fetchall()
        return {r["id"]: r["status"] for r in rows}

    def list_runnable_agent_tasks(self, now: str, limit: int = 20) -> list[dict[str, Any]]:
        """Agent-assigned open tasks with no live lock, highest priority first."""
        with self._get_conn() as conn:
            rows = conn.execute(
                f"""SELECT * FROM tasks
                   WHERE assignee_type = 'agent'
                     AND status IN ('todo', 'in_progress')
                     AND agent_run_state NOT IN ('failed', 'needs_input')
                     AND (lock_expires_at IS NULL OR lock_expires_at <= ?)
                   ORDER BY {_PRIORITY_ORDER}, created_at ASC
                   LIMIT ?""",
                (now, limit),
            ).fetchall()
        return [_row(r) for r in rows]

    # ── Run-state lock ────────────────────────────────────────

    def try_lock_task(self, task_id: str, now: str, expires_at: str) -> bool:
        """Atomically claim a task unless a live lock exists."""
        with self._get_conn() as conn:
            cur = conn.execute(
                """UPDATE tasks
                   SET agent_run_state = 'running', lock_expires_at = ?,
                       last_agent_run_at = ?, failure_reason = NULL, updated_at = ?
                   WHERE id = ?
                     AND (lock_expires_at IS NULL OR lock_expires_at <= ?)""",
                (expires_at, now, now, task_id, now),
            )
            conn.commit()
        return cur.rowcount > 0

    def release_task_lock(
        self,
        task_id: str,
        run_state: str,
        failure_reason: str | None = None,
        only_if_running: bool = False,
    ) -> bool:
        sql = """UPDATE tasks
                 SET lock_expires_at = NULL, agent_run_state = ?,
                     failure_reason = COALESCE(?, failure_reason), updated_at = ?
                 WHERE id = ?"""
        if only_if_running:
            sql += " AND agent_run_state = 'running'"
        with self._get_conn() as conn:
            cur = conn.execute(sql, (run_state, failure_reason, now_iso(), task_id))
            conn.commit()
        return cur.rowcount > 0

    # ════════════════════════════════════════════════════════════
    # COMMENTS
    # ════════════════════════════════════════════════════════════

    def add_comment(
        self,
        content: str,
        task_id: str | None = None,
        project_id: str | None = None,
        author_type: str = "agent",
        author_id: str | None = None,
        comment_type: str = "note",
    ) -> dict[str, Any]:
        comment_id = _new_id()
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO comments
                   (id, task_id, project_id, author_type, author_id, content,
                    comment_type, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (comment_id, task_id, project_id, author_type, author_id, content,
                 comment_type, now_iso()),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM comments WHERE id = ?", (comment_id,)).fetchone()
        return _row(row)

    def list_comments(
        self,
        task_id: str | None = None,
        project_id: str | None = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        """Newest first."""
        if task_id:
            where, param = "task_id = ?", task_id
        else:
            where, param = "project_id = ?", project_id
        with self._get_conn() as conn:
            rows = conn.execute(
                f"""SELECT * FROM comments WHERE {where}
                    ORDER BY created_at DESC, rowid DESC LIMIT ?""",
                (param, limit),
            ).fetchall()
        return [_row(r) for r in rows]

    # ════════════════════════════════════════════════════════════
    # SCHEDULED JOBS
    # ════════════════════════════════════════════════════════════

    def insert_job(self, job: dict[str, Any]) -> dict[str, Any]:
        """Insert a scheduled job row. ``job`` holds column values."""
        now = now_iso()
        job_id = job.get("id") or _new_id()
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO scheduled_jobs
                   (id, agent_id, job_type, title, description, schedule_type, run_at,
                    cron_expression, timezone, next_run_at, action_type, action_payload,
                    task_id, project_id, conversation_id, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    job_id, job["agent_id"], job["job_type"], job["title"],
                    job.get("description"), job["schedule_type"], job.get("run_at"),
                    job.get("cron_expression"), job["timezone"], job["next_run_at"],
                    job["action_type"], _dump(job.get("action_payload") or {}),
                    job.get("task_id"), job.get("project_id"), job.get("conversation_id"),
                    job.get("status", "active"), now, now,
                ),
            )
            conn.commit()
        return self.get_job(job_id)

    def get_job(self, job_id: str, agent_id: str | None = None) -> dict[str, Any] | None:
        sql = "SELECT * FROM scheduled_jobs WHERE id = ?"
        params: list[Any] = [job_id]
        if agent_id is not None:
            sql += " AND agent_id = ?"
            params.append(agent_id)
        with self._get_conn() as conn:
            row = conn.execute(sql, params).fetchone()
        return _row(row)

    def list_jobs(
        self,
        agent_id: str | None = None,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if agent_id:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        if job_type:
            clauses.append("job_type = ?")
            params.append(job_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM scheduled_jobs {where} ORDER BY next_run_at ASC LIMIT ?",
                params,
            ).fetchall()
        return [_row(r) for r in rows]

    def list_due_jobs(self, now: str, limit: int = 50) -> list[dict[str, Any]]:
        """Active, unclaimed jobs due at ``now``, oldest first."""
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM scheduled_jobs
                   WHERE status = 'active' AND next_run_at <= ?
                     AND (locked_until IS NULL OR locked_until <= ?)
                   ORDER BY next_run_at ASC LIMIT ?""",
                (now, now, limit),
            ).fetchall()
        return [_row(r) for r in rows]

    def update_job(
        self, job_id: str, fields: dict[str, Any], agent_id: str | None = None
    ) -> dict[str, Any] | None:
        if not self._update("scheduled_jobs", _JOB_FIELDS, job_id, fields, agent_id):
            return None
        return self.get_job(job_id)

    def cancel_job(self, job_id: str, agent_id: str | None = None) -> dict[str, Any] | None:
        """Set status cancelled. Idempotent; returns None only if the job is missing."""
        sql = """UPDATE scheduled_jobs SET status = 'cancelled', locked_until = NULL,
                 updated_at = ? WHERE id = ? AND status != 'cancelled'"""
        params: list[Any] = [now_iso(), job_id]
        if agent_id is not None:
            sql += " AND agent_id = ?"
            params.append(agent_id)
        with self._get_conn() as conn:
            conn.execute(sql, params)
            conn.commit()
        return self.get_job(job_id, agent_id)

    def claim_job(self, job_id: str, now: str, until: str, running_since: str) -> bool:
        """Take the dispatch claim on an active job.

        Refused while a claim is live or while an execution of the job that
        started after ``running_since`` is still running.
        """
        with self._get_conn() as conn:
            cur = conn.execute(
                """UPDATE scheduled_jobs SET locked_until = ?
                   WHERE id = ? AND status = 'active'
                     AND (locked_until IS NULL OR locked_until <= ?)
                     AND NOT EXISTS (
                         SELECT 1 FROM job_executions e
                         WHERE e.job_id = scheduled_jobs.id AND e.state = 'running'
                           AND e.started_at > ?)""",
                (until, job_id, now, running_since),
            )
            conn.commit()
        return cur.rowcount > 0

    def release_job_claim(self, job_id: str) -> None:
        with self._get_conn() as conn:
            conn.execute(
                "UPDATE scheduled_jobs SET locked_until = NULL WHERE id = ?", (job_id,)
            )
            conn.commit()

    def increment_job_failures(self, job_id: str, error: str) -> int:
        """Increment consecutive failure count and record error. Returns new count."""
        with self._get_conn() as conn:
            conn.execute(
                """UPDATE scheduled_jobs
                   SET failure_count = failure_count + 1, last_error = ?, updated_at = ?
                   WHERE id = ?""",
                (error, now_iso(), job_id),
            )
            conn.commit()
            row = conn.execute(
                "SELECT failure_count FROM scheduled_jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return row["failure_count"] if row else 0

    def reset_job_failures(self, job_id: str) -> None:
        """Reset consecutive failure count after successful execution."""
        with self._get_conn() as conn:
            conn.execute(
                """UPDATE scheduled_jobs SET failure_count = 0, last_error = NULL
                   WHERE id = ?""",
                (job_id,),
            )
            conn.commit()

    # ── Executions & durable steps ────────────────────────────

    def create_execution(self, execution_id: str, job_id: str, agent_id: str) -> dict[str, Any]:
        """Create the execution row in state running. Re-creating is a no-op."""
        with self._get_conn() as conn:
            conn.execute(
                """INSERT OR IGNORE INTO job_executions
                   (id, job_id, agent_id, state, started_at)
                   VALUES (?, ?, ?, 'running', ?)""",
                (execution_id, job_id, agent_id, now_iso()),
            )
            conn.commit()
        return self.get_execution(execution_id)

    def get_execution(self, execution_id: str) -> dict[str, Any] | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM job_executions WHERE id = ?", (execution_id,)
            ).fetchone()
        return _row(row)

    def list_executions(self, job_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM job_executions WHERE job_id = ?
                   ORDER BY started_at DESC, rowid DESC LIMIT ?""",
                (job_id, limit),
            ).fetchall()
        return [_row(r) for r in rows]

    def finalize_execution(
        self,
        execution_id: str,
        state: str,
        result: Any = None,
        error: str | None = None,
    ) -> bool:
        """Single terminal update. False if the execution was already finalized."""
        with self._get_conn() as conn:
            cur = conn.execute(
                """UPDATE job_executions
                   SET state = ?, result = ?, error = ?, finished_at = ?
                   WHERE id = ? AND state = 'running'""",
                (state, _dump(result), error, now_iso(), execution_id),
            )
            conn.commit()
        return cur.rowcount > 0

    def get_step(self, execution_id: str, step_name: str) -> dict[str, Any] | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM execution_steps WHERE execution_id = ? AND step_name = ?",
                (execution_id, step_name),
            ).fetchone()
        return _row(row)

    def save_step(self, execution_id: str, step_name: str, output: Any) -> None:
        """Persist a completed step output and move the execution's step cursor."""
        with self._get_conn() as conn:
            conn.execute(
                """INSERT OR IGNORE INTO execution_steps
                   (execution_id, step_name, output, created_at)
                   VALUES (?, ?, ?, ?)""",
                (execution_id, step_name, _dump(output), now_iso()),
            )
            conn.execute(
                "UPDATE job_executions SET step_cursor = ? WHERE id = ?",
                (step_name, execution_id),
            )
            conn.commit()

    # ════════════════════════════════════════════════════════════
    # ACTIVITY LOG & NOTIFICATIONS
    # ════════════════════════════════════════════════════════════

    def log_activity(
        self,
        agent_id: str,
        activity_type: str,
        title: str,
        description: str | None = None,
        source: str = "agent",
        status: str = "completed",
        metadata: dict[str, Any] | None = None,
        conversation_id: str | None = None,
        task_id: str | None = None,
        project_id: str | None = None,
        job_id: str | None = None,
    ) -> int:
        with self._get_conn() as conn:
            cur = conn.execute(
                """INSERT INTO activity_log
                   (agent_id, activity_type, source, title, description, status, metadata,
                    conversation_id, task_id, project_id, job_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (agent_id, activity_type, source, title, description, status,
                 _dump(metadata), conversation_id, task_id, project_id, job_id, now_iso()),
            )
            conn.commit()
            return cur.lastrowid or 0

    def list_activity(
        self, agent_id: str, activity_type: str | None = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM activity_log WHERE agent_id = ?"
        params: list[Any] = [agent_id]
        if activity_type:
            sql += " AND activity_type = ?"
            params.append(activity_type)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row(r) for r in rows]

    def create_notification(
        self,
        agent_id: str,
        type: str,
        title: str,
        content: str | None = None,
        link_type: str | None = None,
        link_id: str | None = None,
    ) -> int:
        with self._get_conn() as conn:
            cur = conn.execute(
                """INSERT INTO notifications
                   (agent_id, type, title, content, link_type, link_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (agent_id, type, title, content, link_type, link_id, now_iso()),
            )
            conn.commit()
            return cur.lastrowid or 0

    def list_notifications(
        self, agent_id: str, unread_only: bool = False, limit: int = 50
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM notifications WHERE agent_id = ?"
        if unread_only:
            sql += " AND is_read = 0"
        sql += " ORDER BY id DESC LIMIT ?"
        with self._get_conn() as conn:
            rows = conn.execute(sql, (agent_id, limit)).fetchall()
        return [_row(r) for r in rows]

    # ════════════════════════════════════════════════════════════
    # MEMORIES & FEEDBACK
    # ════════════════════════════════════════════════════════════

    def add_memory(
        self,
        agent_id: str,
        title: str,
        content: str,
        category: str = "general",
        always_include: bool = False,
        embedding: list[float] | None = None,
    ) -> dict[str, Any]:
        memory_id = _new_id()
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO memories
                   (id, agent_id, title, content, category, always_include, embedding, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (memory_id, agent_id, title, content, category, int(always_include),
                 _dump(embedding), now_iso()),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        return _row(row)

    def list_memories(self, agent_id: str, always_include: bool | None = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM memories WHERE agent_id = ?"
        params: list[Any] = [agent_id]
        if always_include is not None:
            sql += " AND always_include = ?"
            params.append(int(always_include))
        sql += " ORDER BY created_at ASC"
        with self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row(r) for r in rows]

    def create_feedback(
        self,
        agent_id: str,
        type: str,
        source: str,
        title: str,
        description: str | None = None,
        priority: str = "medium",
        dedup_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        with self._get_conn() as conn:
            cur = conn.execute(
                """INSERT INTO feedback_items
                   (agent_id, type, source, title, description, priority, dedup_key,
                    metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (agent_id, type, source, title, description, priority, dedup_key,
                 _dump(metadata), now_iso()),
            )
            conn.commit()
            return cur.lastrowid or 0

    def count_feedback_since(self, agent_id: str, source: str, since: str) -> int:
        with self._get_conn() as conn:
            row = conn.execute(
                """SELECT COUNT(*) FROM feedback_items
                   WHERE agent_id = ? AND source = ? AND created_at >= ?""",
                (agent_id, source, since),
            ).fetchone()
        return row[0]

    def has_feedback_since(self, agent_id: str, dedup_key: str, since: str) -> bool:
        with self._get_conn() as conn:
            row = conn.execute(
                """SELECT 1 FROM feedback_items
                   WHERE agent_id = ? AND dedup_key = ? AND created_at >= ? LIMIT 1""",
                (agent_id, dedup_key, since),
            ).fetchone()
        return row is not None

    def list_feedback(self, agent_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM feedback_items WHERE agent_id = ? ORDER BY id DESC LIMIT ?",
                (agent_id, limit),
            ).fetchall()
        return [_row(r) for r in rows]

    # ════════════════════════════════════════════════════════════
    # EMAILS
    # ════════════════════════════════════════════════════════════

    def insert_email(
        self,
        agent_id: str,
        from_address: str,
        to_address: str,
        subject: str,
        body: str,
        direction: str = "inbound",
        message_id: str | None = None,
        in_reply_to: str | None = None,
    ) -> dict[str, Any]:
        email_id = _new_id()
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO emails
                   (id, agent_id, direction, message_id, in_reply_to, from_address,
                    to_address, subject, body, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (email_id, agent_id, direction, message_id, in_reply_to, from_address,
                 to_address, subject, body, now_iso(), now_iso()),
            )
            conn.commit()
        return self.get_email(email_id)

    def get_email(self, email_id: str, agent_id: str | None = None) -> dict[str, Any] | None:
        sql = "SELECT * FROM emails WHERE id = ?"
        params: list[Any] = [email_id]
        if agent_id is not None:
            sql += " AND agent_id = ?"
            params.append(agent_id)
        with self._get_conn() as conn:
            row = conn.execute(sql, params).fetchone()
        return _row(row)

    def find_email_by_message_id(self, agent_id: str, message_id: str) -> dict[str, Any] | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM emails WHERE agent_id = ? AND message_id = ? LIMIT 1",
                (agent_id, message_id),
            ).fetchone()
        return _row(row)

    def list_emails(
        self,
        agent_id: str,
        unread_only: bool = False,
        direction: str = "inbound",
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM emails WHERE agent_id = ? AND direction = ?"
        if unread_only:
            sql += " AND is_read = 0"
        sql += " ORDER BY created_at DESC LIMIT ?"
        with self._get_conn() as conn:
            rows = conn.execute(sql, (agent_id, direction, limit)).fetchall()
        return [_row(r) for r in rows]

    def update_email(
        self, email_id: str, fields: dict[str, Any], agent_id: str | None = None
    ) -> dict[str, Any] | None:
        if not self._update("emails", _EMAIL_FIELDS, email_id, fields, agent_id):
            return None
        return self.get_email(email_id)

    # ════════════════════════════════════════════════════════════
    # SEMANTIC SEARCH (cosine similarity over stored embeddings)
    # ════════════════════════════════════════════════════════════

    def search_embeddings(
        self,
        query_embedding: list[float],
        agent_id: str,
        match_count: int = 10,
        match_threshold: float = 0.5,
    ) -> list[dict[str, Any]]:
        """Rank tasks, projects and memories by similarity to ``query_embedding``.

        Returns dicts with ``source_type, source_id, title, content,
        metadata, similarity, created_at``, best match first.
        """
        with self._get_conn() as conn:
            rows = conn.execute(_SEARCH_SQL, (agent_id, agent_id, agent_id)).fetchall()

        query = np.asarray(query_embedding, dtype=np.float32)
        q_norm = float(np.linalg.norm(query))
        if not rows or q_norm == 0.0:
            return []

        candidates = []
        vectors = []
        for r in rows:
            vec = json.loads(r["embedding"])
            if len(vec) != len(query):
                continue
            candidates.append(r)
            vectors.append(vec)
        if not vectors:
            return []

        matrix = np.asarray(vectors, dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        scores = (matrix @ query) / (norms * q_norm)

        order = np.argsort(-scores)
        results: list[dict[str, Any]] = []
        for idx in order:
            score = float(scores[idx])
            if score < match_threshold:
                break
            r = candidates[idx]
            results.append({
                "source_type": r["source_type"],
                "source_id": r["source_id"],
                "title": r["title"],
                "content": r["content"] or "",
                "metadata": {"status": r["status"]} if r["status"] else {},
                "similarity": score,
                "created_at": r["created_at"],
            })
            if len(results) >= match_count:
                break
        return results

    # ════════════════════════════════════════════════════════════
    # STATS
    # ════════════════════════════════════════════════════════════

    def count_rows(self, table: str, where: str = "", params: tuple = ()) -> int:
        if table not in _TABLES:
            raise ValueError(f"Unknown table: {table}")
        sql = f"SELECT COUNT(*) FROM {table}"
        if where:
            sql += f" WHERE {where}"
        with self._get_conn() as conn:
            return conn.execute(sql, params).fetchone()[0]


_PRIORITY_ORDER = (
    "CASE priority WHEN 'high' THEN 0 WHEN 'medium' THEN 1 WHEN 'low' THEN 2 ELSE 3 END"
)

_SEARCH_SQL = """
SELECT 'task' AS source_type, id AS source_id, title, description AS content,
       status, embedding, created_at
  FROM tasks WHERE agent_id = ? AND embedding IS NOT NULL
UNION ALL
SELECT 'project', id, title, description, status, embedding, created_at
  FROM projects WHERE agent_id = ? AND embedding IS NOT NULL
UNION ALL
SELECT 'memory', id, title, content, NULL, embedding, created_at
  FROM memories WHERE agent_id = ? AND embedding IS NOT NULL
"""

_TABLES = frozenset({
    "agents", "conversations", "messages", "projects", "tasks", "comments",
    "scheduled_jobs", "job_executions", "execution_steps", "activity_log",
    "notifications", "memories", "feedback_items", "emails",
})


# ════════════════════════════════════════════════════════════
# SQL SCHEMA
# ════════════════════════════════════════════════════════════

_SCHEMA = """
-- 1. Agents (persona acting for one user)
CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT 'TaskBot',
    user_name TEXT,
    user_email TEXT,
    timezone TEXT,
    instructions TEXT,
    created_at TEXT NOT NULL
);

-- 2. Conversations
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    title TEXT,
    channel_type TEXT DEFAULT 'app',
    idempotency_key TEXT UNIQUE,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_conversations_agent ON conversations(agent_id, updated_at DESC);

-- 3. Messages
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT,
    metadata TEXT,
    idempotency_key TEXT UNIQUE,
    created_at TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id);

-- 4. Projects
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT DEFAULT 'active',
    priority TEXT DEFAULT 'medium',
    embedding TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- 5. Tasks (status and agent_run_state are independent machines)
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    project_id TEXT,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'todo',
    priority TEXT DEFAULT 'medium',
    due_date TEXT,
    assignee_type TEXT DEFAULT 'user',
    assignee_id TEXT,
    blocked_by TEXT DEFAULT '[]',
    agent_run_state TEXT NOT NULL DEFAULT 'idle',
    lock_expires_at TEXT,
    last_agent_run_at TEXT,
    failure_reason TEXT,
    completed_at TEXT,
    embedding TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tasks_agent ON tasks(agent_id, status);

-- 6. Comments (append-only activity trail)
CREATE TABLE IF NOT EXISTS comments (
    id TEXT PRIMARY KEY,
    task_id TEXT,
    project_id TEXT,
    author_type TEXT NOT NULL DEFAULT 'agent',
    author_id TEXT,
    content TEXT NOT NULL,
    comment_type TEXT DEFAULT 'note',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_comments_task ON comments(task_id, created_at);

-- 7. Scheduled jobs
CREATE TABLE IF NOT EXISTS scheduled_jobs (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    job_type TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    schedule_type TEXT NOT NULL,
    run_at TEXT,
    cron_expression TEXT,
    timezone TEXT NOT NULL,
    next_run_at TEXT NOT NULL,
    action_type TEXT NOT NULL,
    action_payload TEXT NOT NULL DEFAULT '{}',
    task_id TEXT,
    project_id TEXT,
    conversation_id TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    failure_count INTEGER DEFAULT 0,
    last_error TEXT,
    last_run_at TEXT,
    run_count INTEGER DEFAULT 0,
    locked_until TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_due ON scheduled_jobs(status, next_run_at);

-- 8. Job executions (append-only audit trail)
CREATE TABLE IF NOT EXISTS job_executions (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'running',
    step_cursor TEXT,
    result TEXT,
    error TEXT,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    FOREIGN KEY (job_id) REFERENCES scheduled_jobs(id)
);
CREATE INDEX IF NOT EXISTS idx_executions_job ON job_executions(job_id, started_at DESC);

-- 9. Memoized execution steps
CREATE TABLE IF NOT EXISTS execution_steps (
    execution_id TEXT NOT NULL,
    step_name TEXT NOT NULL,
    output TEXT,
    created_at TEXT NOT NULL,
    PRIMARY KEY (execution_id, step_name),
    FOREIGN KEY (execution_id) REFERENCES job_executions(id)
);

-- 10. Activity log
CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    activity_type TEXT NOT NULL,
    source TEXT DEFAULT 'agent',
    title TEXT NOT NULL,
    description TEXT,
    status TEXT DEFAULT 'completed',
    metadata TEXT,
    conversation_id TEXT,
    task_id TEXT,
    project_id TEXT,
    job_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_activity_agent ON activity_log(agent_id, activity_type);

-- 11. Notifications
CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    content TEXT,
    link_type TEXT,
    link_id TEXT,
    is_read INTEGER DEFAULT 0,
    created_at TEXT NOT NULL
);

-- 12. Memories (saved context blocks)
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    category TEXT DEFAULT 'general',
    always_include INTEGER DEFAULT 0,
    embedding TEXT,
    created_at TEXT NOT NULL
);

-- 13. Feedback items (bug reports, incl. automatic ones)
CREATE TABLE IF NOT EXISTS feedback_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    type TEXT NOT NULL,
    source TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    priority TEXT DEFAULT 'medium',
    status TEXT DEFAULT 'new',
    dedup_key TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_feedback_dedup ON feedback_items(agent_id, dedup_key, created_at);

-- 14. Emails
CREATE TABLE IF NOT EXISTS emails (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    direction TEXT NOT NULL DEFAULT 'inbound',
    message_id TEXT,
    in_reply_to TEXT,
    from_address TEXT,
    to_address TEXT,
    subject TEXT,
    body TEXT,
    is_read INTEGER DEFAULT 0,
    processed_by_agent INTEGER DEFAULT 0,
    project_id TEXT,
    task_id TEXT,
    conversation_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""
