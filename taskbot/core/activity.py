"""ActivityRecorder — non-blocking activity log and automatic bug reports.

Activity writes never block or fail the operation that produced them.
When started, writes go through an asyncio queue drained by one task;
before ``start()`` (CLI, tests) they are written inline. Either way a
failing write is logged and dropped.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Callable

from loguru import logger

from taskbot.core.config.schema import Config
from taskbot.core.timeutil import to_iso, utc_now
from taskbot.memory.store import MemoryStore

_PREVIEW_CHARS = 500


def is_failure(result: Any) -> bool:
    return isinstance(result, dict) and result.get("success") is False


class ActivityRecorder:
    def __init__(self, db: MemoryStore, config: Config):
        self.db = db
        self.config = config
        self._queue: asyncio.Queue | None = None
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._drain())
        logger.debug("ActivityRecorder started")

    async def stop(self) -> None:
        """Flush pending writes and stop the drain task."""
        if self._task is None:
            return
        await self._queue.join()
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        self._queue = None
        logger.debug("ActivityRecorder stopped")

    def submit(self, fn: Callable[..., Any], *args, **kwargs) -> None:
        if self._queue is None:
            self._write(fn, args, kwargs)
        else:
            self._queue.put_nowait((fn, args, kwargs))

    async def _drain(self) -> None:
        while True:
            fn, args, kwargs = await self._queue.get()
            try:
                self._write(fn, args, kwargs)
            finally:
                self._queue.task_done()

    @staticmethod
    def _write(fn: Callable[..., Any], args: tuple, kwargs: dict) -> None:
        try:
            fn(*args, **kwargs)
        except Exception as e:
            logger.warning(f"Activity write failed ({getattr(fn, '__name__', fn)}): {e}")

    # ── Public API ──────────────────────────────────────────

    def log(self, agent_id: str, activity_type: str, title: str, **kwargs: Any) -> None:
        """Queue an activity_log row (see ``MemoryStore.log_activity``)."""
        self.submit(self.db.log_activity, agent_id, activity_type, title, **kwargs)

    def tool_call(
        self,
        agent_id: str,
        tool_name: str,
        args: dict[str, Any],
        result: Any,
        conversation_id: str | None = None,
        task_id: str | None = None,
        source: str = "agent",
    ) -> None:
        """Record one tool invocation; failed results also file a bug report."""
        failed = is_failure(result)
        self.log(
            agent_id,
            "tool_call",
            f"Tool: {tool_name}",
            source=source,
            status="failed" if failed else "completed",
            metadata={
                "tool_name": tool_name,
                "args": args,
                "result_preview": str(result)[:_PREVIEW_CHARS],
            },
            conversation_id=conversation_id,
            task_id=task_id,
        )
        if failed:
            self.submit(
                self.report_tool_failure,
                agent_id,
                tool_name,
                str(result.get("error") or "Unknown error"),
                args=args,
                conversation_id=conversation_id,
            )

    def report_tool_failure(
        self,
        agent_id: str,
        tool_name: str,
        error: str,
        args: dict[str, Any] | None = None,
        conversation_id: str | None = None,
    ) -> bool:
        """Create a deduplicated, rate-limited bug report. Returns True if filed."""
        cfg = self.config.bug_reports
        if not cfg.enabled:
            return False
        now = utc_now()
        hour_ago = to_iso(now - timedelta(hours=1))
        if self.db.count_feedback_since(agent_id, "agent_error", hour_ago) >= cfg.max_per_hour:
            logger.debug(f"Bug report rate limit reached for agent {agent_id}")
            return False

        dedup_key = f"{tool_name}:{error[:200]}"
        window_start = to_iso(now - timedelta(minutes=cfg.dedup_window_minutes))
        if self.db.has_feedback_since(agent_id, dedup_key, window_start):
            logger.debug(f"Duplicate bug report suppressed: {dedup_key}")
            return False

        self.db.create_feedback(
            agent_id,
            type="bug_report",
            source="agent_error",
            title=f"Tool error: {tool_name}",
            description=(
                f"The `{tool_name}` tool failed during an agent run.\n\n"
                f"**Error:** {error}"
            ),
            priority="high",
            dedup_key=dedup_key,
            metadata={
                "tool_name": tool_name,
                "error_message": error,
                "args": args or {},
                "conversation_id": conversation_id,
            },
        )
        logger.info(f"Bug report filed for tool {tool_name}: {error[:80]}")
        return True
