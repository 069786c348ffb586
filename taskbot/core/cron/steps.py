"""Memoized execution steps.

Each named step of an execution persists its JSON output. Re-running the
same execution id returns stored outputs instead of repeating the work, so
a replay resumes after the last completed step.
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable

from loguru import logger

from taskbot.memory.store import MemoryStore


class StepRunner:
    def __init__(self, db: MemoryStore, execution_id: str):
        self.db = db
        self.execution_id = execution_id

    async def run(self, name: str, fn: Callable[..., Any | Awaitable[Any]], *args, **kwargs) -> Any:
        """Run ``fn`` once per (execution, name). Output must be JSON-serializable."""
        saved = self.db.get_step(self.execution_id, name)
        if saved is not None:
            logger.debug(f"Step replayed: {self.execution_id}/{name}")
            return saved["output"]
        result = fn(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        self.db.save_step(self.execution_id, name, result)
        return result
