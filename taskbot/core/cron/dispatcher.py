"""JobDispatcher — runs one execution of a scheduled job end to end."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from loguru import logger

from taskbot.core.errors import AlreadyLocked, TaskbotError
from taskbot.core.events import JobExecuteEvent
from taskbot.memory.models import decode_action

if TYPE_CHECKING:
    from taskbot.core.runtime import Runtime


class JobDispatcher:
    """Execution state machine: running → success | failed.

    The execution row is created before the handler runs and receives
    exactly one terminal update. Business failures (``TaskbotError``) end
    the attempt immediately; anything else is retried with exponential
    backoff up to ``dispatcher.max_attempts``.
    """

    def __init__(self, runtime: Runtime):
        self.rt = runtime

    async def handle_event(self, data: dict[str, Any]) -> dict[str, Any]:
        event = JobExecuteEvent.model_validate(data)
        return await self.execute(event.job, event.execution_id)

    async def execute(self, job: dict[str, Any], execution_id: str) -> dict[str, Any]:
        """Run ``job`` under ``execution_id``. Returns the execution row.

        Re-running a finished execution id returns the recorded outcome
        without doing any work.
        """
        db = self.rt.db
        existing = db.get_execution(execution_id)
        if existing and existing["state"] != "running":
            logger.info(f"Execution {execution_id} already {existing['state']}, skipping")
            return existing
        db.create_execution(execution_id, job["id"], job["agent_id"])
        logger.info(f"Executing job {job['id']} ({job['action_type']}) as {execution_id}")

        try:
            result = await self._with_retry(job, execution_id)
        except AlreadyLocked as e:
            db.finalize_execution(execution_id, "failed", error=str(e))
            if e.expires_at:
                self.rt.jobs.defer(job["id"], e.expires_at)
            else:
                self.rt.jobs.release_claim(job["id"])
            logger.info(f"Job {job['id']} deferred: {e}")
        except Exception as e:
            error = str(e) or type(e).__name__
            if db.finalize_execution(execution_id, "failed", error=error):
                self._on_failure(self._current(job), error)
        else:
            if db.finalize_execution(execution_id, "success", result=result):
                current = self._current(job)
                if current["status"] == "cancelled":
                    self.rt.jobs.release_claim(job["id"])
                else:
                    self.rt.jobs.record_success(current)
                logger.info(f"Job {job['id']} succeeded")
        return db.get_execution(execution_id)

    def _current(self, job: dict[str, Any]) -> dict[str, Any]:
        """Fresh row; the event payload is a snapshot taken at dispatch."""
        return self.rt.db.get_job(job["id"]) or job

    async def _with_retry(self, job: dict[str, Any], execution_id: str) -> dict[str, Any]:
        cfg = self.rt.config.background.dispatcher
        attempt = 0
        while True:
            attempt += 1
            try:
                action = decode_action(job["action_type"], job.get("action_payload"))
                return await self.rt.actions.run(job, action, execution_id)
            except TaskbotError:
                raise
            except Exception as e:
                if attempt >= cfg.max_attempts:
                    logger.error(f"Job {job['id']} failed after {attempt} attempt(s): {e}")
                    raise
                delay = cfg.retry_backoff_s * (2 ** (attempt - 1))
                logger.warning(
                    f"Job {job['id']} attempt {attempt} failed: {e} — retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    def _on_failure(self, job: dict[str, Any], error: str) -> None:
        db = self.rt.db
        updated = self.rt.jobs.record_failure(job, error)
        paused = updated is not None and updated["status"] == "paused"
        logger.warning(f"Job {job['id']} failed: {error}{' (paused)' if paused else ''}")

        content = f"Error: {error}"
        if paused:
            content += "\n\nThe job has been paused after repeated failures."
        db.create_notification(
            job["agent_id"],
            "job_failed",
            f"Scheduled job failed: {job['title']}",
            content=content,
            link_type="job",
            link_id=job["id"],
        )
        if job.get("task_id") and db.get_task(job["task_id"]):
            db.add_comment(
                f"Scheduled job \"{job['title']}\" failed: {error}",
                task_id=job["task_id"],
                author_type="system",
                comment_type="note",
            )
