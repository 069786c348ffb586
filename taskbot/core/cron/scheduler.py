"""JobScheduler — APScheduler poll loop that turns due jobs into execute events."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from taskbot.core.events import JOB_EXECUTE
from taskbot.core.timeutil import utc_now

if TYPE_CHECKING:
    from taskbot.core.runtime import Runtime


class JobScheduler:
    """Bridge between SQLite scheduled_jobs and the event bus.

    SQLite is the source of truth; APScheduler only drives two interval
    jobs: the due-job poll (``tick``) and the agent task sweep. A job is
    claimed before its event is emitted, so overlapping polls never emit
    the same due instant twice.
    """

    def __init__(self, runtime: Runtime):
        self.rt = runtime
        self._scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1}
        )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        cfg = self.rt.config.background
        if cfg.dispatcher.enabled:
            self._scheduler.add_job(
                self.tick,
                trigger=IntervalTrigger(seconds=cfg.dispatcher.poll_interval_s),
                id="dispatch-tick",
                replace_existing=True,
                next_run_time=datetime.now(),
            )
        if cfg.task_worker.enabled:
            self._scheduler.add_job(
                self.rt.task_worker.sweep,
                trigger=IntervalTrigger(seconds=cfg.task_worker.sweep_interval_s),
                id="task-sweep",
                replace_existing=True,
            )
        self._scheduler.start()
        logger.info(
            f"JobScheduler started (poll every {cfg.dispatcher.poll_interval_s}s, "
            f"task sweep every {cfg.task_worker.sweep_interval_s}s)"
        )

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("JobScheduler stopped")

    async def tick(self, now: datetime | None = None) -> int:
        """Claim every due job and emit ``job/scheduled.execute``. Returns the count emitted."""
        now = now or utc_now()
        jobs = self.rt.jobs
        dispatched = 0
        for job in jobs.list_due_jobs(now):
            if not jobs.claim(job, now):
                continue
            execution_id = str(uuid.uuid4())
            try:
                self.rt.bus.send(JOB_EXECUTE, {"job": job, "execution_id": execution_id})
            except Exception as e:
                logger.error(f"Failed to emit job {job['id']}: {e}")
                jobs.release_claim(job["id"])
                continue
            dispatched += 1
        if dispatched:
            logger.info(f"Dispatched {dispatched} due job(s)")
        return dispatched
