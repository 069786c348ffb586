"""JobStore — scheduled job CRUD, due-job queries and the circuit breaker."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from taskbot.core.config.schema import Config
from taskbot.core.cron.schedule import (
    compute_next_run,
    normalize_run_at,
    resolve_timezone,
)
from taskbot.core.errors import ActionExecutionFailure, NotFoundError, ValidationError
from taskbot.core.timeutil import iso_after, parse_iso, to_iso, utc_now
from taskbot.memory.models import ACTION_TYPES, JobSpec, JobUpdate, decode_action
from taskbot.memory.store import MemoryStore

MISSING_SCHEDULE = (
    "Must provide either 'run_at' for one-time or 'cron_expression' for recurring jobs"
)
BOTH_SCHEDULES = "Provide only one: 'run_at' for one-time OR 'cron_expression' for recurring"


def _validate(model: type, data: Any):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(str(e)) from e


class JobStore:
    """Scheduled jobs on top of MemoryStore.

    Rows stay plain dicts, as returned by the store. Jobs are never
    deleted; cancel and pause only change ``status``.
    """

    def __init__(self, db: MemoryStore, config: Config):
        self.db = db
        self.config = config

    @property
    def default_timezone(self) -> str:
        return self.config.background.default_timezone

    # ── Create ──────────────────────────────────────────────

    def create_job(self, spec: JobSpec | dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
        """Validate and persist a job.

        Raises
        ------
        ValidationError
            Both or neither of run_at/cron_expression, unknown action type,
            unparsable datetime, bad cron or unknown timezone. Nothing is
            persisted in that case.
        """
        spec = _validate(JobSpec, spec)
        now = now or utc_now()

        if spec.run_at and spec.cron_expression:
            raise ValidationError(BOTH_SCHEDULES)
        if not spec.run_at and not spec.cron_expression:
            raise ValidationError(MISSING_SCHEDULE)
        if spec.action_type not in ACTION_TYPES:
            raise ValidationError(f"Unknown action type: {spec.action_type}")
        try:
            decode_action(spec.action_type, spec.action_payload)
        except ActionExecutionFailure as e:
            raise ValidationError(str(e)) from e

        tz = spec.timezone or self.default_timezone
        resolve_timezone(tz)

        if spec.run_at:
            run_at = normalize_run_at(spec.run_at)
            schedule_type = "once"
            next_run = run_at
            run_at_iso = to_iso(run_at)
        else:
            schedule_type = "cron"
            next_run = compute_next_run(spec.cron_expression, tz, now)
            run_at_iso = None

        job = self.db.insert_job({
            **spec.model_dump(exclude={"run_at", "timezone"}),
            "schedule_type": schedule_type,
            "run_at": run_at_iso,
            "timezone": tz,
            "next_run_at": to_iso(next_run),
        })
        logger.info(
            f"Job created: {job['id']} ({schedule_type}, {spec.action_type}) "
            f"next={job['next_run_at']}"
        )
        return job

    # ── Queries ─────────────────────────────────────────────

    def get_job(self, job_id: str, agent_id: str | None = None) -> dict[str, Any]:
        job = self.db.get_job(job_id, agent_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    def list_jobs(
        self,
        agent_id: str | None = None,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        return self.db.list_jobs(agent_id, status=status, job_type=job_type, limit=limit)

    def list_due_jobs(self, now: datetime | None = None, limit: int | None = None) -> list[dict[str, Any]]:
        """Active jobs due at ``now``, oldest ``next_run_at`` first."""
        limit = limit or self.config.background.dispatcher.due_batch_size
        return self.db.list_due_jobs(to_iso(now or utc_now()), limit)

    # ── Dispatch claim ──────────────────────────────────────

    def claim(self, job: dict[str, Any], now: datetime | None = None, ttl: int | None = None) -> bool:
        """Take the dispatch claim for the job's current due instant.

        A claim is refused while an earlier execution is still running, so a
        run that outlives the claim TTL is never dispatched a second time.
        Executions older than ``execution_timeout_s`` are treated as dead.
        """
        now = now or utc_now()
        cfg = self.config.background.dispatcher
        ttl = ttl or cfg.claim_ttl_s
        return self.db.claim_job(
            job["id"], to_iso(now), iso_after(ttl, now), iso_after(-cfg.execution_timeout_s, now)
        )

    def release_claim(self, job_id: str) -> None:
        self.db.release_job_claim(job_id)

    def defer(self, job_id: str, until: str) -> None:
        """Hold the claim until ``until`` so polls skip the job."""
        self.db.update_job(job_id, {"locked_until": until})
        logger.debug(f"Job {job_id} deferred until {until}")

    # ── Lifecycle after a run ───────────────────────────────

    def advance(self, job: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
        """Move a job past a successful run.

        once → ``completed``. cron → next fire strictly after ``now`` in the
        job's own timezone.
        """
        now = now or utc_now()
        fields: dict[str, Any] = {
            "locked_until": None,
            "last_run_at": to_iso(now),
            "run_count": (job.get("run_count") or 0) + 1,
        }
        if job["schedule_type"] == "once":
            fields["status"] = "completed"
        else:
            fields["next_run_at"] = to_iso(
                compute_next_run(job["cron_expression"], job["timezone"], now)
            )
        updated = self.db.update_job(job["id"], fields)
        logger.debug(
            f"Job {job['id']} advanced: status={updated['status']} next={updated['next_run_at']}"
        )
        return updated

    def record_success(self, job: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
        self.db.reset_job_failures(job["id"])
        return self.advance(job, now)

    def record_failure(
        self, job: dict[str, Any], error: str, now: datetime | None = None
    ) -> dict[str, Any]:
        """Circuit breaker.

        Pauses the job once consecutive failures reach the configured
        threshold. Below it a cron job moves to its next natural slot and a
        once job keeps its ``next_run_at`` so the next poll retries it.
        """
        now = now or utc_now()
        threshold = self.config.background.dispatcher.failure_threshold
        count = self.db.increment_job_failures(job["id"], error)
        fields: dict[str, Any] = {"locked_until": None, "last_run_at": to_iso(now)}
        active = job["status"] == "active"
        if active and count >= threshold:
            fields["status"] = "paused"
            logger.warning(
                f"Pausing job {job['id']} after {count} consecutive failures"
            )
        elif active and job["schedule_type"] == "cron":
            fields["next_run_at"] = to_iso(
                compute_next_run(job["cron_expression"], job["timezone"], now)
            )
        return self.db.update_job(job["id"], fields)

    # ── User mutations ──────────────────────────────────────

    def update_job(
        self,
        job_id: str,
        patch: JobUpdate | dict[str, Any],
        agent_id: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Retitle, retime, change timezone, pause or resume a job.

        Retiming recomputes ``next_run_at`` immediately. Resuming clears the
        failure count and, for cron jobs, recomputes from ``now``.
        """
        patch = _validate(JobUpdate, patch)
        now = now or utc_now()
        job = self.get_job(job_id, agent_id)
        changes = patch.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            return job

        if job["status"] in ("completed", "cancelled") and (
            "status" in changes or "run_at" in changes or "cron_expression" in changes
        ):
            raise ValidationError(f"Cannot reschedule a {job['status']} job")
        if "run_at" in changes and "cron_expression" in changes:
            raise ValidationError(BOTH_SCHEDULES)

        fields: dict[str, Any] = {}
        for key in ("title", "description"):
            if key in changes:
                fields[key] = changes[key]
        if "action_payload" in changes:
            try:
                decode_action(job["action_type"], changes["action_payload"])
            except ActionExecutionFailure as e:
                raise ValidationError(str(e)) from e
            fields["action_payload"] = changes["action_payload"]

        tz = changes.get("timezone", job["timezone"])
        if "timezone" in changes:
            resolve_timezone(tz)
            fields["timezone"] = tz

        schedule_type = job["schedule_type"]
        cron_expression = job["cron_expression"]
        if "run_at" in changes:
            run_at = normalize_run_at(changes["run_at"])
            schedule_type, cron_expression = "once", None
            fields.update(
                schedule_type="once", run_at=to_iso(run_at),
                cron_expression=None, next_run_at=to_iso(run_at),
            )
        elif "cron_expression" in changes:
            schedule_type, cron_expression = "cron", changes["cron_expression"]
            fields.update(schedule_type="cron", run_at=None, cron_expression=cron_expression)

        status = changes.get("status")
        if status == "paused":
            fields["status"] = "paused"
        elif status == "active":
            fields.update(status="active", failure_count=0, last_error=None)

        recompute = schedule_type == "cron" and (
            "cron_expression" in changes
            or "timezone" in changes
            or (status == "active" and job["status"] != "active")
        )
        if recompute:
            fields["next_run_at"] = to_iso(compute_next_run(cron_expression, tz, now))

        updated = self.db.update_job(job_id, fields)
        logger.info(f"Job updated: {job_id} ({', '.join(sorted(fields))})")
        return updated

    def cancel_job(self, job_id: str, agent_id: str | None = None) -> dict[str, Any]:
        """Set status ``cancelled``. Cancelling twice is a no-op."""
        job = self.db.cancel_job(job_id, agent_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        logger.info(f"Job cancelled: {job_id}")
        return job

    @staticmethod
    def next_run(job: dict[str, Any]) -> datetime:
        return parse_iso(job["next_run_at"])
