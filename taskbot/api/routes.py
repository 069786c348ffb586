"""Core API routes — jobs, executions, events, dispatch, health."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from taskbot import __version__
from taskbot.api.deps import get_db, get_jobs, get_runtime
from taskbot.core.cron.jobs import JobStore
from taskbot.core.events import UnknownEvent
from taskbot.core.runtime import Runtime
from taskbot.memory.models import (
    EventRequest,
    EventResponse,
    HealthResponse,
    JobExecution,
    JobSpec,
    JobUpdate,
    ScheduledJob,
    TickResponse,
)
from taskbot.memory.store import MemoryStore

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health(runtime: Runtime = Depends(get_runtime)):
    """Health check."""
    return HealthResponse(
        status="ok",
        scheduler_running=runtime.scheduler.running,
        version=__version__,
        active_jobs=runtime.db.count_rows("scheduled_jobs", "status = ?", ("active",)),
    )


# ── Jobs ─────────────────────────────────────────────────────


@router.get("/jobs", response_model=list[ScheduledJob])
async def list_jobs(
    agent_id: str | None = None,
    status: str | None = None,
    job_type: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    jobs: JobStore = Depends(get_jobs),
):
    """List scheduled jobs, soonest next run first."""
    return jobs.list_jobs(agent_id, status=status, job_type=job_type, limit=limit)


@router.post("/jobs", response_model=ScheduledJob, status_code=201)
async def create_job(body: JobSpec, jobs: JobStore = Depends(get_jobs)):
    """Create a one-time (run_at) or recurring (cron_expression) job."""
    return jobs.create_job(body)


@router.get("/jobs/{job_id}", response_model=ScheduledJob)
async def get_job(job_id: str, jobs: JobStore = Depends(get_jobs)):
    return jobs.get_job(job_id)


@router.patch("/jobs/{job_id}", response_model=ScheduledJob)
async def update_job(job_id: str, body: JobUpdate, jobs: JobStore = Depends(get_jobs)):
    """Retitle, retime, change timezone, pause or resume."""
    return jobs.update_job(job_id, body)


@router.delete("/jobs/{job_id}", response_model=ScheduledJob)
async def cancel_job(job_id: str, jobs: JobStore = Depends(get_jobs)):
    """Cancel a job. Jobs are kept for their execution history."""
    return jobs.cancel_job(job_id)


@router.get("/jobs/{job_id}/executions", response_model=list[JobExecution])
async def list_executions(
    job_id: str,
    limit: int = Query(default=20, ge=1, le=200),
    jobs: JobStore = Depends(get_jobs),
    db: MemoryStore = Depends(get_db),
):
    jobs.get_job(job_id)
    return db.list_executions(job_id, limit=limit)


# ── Events & dispatch ────────────────────────────────────────


@router.post("/events/{name:path}", response_model=EventResponse, status_code=202)
async def send_event(name: str, body: EventRequest, runtime: Runtime = Depends(get_runtime)):
    """Send a background event (e.g. ``task/process.start``)."""
    try:
        runtime.bus.send(name, body.data)
    except UnknownEvent:
        raise HTTPException(status_code=404, detail=f"Unknown event: {name}")
    except PydanticValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    logger.info(f"Event accepted via API: {name}")
    return EventResponse(name=name, accepted=True)


@router.post("/dispatch/tick", response_model=TickResponse)
async def dispatch_tick(runtime: Runtime = Depends(get_runtime)):
    """Poll due jobs once, outside the scheduler interval."""
    return TickResponse(dispatched=await runtime.scheduler.tick())
