"""FastAPI dependency injection — pull singletons from app.state."""

from __future__ import annotations

from fastapi import Request

from taskbot.core.config.schema import Config
from taskbot.core.cron.jobs import JobStore
from taskbot.core.runtime import Runtime
from taskbot.memory.store import MemoryStore


def get_runtime(request: Request) -> Runtime:
    """Get Runtime singleton from app state."""
    return request.app.state.runtime


def get_config(request: Request) -> Config:
    return request.app.state.runtime.config


def get_db(request: Request) -> MemoryStore:
    return request.app.state.runtime.db


def get_jobs(request: Request) -> JobStore:
    return request.app.state.runtime.jobs
