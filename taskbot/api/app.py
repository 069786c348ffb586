"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from taskbot import __version__
from taskbot.api.routes import router as core_router
from taskbot.core.config.loader import load_config
from taskbot.core.errors import NotFoundError, ValidationError
from taskbot.core.runtime import Runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: Config → Runtime → scheduler. Shutdown: drain handlers, stop scheduler."""
    runtime: Runtime | None = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = Runtime.from_config(load_config())
        app.state.runtime = runtime
    await runtime.start()
    logger.info(f"TaskBot API started — model: {runtime.config.assistant.model}")
    yield
    await runtime.stop()
    logger.info("TaskBot API shutting down")


async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    runtime : Runtime, optional
        Pre-built runtime (tests). None builds one from config at startup.
    """
    app = FastAPI(
        title="TaskBot API",
        description="Scheduled jobs and background agent tasks",
        version=__version__,
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.runtime = runtime

    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(NotFoundError, _not_found)
    app.include_router(core_router)
    return app


app = create_app()
