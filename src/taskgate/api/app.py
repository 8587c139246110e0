"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from taskgate import __version__
from taskgate.api.routers import checkpoints, jobs, system, tasks
from taskgate.app import AppContext
from taskgate.errors import (
    CheckpointNotFoundError,
    CheckpointStateError,
    JobInputError,
    JobNotFoundError,
    JobStateError,
)

logger = logging.getLogger(__name__)

_ERROR_STATUS: tuple[tuple[type[Exception], int], ...] = (
    (JobNotFoundError, status.HTTP_404_NOT_FOUND),
    (CheckpointNotFoundError, status.HTTP_404_NOT_FOUND),
    (JobStateError, status.HTTP_409_CONFLICT),
    (CheckpointStateError, status.HTTP_409_CONFLICT),
    (JobInputError, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


def create_app(context: AppContext, *, run_worker: bool | None = None) -> FastAPI:
    """Build the HTTP app around an already wired context.

    With `run_worker` (defaults to `settings.api.run_worker`) the job worker is
    started with the app and stopped on shutdown.
    """

    start_worker = context.settings.api.run_worker if run_worker is None else run_worker

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if start_worker:
            context.worker.start()
        try:
            yield
        finally:
            if start_worker:
                # Joins job threads for up to the shutdown grace period.
                await run_in_threadpool(context.worker.stop)

    app = FastAPI(
        title="taskgate",
        description="Job execution with human approval checkpoints.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = context

    for error_type, status_code in _ERROR_STATUS:
        app.add_exception_handler(error_type, _error_handler(status_code))

    app.include_router(jobs.router)
    app.include_router(checkpoints.router)
    app.include_router(tasks.router)
    app.include_router(system.router)
    return app


def _error_handler(status_code: int):  # noqa: ANN202
    async def handler(_: Request, error: Exception) -> JSONResponse:
        logger.debug("Request failed with %d: %s", status_code, error)
        return JSONResponse(status_code=status_code, content={"detail": str(error)})

    return handler
