"""Health and metrics endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from taskgate import __version__
from taskgate.api.dependencies import get_app_context
from taskgate.api.schemas import HealthResponse, WorkerStatsResponse
from taskgate.app import AppContext
from taskgate.observability.metrics import PROMETHEUS_CONTENT_TYPE, render_prometheus

router = APIRouter(tags=["system"])


@router.get("/health", response_model=HealthResponse)
def health(context: AppContext = Depends(get_app_context)) -> HealthResponse:
    return HealthResponse(
        status="ok",
        version=__version__,
        worker=WorkerStatsResponse.from_stats(context.worker.stats()),
    )


@router.get("/metrics", response_class=PlainTextResponse)
def metrics(context: AppContext = Depends(get_app_context)) -> PlainTextResponse:
    return PlainTextResponse(
        render_prometheus(context.metrics_snapshot()),
        media_type=PROMETHEUS_CONTENT_TYPE,
    )
