"""Explicit application wiring shared by the CLI and the HTTP API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from taskgate.completion.anthropic_client import AnthropicCompletionService
from taskgate.completion.base import CompletionService
from taskgate.config import Settings
from taskgate.jobs.checkpoints import CheckpointManager
from taskgate.jobs.handlers import HandlerRegistry, build_default_registry
from taskgate.jobs.repository import JobRepository
from taskgate.jobs.services import JobService
from taskgate.jobs.worker import JobWorker
from taskgate.observability.error_reporting import ErrorReporter, build_error_reporter
from taskgate.observability.metrics import MetricsSnapshot, build_metrics_snapshot
from taskgate.orchestrator.pipeline import TaskOrchestrator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AppContext:
    """Every long-lived collaborator, built once per process."""

    settings: Settings
    repository: JobRepository
    checkpoints: CheckpointManager
    registry: HandlerRegistry
    completion: CompletionService
    reporter: ErrorReporter
    worker: JobWorker
    orchestrator: TaskOrchestrator
    jobs: JobService

    def metrics_snapshot(self) -> MetricsSnapshot:
        return build_metrics_snapshot(
            repository=self.repository,
            active_jobs=self.worker.active_job_count,
        )

    def close(self) -> None:
        if self.worker.is_running:
            self.worker.stop()
        self.repository.close()


def build_app_context(
    settings: Settings,
    *,
    completion: CompletionService | None = None,
    registry: HandlerRegistry | None = None,
) -> AppContext:
    """Validate settings, migrate the database and wire all services."""

    settings.validate()
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()

    reporter = build_error_reporter(enabled=settings.worker.enable_error_reporting)
    completion_service = completion or AnthropicCompletionService.from_settings(
        settings.completion,
    )
    checkpoints = CheckpointManager(
        repository,
        reporter=reporter,
        default_ttl=timedelta(hours=settings.checkpoints.ttl_hours),
    )
    handler_registry = registry or build_default_registry()
    worker = JobWorker.from_settings(
        settings.worker,
        repository=repository,
        checkpoints=checkpoints,
        registry=handler_registry,
        completion=completion_service,
        reporter=reporter,
    )
    orchestrator = TaskOrchestrator.from_settings(
        settings.orchestrator,
        completion=completion_service,
        reporter=reporter,
    )
    logger.debug("Application context ready (db=%s)", settings.db_path)
    return AppContext(
        settings=settings,
        repository=repository,
        checkpoints=checkpoints,
        registry=handler_registry,
        completion=completion_service,
        reporter=reporter,
        worker=worker,
        orchestrator=orchestrator,
        jobs=JobService(
            repository=repository,
            reporter=reporter,
            log_page_size=settings.api.log_page_size,
        ),
    )
