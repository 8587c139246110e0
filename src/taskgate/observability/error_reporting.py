"""Error-reporting hooks: breadcrumbs, exception capture and transactions."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any, Protocol

from taskgate.jobs.models import CheckpointView, JobStatus

logger = logging.getLogger(__name__)


class ErrorReporter(Protocol):
    """Sink for diagnostic breadcrumbs and captured exceptions."""

    def add_breadcrumb(
        self,
        *,
        category: str,
        message: str,
        data: Mapping[str, Any] | None = None,
    ) -> None: ...

    def capture_exception(
        self,
        error: BaseException,
        *,
        tags: Mapping[str, str] | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None: ...

    def transaction(self, *, name: str, op: str) -> Any: ...


class LoggingErrorReporter:
    """Reporter that forwards every hook to the standard logging tree."""

    def __init__(self, *, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def add_breadcrumb(
        self,
        *,
        category: str,
        message: str,
        data: Mapping[str, Any] | None = None,
    ) -> None:
        self._log.info("[%s] %s %s", category, message, dict(data or {}))

    def capture_exception(
        self,
        error: BaseException,
        *,
        tags: Mapping[str, str] | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        self._log.error(
            "Captured %s: %s tags=%s extra=%s",
            type(error).__name__,
            error,
            dict(tags or {}),
            dict(extra or {}),
            exc_info=(type(error), error, error.__traceback__),
        )

    @contextmanager
    def transaction(self, *, name: str, op: str) -> Iterator[None]:
        started = time.monotonic()
        try:
            yield
        finally:
            self._log.debug(
                "Transaction %s (%s) finished in %.3fs",
                name,
                op,
                time.monotonic() - started,
            )


class NullErrorReporter:
    """Reporter used when error reporting is disabled."""

    def add_breadcrumb(
        self,
        *,
        category: str,
        message: str,
        data: Mapping[str, Any] | None = None,
    ) -> None:
        return None

    def capture_exception(
        self,
        error: BaseException,
        *,
        tags: Mapping[str, str] | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        return None

    @contextmanager
    def transaction(self, *, name: str, op: str) -> Iterator[None]:
        yield


def build_error_reporter(*, enabled: bool) -> ErrorReporter:
    return LoggingErrorReporter() if enabled else NullErrorReporter()


def record_job_transition(
    reporter: ErrorReporter,
    *,
    job_id: str,
    old_status: JobStatus | None,
    new_status: JobStatus,
    reason: str | None = None,
) -> None:
    """Breadcrumb for one job status change."""

    reporter.add_breadcrumb(
        category="job",
        message=f"Job {job_id} status changed",
        data={
            "job_id": job_id,
            "old_status": old_status.value if old_status is not None else None,
            "new_status": new_status.value,
            "reason": reason,
        },
    )


def record_checkpoint_event(reporter: ErrorReporter, checkpoint: CheckpointView) -> None:
    """Breadcrumb for checkpoint creation or resolution."""

    reporter.add_breadcrumb(
        category="checkpoint",
        message=f"Checkpoint {checkpoint.checkpoint_id} {checkpoint.status.value.lower()}",
        data={
            "checkpoint_id": checkpoint.checkpoint_id,
            "job_id": checkpoint.job_id,
            "type": checkpoint.checkpoint_type.value,
            "status": checkpoint.status.value,
        },
    )


def capture_job_exception(
    reporter: ErrorReporter,
    error: BaseException,
    *,
    job_id: str,
    job_type: str,
    checkpoint_id: str | None = None,
) -> None:
    """Capture a handler exception tagged with job context."""

    tags = {"job_id": job_id, "job_type": job_type}
    if checkpoint_id is not None:
        tags["checkpoint_id"] = checkpoint_id
    reporter.capture_exception(error, tags=tags)
