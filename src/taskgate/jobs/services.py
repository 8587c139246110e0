"""Use-case services for job submission and inspection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from taskgate.errors import JobInputError
from taskgate.jobs.models import JobCreate, JobDetails, JobKind, JobStatus, JobUpdate, JobView
from taskgate.jobs.repository import JobRepository
from taskgate.observability.error_reporting import (
    ErrorReporter,
    NullErrorReporter,
    record_job_transition,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmitJob:
    """High-level command to submit a job."""

    job_type: str
    task_description: str = ""
    input_data: dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    max_attempts: int = 3
    user_id: str | None = None


class JobService:
    """Validates submissions and reads jobs on behalf of the CLI and HTTP layers."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        reporter: ErrorReporter | None = None,
        log_page_size: int = 50,
    ) -> None:
        self.repository = repository
        self.reporter = reporter or NullErrorReporter()
        self.log_page_size = log_page_size

    def submit(self, command: SubmitJob) -> JobView:
        """Validate the job type and persist a PENDING job."""

        try:
            job_kind = JobKind.parse(command.job_type)
        except ValueError as error:
            raise JobInputError(str(error)) from error
        if command.max_attempts < 1:
            raise JobInputError(f"maxAttempts must be >= 1, got {command.max_attempts}")
        if not isinstance(command.input_data, dict):
            raise JobInputError("inputData must be an object")

        job = self.repository.submit_job(
            JobCreate(
                job_type=job_kind,
                task_description=command.task_description,
                input_data=command.input_data,
                priority=command.priority,
                max_attempts=command.max_attempts,
                user_id=command.user_id,
            ),
        )
        logger.info("Job %s submitted type=%s priority=%d", job.job_id, job.job_type, job.priority)
        return job

    def get_details(self, job_id: str) -> JobDetails | None:
        return self.repository.get_job_details(job_id=job_id, log_limit=self.log_page_size)

    def list_jobs(self, *, status: str | None = None, limit: int = 50) -> list[JobView]:
        return self.repository.list_jobs(status=parse_job_status(status), limit=limit)

    def retry(self, job_id: str) -> JobView:
        return self._record(self.repository.retry_job(job_id=job_id), reason="manual retry")

    def cancel(self, job_id: str) -> JobView:
        return self._record(self.repository.cancel_job(job_id=job_id), reason="cancelled")

    def _record(self, update: JobUpdate, *, reason: str) -> JobView:
        record_job_transition(
            self.reporter,
            job_id=update.job.job_id,
            old_status=update.previous_status,
            new_status=update.job.status,
            reason=reason,
        )
        logger.info(
            "Job %s moved %s -> %s (%s)",
            update.job.job_id,
            update.previous_status.value,
            update.job.status.value,
            reason,
        )
        return update.job


def parse_job_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value.strip().upper())
    except ValueError as error:
        raise JobInputError(f"Unsupported job status: {value!r}") from error
