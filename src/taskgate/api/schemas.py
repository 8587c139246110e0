"""Request and response schemas for the HTTP API (camelCase on the wire)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from taskgate.jobs.models import (
    CheckpointDetails,
    CheckpointView,
    JobDetails,
    JobEventView,
    JobLogView,
    JobView,
)
from taskgate.jobs.worker import WorkerStats
from taskgate.orchestrator.models import JobResult, PlanStep, TaskProgress


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobSubmitRequest(ApiModel):
    job_type: str = Field(..., description="Handler key, for example simple-task")
    task_description: str = ""
    input_data: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=5, description="Higher values are claimed first")
    max_attempts: int = Field(default=3, ge=1, le=20)
    user_id: str | None = None


class JobSubmitResponse(ApiModel):
    job_id: str
    status: str


class JobResponse(ApiModel):
    job_id: str
    job_type: str
    task_description: str
    status: str
    priority: int
    input_data: dict[str, Any]
    output_data: dict[str, Any] | None
    attempts: int
    max_attempts: int
    failure_class: str | None
    failure_reason: str | None
    user_id: str | None
    worker_id: str | None
    run_after: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_view(cls, job: JobView) -> JobResponse:
        return cls(
            job_id=job.job_id,
            job_type=job.job_type,
            task_description=job.task_description,
            status=job.status.value,
            priority=job.priority,
            input_data=job.input_data,
            output_data=job.output_data,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            failure_class=job.failure_class.value if job.failure_class else None,
            failure_reason=job.failure_reason,
            user_id=job.user_id,
            worker_id=job.worker_id,
            run_after=job.run_after,
            started_at=job.started_at,
            completed_at=job.completed_at,
            failed_at=job.failed_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class CheckpointResponse(ApiModel):
    checkpoint_id: str
    job_id: str
    checkpoint_type: str
    status: str
    message: str
    data: dict[str, Any]
    metadata: dict[str, Any]
    expires_at: datetime | None
    approved_by: str | None
    approved_at: datetime | None
    rejection_reason: str | None
    created_at: datetime

    @classmethod
    def from_view(cls, checkpoint: CheckpointView) -> CheckpointResponse:
        return cls(
            checkpoint_id=checkpoint.checkpoint_id,
            job_id=checkpoint.job_id,
            checkpoint_type=checkpoint.checkpoint_type.value,
            status=checkpoint.status.value,
            message=checkpoint.message,
            data=checkpoint.data,
            metadata=checkpoint.metadata,
            expires_at=checkpoint.expires_at,
            approved_by=checkpoint.approved_by,
            approved_at=checkpoint.approved_at,
            rejection_reason=checkpoint.rejection_reason,
            created_at=checkpoint.created_at,
        )


class LogResponse(ApiModel):
    log_id: int
    agent_name: str
    agent_type: str
    action: str
    message: str
    metadata: dict[str, Any]
    created_at: datetime

    @classmethod
    def from_view(cls, log: JobLogView) -> LogResponse:
        return cls(
            log_id=log.log_id,
            agent_name=log.agent_name,
            agent_type=log.agent_type,
            action=log.action,
            message=log.message,
            metadata=log.metadata,
            created_at=log.created_at,
        )


class EventResponse(ApiModel):
    event_type: str
    status_from: str | None
    status_to: str | None
    details: dict[str, Any]
    created_at: datetime

    @classmethod
    def from_view(cls, event: JobEventView) -> EventResponse:
        return cls(
            event_type=event.event_type,
            status_from=event.status_from.value if event.status_from else None,
            status_to=event.status_to.value if event.status_to else None,
            details=event.details,
            created_at=event.created_at,
        )


class JobDetailsResponse(ApiModel):
    job: JobResponse
    checkpoints: list[CheckpointResponse]
    logs: list[LogResponse]
    events: list[EventResponse]

    @classmethod
    def from_details(cls, details: JobDetails) -> JobDetailsResponse:
        return cls(
            job=JobResponse.from_view(details.job),
            checkpoints=[CheckpointResponse.from_view(item) for item in details.checkpoints],
            logs=[LogResponse.from_view(item) for item in details.logs],
            events=[EventResponse.from_view(item) for item in details.events],
        )


class JobListResponse(ApiModel):
    jobs: list[JobResponse]
    count: int


class CheckpointListResponse(ApiModel):
    checkpoints: list[CheckpointResponse]
    count: int
    limit: int
    offset: int


class CheckpointDetailsResponse(ApiModel):
    checkpoint: CheckpointResponse
    job: JobResponse
    recent_logs: list[LogResponse]

    @classmethod
    def from_details(cls, details: CheckpointDetails) -> CheckpointDetailsResponse:
        return cls(
            checkpoint=CheckpointResponse.from_view(details.checkpoint),
            job=JobResponse.from_view(details.job),
            recent_logs=[LogResponse.from_view(item) for item in details.recent_logs],
        )


class ApproveRequest(ApiModel):
    approver_id: str = Field(..., min_length=1)


class RejectRequest(ApiModel):
    approver_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class TaskSubmitRequest(ApiModel):
    task: str = Field(..., min_length=1, description="Free-form task text")
    context: dict[str, Any] = Field(default_factory=dict)
    user_id: str | None = None
    priority: int = 5


class TaskSubmitResponse(ApiModel):
    task_id: str


class StepResponse(ApiModel):
    step_number: int
    description: str
    assigned_agent: str
    dependencies: list[int]
    status: str
    result: str | None
    error: str | None
    tokens: int
    started_at: datetime | None
    completed_at: datetime | None

    @classmethod
    def from_step(cls, step: PlanStep) -> StepResponse:
        return cls(
            step_number=step.step_number,
            description=step.description,
            assigned_agent=step.assigned_agent.value,
            dependencies=step.dependencies,
            status=step.status.value,
            result=step.result,
            error=step.error,
            tokens=step.tokens,
            started_at=step.started_at,
            completed_at=step.completed_at,
        )


class TaskStatusResponse(ApiModel):
    """Progress while a task runs; the full result once it finished."""

    task_id: str
    status: str
    result: str | None = None
    error: str | None = None
    steps: list[StepResponse] = Field(default_factory=list)
    total_tokens: int | None = None
    total_cost: float | None = None
    total_duration_ms: int | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_status(cls, status: JobResult | TaskProgress) -> TaskStatusResponse:
        if isinstance(status, TaskProgress):
            return cls(task_id=status.task_id, status=status.status.value)
        return cls(
            task_id=status.task_id,
            status=status.status.value,
            result=status.result,
            error=status.error,
            steps=[StepResponse.from_step(step) for step in status.steps],
            total_tokens=status.total_tokens,
            total_cost=status.total_cost,
            total_duration_ms=status.total_duration_ms,
            completed_at=status.completed_at,
        )


class WorkerStatsResponse(ApiModel):
    is_running: bool
    active_jobs: int
    max_concurrent_jobs: int
    poll_interval_seconds: float

    @classmethod
    def from_stats(cls, stats: WorkerStats) -> WorkerStatsResponse:
        return cls(
            is_running=stats.is_running,
            active_jobs=stats.active_jobs,
            max_concurrent_jobs=stats.max_concurrent_jobs,
            poll_interval_seconds=stats.poll_interval_seconds,
        )


class HealthResponse(ApiModel):
    status: str
    version: str
    worker: WorkerStatsResponse
