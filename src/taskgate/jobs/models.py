"""Domain models for durable jobs, checkpoints and logs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "PENDING"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    RETRY = "RETRY"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})
CLAIMABLE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.QUEUED)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.RETRY, JobStatus.QUEUED}),
    JobStatus.RETRY: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def is_transition_allowed(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class JobKind(str, Enum):
    """Closed set of job types the worker knows how to run."""

    CODE_GENERATION = "code-generation"
    DATA_PROCESSING = "data-processing"
    SIMPLE_TASK = "simple-task"
    AI_TASK = "ai-task"

    @classmethod
    def parse(cls, value: str | JobKind) -> JobKind:
        if isinstance(value, JobKind):
            return value
        try:
            return cls(value.strip())
        except ValueError as error:
            known = ", ".join(kind.value for kind in cls)
            raise ValueError(f"Unknown job type {value!r}; expected one of: {known}") from error


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    HANDLER_ERROR = "handler_error"
    INVALID_INPUT = "invalid_input"
    UNKNOWN_JOB_TYPE = "unknown_job_type"
    CHECKPOINT_REJECTED = "checkpoint_rejected"
    CHECKPOINT_EXPIRED = "checkpoint_expired"
    WORKER_SHUTDOWN = "worker_shutdown"
    WORKER_LOST = "worker_lost"


RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.HANDLER_ERROR,
        FailureClass.CHECKPOINT_EXPIRED,
        FailureClass.WORKER_SHUTDOWN,
        FailureClass.WORKER_LOST,
    },
)


class CheckpointType(str, Enum):
    INFO = "INFO"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"


class CheckpointStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


@dataclass(slots=True)
class JobCreate:
    """Input payload for submitting a job."""

    job_type: JobKind
    task_description: str = ""
    input_data: dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    max_attempts: int = 3
    user_id: str | None = None
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for worker, CLI and HTTP logic."""

    job_id: str
    job_type: str
    task_description: str
    status: JobStatus
    priority: int
    input_data: dict[str, Any]
    output_data: dict[str, Any] | None
    attempts: int
    max_attempts: int
    failure_class: FailureClass | None
    failure_reason: str | None
    user_id: str | None
    worker_id: str | None
    run_after: datetime | None
    started_at: datetime | None
    heartbeat_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobClaim:
    """Job just claimed by a worker together with the status it was claimed from."""

    job: JobView
    previous_status: JobStatus


@dataclass(slots=True)
class JobUpdate:
    """Job after an operator action, with the status the action moved it from."""

    job: JobView
    previous_status: JobStatus


@dataclass(slots=True)
class JobStatusChange:
    """Status change applied by housekeeping (stale recovery, requeue)."""

    job_id: str
    old_status: JobStatus
    new_status: JobStatus
    reason: str | None = None


@dataclass(slots=True)
class CheckpointView:
    """Human review gate attached to one job."""

    checkpoint_id: str
    job_id: str
    checkpoint_type: CheckpointType
    status: CheckpointStatus
    message: str
    data: dict[str, Any]
    metadata: dict[str, Any]
    expires_at: datetime | None
    approved_by: str | None
    approved_at: datetime | None
    rejection_reason: str | None
    created_at: datetime
    updated_at: datetime

    def is_blocking_at(self, now: datetime) -> bool:
        """Pending approval gate that has not yet expired."""

        return (
            self.checkpoint_type == CheckpointType.APPROVAL_REQUIRED
            and self.status == CheckpointStatus.PENDING
            and (self.expires_at is None or self.expires_at > now)
        )

    def is_expired_at(self, now: datetime) -> bool:
        return (
            self.status == CheckpointStatus.PENDING
            and self.expires_at is not None
            and self.expires_at <= now
        )


@dataclass(slots=True)
class JobLogView:
    log_id: int
    job_id: str
    agent_name: str
    agent_type: str
    action: str
    message: str
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its checkpoints, a bounded page of logs and the event stream."""

    job: JobView
    checkpoints: list[CheckpointView]
    logs: list[JobLogView]
    events: list[JobEventView]


@dataclass(slots=True)
class CheckpointDetails:
    """Checkpoint together with the job it gates."""

    checkpoint: CheckpointView
    job: JobView
    recent_logs: list[JobLogView]
