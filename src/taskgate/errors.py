"""Exception hierarchy shared by the job runtime, checkpoints and orchestrator."""

from __future__ import annotations


class TaskgateError(Exception):
    """Base class for all taskgate errors."""


class JobNotFoundError(TaskgateError, LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobStateError(TaskgateError):
    """Requested transition is not legal from the job's current status."""


class JobInputError(TaskgateError, ValueError):
    """Job input payload cannot be processed by its handler. Never retried."""


class UnknownJobTypeError(TaskgateError, ValueError):
    def __init__(self, job_type: str) -> None:
        super().__init__(f"No handler registered for job type: {job_type}")
        self.job_type = job_type


class CheckpointNotFoundError(TaskgateError, LookupError):
    def __init__(self, checkpoint_id: str) -> None:
        super().__init__(f"Checkpoint not found: {checkpoint_id}")
        self.checkpoint_id = checkpoint_id


class CheckpointStateError(TaskgateError):
    """Checkpoint is no longer pending and cannot be resolved again."""


class CheckpointRejectedError(TaskgateError):
    """Approval gate was rejected by a reviewer."""

    def __init__(self, message: str, *, checkpoint_id: str) -> None:
        super().__init__(message)
        self.checkpoint_id = checkpoint_id


class CheckpointExpiredError(TaskgateError):
    """Approval gate expired before anyone resolved it."""

    def __init__(self, message: str, *, checkpoint_id: str) -> None:
        super().__init__(message)
        self.checkpoint_id = checkpoint_id


class WorkerShutdownError(TaskgateError):
    """Worker stopped while a handler was still running."""


class CompletionError(TaskgateError):
    """Text-completion backend call failed."""
