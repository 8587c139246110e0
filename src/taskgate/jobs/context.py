"""Execution context handed to job handlers."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from taskgate.completion.base import CompletionRequest, CompletionResult, CompletionService
from taskgate.errors import CheckpointExpiredError, CheckpointRejectedError, WorkerShutdownError
from taskgate.jobs.checkpoints import CheckpointManager
from taskgate.jobs.models import CheckpointStatus, CheckpointType, JobView
from taskgate.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


class JobHandlerContext:
    """What a handler may see and do while running one job attempt."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        job: JobView,
        repository: JobRepository,
        checkpoints: CheckpointManager,
        completion: CompletionService,
        wait_for_checkpoint: Callable[[str], bool],
        stop_event: threading.Event,
    ) -> None:
        self.job = job
        self.completion = completion
        self._repository = repository
        self._checkpoints = checkpoints
        self._wait_for_checkpoint = wait_for_checkpoint
        self._stop_event = stop_event
        self._input = MappingProxyType(dict(job.input_data))
        self.last_checkpoint_id: str | None = None

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def attempt(self) -> int:
        return self.job.attempts

    @property
    def input_data(self) -> Mapping[str, Any]:
        return self._input

    def create_log(
        self,
        action: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._repository.add_log(
            job_id=self.job.job_id,
            action=action,
            message=message,
            metadata=metadata,
        )

    def create_checkpoint(
        self,
        checkpoint_type: CheckpointType,
        message: str,
        data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create a new checkpoint for this attempt and return its id."""

        checkpoint = self._checkpoints.create(
            job_id=self.job.job_id,
            checkpoint_type=checkpoint_type,
            message=message,
            data=data,
            metadata=metadata,
        )
        self.last_checkpoint_id = checkpoint.checkpoint_id
        return checkpoint.checkpoint_id

    def wait_for_checkpoint(self, checkpoint_id: str) -> bool:
        """Block until the checkpoint is approved (True) or rejected/expired (False)."""

        return self._wait_for_checkpoint(checkpoint_id)

    def require_approval(self, checkpoint_id: str, *, subject: str) -> None:
        """Wait for a checkpoint and raise unless it was approved."""

        if self.wait_for_checkpoint(checkpoint_id):
            return

        checkpoint = self._checkpoints.refresh(checkpoint_id)
        if checkpoint.status == CheckpointStatus.REJECTED:
            reason = checkpoint.rejection_reason or "no reason given"
            raise CheckpointRejectedError(
                f"{subject} was rejected by approver {checkpoint.approved_by}: {reason}",
                checkpoint_id=checkpoint_id,
            )
        raise CheckpointExpiredError(
            f"{subject} expired awaiting approval",
            checkpoint_id=checkpoint_id,
        )

    def sleep(self, seconds: float) -> None:
        """Pause the handler; interrupted by worker shutdown."""

        if seconds <= 0:
            return
        if self._stop_event.wait(timeout=seconds):
            raise WorkerShutdownError(f"Worker stopped while job {self.job.job_id} was running")

    def complete(self, request: CompletionRequest) -> CompletionResult:
        logger.debug("Job %s requesting completion", self.job.job_id)
        return self.completion.complete(request)
