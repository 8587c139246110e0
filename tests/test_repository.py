from __future__ import annotations

from datetime import timedelta

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from taskgate.errors import JobNotFoundError, JobStateError
from taskgate.jobs.checkpoints import CheckpointManager
from taskgate.jobs.models import (
    CheckpointType,
    FailureClass,
    JobCreate,
    JobKind,
    JobStatus,
    is_transition_allowed,
)
from taskgate.jobs.repository import JobRepository, is_retryable
from taskgate.storage.common import to_db_datetime, utc_now
from taskgate.storage.tables import AgentJob

pytestmark = [
    allure.epic("Job Runtime"),
    allure.feature("Job Store & State Machine"),
]


def _submit(
    repository: JobRepository,
    *,
    priority: int = 5,
    max_attempts: int = 3,
    kind: JobKind = JobKind.SIMPLE_TASK,
) -> str:
    job = repository.submit_job(
        JobCreate(job_type=kind, priority=priority, max_attempts=max_attempts),
    )
    return job.job_id


def test_submit_creates_pending_job_with_submitted_event(repository: JobRepository) -> None:
    job = repository.submit_job(
        JobCreate(
            job_type=JobKind.CODE_GENERATION,
            task_description="Write a module",
            input_data={"files": [{"path": "a.py", "content": "x = 1"}]},
            priority=7,
            user_id="user-1",
        ),
    )

    assert job.status == JobStatus.PENDING
    assert job.job_type == "code-generation"
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.input_data == {"files": [{"path": "a.py", "content": "x = 1"}]}

    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["submitted"]
    assert details.events[0].status_to == JobStatus.PENDING


def test_submit_rejects_non_positive_max_attempts(repository: JobRepository) -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        repository.submit_job(JobCreate(job_type=JobKind.SIMPLE_TASK, max_attempts=0))


def test_claim_prefers_higher_priority_then_older_jobs(repository: JobRepository) -> None:
    low = _submit(repository, priority=1)
    first_high = _submit(repository, priority=9)
    second_high = _submit(repository, priority=9)

    claimed = [repository.claim_next_job(worker_id="w1") for _ in range(3)]

    assert [claim.job.job_id for claim in claimed if claim is not None] == [
        first_high,
        second_high,
        low,
    ]
    assert repository.claim_next_job(worker_id="w1") is None


def test_claim_marks_job_running_and_counts_attempt(repository: JobRepository) -> None:
    job_id = _submit(repository)

    claim = repository.claim_next_job(worker_id="worker-a")

    assert claim is not None
    assert claim.previous_status == JobStatus.PENDING
    assert claim.job.job_id == job_id
    assert claim.job.status == JobStatus.RUNNING
    assert claim.job.attempts == 1
    assert claim.job.worker_id == "worker-a"
    assert claim.job.started_at is not None


def test_claim_skips_job_gated_by_pending_approval(
    repository: JobRepository,
    checkpoints: CheckpointManager,
) -> None:
    job_id = _submit(repository)
    checkpoint = checkpoints.create(
        job_id=job_id,
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="Review first",
    )

    assert repository.claim_next_job(worker_id="w1") is None

    checkpoints.approve(checkpoint.checkpoint_id, approver_id="alice")
    claim = repository.claim_next_job(worker_id="w1")
    assert claim is not None
    assert claim.job.job_id == job_id


def test_claim_ignores_info_and_expired_checkpoints(
    repository: JobRepository,
    checkpoints: CheckpointManager,
) -> None:
    info_job = _submit(repository, priority=2)
    expired_job = _submit(repository, priority=1)
    checkpoints.create(
        job_id=info_job,
        checkpoint_type=CheckpointType.INFO,
        message="FYI",
    )
    checkpoints.create(
        job_id=expired_job,
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="Too late",
        expires_at=utc_now() - timedelta(minutes=1),
    )

    first = repository.claim_next_job(worker_id="w1")
    second = repository.claim_next_job(worker_id="w1")

    assert first is not None and first.job.job_id == info_job
    assert second is not None and second.job.job_id == expired_job


def test_complete_and_fail_only_apply_to_running_jobs(repository: JobRepository) -> None:
    job_id = _submit(repository)

    assert repository.complete_job(job_id=job_id, output_data={"ok": True}) is False
    assert (
        repository.fail_job(
            job_id=job_id,
            failure_class=FailureClass.HANDLER_ERROR,
            failure_reason="boom",
        )
        is False
    )

    repository.claim_next_job(worker_id="w1")
    assert repository.complete_job(job_id=job_id, output_data={"ok": True}) is True

    job = repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.COMPLETED
    assert job.output_data == {"ok": True}
    assert job.completed_at is not None
    assert repository.complete_job(job_id=job_id, output_data={"ok": False}) is False


def test_retry_cycle_goes_through_failed_retry_and_queued(repository: JobRepository) -> None:
    job_id = _submit(repository)
    repository.claim_next_job(worker_id="w1")
    repository.fail_job(
        job_id=job_id,
        failure_class=FailureClass.HANDLER_ERROR,
        failure_reason="transient",
    )
    later = utc_now() + timedelta(hours=1)
    assert repository.schedule_retry(job_id=job_id, run_after=later) is True

    assert repository.requeue_due_retries() == []
    assert repository.claim_next_job(worker_id="w1") is None

    assert repository.requeue_due_retries(now=later + timedelta(seconds=1)) == [job_id]
    claim = repository.claim_next_job(worker_id="w2")
    assert claim is not None
    assert claim.previous_status == JobStatus.QUEUED
    assert claim.job.attempts == 2

    details = repository.get_job_details(job_id=job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "submitted",
        "claimed",
        "failed",
        "retry_scheduled",
        "requeued",
        "claimed",
    ]


def test_manual_retry_requeues_failed_job(repository: JobRepository) -> None:
    job_id = _submit(repository, max_attempts=1)
    repository.claim_next_job(worker_id="w1")
    repository.fail_job(
        job_id=job_id,
        failure_class=FailureClass.CHECKPOINT_REJECTED,
        failure_reason="rejected",
    )

    update = repository.retry_job(job_id=job_id)
    job = update.job

    assert update.previous_status == JobStatus.FAILED
    assert job.status == JobStatus.QUEUED
    assert job.failure_class is None
    assert job.failure_reason is None


def test_manual_retry_rejects_jobs_that_are_not_failed(repository: JobRepository) -> None:
    job_id = _submit(repository)

    with pytest.raises(JobStateError, match="cannot move to QUEUED from PENDING"):
        repository.retry_job(job_id=job_id)
    with pytest.raises(JobNotFoundError):
        repository.retry_job(job_id="missing")


def test_cancel_only_unclaimed_jobs(repository: JobRepository) -> None:
    pending = _submit(repository, priority=1)
    running = _submit(repository, priority=9)
    repository.claim_next_job(worker_id="w1")

    cancelled = repository.cancel_job(job_id=pending)
    assert cancelled.previous_status == JobStatus.PENDING
    assert cancelled.job.status == JobStatus.CANCELLED

    with pytest.raises(JobStateError):
        repository.cancel_job(job_id=running)
    with pytest.raises(JobStateError):
        repository.cancel_job(job_id=pending)
    assert repository.claim_next_job(worker_id="w1") is None


def test_recover_stale_running_jobs_fails_then_schedules_retry(
    repository: JobRepository,
) -> None:
    retryable = _submit(repository, priority=2, max_attempts=3)
    exhausted = _submit(repository, priority=1, max_attempts=1)
    repository.claim_next_job(worker_id="gone")
    repository.claim_next_job(worker_id="gone")

    stale = to_db_datetime(utc_now() - timedelta(hours=2))
    with Session(repository.engine) as session:
        session.exec(
            sa_update(AgentJob)
            .where(col(AgentJob.job_id).in_([retryable, exhausted]))
            .values(heartbeat_at=stale),
        )
        session.commit()

    changes = repository.recover_stale_running_jobs(stale_after=timedelta(minutes=30))

    def transitions_of(job_id: str) -> list[tuple[JobStatus, JobStatus]]:
        return [(c.old_status, c.new_status) for c in changes if c.job_id == job_id]

    assert transitions_of(retryable) == [
        (JobStatus.RUNNING, JobStatus.FAILED),
        (JobStatus.FAILED, JobStatus.RETRY),
    ]
    assert transitions_of(exhausted) == [(JobStatus.RUNNING, JobStatus.FAILED)]

    retried = repository.get_job(retryable)
    failed = repository.get_job(exhausted)
    assert retried is not None and retried.status == JobStatus.RETRY
    assert retried.failure_class == FailureClass.WORKER_LOST
    assert failed is not None and failed.status == JobStatus.FAILED
    assert failed.failure_class == FailureClass.WORKER_LOST


def test_touch_jobs_keeps_live_jobs_out_of_stale_recovery(repository: JobRepository) -> None:
    job_id = _submit(repository)
    repository.claim_next_job(worker_id="w1")
    repository.touch_jobs(job_ids=[job_id])

    assert repository.recover_stale_running_jobs(stale_after=timedelta(minutes=30)) == []
    job = repository.get_job(job_id)
    assert job is not None and job.status == JobStatus.RUNNING


def test_list_jobs_filters_by_status(repository: JobRepository) -> None:
    first = _submit(repository)
    second = _submit(repository)
    repository.cancel_job(job_id=first)

    assert [job.job_id for job in repository.list_jobs(status=JobStatus.CANCELLED)] == [first]
    assert [job.job_id for job in repository.list_jobs(status=JobStatus.PENDING)] == [second]
    assert len(repository.list_jobs()) == 2
    assert len(repository.list_jobs(limit=1)) == 1


def test_job_details_return_latest_logs_in_chronological_order(
    repository: JobRepository,
) -> None:
    job_id = _submit(repository)
    for index in range(5):
        repository.add_log(job_id=job_id, action="step", message=f"log {index}")

    details = repository.get_job_details(job_id=job_id, log_limit=3)

    assert details is not None
    assert [log.message for log in details.logs] == ["log 2", "log 3", "log 4"]
    assert repository.get_job_details(job_id="missing") is None


def test_status_counts_include_every_status(repository: JobRepository) -> None:
    _submit(repository)
    cancelled = _submit(repository)
    repository.cancel_job(job_id=cancelled)

    counts = repository.count_jobs_by_status()

    assert set(counts) == set(JobStatus)
    assert counts[JobStatus.PENDING] == 1
    assert counts[JobStatus.CANCELLED] == 1
    assert counts[JobStatus.RUNNING] == 0


def test_transition_table_and_retry_policy() -> None:
    assert is_transition_allowed(JobStatus.PENDING, JobStatus.RUNNING)
    assert is_transition_allowed(JobStatus.FAILED, JobStatus.RETRY)
    assert is_transition_allowed(JobStatus.RETRY, JobStatus.QUEUED)
    assert not is_transition_allowed(JobStatus.COMPLETED, JobStatus.QUEUED)
    assert not is_transition_allowed(JobStatus.RUNNING, JobStatus.CANCELLED)


def test_is_retryable_depends_on_class_and_remaining_attempts(
    repository: JobRepository,
) -> None:
    _submit(repository, max_attempts=2)
    claim = repository.claim_next_job(worker_id="w1")
    assert claim is not None
    job = claim.job

    assert is_retryable(job, FailureClass.HANDLER_ERROR)
    assert is_retryable(job, FailureClass.CHECKPOINT_EXPIRED)
    assert not is_retryable(job, FailureClass.CHECKPOINT_REJECTED)
    assert not is_retryable(job, FailureClass.INVALID_INPUT)
    assert not is_retryable(job, FailureClass.UNKNOWN_JOB_TYPE)

    job.attempts = 2
    assert not is_retryable(job, FailureClass.HANDLER_ERROR)


def test_job_durations_cover_completed_and_failed_jobs(repository: JobRepository) -> None:
    completed = _submit(repository, priority=9)
    failed = _submit(repository, priority=1)
    _submit(repository, priority=0)
    repository.claim_next_job(worker_id="w1")
    repository.complete_job(job_id=completed, output_data={})
    repository.claim_next_job(worker_id="w1")
    repository.fail_job(
        job_id=failed,
        failure_class=FailureClass.INVALID_INPUT,
        failure_reason="bad",
    )

    durations = repository.list_job_durations()

    assert sorted(status.value for status, _ in durations) == ["COMPLETED", "FAILED"]
    assert all(seconds >= 0 for _, seconds in durations)
