from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import allure
import pytest

from taskgate.errors import CheckpointNotFoundError, CheckpointStateError, JobNotFoundError
from taskgate.jobs.checkpoints import CheckpointManager
from taskgate.jobs.models import CheckpointStatus, CheckpointType, JobCreate, JobKind
from taskgate.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Runtime"),
    allure.feature("Approval Checkpoints"),
]


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def _job_id(repository: JobRepository) -> str:
    return repository.submit_job(JobCreate(job_type=JobKind.CODE_GENERATION)).job_id


def test_create_defaults_to_pending_with_ttl(repository: JobRepository, reporter) -> None:
    clock = _Clock()
    manager = CheckpointManager(
        repository,
        reporter=reporter,
        default_ttl=timedelta(hours=2),
        clock=clock,
    )
    job_id = _job_id(repository)

    checkpoint = manager.create(
        job_id=job_id,
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="Approve file writes",
        data={"totalFiles": 2},
        metadata={"handler": "code-generation"},
    )

    assert checkpoint.status == CheckpointStatus.PENDING
    assert checkpoint.expires_at == clock.now + timedelta(hours=2)
    assert checkpoint.data == {"totalFiles": 2}
    assert checkpoint.metadata == {"handler": "code-generation"}
    assert any(crumb["category"] == "checkpoint" for crumb in reporter.breadcrumbs)


def test_create_without_expiry_never_expires(
    repository: JobRepository,
    checkpoints: CheckpointManager,
) -> None:
    checkpoint = checkpoints.create(
        job_id=_job_id(repository),
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="No deadline",
        expires_at=None,
    )

    assert checkpoint.expires_at is None
    assert checkpoints.expire_stale() == 0
    assert checkpoints.is_blocking(checkpoint.checkpoint_id)


def test_create_for_unknown_job_fails(checkpoints: CheckpointManager) -> None:
    with pytest.raises(JobNotFoundError):
        checkpoints.create(
            job_id="missing",
            checkpoint_type=CheckpointType.INFO,
            message="orphan",
        )


def test_approve_records_approver_and_is_final(
    repository: JobRepository,
    checkpoints: CheckpointManager,
) -> None:
    checkpoint = checkpoints.create(
        job_id=_job_id(repository),
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="Review",
    )

    approved = checkpoints.approve(checkpoint.checkpoint_id, approver_id="alice")

    assert approved.status == CheckpointStatus.APPROVED
    assert approved.approved_by == "alice"
    assert approved.approved_at is not None
    assert not checkpoints.is_blocking(checkpoint.checkpoint_id)
    with pytest.raises(CheckpointStateError, match="APPROVED"):
        checkpoints.reject(checkpoint.checkpoint_id, approver_id="bob", reason="late")


def test_reject_records_reason(
    repository: JobRepository,
    checkpoints: CheckpointManager,
) -> None:
    checkpoint = checkpoints.create(
        job_id=_job_id(repository),
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="Review",
    )

    rejected = checkpoints.reject(
        checkpoint.checkpoint_id,
        approver_id="bob",
        reason="Touches production config",
    )

    assert rejected.status == CheckpointStatus.REJECTED
    assert rejected.approved_by == "bob"
    assert rejected.rejection_reason == "Touches production config"
    with pytest.raises(CheckpointStateError):
        checkpoints.approve(checkpoint.checkpoint_id, approver_id="alice")


def test_resolving_unknown_checkpoint_fails(checkpoints: CheckpointManager) -> None:
    with pytest.raises(CheckpointNotFoundError):
        checkpoints.approve("missing", approver_id="alice")
    assert checkpoints.get("missing") is None


def test_overdue_checkpoint_expires_lazily_on_read(repository: JobRepository, reporter) -> None:
    clock = _Clock()
    manager = CheckpointManager(
        repository,
        reporter=reporter,
        default_ttl=timedelta(hours=1),
        clock=clock,
    )
    checkpoint = manager.create(
        job_id=_job_id(repository),
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="Review",
    )
    assert manager.is_blocking(checkpoint.checkpoint_id)

    clock.advance(timedelta(hours=2))

    assert manager.refresh(checkpoint.checkpoint_id).status == CheckpointStatus.EXPIRED
    with pytest.raises(CheckpointStateError, match="EXPIRED"):
        manager.approve(checkpoint.checkpoint_id, approver_id="alice")


def test_expire_stale_only_touches_overdue_pending_checkpoints(
    repository: JobRepository,
    reporter,
) -> None:
    clock = _Clock()
    manager = CheckpointManager(repository, reporter=reporter, clock=clock)
    job_id = _job_id(repository)
    overdue = manager.create(
        job_id=job_id,
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="overdue",
        expires_at=clock.now + timedelta(minutes=5),
    )
    fresh = manager.create(
        job_id=job_id,
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="fresh",
        expires_at=clock.now + timedelta(hours=5),
    )
    decided = manager.create(
        job_id=job_id,
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="decided",
        expires_at=clock.now + timedelta(minutes=5),
    )
    manager.approve(decided.checkpoint_id, approver_id="alice")

    clock.advance(timedelta(minutes=10))

    assert manager.expire_stale() == 1
    statuses = {item.message: item.status for item in manager.list_by_job(job_id)}
    assert statuses == {
        "overdue": CheckpointStatus.EXPIRED,
        "fresh": CheckpointStatus.PENDING,
        "decided": CheckpointStatus.APPROVED,
    }
    assert overdue.checkpoint_id != fresh.checkpoint_id


def test_get_blocking_checkpoint_returns_latest_pending_gate(
    repository: JobRepository,
    checkpoints: CheckpointManager,
) -> None:
    job_id = _job_id(repository)
    checkpoints.create(job_id=job_id, checkpoint_type=CheckpointType.INFO, message="info")
    assert checkpoints.get_blocking_checkpoint(job_id) is None

    first = checkpoints.create(
        job_id=job_id,
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="first",
    )
    second = checkpoints.create(
        job_id=job_id,
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="second",
    )

    blocking = checkpoints.get_blocking_checkpoint(job_id)
    assert blocking is not None
    assert blocking.checkpoint_id == second.checkpoint_id

    checkpoints.approve(second.checkpoint_id, approver_id="alice")
    blocking = checkpoints.get_blocking_checkpoint(job_id)
    assert blocking is not None
    assert blocking.checkpoint_id == first.checkpoint_id


def test_list_pending_pages_oldest_first_and_filters_by_type(
    repository: JobRepository,
    checkpoints: CheckpointManager,
) -> None:
    job_id = _job_id(repository)
    created = [
        checkpoints.create(
            job_id=job_id,
            checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
            message=f"gate {index}",
        )
        for index in range(3)
    ]
    checkpoints.create(job_id=job_id, checkpoint_type=CheckpointType.INFO, message="note")
    checkpoints.reject(created[0].checkpoint_id, approver_id="bob", reason="no")

    page = checkpoints.list_pending(
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        limit=1,
        offset=1,
    )
    assert [item.message for item in page] == ["gate 2"]

    everything = checkpoints.list_pending()
    assert [item.message for item in everything] == ["gate 1", "gate 2", "note"]


def test_get_details_includes_job_and_recent_logs(
    repository: JobRepository,
    checkpoints: CheckpointManager,
) -> None:
    job_id = _job_id(repository)
    repository.add_log(job_id=job_id, action="thinking", message="Analyzing request")
    checkpoint = checkpoints.create(
        job_id=job_id,
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="Review",
    )

    details = checkpoints.get_details(checkpoint.checkpoint_id)

    assert details.checkpoint.checkpoint_id == checkpoint.checkpoint_id
    assert details.job.job_id == job_id
    assert [log.message for log in details.recent_logs] == ["Analyzing request"]


def test_resolution_wakes_waiters(
    repository: JobRepository,
    checkpoints: CheckpointManager,
) -> None:
    checkpoint = checkpoints.create(
        job_id=_job_id(repository),
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="Review",
    )
    version = checkpoints.version
    approver = threading.Timer(
        0.05,
        lambda: checkpoints.approve(checkpoint.checkpoint_id, approver_id="alice"),
    )
    approver.start()

    new_version = checkpoints.wait_for_change(since=version, timeout=5.0)
    approver.join()

    assert new_version > version
    assert checkpoints.refresh(checkpoint.checkpoint_id).status == CheckpointStatus.APPROVED


def test_force_expire_leaves_decided_checkpoints_alone(
    repository: JobRepository,
    checkpoints: CheckpointManager,
) -> None:
    job_id = _job_id(repository)
    pending = checkpoints.create(
        job_id=job_id,
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="pending",
    )
    approved = checkpoints.create(
        job_id=job_id,
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="approved",
    )
    checkpoints.approve(approved.checkpoint_id, approver_id="alice")

    assert checkpoints.force_expire(pending.checkpoint_id).status == CheckpointStatus.EXPIRED
    assert checkpoints.force_expire(approved.checkpoint_id).status == CheckpointStatus.APPROVED
