"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import exists, func, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from taskgate.errors import JobNotFoundError, JobStateError
from taskgate.jobs.models import (
    CLAIMABLE_JOB_STATUSES,
    RETRYABLE_FAILURE_CLASSES,
    CheckpointStatus,
    CheckpointType,
    CheckpointView,
    FailureClass,
    JobClaim,
    JobCreate,
    JobDetails,
    JobEventView,
    JobLogView,
    JobStatus,
    JobStatusChange,
    JobUpdate,
    JobView,
)
from taskgate.storage.alembic_runner import upgrade_head
from taskgate.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskgate.storage.tables import AgentCheckpoint, AgentJob, AgentJobEvent, AgentLog

LOG_AGENT_NAME = "worker"
LOG_AGENT_TYPE = "ORCHESTRATOR"
_CLAIMABLE_VALUES = [status.value for status in CLAIMABLE_JOB_STATUSES]


class JobRepository:
    """Job queue persistence facade. Every status change is a conditional update."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def submit_job(self, payload: JobCreate) -> JobView:
        """Create a pending job."""

        if payload.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {payload.max_attempts}")

        now = utc_now()
        job_id = payload.job_id or uuid4().hex
        with Session(self.engine) as session:
            row = AgentJob(
                job_id=job_id,
                job_type=payload.job_type.value,
                task_description=payload.task_description,
                status=JobStatus.PENDING.value,
                priority=payload.priority,
                input_json=dump_json(payload.input_data) or "{}",
                attempts=0,
                max_attempts=payload.max_attempts,
                user_id=payload.user_id,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="submitted",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={
                    "job_type": payload.job_type.value,
                    "priority": payload.priority,
                    "max_attempts": payload.max_attempts,
                },
            )
            session.commit()
            session.refresh(row)
            return to_job_view(row)

    def claim_next_job(self, *, worker_id: str) -> JobClaim | None:
        """Atomically claim the highest-priority, oldest job not gated by a checkpoint."""

        while True:
            now = utc_now()
            db_now = to_db_datetime(now)
            with Session(self.engine) as session:
                gated = exists().where(
                    col(AgentCheckpoint.job_id) == col(AgentJob.job_id),
                    col(AgentCheckpoint.checkpoint_type) == CheckpointType.APPROVAL_REQUIRED.value,
                    col(AgentCheckpoint.status) == CheckpointStatus.PENDING.value,
                    or_(
                        col(AgentCheckpoint.expires_at).is_(None),
                        col(AgentCheckpoint.expires_at) > db_now,
                    ),
                )
                candidate = session.exec(
                    select(AgentJob)
                    .where(
                        col(AgentJob.status).in_(_CLAIMABLE_VALUES),
                        ~gated,
                    )
                    .order_by(
                        col(AgentJob.priority).desc(),
                        col(AgentJob.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                previous = JobStatus(candidate.status)
                result = session.exec(
                    sa_update(AgentJob)
                    .where(
                        col(AgentJob.job_id) == candidate.job_id,
                        col(AgentJob.status) == previous.value,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        attempts=candidate.attempts + 1,
                        started_at=db_now,
                        heartbeat_at=db_now,
                        completed_at=None,
                        failed_at=None,
                        run_after=None,
                        worker_id=worker_id,
                        updated_at=db_now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(AgentJob)
                    .where(AgentJob.job_id == candidate.job_id)
                    .execution_options(populate_existing=True),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=previous,
                    status_to=JobStatus.RUNNING,
                    details={"worker_id": worker_id, "attempt": claimed.attempts},
                )
                session.commit()
                session.refresh(claimed)
                return JobClaim(job=to_job_view(claimed), previous_status=previous)

    def complete_job(self, *, job_id: str, output_data: dict[str, Any]) -> bool:
        """Mark a running job as completed."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            if not self._conditional_update(
                session=session,
                job_id=job_id,
                expected=(JobStatus.RUNNING,),
                values={
                    "status": JobStatus.COMPLETED.value,
                    "output_json": dump_json(output_data),
                    "completed_at": now,
                    "heartbeat_at": now,
                    "failure_class": None,
                    "failure_reason": None,
                    "updated_at": now,
                },
            ):
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.COMPLETED,
                details={"output_keys": sorted(output_data)},
            )
            session.commit()
            return True

    def fail_job(
        self,
        *,
        job_id: str,
        failure_class: FailureClass,
        failure_reason: str,
    ) -> bool:
        """Mark a running job as failed."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            if not self._conditional_update(
                session=session,
                job_id=job_id,
                expected=(JobStatus.RUNNING,),
                values={
                    "status": JobStatus.FAILED.value,
                    "failure_class": failure_class.value,
                    "failure_reason": failure_reason,
                    "failed_at": now,
                    "heartbeat_at": now,
                    "updated_at": now,
                },
            ):
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.FAILED,
                details={"failure_class": failure_class.value, "failure_reason": failure_reason},
            )
            session.commit()
            return True

    def schedule_retry(self, *, job_id: str, run_after: datetime) -> bool:
        """Move a failed job to RETRY; the requeue step makes it claimable once due."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            if not self._conditional_update(
                session=session,
                job_id=job_id,
                expected=(JobStatus.FAILED,),
                values={
                    "status": JobStatus.RETRY.value,
                    "run_after": to_db_datetime(run_after),
                    "worker_id": None,
                    "heartbeat_at": None,
                    "updated_at": now,
                },
            ):
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                status_from=JobStatus.FAILED,
                status_to=JobStatus.RETRY,
                details={"run_after": to_utc_aware_datetime(run_after).isoformat()},
            )
            session.commit()
            return True

    def requeue_due_retries(self, *, now: datetime | None = None) -> list[str]:
        """Move RETRY jobs whose backoff elapsed back to QUEUED; return their ids."""

        db_now = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            due_ids = session.exec(
                select(AgentJob.job_id).where(
                    AgentJob.status == JobStatus.RETRY.value,
                    or_(col(AgentJob.run_after).is_(None), col(AgentJob.run_after) <= db_now),
                ),
            ).all()

        requeued: list[str] = []
        for job_id in due_ids:
            with Session(self.engine) as session:
                if not self._conditional_update(
                    session=session,
                    job_id=job_id,
                    expected=(JobStatus.RETRY,),
                    values={"status": JobStatus.QUEUED.value, "updated_at": db_now},
                ):
                    continue
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="requeued",
                    status_from=JobStatus.RETRY,
                    status_to=JobStatus.QUEUED,
                    details={},
                )
                session.commit()
                requeued.append(job_id)
        return requeued

    def retry_job(self, *, job_id: str) -> JobUpdate:
        """Manual operator retry for failed jobs."""

        return self._operator_transition(
            job_id=job_id,
            allowed_from=(JobStatus.FAILED,),
            target=JobStatus.QUEUED,
            event_type="manual_retry",
            extra_values={
                "failure_class": None,
                "failure_reason": None,
                "failed_at": None,
                "run_after": None,
            },
        )

    def cancel_job(self, *, job_id: str) -> JobUpdate:
        """Cancel a job that no worker has claimed yet."""

        return self._operator_transition(
            job_id=job_id,
            allowed_from=(JobStatus.PENDING, JobStatus.QUEUED, JobStatus.RETRY),
            target=JobStatus.CANCELLED,
            event_type="cancelled",
            extra_values={},
        )

    def touch_jobs(self, *, job_ids: Iterable[str]) -> None:
        """Update heartbeat for running jobs."""

        ids = list(job_ids)
        if not ids:
            return
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.exec(
                sa_update(AgentJob)
                .where(
                    col(AgentJob.job_id).in_(ids),
                    col(AgentJob.status) == JobStatus.RUNNING.value,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            session.commit()

    def recover_stale_running_jobs(self, *, stale_after: timedelta) -> list[JobStatusChange]:
        """Fail jobs whose worker stopped heart-beating and retry them when allowed.

        Returns every status change applied, in order: RUNNING -> FAILED for each
        recovered job, followed by FAILED -> RETRY when it still has attempts left.
        """

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        with Session(self.engine) as session:
            stale_ids = session.exec(
                select(AgentJob.job_id).where(
                    AgentJob.status == JobStatus.RUNNING.value,
                    or_(
                        col(AgentJob.heartbeat_at).is_(None),
                        col(AgentJob.heartbeat_at) < cutoff,
                    ),
                ),
            ).all()

        reason = f"Worker stopped responding for more than {int(stale_after.total_seconds())}s"
        changes: list[JobStatusChange] = []
        for job_id in stale_ids:
            if not self.fail_job(
                job_id=job_id,
                failure_class=FailureClass.WORKER_LOST,
                failure_reason=reason,
            ):
                continue
            changes.append(
                JobStatusChange(
                    job_id=job_id,
                    old_status=JobStatus.RUNNING,
                    new_status=JobStatus.FAILED,
                    reason=reason,
                ),
            )
            job = self.get_job(job_id)
            if job is None or job.attempts >= job.max_attempts:
                continue
            if self.schedule_retry(job_id=job_id, run_after=now):
                changes.append(
                    JobStatusChange(
                        job_id=job_id,
                        old_status=JobStatus.FAILED,
                        new_status=JobStatus.RETRY,
                        reason="retry after lost worker",
                    ),
                )
        return changes

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(AgentJob).where(AgentJob.job_id == job_id)).one_or_none()
        return to_job_view(row) if row is not None else None

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(AgentJob).order_by(col(AgentJob.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(AgentJob.status == status.value)
            rows = session.exec(statement).all()
        return [to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str, log_limit: int = 50) -> JobDetails | None:
        """Return job with checkpoints, the latest `log_limit` logs and events."""

        with Session(self.engine) as session:
            job = session.exec(select(AgentJob).where(AgentJob.job_id == job_id)).one_or_none()
            if job is None:
                return None
            checkpoint_rows = session.exec(
                select(AgentCheckpoint)
                .where(AgentCheckpoint.job_id == job_id)
                .order_by(col(AgentCheckpoint.created_at).asc()),
            ).all()
            event_rows = session.exec(
                select(AgentJobEvent)
                .where(AgentJobEvent.job_id == job_id)
                .order_by(col(AgentJobEvent.created_at).asc(), col(AgentJobEvent.id).asc()),
            ).all()

        return JobDetails(
            job=to_job_view(job),
            checkpoints=[to_checkpoint_view(row) for row in checkpoint_rows],
            logs=self.list_logs(job_id=job_id, limit=log_limit),
            events=[_to_event_view(row) for row in event_rows],
        )

    def add_log(
        self,
        *,
        job_id: str,
        action: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> JobLogView:
        """Append one log entry to a job."""

        with Session(self.engine) as session:
            row = AgentLog(
                job_id=job_id,
                agent_name=LOG_AGENT_NAME,
                agent_type=LOG_AGENT_TYPE,
                action=action,
                message=message,
                metadata_json=dump_json(metadata),
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_log_view(row)

    def list_logs(self, *, job_id: str, limit: int | None = None) -> list[JobLogView]:
        """Job logs in chronological order; with `limit`, only the newest entries."""

        with Session(self.engine) as session:
            statement = (
                select(AgentLog)
                .where(AgentLog.job_id == job_id)
                .order_by(col(AgentLog.created_at).desc(), col(AgentLog.id).desc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_log_view(row) for row in reversed(rows)]

    def count_jobs_by_status(self) -> dict[JobStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentJob.status, func.count()).group_by(AgentJob.status),
            ).all()
        counts = {status: 0 for status in JobStatus}
        for status, count in rows:
            counts[JobStatus(status)] = int(count)
        return counts

    def count_checkpoints_by_status(self) -> dict[CheckpointStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentCheckpoint.status, func.count()).group_by(AgentCheckpoint.status),
            ).all()
        counts = {status: 0 for status in CheckpointStatus}
        for status, count in rows:
            counts[CheckpointStatus(status)] = int(count)
        return counts

    def list_job_durations(self) -> list[tuple[JobStatus, float]]:
        """Wall-clock run time of finished jobs keyed by their terminal status."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(
                    AgentJob.status,
                    AgentJob.started_at,
                    AgentJob.completed_at,
                    AgentJob.failed_at,
                ).where(
                    col(AgentJob.status).in_(
                        [JobStatus.COMPLETED.value, JobStatus.FAILED.value],
                    ),
                    col(AgentJob.started_at).is_not(None),
                ),
            ).all()

        durations: list[tuple[JobStatus, float]] = []
        for status, started_at, completed_at, failed_at in rows:
            finished = completed_at if status == JobStatus.COMPLETED.value else failed_at
            if finished is None or started_at is None:
                continue
            elapsed = to_utc_aware_datetime(finished) - to_utc_aware_datetime(started_at)
            durations.append((JobStatus(status), max(0.0, elapsed.total_seconds())))
        return durations

    def _operator_transition(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        allowed_from: tuple[JobStatus, ...],
        target: JobStatus,
        event_type: str,
        extra_values: dict[str, Any],
    ) -> JobUpdate:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(select(AgentJob).where(AgentJob.job_id == job_id)).one_or_none()
            if row is None:
                raise JobNotFoundError(job_id)

            previous = JobStatus(row.status)
            if previous not in allowed_from:
                allowed = "/".join(status.value for status in allowed_from)
                raise JobStateError(
                    f"Job {job_id} cannot move to {target.value} from {previous.value}; "
                    f"expected {allowed}.",
                )
            if not self._conditional_update(
                session=session,
                job_id=job_id,
                expected=(previous,),
                values={"status": target.value, "updated_at": now, **extra_values},
            ):
                raise JobStateError(
                    "Job state changed concurrently; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=previous,
                status_to=target,
                details={},
            )
            session.commit()

        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return JobUpdate(job=job, previous_status=previous)

    def _conditional_update(
        self,
        *,
        session: Session,
        job_id: str,
        expected: tuple[JobStatus, ...],
        values: dict[str, Any],
    ) -> bool:
        result = session.exec(
            sa_update(AgentJob)
            .where(
                col(AgentJob.job_id) == job_id,
                col(AgentJob.status).in_([status.value for status in expected]),
            )
            .values(**values),
        )
        if result.rowcount != 1:
            session.rollback()
            return False
        return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AgentJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def is_retryable(job: JobView, failure_class: FailureClass) -> bool:
    return failure_class in RETRYABLE_FAILURE_CLASSES and job.attempts < job.max_attempts


def to_job_view(row: AgentJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        job_type=row.job_type,
        task_description=row.task_description,
        status=JobStatus(row.status),
        priority=row.priority,
        input_data=load_json_object(row.input_json),
        output_data=load_json_object(row.output_json) if row.output_json is not None else None,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        failure_reason=row.failure_reason,
        user_id=row.user_id,
        worker_id=row.worker_id,
        run_after=optional_utc(row.run_after),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        completed_at=optional_utc(row.completed_at),
        failed_at=optional_utc(row.failed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def to_checkpoint_view(row: AgentCheckpoint) -> CheckpointView:
    return CheckpointView(
        checkpoint_id=row.checkpoint_id,
        job_id=row.job_id,
        checkpoint_type=CheckpointType(row.checkpoint_type),
        status=CheckpointStatus(row.status),
        message=row.message,
        data=load_json_object(row.data_json),
        metadata=load_json_object(row.metadata_json),
        expires_at=optional_utc(row.expires_at),
        approved_by=row.approved_by,
        approved_at=optional_utc(row.approved_at),
        rejection_reason=row.rejection_reason,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_log_view(row: AgentLog) -> JobLogView:
    return JobLogView(
        log_id=row.id or 0,
        job_id=row.job_id,
        agent_name=row.agent_name,
        agent_type=row.agent_type,
        action=row.action,
        message=row.message,
        metadata=load_json_object(row.metadata_json),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_event_view(row: AgentJobEvent) -> JobEventView:
    return JobEventView(
        event_id=row.id or 0,
        job_id=row.job_id,
        event_type=row.event_type,
        status_from=JobStatus(row.status_from) if row.status_from is not None else None,
        status_to=JobStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=load_json_object(row.details_json),
    )
