"""Checkpoint manager: human approval gates with lazy expiry."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import literal_column
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from taskgate.errors import CheckpointNotFoundError, CheckpointStateError, JobNotFoundError
from taskgate.jobs.models import (
    CheckpointDetails,
    CheckpointStatus,
    CheckpointType,
    CheckpointView,
)
from taskgate.jobs.repository import JobRepository, to_checkpoint_view
from taskgate.observability.error_reporting import ErrorReporter, record_checkpoint_event
from taskgate.storage.common import dump_json, to_db_datetime, utc_now
from taskgate.storage.tables import AgentCheckpoint, AgentJob

logger = logging.getLogger(__name__)

_INSERTION_ORDER = literal_column("agent_checkpoints.rowid")


class _DefaultExpiry(Enum):
    TOKEN = "default"


DEFAULT_EXPIRY = _DefaultExpiry.TOKEN


class CheckpointManager:
    """Creates, resolves and expires checkpoints; wakes in-process waiters on changes.

    A checkpoint blocks its job iff it is APPROVAL_REQUIRED, PENDING and not past
    `expires_at`. Every read path that notices an expired pending checkpoint
    rewrites it to EXPIRED.
    """

    def __init__(
        self,
        repository: JobRepository,
        *,
        reporter: ErrorReporter,
        default_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.reporter = reporter
        self.default_ttl = default_ttl
        self._clock = clock
        self._changed = threading.Condition()
        self._version = 0

    def create(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        checkpoint_type: CheckpointType,
        message: str,
        data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        expires_at: datetime | None | _DefaultExpiry = DEFAULT_EXPIRY,
    ) -> CheckpointView:
        """Create a pending checkpoint; expiry defaults to now + default TTL."""

        now = self._clock()
        if expires_at is DEFAULT_EXPIRY:
            expires_at = now + self.default_ttl
        with Session(self.repository.engine) as session:
            job = session.exec(select(AgentJob.job_id).where(AgentJob.job_id == job_id)).first()
            if job is None:
                raise JobNotFoundError(job_id)
            row = AgentCheckpoint(
                checkpoint_id=uuid4().hex,
                job_id=job_id,
                checkpoint_type=checkpoint_type.value,
                status=CheckpointStatus.PENDING.value,
                message=message,
                data_json=dump_json(data),
                metadata_json=dump_json(metadata),
                expires_at=to_db_datetime(expires_at) if expires_at is not None else None,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            checkpoint = to_checkpoint_view(row)

        record_checkpoint_event(self.reporter, checkpoint)
        logger.info(
            "Checkpoint %s (%s) created for job %s",
            checkpoint.checkpoint_id,
            checkpoint.checkpoint_type.value,
            job_id,
        )
        return checkpoint

    def get(self, checkpoint_id: str) -> CheckpointView | None:
        with Session(self.repository.engine) as session:
            row = session.exec(
                select(AgentCheckpoint).where(AgentCheckpoint.checkpoint_id == checkpoint_id),
            ).one_or_none()
        return to_checkpoint_view(row) if row is not None else None

    def refresh(self, checkpoint_id: str) -> CheckpointView:
        """Read a checkpoint with lazy expiry applied."""

        checkpoint = self.get(checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(checkpoint_id)
        if checkpoint.is_expired_at(self._clock()):
            return self._mark_expired(checkpoint)
        return checkpoint

    def get_details(self, checkpoint_id: str, *, log_limit: int = 20) -> CheckpointDetails:
        checkpoint = self.refresh(checkpoint_id)
        job = self.repository.get_job(checkpoint.job_id)
        if job is None:
            raise JobNotFoundError(checkpoint.job_id)
        return CheckpointDetails(
            checkpoint=checkpoint,
            job=job,
            recent_logs=self.repository.list_logs(job_id=job.job_id, limit=log_limit),
        )

    def list_by_job(self, job_id: str) -> list[CheckpointView]:
        with Session(self.repository.engine) as session:
            rows = session.exec(
                select(AgentCheckpoint)
                .where(AgentCheckpoint.job_id == job_id)
                .order_by(col(AgentCheckpoint.created_at).asc(), _INSERTION_ORDER.asc()),
            ).all()
        return [to_checkpoint_view(row) for row in rows]

    def list_pending(
        self,
        *,
        checkpoint_type: CheckpointType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CheckpointView]:
        """Pending, non-expired checkpoints, oldest first."""

        self.expire_stale()
        with Session(self.repository.engine) as session:
            statement = (
                select(AgentCheckpoint)
                .where(AgentCheckpoint.status == CheckpointStatus.PENDING.value)
                .order_by(col(AgentCheckpoint.created_at).asc(), _INSERTION_ORDER.asc())
                .offset(offset)
                .limit(limit)
            )
            if checkpoint_type is not None:
                statement = statement.where(
                    AgentCheckpoint.checkpoint_type == checkpoint_type.value,
                )
            rows = session.exec(statement).all()
        return [to_checkpoint_view(row) for row in rows]

    def approve(self, checkpoint_id: str, *, approver_id: str) -> CheckpointView:
        """PENDING -> APPROVED."""

        return self._resolve(
            checkpoint_id,
            target=CheckpointStatus.APPROVED,
            approver_id=approver_id,
            rejection_reason=None,
        )

    def reject(self, checkpoint_id: str, *, approver_id: str, reason: str) -> CheckpointView:
        """PENDING -> REJECTED."""

        return self._resolve(
            checkpoint_id,
            target=CheckpointStatus.REJECTED,
            approver_id=approver_id,
            rejection_reason=reason,
        )

    def is_blocking(self, checkpoint_id: str) -> bool:
        return self.refresh(checkpoint_id).is_blocking_at(self._clock())

    def get_blocking_checkpoint(self, job_id: str) -> CheckpointView | None:
        """Most recently created pending approval gate of a job that has not expired."""

        now = self._clock()
        with Session(self.repository.engine) as session:
            rows = session.exec(
                select(AgentCheckpoint)
                .where(
                    AgentCheckpoint.job_id == job_id,
                    AgentCheckpoint.checkpoint_type == CheckpointType.APPROVAL_REQUIRED.value,
                    AgentCheckpoint.status == CheckpointStatus.PENDING.value,
                )
                .order_by(col(AgentCheckpoint.created_at).desc(), _INSERTION_ORDER.desc()),
            ).all()
        for row in rows:
            checkpoint = to_checkpoint_view(row)
            if checkpoint.is_expired_at(now):
                self._mark_expired(checkpoint)
                continue
            return checkpoint
        return None

    def expire_stale(self, *, now: datetime | None = None) -> int:
        """Proactively expire pending checkpoints past their deadline."""

        db_now = to_db_datetime(now or self._clock())
        with Session(self.repository.engine) as session:
            result = session.exec(
                sa_update(AgentCheckpoint)
                .where(
                    col(AgentCheckpoint.status) == CheckpointStatus.PENDING.value,
                    col(AgentCheckpoint.expires_at).is_not(None),
                    col(AgentCheckpoint.expires_at) <= db_now,
                )
                .values(status=CheckpointStatus.EXPIRED.value, updated_at=db_now),
            )
            session.commit()
            expired = int(result.rowcount or 0)
        if expired:
            logger.info("Expired %d stale checkpoint(s)", expired)
            self._notify()
        return expired

    def force_expire(self, checkpoint_id: str) -> CheckpointView:
        """Expire a still-pending checkpoint regardless of its deadline."""

        checkpoint = self.get(checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(checkpoint_id)
        if checkpoint.status != CheckpointStatus.PENDING:
            return checkpoint
        return self._mark_expired(checkpoint)

    @property
    def version(self) -> int:
        with self._changed:
            return self._version

    def wait_for_change(self, *, since: int, timeout: float) -> int:
        """Block until a checkpoint is resolved in this process or `timeout` elapses."""

        with self._changed:
            if self._version == since:
                self._changed.wait(timeout=max(0.0, timeout))
            return self._version

    def wake_waiters(self) -> None:
        self._notify()

    def _resolve(
        self,
        checkpoint_id: str,
        *,
        target: CheckpointStatus,
        approver_id: str,
        rejection_reason: str | None,
    ) -> CheckpointView:
        checkpoint = self.refresh(checkpoint_id)
        if checkpoint.status != CheckpointStatus.PENDING:
            raise CheckpointStateError(
                f"Checkpoint {checkpoint_id} is {checkpoint.status.value} and cannot be "
                f"{target.value.lower()}.",
            )

        now = to_db_datetime(self._clock())
        with Session(self.repository.engine) as session:
            result = session.exec(
                sa_update(AgentCheckpoint)
                .where(
                    col(AgentCheckpoint.checkpoint_id) == checkpoint_id,
                    col(AgentCheckpoint.status) == CheckpointStatus.PENDING.value,
                )
                .values(
                    status=target.value,
                    approved_by=approver_id,
                    approved_at=now,
                    rejection_reason=rejection_reason,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise CheckpointStateError(
                    f"Checkpoint {checkpoint_id} changed concurrently; reload and retry.",
                )
            session.commit()

        resolved = self.refresh(checkpoint_id)
        record_checkpoint_event(self.reporter, resolved)
        logger.info(
            "Checkpoint %s %s by %s",
            checkpoint_id,
            target.value.lower(),
            approver_id,
        )
        self._notify()
        return resolved

    def _mark_expired(self, checkpoint: CheckpointView) -> CheckpointView:
        now = to_db_datetime(self._clock())
        with Session(self.repository.engine) as session:
            session.exec(
                sa_update(AgentCheckpoint)
                .where(
                    col(AgentCheckpoint.checkpoint_id) == checkpoint.checkpoint_id,
                    col(AgentCheckpoint.status) == CheckpointStatus.PENDING.value,
                )
                .values(status=CheckpointStatus.EXPIRED.value, updated_at=now),
            )
            session.commit()
        self._notify()
        current = self.get(checkpoint.checkpoint_id)
        if current is None:
            raise CheckpointNotFoundError(checkpoint.checkpoint_id)
        return current

    def _notify(self) -> None:
        with self._changed:
            self._version += 1
            self._changed.notify_all()
