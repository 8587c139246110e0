"""SQLModel ORM tables for jobs, checkpoints, logs and job events."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class AgentJob(SQLModel, table=True):
    __tablename__ = "agent_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_jobs_claim", "status", "priority", "created_at"),
        Index("idx_agent_jobs_retry_due", "status", "run_after"),
    )

    job_id: str = Field(primary_key=True)
    job_type: str = Field(index=True)
    task_description: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    priority: int = Field(default=5)
    input_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    failure_class: str | None = Field(default=None, index=True)
    failure_reason: str | None = Field(default=None, sa_column=Column(Text))
    user_id: str | None = Field(default=None, index=True)
    worker_id: str | None = Field(default=None, index=True)
    run_after: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentCheckpoint(SQLModel, table=True):
    __tablename__ = "agent_checkpoints"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_checkpoints_job_time", "job_id", "created_at"),
        Index("idx_agent_checkpoints_pending", "status", "checkpoint_type", "expires_at"),
    )

    checkpoint_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    checkpoint_type: str
    status: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    data_json: str | None = Field(default=None, sa_column=Column(Text))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    expires_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    approved_by: str | None = None
    approved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    rejection_reason: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentLog(SQLModel, table=True):
    __tablename__ = "agent_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_logs_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    agent_name: str = Field(default="worker")
    agent_type: str = Field(default="ORCHESTRATOR")
    action: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentJobEvent(SQLModel, table=True):
    __tablename__ = "agent_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
