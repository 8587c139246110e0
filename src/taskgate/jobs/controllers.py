"""Controllers for job, checkpoint, worker and task CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskgate.app import AppContext, build_app_context
from taskgate.config import Settings
from taskgate.errors import JobInputError
from taskgate.jobs.models import CheckpointType, CheckpointView, JobView
from taskgate.jobs.services import SubmitJob
from taskgate.observability.metrics import render_prometheus, render_stats_lines
from taskgate.orchestrator.models import JobResult


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    job_type: str
    task_description: str
    input_json: str | None
    priority: int
    max_attempts: int
    user_id: str | None


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    db_path: Path | None
    job_id: str
    log_limit: int = 50


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for retry/cancel operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class CheckpointListCommand:
    db_path: Path | None
    checkpoint_type: str | None
    limit: int
    offset: int


@dataclass(slots=True)
class CheckpointShowCommand:
    db_path: Path | None
    checkpoint_id: str


@dataclass(slots=True)
class CheckpointDecisionCommand:
    """CLI input for approve/reject; `reason` is only used for rejections."""

    db_path: Path | None
    checkpoint_id: str
    approver_id: str
    reason: str | None = None


@dataclass(slots=True)
class CheckpointExpireCommand:
    db_path: Path | None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_ticks: int | None
    max_idle_polls: int | None


@dataclass(slots=True)
class TaskRunCommand:
    """CLI input for a foreground orchestrator task."""

    db_path: Path | None
    task: str
    context_json: str | None
    timeout_seconds: float


@dataclass(slots=True)
class MetricsCommand:
    db_path: Path | None
    output_format: str = "text"


class JobsCliController:
    """Coordinates job queue, checkpoint review, worker and task CLI operations."""

    def submit_job(self, command: JobSubmitCommand) -> list[str]:
        input_data = _parse_json_object(command.input_json, option="--input")
        with _app_context(Settings.from_env(db_path=command.db_path)) as context:
            job = context.jobs.submit(
                SubmitJob(
                    job_type=command.job_type,
                    task_description=command.task_description,
                    input_data=input_data,
                    priority=command.priority,
                    max_attempts=command.max_attempts,
                    user_id=command.user_id,
                ),
            )
        return [
            "Job submitted: "
            f"job_id={job.job_id} type={job.job_type} status={job.status.value} "
            f"priority={job.priority}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        with _app_context(Settings.from_env(db_path=command.db_path)) as context:
            jobs = context.jobs.list_jobs(status=command.status, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        lines.extend(f"  {_job_line(job)}" for job in jobs)
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        with _app_context(Settings.from_env(db_path=command.db_path)) as context:
            details = context.repository.get_job_details(
                job_id=command.job_id,
                log_limit=command.log_limit,
            )
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Type: {job.job_type}",
            f"Status: {job.status.value}",
            f"Description: {job.task_description or '-'}",
            f"Attempt: {job.attempts}/{job.max_attempts}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Failure reason: {job.failure_reason or '-'}",
            f"Output: {_json_or_dash(job.output_data)}",
            f"Checkpoints: {len(details.checkpoints)}",
        ]
        lines.extend(f"  {_checkpoint_line(checkpoint)}" for checkpoint in details.checkpoints)
        lines.append(f"Logs: {len(details.logs)}")
        for log in details.logs:
            lines.append(f"  {log.created_at.isoformat()} [{log.action}] {log.message}")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_job(self, command: JobMutateCommand) -> list[str]:
        with _app_context(Settings.from_env(db_path=command.db_path)) as context:
            job = context.jobs.retry(command.job_id)
        return [f"Job re-queued: {job.job_id} status={job.status.value}"]

    def cancel_job(self, command: JobMutateCommand) -> list[str]:
        with _app_context(Settings.from_env(db_path=command.db_path)) as context:
            job = context.jobs.cancel(command.job_id)
        return [f"Job cancelled: {job.job_id}"]

    def list_checkpoints(self, command: CheckpointListCommand) -> list[str]:
        checkpoint_type = (
            _parse_checkpoint_type(command.checkpoint_type) if command.checkpoint_type else None
        )
        with _app_context(Settings.from_env(db_path=command.db_path)) as context:
            checkpoints = context.checkpoints.list_pending(
                checkpoint_type=checkpoint_type,
                limit=command.limit,
                offset=command.offset,
            )

        lines = [f"Pending checkpoints: {len(checkpoints)}"]
        lines.extend(f"  {_checkpoint_line(checkpoint)}" for checkpoint in checkpoints)
        return lines

    def show_checkpoint(self, command: CheckpointShowCommand) -> list[str]:
        with _app_context(Settings.from_env(db_path=command.db_path)) as context:
            details = context.checkpoints.get_details(command.checkpoint_id)

        checkpoint = details.checkpoint
        lines = [
            f"Checkpoint: {checkpoint.checkpoint_id}",
            f"Type: {checkpoint.checkpoint_type.value}",
            f"Status: {checkpoint.status.value}",
            f"Message: {checkpoint.message}",
            f"Data: {json.dumps(checkpoint.data, ensure_ascii=False, default=str)}",
            f"Expires: {checkpoint.expires_at.isoformat() if checkpoint.expires_at else 'never'}",
            f"Decided by: {checkpoint.approved_by or '-'}",
            f"Rejection reason: {checkpoint.rejection_reason or '-'}",
            f"Job: {_job_line(details.job)}",
            f"Recent logs: {len(details.recent_logs)}",
        ]
        for log in details.recent_logs:
            lines.append(f"  {log.created_at.isoformat()} [{log.action}] {log.message}")
        return lines

    def approve_checkpoint(self, command: CheckpointDecisionCommand) -> list[str]:
        with _app_context(Settings.from_env(db_path=command.db_path)) as context:
            checkpoint = context.checkpoints.approve(
                command.checkpoint_id,
                approver_id=command.approver_id,
            )
        return [f"Checkpoint approved: {checkpoint.checkpoint_id} by {checkpoint.approved_by}"]

    def reject_checkpoint(self, command: CheckpointDecisionCommand) -> list[str]:
        if not command.reason:
            raise JobInputError("A rejection reason is required")
        with _app_context(Settings.from_env(db_path=command.db_path)) as context:
            checkpoint = context.checkpoints.reject(
                command.checkpoint_id,
                approver_id=command.approver_id,
                reason=command.reason,
            )
        return [
            f"Checkpoint rejected: {checkpoint.checkpoint_id} by {checkpoint.approved_by} "
            f"reason={checkpoint.rejection_reason}",
        ]

    def expire_checkpoints(self, command: CheckpointExpireCommand) -> list[str]:
        with _app_context(Settings.from_env(db_path=command.db_path)) as context:
            expired = context.checkpoints.expire_stale()
        return [f"Expired checkpoints: {expired}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        with _app_context(Settings.from_env(db_path=command.db_path)) as context:
            worker = context.worker
            if command.once:
                tick = worker.run_once()
                worker.wait_for_idle(timeout=worker.shutdown_grace_seconds)
                worker.stop(timeout=0)
                return [
                    "Worker tick: "
                    f"claimed={tick.claimed} busy={tick.busy} idle={tick.idle_polls} "
                    f"requeued={tick.requeued} expired_checkpoints={tick.expired_checkpoints} "
                    f"recovered={tick.recovered} errors={tick.errors}",
                ]
            summary = worker.run_loop(
                max_ticks=command.max_ticks,
                max_idle_polls=command.max_idle_polls,
            )

        return [
            "Worker summary: "
            f"ticks={summary.ticks} claimed={summary.claimed} "
            f"completed={summary.completed} failed={summary.failed} "
            f"retried={summary.retried} idle_polls={summary.idle_polls} "
            f"errors={summary.errors}",
        ]

    def run_task(self, command: TaskRunCommand) -> list[str]:
        task_context = _parse_json_object(command.context_json, option="--context")
        with _app_context(Settings.from_env(db_path=command.db_path)) as context:
            task_id = context.orchestrator.submit_task(command.task, context=task_context)
            result = context.orchestrator.wait_for_result(
                task_id,
                timeout=command.timeout_seconds,
            )
        if result is None:
            return [f"Task {task_id} still running after {command.timeout_seconds:g}s"]
        return _task_result_lines(result)

    def metrics(self, command: MetricsCommand) -> list[str]:
        with _app_context(Settings.from_env(db_path=command.db_path)) as context:
            snapshot = context.metrics_snapshot()
        if command.output_format == "prometheus":
            return render_prometheus(snapshot).rstrip("\n").splitlines()
        return render_stats_lines(snapshot=snapshot)


def _task_result_lines(result: JobResult) -> list[str]:
    lines = [
        f"Task: {result.task_id}",
        f"Status: {result.status.value}",
        f"Tokens: {result.total_tokens} cost=${result.total_cost:.4f} "
        f"duration_ms={result.total_duration_ms}",
        f"Steps: {len(result.steps)}",
    ]
    for step in result.steps:
        lines.append(
            f"  {step.step_number}. [{step.assigned_agent.value}] {step.status.value} "
            f"{step.description}",
        )
    if result.error:
        lines.append(f"Error: {result.error}")
    if result.result:
        lines.extend(["Result:", result.result])
    return lines


def _job_line(job: JobView) -> str:
    return (
        f"{job.job_id} type={job.job_type} status={job.status.value} "
        f"priority={job.priority} attempt={job.attempts}/{job.max_attempts} "
        f"created_at={job.created_at.isoformat()}"
    )


def _checkpoint_line(checkpoint: CheckpointView) -> str:
    expires = checkpoint.expires_at.isoformat() if checkpoint.expires_at else "never"
    return (
        f"{checkpoint.checkpoint_id} job={checkpoint.job_id} "
        f"type={checkpoint.checkpoint_type.value} status={checkpoint.status.value} "
        f"expires_at={expires} message={checkpoint.message}"
    )


def _parse_json_object(raw: str | None, *, option: str) -> dict[str, Any]:
    if raw is None or not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise JobInputError(f"{option} must be valid JSON: {error.msg}") from error
    if not isinstance(payload, dict):
        raise JobInputError(f"{option} must be a JSON object")
    return payload


def _parse_checkpoint_type(value: str) -> CheckpointType:
    try:
        return CheckpointType(value.strip().upper())
    except ValueError as error:
        raise JobInputError(f"Unsupported checkpoint type: {value!r}") from error


@contextmanager
def _app_context(settings: Settings) -> Iterator[AppContext]:
    context = build_app_context(settings)
    try:
        yield context
    finally:
        context.close()


def _json_or_dash(payload: dict[str, Any] | None) -> str:
    if not payload:
        return "-"
    return json.dumps(payload, ensure_ascii=False, default=str)
