"""CLI entrypoint for taskgate."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from taskgate import __version__
from taskgate.errors import TaskgateError
from taskgate.jobs.controllers import (
    CheckpointDecisionCommand,
    CheckpointExpireCommand,
    CheckpointListCommand,
    CheckpointShowCommand,
    JobInspectCommand,
    JobListCommand,
    JobMutateCommand,
    JobsCliController,
    JobSubmitCommand,
    MetricsCommand,
    TaskRunCommand,
    WorkerRunCommand,
)
from taskgate.jobs.models import JobKind, JobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = JobsCliController()
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group()
@click.version_option(version=__version__, prog_name="taskgate")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    envvar="TASKGATE_LOG_LEVEL",
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def taskgate(log_level: str) -> None:
    """Durable agent jobs with human approval checkpoints."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskgate.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--type",
    "job_type",
    type=click.Choice([kind.value for kind in JobKind]),
    required=True,
    help="Handler that runs the job.",
)
@click.option("--description", default="", help="Free-text task description.")
@click.option("--input", "input_json", default=None, help="Job input as a JSON object.")
@click.option("--priority", type=int, default=5, show_default=True, help="Higher runs first.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1, max=20),
    default=3,
    show_default=True,
    help="Attempts before the job stays FAILED.",
)
@click.option("--user-id", default=None, help="Optional submitter attribution.")
def jobs_submit(  # noqa: PLR0913
    db_path: Path | None,
    job_type: str,
    description: str,
    input_json: str | None,
    priority: int,
    max_attempts: int,
    user_id: str | None,
) -> None:
    """Submit a job for the worker."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.submit_job(
                JobSubmitCommand(
                    db_path=db_path,
                    job_type=job_type,
                    task_description=description,
                    input_json=input_json,
                    priority=priority,
                    max_attempts=max_attempts,
                    user_id=user_id,
                ),
            ),
        )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Only jobs in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.list_jobs(JobListCommand(db_path=db_path, status=status, limit=limit)),
        )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--logs",
    "log_limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="How many of the latest log entries to print.",
)
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, log_limit: int, job_id: str) -> None:
    """Show one job with its checkpoints, logs and events."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.inspect_job(
                JobInspectCommand(db_path=db_path, job_id=job_id, log_limit=log_limit),
            ),
        )


@jobs.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_retry(db_path: Path | None, job_id: str) -> None:
    """Re-queue a FAILED job."""

    with _cli_errors():
        _emit_lines(CONTROLLER.retry_job(JobMutateCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a job that has not been claimed."""

    with _cli_errors():
        _emit_lines(CONTROLLER.cancel_job(JobMutateCommand(db_path=db_path, job_id=job_id)))


@taskgate.group()
def checkpoints() -> None:
    """Checkpoint review commands."""


@checkpoints.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--type",
    "checkpoint_type",
    type=click.Choice(["INFO", "APPROVAL_REQUIRED"], case_sensitive=False),
    default=None,
    help="Only checkpoints of this type.",
)
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
def checkpoints_list(
    db_path: Path | None,
    checkpoint_type: str | None,
    limit: int,
    offset: int,
) -> None:
    """List pending checkpoints, oldest first."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.list_checkpoints(
                CheckpointListCommand(
                    db_path=db_path,
                    checkpoint_type=checkpoint_type,
                    limit=limit,
                    offset=offset,
                ),
            ),
        )


@checkpoints.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("checkpoint_id")
def checkpoints_show(db_path: Path | None, checkpoint_id: str) -> None:
    """Show a checkpoint with its job context."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.show_checkpoint(
                CheckpointShowCommand(db_path=db_path, checkpoint_id=checkpoint_id),
            ),
        )


@checkpoints.command("approve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--approver", "approver_id", required=True, help="Who approves.")
@click.argument("checkpoint_id")
def checkpoints_approve(db_path: Path | None, approver_id: str, checkpoint_id: str) -> None:
    """Approve a pending checkpoint."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.approve_checkpoint(
                CheckpointDecisionCommand(
                    db_path=db_path,
                    checkpoint_id=checkpoint_id,
                    approver_id=approver_id,
                ),
            ),
        )


@checkpoints.command("reject")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--approver", "approver_id", required=True, help="Who rejects.")
@click.option("--reason", required=True, help="Why the checkpoint is rejected.")
@click.argument("checkpoint_id")
def checkpoints_reject(
    db_path: Path | None,
    approver_id: str,
    reason: str,
    checkpoint_id: str,
) -> None:
    """Reject a pending checkpoint; the waiting job fails."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.reject_checkpoint(
                CheckpointDecisionCommand(
                    db_path=db_path,
                    checkpoint_id=checkpoint_id,
                    approver_id=approver_id,
                    reason=reason,
                ),
            ),
        )


@checkpoints.command("expire")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def checkpoints_expire(db_path: Path | None) -> None:
    """Mark every overdue pending checkpoint EXPIRED."""

    with _cli_errors():
        _emit_lines(CONTROLLER.expire_checkpoints(CheckpointExpireCommand(db_path=db_path)))


@taskgate.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run a single poll tick or keep polling.",
)
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for poll ticks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive empty polls with nothing running.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_ticks: int | None,
    max_idle_polls: int | None,
) -> None:
    """Poll for jobs and run them. Stops on Ctrl-C."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.run_worker(
                WorkerRunCommand(
                    db_path=db_path,
                    once=once,
                    max_ticks=max_ticks,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        )


@taskgate.group()
def tasks() -> None:
    """Orchestrator task commands."""


@tasks.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--context", "context_json", default=None, help="Task context as a JSON object.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=1),
    default=600.0,
    show_default=True,
    help="Seconds to wait for the result.",
)
@click.argument("task")
def tasks_run(
    db_path: Path | None,
    context_json: str | None,
    timeout_seconds: float,
    task: str,
) -> None:
    """Plan, execute and aggregate TASK in the foreground."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.run_task(
                TaskRunCommand(
                    db_path=db_path,
                    task=task,
                    context_json=context_json,
                    timeout_seconds=timeout_seconds,
                ),
            ),
        )


@taskgate.command("metrics")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "prometheus"]),
    default="text",
    show_default=True,
)
def metrics(db_path: Path | None, output_format: str) -> None:
    """Print job and checkpoint metrics."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.metrics(MetricsCommand(db_path=db_path, output_format=output_format)),
        )


@taskgate.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--host", default=None, help="Bind address (default TASKGATE_API_HOST).")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=None, help="Bind port.")
@click.option(
    "--with-worker/--no-worker",
    default=None,
    help="Run the job worker inside the server process.",
)
def serve(
    db_path: Path | None,
    host: str | None,
    port: int | None,
    with_worker: bool | None,
) -> None:
    """Serve the HTTP API with uvicorn."""

    import uvicorn  # noqa: PLC0415

    from taskgate.api.app import create_app  # noqa: PLC0415
    from taskgate.app import build_app_context  # noqa: PLC0415
    from taskgate.config import Settings  # noqa: PLC0415

    with _cli_errors():
        settings = Settings.from_env(db_path=db_path)
        context = build_app_context(settings)
    try:
        app = create_app(context, run_worker=with_worker)
        uvicorn.run(
            app,
            host=host or settings.api.host,
            port=port or settings.api.port,
            log_level=logging.getLevelName(logging.getLogger().level).lower(),
        )
    finally:
        context.close()


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (TaskgateError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskgate()
