"""Runtime configuration for the job worker, checkpoints and orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_MODEL = "claude-sonnet-4-20250514"


@dataclass(slots=True)
class WorkerSettings:
    """Durable job worker settings."""

    worker_id: str = "worker-local"
    poll_interval_seconds: float = 5.0
    max_concurrent_jobs: int = 3
    enable_error_reporting: bool = True
    checkpoint_poll_seconds: float = 5.0
    checkpoint_max_wait_seconds: float = 86_400.0
    retry_base_seconds: float = 30.0
    retry_max_seconds: float = 900.0
    stale_running_seconds: int = 1_800
    shutdown_grace_seconds: float = 30.0


@dataclass(slots=True)
class CheckpointSettings:
    """Human approval gate settings."""

    ttl_hours: float = 24.0


@dataclass(slots=True)
class CompletionSettings:
    """Text-completion backend settings."""

    api_key: str | None = None
    model: str = DEFAULT_MODEL
    max_tokens: int = 4096
    temperature: float = 0.7
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class OrchestratorSettings:
    """Ephemeral plan/execute/aggregate pipeline settings."""

    max_attempts: int = 3
    default_priority: int = 5
    cost_per_1k_tokens: float = 0.01


@dataclass(slots=True)
class ApiSettings:
    """HTTP layer settings."""

    host: str = "127.0.0.1"
    port: int = 8000
    log_page_size: int = 50
    run_worker: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskgate.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    checkpoints: CheckpointSettings = field(default_factory=CheckpointSettings)
    completion: CompletionSettings = field(default_factory=CompletionSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    api: ApiSettings = field(default_factory=ApiSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKGATE_DB_PATH", ".taskgate.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TASKGATE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("TASKGATE_LOG_LEVEL", "WARNING").upper(),
            worker=WorkerSettings(
                worker_id=os.getenv("TASKGATE_WORKER_ID", f"worker-{os.getpid()}"),
                poll_interval_seconds=float(
                    os.getenv("TASKGATE_WORKER_POLL_INTERVAL_SECONDS", "5"),
                ),
                max_concurrent_jobs=int(os.getenv("TASKGATE_WORKER_MAX_CONCURRENT_JOBS", "3")),
                enable_error_reporting=_env_bool(
                    "TASKGATE_ENABLE_ERROR_REPORTING",
                    default=True,
                ),
                checkpoint_poll_seconds=float(
                    os.getenv("TASKGATE_CHECKPOINT_POLL_SECONDS", "5"),
                ),
                checkpoint_max_wait_seconds=float(
                    os.getenv("TASKGATE_CHECKPOINT_MAX_WAIT_SECONDS", "86400"),
                ),
                retry_base_seconds=float(os.getenv("TASKGATE_RETRY_BASE_SECONDS", "30")),
                retry_max_seconds=float(os.getenv("TASKGATE_RETRY_MAX_SECONDS", "900")),
                stale_running_seconds=int(
                    os.getenv("TASKGATE_WORKER_STALE_RUNNING_SECONDS", "1800"),
                ),
                shutdown_grace_seconds=float(
                    os.getenv("TASKGATE_WORKER_SHUTDOWN_GRACE_SECONDS", "30"),
                ),
            ),
            checkpoints=CheckpointSettings(
                ttl_hours=float(os.getenv("TASKGATE_CHECKPOINT_TTL_HOURS", "24")),
            ),
            completion=CompletionSettings(
                api_key=os.getenv("ANTHROPIC_API_KEY") or None,
                model=os.getenv("TASKGATE_COMPLETION_MODEL", DEFAULT_MODEL),
                max_tokens=int(os.getenv("TASKGATE_COMPLETION_MAX_TOKENS", "4096")),
                temperature=float(os.getenv("TASKGATE_COMPLETION_TEMPERATURE", "0.7")),
                timeout_seconds=float(os.getenv("TASKGATE_COMPLETION_TIMEOUT_SECONDS", "120")),
            ),
            orchestrator=OrchestratorSettings(
                max_attempts=int(os.getenv("TASKGATE_ORCHESTRATOR_MAX_ATTEMPTS", "3")),
                default_priority=int(os.getenv("TASKGATE_ORCHESTRATOR_DEFAULT_PRIORITY", "5")),
                cost_per_1k_tokens=float(os.getenv("TASKGATE_COST_PER_1K_TOKENS", "0.01")),
            ),
            api=ApiSettings(
                host=os.getenv("TASKGATE_API_HOST", "127.0.0.1"),
                port=int(os.getenv("TASKGATE_API_PORT", "8000")),
                log_page_size=int(os.getenv("TASKGATE_API_LOG_PAGE_SIZE", "50")),
                run_worker=_env_bool("TASKGATE_API_RUN_WORKER", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("TASKGATE_WORKER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.max_concurrent_jobs < 1:
            raise ValueError("TASKGATE_WORKER_MAX_CONCURRENT_JOBS must be >= 1.")
        if self.worker.checkpoint_poll_seconds <= 0:
            raise ValueError("TASKGATE_CHECKPOINT_POLL_SECONDS must be > 0.")
        if self.worker.checkpoint_max_wait_seconds <= 0:
            raise ValueError("TASKGATE_CHECKPOINT_MAX_WAIT_SECONDS must be > 0.")
        if self.worker.retry_base_seconds < 0 or self.worker.retry_max_seconds < 0:
            raise ValueError("Retry backoff settings must be >= 0.")
        if self.checkpoints.ttl_hours <= 0:
            raise ValueError("TASKGATE_CHECKPOINT_TTL_HOURS must be > 0.")
        if self.orchestrator.max_attempts < 1:
            raise ValueError("TASKGATE_ORCHESTRATOR_MAX_ATTEMPTS must be >= 1.")
        if self.orchestrator.cost_per_1k_tokens < 0:
            raise ValueError("TASKGATE_COST_PER_1K_TOKENS must be >= 0.")
        if self.api.log_page_size < 1:
            raise ValueError("TASKGATE_API_LOG_PAGE_SIZE must be >= 1.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
