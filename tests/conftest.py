"""Shared test fixtures."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import pytest

from taskgate.completion.base import CompletionRequest, CompletionResult
from taskgate.errors import CompletionError
from taskgate.jobs.checkpoints import CheckpointManager
from taskgate.jobs.handlers import HandlerRegistry, build_default_registry
from taskgate.jobs.repository import JobRepository
from taskgate.jobs.worker import JobWorker


class RecordingReporter:
    """Error reporter that keeps every breadcrumb and captured exception."""

    def __init__(self) -> None:
        self.breadcrumbs: list[dict[str, Any]] = []
        self.captured: list[tuple[BaseException, dict[str, str]]] = []
        self.transactions: list[str] = []

    def add_breadcrumb(
        self,
        *,
        category: str,
        message: str,
        data: Mapping[str, Any] | None = None,
    ) -> None:
        self.breadcrumbs.append({"category": category, "message": message, **dict(data or {})})

    def capture_exception(
        self,
        error: BaseException,
        *,
        tags: Mapping[str, str] | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        self.captured.append((error, dict(tags or {})))

    @contextmanager
    def transaction(self, *, name: str, op: str) -> Iterator[None]:
        self.transactions.append(name)
        yield

    def transitions(self, job_id: str) -> list[tuple[str | None, str]]:
        return [
            (crumb["old_status"], crumb["new_status"])
            for crumb in self.breadcrumbs
            if crumb["category"] == "job" and crumb["job_id"] == job_id
        ]


class ScriptedCompletion:
    """Completion service replaying queued answers; exceptions in the queue are raised."""

    def __init__(
        self,
        responses: list[str | Exception] | None = None,
        *,
        default: str = "scripted answer",
        input_tokens: int = 10,
        output_tokens: int = 5,
    ) -> None:
        self.responses = list(responses or [])
        self.default = default
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.model = "scripted-model"
        self.requests: list[CompletionRequest] = []

    def complete(self, request: CompletionRequest) -> CompletionResult:
        self.requests.append(request)
        response: str | Exception = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        return CompletionResult(
            content=response,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            model=request.model or self.model,
        )


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "taskgate.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture()
def checkpoints(repository: JobRepository, reporter: RecordingReporter) -> CheckpointManager:
    return CheckpointManager(repository, reporter=reporter)


@pytest.fixture()
def completion() -> ScriptedCompletion:
    return ScriptedCompletion()


@pytest.fixture()
def failing_completion() -> ScriptedCompletion:
    return ScriptedCompletion([CompletionError("backend unavailable")] * 10)


@pytest.fixture()
def make_worker(
    repository: JobRepository,
    checkpoints: CheckpointManager,
    reporter: RecordingReporter,
    completion: ScriptedCompletion,
) -> Iterator[Callable[..., JobWorker]]:
    """Factory for workers tuned for tests: no poll sleep, no retry backoff."""

    created: list[JobWorker] = []

    def _make(registry: HandlerRegistry | None = None, **overrides: Any) -> JobWorker:
        options: dict[str, Any] = {
            "worker_id": "test-worker",
            "poll_interval_seconds": 0.01,
            "max_concurrent_jobs": 3,
            "checkpoint_poll_seconds": 0.05,
            "checkpoint_max_wait_seconds": 10.0,
            "retry_base_seconds": 0.0,
            "retry_max_seconds": 0.0,
            "shutdown_grace_seconds": 5.0,
        }
        options.update(overrides)
        worker = JobWorker(
            repository=repository,
            checkpoints=checkpoints,
            registry=registry or build_default_registry(),
            completion=completion,
            reporter=reporter,
            **options,
        )
        created.append(worker)
        return worker

    yield _make
    for worker in created:
        worker.stop(timeout=5)


@pytest.fixture()
def wait_until() -> Callable[..., Any]:
    """Poll `condition` until it returns something truthy or fail after `timeout`."""

    def _wait(condition: Callable[[], Any], *, timeout: float = 5.0, interval: float = 0.02) -> Any:
        deadline = time.monotonic() + timeout
        while True:
            value = condition()
            if value:
                return value
            if time.monotonic() >= deadline:
                pytest.fail(f"Condition not met within {timeout}s")
            time.sleep(interval)

    return _wait
