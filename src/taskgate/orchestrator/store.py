"""Task state storage for the orchestrator."""

from __future__ import annotations

import threading
from typing import Protocol

from taskgate.orchestrator.models import JobResult, TaskContext


class TaskStore(Protocol):
    """Where in-flight task contexts and finished results live."""

    def put_context(self, context: TaskContext) -> None: ...

    def get_context(self, task_id: str) -> TaskContext | None: ...

    def put_result(self, result: JobResult) -> None: ...

    def get_result(self, task_id: str) -> JobResult | None: ...


class InMemoryTaskStore:
    """Process-local store; contents are lost on restart."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._contexts: dict[str, TaskContext] = {}
        self._results: dict[str, JobResult] = {}

    def put_context(self, context: TaskContext) -> None:
        with self._lock:
            self._contexts[context.task_id] = context

    def get_context(self, task_id: str) -> TaskContext | None:
        with self._lock:
            return self._contexts.get(task_id)

    def put_result(self, result: JobResult) -> None:
        """Store the result and drop the in-flight context."""

        with self._lock:
            self._results[result.task_id] = result
            self._contexts.pop(result.task_id, None)

    def get_result(self, task_id: str) -> JobResult | None:
        with self._lock:
            return self._results.get(task_id)
