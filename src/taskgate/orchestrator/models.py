"""In-memory plan, step and result models for orchestrator tasks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from taskgate.orchestrator.agents import AgentRole
from taskgate.storage.common import utc_now

DEFAULT_ESTIMATED_DURATION_MINUTES = 5.0
DEFAULT_ESTIMATED_COST_USD = 0.01


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TaskStatus(str, Enum):
    """Orchestrator task lifecycle as reported by `get_status`."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(slots=True)
class PlanStep:
    step_number: int
    description: str
    assigned_agent: AgentRole
    dependencies: list[int] = field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    result: str | None = None
    error: str | None = None
    tokens: int = 0
    attempts: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class TaskPlan:
    """Ordered steps for one task. Dependencies are recorded, never used for scheduling."""

    task_id: str
    original_task: str
    steps: list[PlanStep]
    estimated_duration: float = DEFAULT_ESTIMATED_DURATION_MINUTES
    estimated_cost: float = DEFAULT_ESTIMATED_COST_USD
    is_fallback: bool = False
    created_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class TaskContext:
    """Submitted task and its per-run bookkeeping."""

    task_id: str
    task: str
    context: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    priority: int = 5
    max_attempts: int = 3
    current_attempt: int = 0
    status: TaskStatus = TaskStatus.PENDING
    submitted_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class JobResult:
    """Terminal outcome of an orchestrator task."""

    task_id: str
    status: TaskStatus
    steps: list[PlanStep]
    total_tokens: int
    total_cost: float
    total_duration_ms: int
    result: str | None = None
    error: str | None = None
    completed_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class TaskProgress:
    """Status of a task that has not produced a result yet."""

    task_id: str
    status: TaskStatus
