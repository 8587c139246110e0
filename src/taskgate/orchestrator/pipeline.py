"""Ephemeral plan -> execute -> aggregate pipeline for free-form tasks."""

from __future__ import annotations

import json
import logging
import re
import secrets
import string
import threading
import time
from dataclasses import dataclass
from typing import Any

from taskgate.completion.base import CompletionRequest, CompletionService
from taskgate.config import OrchestratorSettings
from taskgate.errors import JobInputError
from taskgate.observability.error_reporting import ErrorReporter, NullErrorReporter
from taskgate.orchestrator.agents import (
    WORKER_ROLES,
    AgentRole,
    get_agent_profile,
    parse_worker_role,
    select_role_for_task,
)
from taskgate.orchestrator.models import (
    DEFAULT_ESTIMATED_COST_USD,
    DEFAULT_ESTIMATED_DURATION_MINUTES,
    JobResult,
    PlanStep,
    StepStatus,
    TaskContext,
    TaskPlan,
    TaskProgress,
    TaskStatus,
)
from taskgate.orchestrator.pricing import estimate_cost_usd
from taskgate.orchestrator.store import InMemoryTaskStore, TaskStore
from taskgate.storage.common import utc_now

logger = logging.getLogger(__name__)

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_TASK_ID_ALPHABET = string.ascii_lowercase + string.digits
NO_COMPLETED_STEPS_ERROR = "No steps completed successfully"


@dataclass(slots=True)
class StepOutcome:
    success: bool
    tokens: int
    result: str | None = None
    error: str | None = None


@dataclass(slots=True)
class AggregateOutcome:
    success: bool
    tokens: int
    result: str | None = None
    error: str | None = None


class TaskOrchestrator:
    """Runs each submitted task on its own daemon thread without persistence.

    Concurrent tasks are not bounded: every `submit_task` starts a thread.
    """

    def __init__(
        self,
        *,
        completion: CompletionService,
        store: TaskStore | None = None,
        reporter: ErrorReporter | None = None,
        max_attempts: int = 3,
        cost_per_1k_tokens: float = 0.01,
    ) -> None:
        self.completion = completion
        self.store = store or InMemoryTaskStore()
        self.reporter = reporter or NullErrorReporter()
        self.max_attempts = max_attempts
        self.cost_per_1k_tokens = cost_per_1k_tokens
        self._finished = threading.Condition()

    @classmethod
    def from_settings(
        cls,
        settings: OrchestratorSettings,
        *,
        completion: CompletionService,
        reporter: ErrorReporter | None = None,
    ) -> TaskOrchestrator:
        return cls(
            completion=completion,
            reporter=reporter,
            max_attempts=settings.max_attempts,
            cost_per_1k_tokens=settings.cost_per_1k_tokens,
        )

    def submit_task(
        self,
        task: str,
        context: dict[str, Any] | None = None,
        user_id: str | None = None,
        priority: int = 5,
    ) -> str:
        """Register the task and start processing it; returns before it finishes."""

        if not task.strip():
            raise JobInputError("Task text must not be empty")
        task_context = TaskContext(
            task_id=new_task_id(),
            task=task,
            context=dict(context or {}),
            user_id=user_id,
            priority=priority,
            max_attempts=self.max_attempts,
        )
        self.store.put_context(task_context)
        thread = threading.Thread(
            target=self.process_task,
            args=(task_context,),
            name=f"taskgate-{task_context.task_id}",
            daemon=True,
        )
        thread.start()
        logger.info("Task %s submitted", task_context.task_id)
        return task_context.task_id

    def get_status(self, task_id: str) -> JobResult | TaskProgress | None:
        result = self.store.get_result(task_id)
        if result is not None:
            return result
        context = self.store.get_context(task_id)
        if context is None:
            return None
        return TaskProgress(task_id=task_id, status=context.status)

    def wait_for_result(self, task_id: str, timeout: float | None = None) -> JobResult | None:
        """Block until the task finished; None on timeout or unknown id."""

        with self._finished:
            self._finished.wait_for(
                lambda: self.store.get_result(task_id) is not None
                or self.store.get_context(task_id) is None,
                timeout=timeout,
            )
        return self.store.get_result(task_id)

    def process_task(self, context: TaskContext) -> JobResult:
        """Plan, execute every step in order, then aggregate."""

        started = time.monotonic()
        total_tokens = 0
        context.status = TaskStatus.RUNNING
        plan: TaskPlan | None = None
        try:
            with self.reporter.transaction(name="orchestrator.task", op="task.process"):
                plan, planning_tokens = self.plan(context)
                total_tokens += planning_tokens

                for step in plan.steps:
                    if step.status == StepStatus.SKIPPED:
                        continue
                    self.run_step(step, context)
                    total_tokens += step.tokens

                aggregate = self.aggregate(plan, context)
                total_tokens += aggregate.tokens
            result = JobResult(
                task_id=context.task_id,
                status=TaskStatus.COMPLETED if aggregate.success else TaskStatus.FAILED,
                result=aggregate.result,
                error=aggregate.error,
                steps=plan.steps,
                total_tokens=total_tokens,
                total_cost=self._cost(total_tokens),
                total_duration_ms=_elapsed_ms(started),
            )
        except Exception as error:
            logger.exception("Task %s failed", context.task_id)
            self.reporter.capture_exception(error, tags={"task_id": context.task_id})
            result = JobResult(
                task_id=context.task_id,
                status=TaskStatus.FAILED,
                error=str(error) or type(error).__name__,
                steps=plan.steps if plan is not None else [],
                total_tokens=total_tokens,
                total_cost=self._cost(total_tokens),
                total_duration_ms=_elapsed_ms(started),
            )

        context.status = result.status
        self._publish(result)
        logger.info(
            "Task %s finished status=%s tokens=%d",
            context.task_id,
            result.status.value,
            result.total_tokens,
        )
        return result

    def plan(self, context: TaskContext) -> tuple[TaskPlan, int]:
        """Ask the planner for steps; fall back to one keyword-routed step.

        Returns the plan and the tokens spent on planning.
        """

        profile = get_agent_profile(AgentRole.PLANNER)
        try:
            response = self.completion.complete(
                CompletionRequest(
                    system_prompt=profile.system_prompt,
                    user_prompt=_planning_prompt(context),
                    model=profile.model,
                    max_tokens=profile.max_tokens,
                    temperature=profile.temperature,
                ),
            )
        except Exception as error:  # noqa: BLE001
            logger.warning("Planning call failed for task %s: %s", context.task_id, error)
            return fallback_plan(context), 0

        plan = parse_plan(response.content, context=context)
        if plan is None:
            logger.info("Planner output unusable for task %s; using fallback", context.task_id)
            plan = fallback_plan(context)
        return plan, response.total_tokens

    def run_step(self, step: PlanStep, context: TaskContext) -> None:
        """Execute one step, retrying once while the task has attempts left."""

        step.status = StepStatus.RUNNING
        step.started_at = utc_now()
        outcome = self.execute_step(step, context)
        step.tokens += outcome.tokens
        if not outcome.success and context.current_attempt < context.max_attempts:
            context.current_attempt += 1
            logger.info(
                "Retrying step %d of task %s (attempt %d/%d)",
                step.step_number,
                context.task_id,
                context.current_attempt,
                context.max_attempts,
            )
            outcome = self.execute_step(step, context)
            step.tokens += outcome.tokens

        if outcome.success:
            step.status = StepStatus.COMPLETED
            step.result = outcome.result
            step.error = None
        else:
            step.status = StepStatus.FAILED
            step.error = outcome.error
        step.completed_at = utc_now()

    def execute_step(self, step: PlanStep, context: TaskContext) -> StepOutcome:
        profile = get_agent_profile(step.assigned_agent)
        step.attempts += 1
        try:
            response = self.completion.complete(
                CompletionRequest(
                    system_prompt=profile.system_prompt,
                    user_prompt=_step_prompt(step, context),
                    model=profile.model,
                    max_tokens=profile.max_tokens,
                    temperature=profile.temperature,
                ),
            )
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Step %d of task %s failed: %s",
                step.step_number,
                context.task_id,
                error,
            )
            return StepOutcome(success=False, tokens=0, error=str(error) or type(error).__name__)
        return StepOutcome(success=True, tokens=response.total_tokens, result=response.content)

    def aggregate(self, plan: TaskPlan, context: TaskContext) -> AggregateOutcome:
        completed = [step for step in plan.steps if step.status == StepStatus.COMPLETED]
        if not completed:
            return AggregateOutcome(success=False, tokens=0, error=NO_COMPLETED_STEPS_ERROR)
        if len(completed) == 1:
            return AggregateOutcome(success=True, tokens=0, result=completed[0].result)

        profile = get_agent_profile(AgentRole.ORCHESTRATOR)
        try:
            response = self.completion.complete(
                CompletionRequest(
                    system_prompt=profile.system_prompt,
                    user_prompt=_aggregation_prompt(completed, context),
                    model=profile.model,
                    max_tokens=profile.max_tokens,
                    temperature=profile.temperature,
                ),
            )
        except Exception as error:  # noqa: BLE001
            logger.warning("Aggregation failed for task %s: %s", context.task_id, error)
            return AggregateOutcome(
                success=True,
                tokens=0,
                result="\n\n".join(step.result or "" for step in completed),
            )
        return AggregateOutcome(success=True, tokens=response.total_tokens, result=response.content)

    def _cost(self, total_tokens: int) -> float:
        return estimate_cost_usd(
            total_tokens=total_tokens,
            cost_per_1k_tokens=self.cost_per_1k_tokens,
        )

    def _publish(self, result: JobResult) -> None:
        with self._finished:
            self.store.put_result(result)
            self._finished.notify_all()


def new_task_id() -> str:
    suffix = "".join(secrets.choice(_TASK_ID_ALPHABET) for _ in range(9))
    return f"task_{int(time.time() * 1000)}_{suffix}"


def fallback_plan(context: TaskContext) -> TaskPlan:
    """Single step routed by keyword rules; identical for identical task text."""

    return TaskPlan(
        task_id=context.task_id,
        original_task=context.task,
        steps=[
            PlanStep(
                step_number=1,
                description=context.task,
                assigned_agent=select_role_for_task(context.task),
            ),
        ],
        is_fallback=True,
    )


def parse_plan(content: str, *, context: TaskContext) -> TaskPlan | None:
    """Extract and validate the planner's JSON; None when anything is off."""

    match = _JSON_OBJECT_RE.search(content)
    if match is None:
        return None
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    raw_steps = payload.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        return None
    steps: list[PlanStep] = []
    for index, raw_step in enumerate(raw_steps, start=1):
        step = _parse_step(raw_step, default_number=index)
        if step is None:
            return None
        steps.append(step)

    return TaskPlan(
        task_id=context.task_id,
        original_task=context.task,
        steps=steps,
        estimated_duration=_positive_number(
            payload.get("estimatedDuration"),
            default=DEFAULT_ESTIMATED_DURATION_MINUTES,
        ),
        estimated_cost=_positive_number(
            payload.get("estimatedCost"),
            default=DEFAULT_ESTIMATED_COST_USD,
        ),
    )


def _parse_step(raw_step: object, *, default_number: int) -> PlanStep | None:
    if not isinstance(raw_step, dict):
        return None
    description = raw_step.get("description")
    if not isinstance(description, str) or not description.strip():
        return None
    role = parse_worker_role(raw_step.get("assignedAgent"))
    if role is None:
        return None

    step_number = raw_step.get("stepNumber", default_number)
    if isinstance(step_number, bool) or not isinstance(step_number, int):
        step_number = default_number
    raw_dependencies = raw_step.get("dependencies") or []
    dependencies = (
        [item for item in raw_dependencies if isinstance(item, int) and not isinstance(item, bool)]
        if isinstance(raw_dependencies, list)
        else []
    )
    return PlanStep(
        step_number=step_number,
        description=description.strip(),
        assigned_agent=role,
        dependencies=dependencies,
    )


def _positive_number(value: object, *, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        return default
    return float(value)


def _planning_prompt(context: TaskContext) -> str:
    roles = ", ".join(role.value for role in WORKER_ROLES)
    return (
        "Analyze this task and create an execution plan.\n\n"
        f"Task: {context.task}\n"
        f"Context: {json.dumps(context.context, ensure_ascii=False, default=str)}\n\n"
        f"Available worker agents: {roles}\n\n"
        "Create a step-by-step plan. For each step give a description, the agent that "
        "should handle it and the steps it depends on.\n\n"
        "Respond with JSON only:\n"
        '{"steps": [{"stepNumber": 1, "description": "...", '
        f'"assignedAgent": "{"|".join(role.value for role in WORKER_ROLES)}", '
        '"dependencies": []}], "estimatedDuration": <minutes>, "estimatedCost": <dollars>}'
    )


def _step_prompt(step: PlanStep, context: TaskContext) -> str:
    return (
        "Execute this task step.\n\n"
        f"Original task: {context.task}\n"
        f"Current step: {step.description}\n"
        f"Step number: {step.step_number}\n"
        f"Context: {json.dumps(context.context, ensure_ascii=False, default=str)}\n\n"
        "Provide a complete and detailed response for this step."
    )


def _aggregation_prompt(completed: list[PlanStep], context: TaskContext) -> str:
    sections = "\n\n---\n\n".join(
        f"Step {step.step_number} ({step.description}):\n{step.result or ''}"
        for step in completed
    )
    return (
        "Aggregate these step results into one coherent final response.\n\n"
        f"Original task: {context.task}\n\n"
        f"Step results:\n{sections}\n\n"
        "Provide a comprehensive final answer that combines all step results."
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
