from __future__ import annotations

import json

import allure
import pytest

from taskgate.errors import CompletionError, JobInputError
from taskgate.orchestrator.agents import (
    AGENT_PROFILES,
    WORKER_ROLES,
    AgentRole,
    parse_worker_role,
    select_role_for_task,
)
from taskgate.orchestrator.models import StepStatus, TaskContext, TaskProgress, TaskStatus
from taskgate.orchestrator.pipeline import (
    NO_COMPLETED_STEPS_ERROR,
    TaskOrchestrator,
    fallback_plan,
    new_task_id,
    parse_plan,
)
from taskgate.orchestrator.pricing import estimate_cost_usd

pytestmark = [
    allure.epic("Task Orchestrator"),
    allure.feature("Plan, Execute, Aggregate"),
]


def _plan_json(*steps: tuple[str, str]) -> str:
    return json.dumps(
        {
            "steps": [
                {
                    "stepNumber": index,
                    "description": description,
                    "assignedAgent": agent,
                    "dependencies": [index - 1] if index > 1 else [],
                }
                for index, (description, agent) in enumerate(steps, start=1)
            ],
            "estimatedDuration": 12,
            "estimatedCost": 0.2,
        },
    )


def _context(task: str, *, max_attempts: int = 3) -> TaskContext:
    return TaskContext(task_id=new_task_id(), task=task, max_attempts=max_attempts)


@pytest.mark.parametrize(
    ("task", "role"),
    [
        ("Research the latest SQLite releases", AgentRole.RESEARCH),
        ("Write a blog post about queues", AgentRole.BLOG),
        ("Refactor this function", AgentRole.CODE),
        ("Improve SEO for the landing page", AgentRole.SEO),
        ("Draft a go-to-market strategy", AgentRole.BUSINESS),
        ("Automate the weekly export", AgentRole.RPA),
        ("Audit our login flow for vulnerabilities", AgentRole.SECURITY),
        ("Tell me something nice", AgentRole.RESEARCH),
    ],
)
def test_select_role_for_task_uses_keyword_rules(task: str, role: AgentRole) -> None:
    assert select_role_for_task(task) == role


def test_every_role_has_a_profile() -> None:
    assert set(AGENT_PROFILES) == set(AgentRole)
    assert AGENT_PROFILES[AgentRole.SECURITY].temperature == pytest.approx(0.1)
    assert AGENT_PROFILES[AgentRole.CODE].max_tokens == 8192


def test_parse_worker_role_accepts_only_worker_roles() -> None:
    assert parse_worker_role("code") == AgentRole.CODE
    assert parse_worker_role(" BLOG ") == AgentRole.BLOG
    assert parse_worker_role("PLANNER") is None
    assert parse_worker_role("ORCHESTRATOR") is None
    assert parse_worker_role("DESIGN") is None
    assert parse_worker_role(None) is None
    assert AgentRole.PLANNER not in WORKER_ROLES


def test_fallback_plan_is_single_routed_step_and_repeatable() -> None:
    context = _context("Research vector databases")

    first = fallback_plan(context)
    second = fallback_plan(context)

    assert first.is_fallback is True
    assert len(first.steps) == 1
    assert first.steps[0].assigned_agent == AgentRole.RESEARCH
    assert first.steps[0].description == "Research vector databases"
    assert [(step.description, step.assigned_agent) for step in first.steps] == [
        (step.description, step.assigned_agent) for step in second.steps
    ]


def test_parse_plan_extracts_json_from_surrounding_text() -> None:
    context = _context("Build and document an API")
    content = "Here is the plan:\n```json\n" + _plan_json(
        ("Design the endpoints", "CODE"),
        ("Write the docs", "BLOG"),
    ) + "\n```"

    plan = parse_plan(content, context=context)

    assert plan is not None
    assert plan.is_fallback is False
    assert [step.assigned_agent for step in plan.steps] == [AgentRole.CODE, AgentRole.BLOG]
    assert plan.steps[1].dependencies == [1]
    assert plan.estimated_duration == 12
    assert plan.estimated_cost == pytest.approx(0.2)


@pytest.mark.parametrize(
    "content",
    [
        "no json here",
        "{not valid json}",
        json.dumps({"steps": []}),
        json.dumps({"steps": [{"description": "x", "assignedAgent": "PLANNER"}]}),
        json.dumps({"steps": [{"description": "", "assignedAgent": "CODE"}]}),
        json.dumps({"steps": ["do something"]}),
    ],
)
def test_parse_plan_rejects_unusable_planner_output(content: str) -> None:
    assert parse_plan(content, context=_context("anything")) is None


def test_multi_step_plan_is_executed_in_order_and_aggregated(completion) -> None:
    completion.responses = [
        _plan_json(("Collect facts", "RESEARCH"), ("Write summary", "BLOG")),
        "facts",
        "summary draft",
        "final answer",
    ]
    orchestrator = TaskOrchestrator(completion=completion, cost_per_1k_tokens=0.5)

    result = orchestrator.process_task(_context("Research and write about SQLite"))

    assert result.status == TaskStatus.COMPLETED
    assert result.result == "final answer"
    assert [step.status for step in result.steps] == [StepStatus.COMPLETED] * 2
    assert [step.result for step in result.steps] == ["facts", "summary draft"]
    assert result.total_tokens == 60
    assert result.total_cost == pytest.approx(0.03)
    system_prompts = [request.system_prompt for request in completion.requests]
    assert system_prompts[0] == AGENT_PROFILES[AgentRole.PLANNER].system_prompt
    assert system_prompts[1] == AGENT_PROFILES[AgentRole.RESEARCH].system_prompt
    assert system_prompts[2] == AGENT_PROFILES[AgentRole.BLOG].system_prompt
    assert system_prompts[3] == AGENT_PROFILES[AgentRole.ORCHESTRATOR].system_prompt


def test_single_completed_step_result_is_returned_verbatim(completion) -> None:
    completion.responses = ["I cannot produce JSON today", "the only answer"]
    orchestrator = TaskOrchestrator(completion=completion)

    result = orchestrator.process_task(_context("Research solar panels"))

    assert result.status == TaskStatus.COMPLETED
    assert result.result == "the only answer"
    assert len(result.steps) == 1
    assert result.steps[0].assigned_agent == AgentRole.RESEARCH
    assert result.total_tokens == 30
    assert len(completion.requests) == 2


def test_failed_step_is_retried_once(completion) -> None:
    completion.responses = [
        CompletionError("planner down"),
        CompletionError("rate limited"),
        "recovered answer",
    ]
    orchestrator = TaskOrchestrator(completion=completion)
    context = _context("Research tides")

    result = orchestrator.process_task(context)

    assert result.status == TaskStatus.COMPLETED
    assert result.result == "recovered answer"
    assert result.steps[0].attempts == 2
    assert context.current_attempt == 1
    assert result.total_tokens == 15


def test_task_fails_when_no_step_completes(failing_completion) -> None:
    orchestrator = TaskOrchestrator(completion=failing_completion)

    result = orchestrator.process_task(_context("Research tides"))

    assert result.status == TaskStatus.FAILED
    assert result.error == NO_COMPLETED_STEPS_ERROR
    assert result.result is None
    assert result.steps[0].status == StepStatus.FAILED
    assert result.steps[0].error == "backend unavailable"
    assert result.total_tokens == 0
    assert len(failing_completion.requests) == 3


def test_step_is_not_retried_when_attempts_are_used_up(failing_completion) -> None:
    orchestrator = TaskOrchestrator(completion=failing_completion)
    context = _context("Research tides", max_attempts=1)
    context.current_attempt = 1

    result = orchestrator.process_task(context)

    assert result.status == TaskStatus.FAILED
    assert result.steps[0].attempts == 1


def test_partial_failure_still_completes_with_remaining_results(completion) -> None:
    completion.responses = [
        _plan_json(("Find sources", "RESEARCH"), ("Check the code", "CODE")),
        CompletionError("timeout"),
        CompletionError("timeout again"),
        "code looks fine",
    ]
    orchestrator = TaskOrchestrator(completion=completion)

    result = orchestrator.process_task(_context("Review the project"))

    assert result.status == TaskStatus.COMPLETED
    assert [step.status for step in result.steps] == [StepStatus.FAILED, StepStatus.COMPLETED]
    assert result.result == "code looks fine"


def test_aggregation_failure_joins_step_results(completion) -> None:
    completion.responses = [
        _plan_json(("Part one", "RESEARCH"), ("Part two", "BLOG")),
        "alpha",
        "beta",
        CompletionError("aggregator unavailable"),
    ]
    orchestrator = TaskOrchestrator(completion=completion)

    result = orchestrator.process_task(_context("Write a report"))

    assert result.status == TaskStatus.COMPLETED
    assert result.result == "alpha\n\nbeta"


def test_submit_task_runs_in_background_and_stores_result(completion) -> None:
    orchestrator = TaskOrchestrator(completion=completion)

    task_id = orchestrator.submit_task("Research background threads", context={"lang": "en"})
    result = orchestrator.wait_for_result(task_id, timeout=5)

    assert task_id.startswith("task_")
    assert result is not None
    assert result.status == TaskStatus.COMPLETED
    assert orchestrator.get_status(task_id) is result
    assert '"lang": "en"' in completion.requests[0].user_prompt


def test_get_status_reports_progress_and_unknown_ids(completion) -> None:
    orchestrator = TaskOrchestrator(completion=completion)
    context = _context("Research progress")
    orchestrator.store.put_context(context)

    status = orchestrator.get_status(context.task_id)

    assert isinstance(status, TaskProgress)
    assert status.status == TaskStatus.PENDING
    assert orchestrator.get_status("task_0_unknown") is None
    assert orchestrator.wait_for_result("task_0_unknown", timeout=0.1) is None


def test_submit_task_rejects_empty_text(completion) -> None:
    orchestrator = TaskOrchestrator(completion=completion)

    with pytest.raises(JobInputError):
        orchestrator.submit_task("   ")


def test_task_ids_are_unique() -> None:
    ids = {new_task_id() for _ in range(100)}
    assert len(ids) == 100


def test_estimate_cost_usd() -> None:
    assert estimate_cost_usd(total_tokens=0, cost_per_1k_tokens=0.01) == 0
    assert estimate_cost_usd(total_tokens=2500, cost_per_1k_tokens=0.01) == pytest.approx(0.025)
