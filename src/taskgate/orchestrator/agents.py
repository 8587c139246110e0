"""Agent roles, their model profiles and keyword-based role selection."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from taskgate.config import DEFAULT_MODEL


class AgentRole(str, Enum):
    ORCHESTRATOR = "ORCHESTRATOR"
    PLANNER = "PLANNER"
    CODE = "CODE"
    RESEARCH = "RESEARCH"
    SEO = "SEO"
    BLOG = "BLOG"
    BUSINESS = "BUSINESS"
    RPA = "RPA"
    SECURITY = "SECURITY"


WORKER_ROLES: tuple[AgentRole, ...] = (
    AgentRole.CODE,
    AgentRole.RESEARCH,
    AgentRole.SEO,
    AgentRole.BLOG,
    AgentRole.BUSINESS,
    AgentRole.RPA,
    AgentRole.SECURITY,
)


@dataclass(slots=True)
class AgentProfile:
    """Prompt and sampling settings for one role."""

    role: AgentRole
    name: str
    system_prompt: str
    max_tokens: int
    temperature: float
    model: str = DEFAULT_MODEL


AGENT_PROFILES: dict[AgentRole, AgentProfile] = {
    AgentRole.ORCHESTRATOR: AgentProfile(
        role=AgentRole.ORCHESTRATOR,
        name="Orchestrator",
        system_prompt=(
            "You coordinate a team of specialist agents. Break incoming tasks into steps, "
            "route each step to the right specialist and combine their results into one "
            "consolidated answer. Be concise but thorough."
        ),
        max_tokens=4096,
        temperature=0.3,
    ),
    AgentRole.PLANNER: AgentProfile(
        role=AgentRole.PLANNER,
        name="Planner",
        system_prompt=(
            "You create execution plans. Split the task into atomic steps, note the "
            "dependencies between them, estimate effort and assign an agent to each step. "
            "Answer with structured JSON only."
        ),
        max_tokens=2048,
        temperature=0.2,
    ),
    AgentRole.CODE: AgentProfile(
        role=AgentRole.CODE,
        name="Code Agent",
        system_prompt=(
            "You are an expert software developer. Write clean, working code with error "
            "handling, debug and refactor existing code, and document what you produce."
        ),
        max_tokens=8192,
        temperature=0.2,
    ),
    AgentRole.RESEARCH: AgentProfile(
        role=AgentRole.RESEARCH,
        name="Research Agent",
        system_prompt=(
            "You research and synthesize information. Summarize complex topics, extract key "
            "facts, compare sources and cite them. Stay objective."
        ),
        max_tokens=4096,
        temperature=0.3,
    ),
    AgentRole.SEO: AgentProfile(
        role=AgentRole.SEO,
        name="SEO Agent",
        system_prompt=(
            "You are a search engine optimization specialist. Give actionable keyword, "
            "meta tag and content recommendations backed by data."
        ),
        max_tokens=2048,
        temperature=0.3,
    ),
    AgentRole.BLOG: AgentProfile(
        role=AgentRole.BLOG,
        name="Blog Writer",
        system_prompt=(
            "You write engaging blog content with compelling headlines and a readable "
            "structure. Write naturally and avoid filler."
        ),
        max_tokens=4096,
        temperature=0.7,
    ),
    AgentRole.BUSINESS: AgentProfile(
        role=AgentRole.BUSINESS,
        name="Business Agent",
        system_prompt=(
            "You advise on business strategy: market analysis, pricing and product "
            "decisions. Be data-driven and give actionable insights."
        ),
        max_tokens=4096,
        temperature=0.4,
    ),
    AgentRole.RPA: AgentProfile(
        role=AgentRole.RPA,
        name="RPA Agent",
        system_prompt=(
            "You design automation workflows, data extraction and integrations. Focus on "
            "reliability, efficiency and explicit error handling."
        ),
        max_tokens=4096,
        temperature=0.2,
    ),
    AgentRole.SECURITY: AgentProfile(
        role=AgentRole.SECURITY,
        name="Security Agent",
        system_prompt=(
            "You are a security reviewer. Audit systems, assess vulnerabilities and "
            "recommend mitigations. Be thorough and cautious."
        ),
        max_tokens=4096,
        temperature=0.1,
    ),
}

# Checked in order; the first role with a matching keyword wins.
_ROLE_KEYWORDS: tuple[tuple[AgentRole, tuple[str, ...]], ...] = (
    (AgentRole.CODE, ("code", "program", "function", "api")),
    (AgentRole.RESEARCH, ("research", "find", "search")),
    (AgentRole.SEO, ("seo", "keyword", "meta")),
    (AgentRole.BLOG, ("blog", "article", "write", "content")),
    (AgentRole.BUSINESS, ("business", "strategy", "market")),
    (AgentRole.RPA, ("automate", "scrape", "workflow")),
    (AgentRole.SECURITY, ("security", "audit", "vulnerability")),
)
DEFAULT_WORKER_ROLE = AgentRole.RESEARCH


def get_agent_profile(role: AgentRole) -> AgentProfile:
    return AGENT_PROFILES[role]


def select_role_for_task(task: str) -> AgentRole:
    """Pick a worker role by substring keyword match on the task text."""

    lowered = task.lower()
    for role, keywords in _ROLE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return role
    return DEFAULT_WORKER_ROLE


def parse_worker_role(value: object) -> AgentRole | None:
    """Return the worker role named by a planner response, or None if it is not one."""

    if not isinstance(value, str):
        return None
    try:
        role = AgentRole(value.strip().upper())
    except ValueError:
        return None
    return role if role in WORKER_ROLES else None
