"""Validation and best-effort repair of synthesized plans.

``validate`` collects every reason a plan is not safe to propose.
``normalize`` fixes what can be fixed mechanically and re-validates once;
each repair only fires on a defect that a valid plan cannot have, which
keeps it a fixed point on its own output.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from workforce.models import (
    Capability,
    Plan,
    PlanDependencyError,
    StepType,
    Task,
    TaskStatus,
    create_plan,
)

logger = logging.getLogger(__name__)

MIN_DESCRIPTION_CHARS = 10
DESCRIPTIVE_GOAL_CHARS = 20
META_STEP_MAX_WORDS = 4
META_STEP_MAX_CHARS = 30
GOAL_CONTEXT_WORDS = 5

PLACEHOLDER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\[.*\]"),
    re.compile(r"\{\{.*\}\}"),
    re.compile(r"<.*>"),
    re.compile(r"\b(TODO|FIXME|XXX|placeholder)\b", re.IGNORECASE),
    re.compile(r"\b(tbd|to be determined|unspecified)\b", re.IGNORECASE),
)
RESEARCH_REQUEST_PATTERN = re.compile(
    r"\b(research|investigate|look\s+up|find\s+out|search\s+for)\b", re.IGNORECASE
)
META_VERBS: tuple[str, ...] = (
    "determine",
    "figure out",
    "decide",
    "consider",
    "evaluate",
    "assess",
)

CLARIFICATION_DESCRIPTION = (
    "Clarify requirements: The request needs more specifics before creating an "
    "actionable plan. What exactly should be done with the target?"
)


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    reasons: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GateVerdict:
    plan: Plan | None
    normalized: bool = False
    reasons: list[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.plan is not None


def _fold(text: str) -> str:
    return " ".join(text.split()).casefold()


def has_placeholder(text: str) -> bool:
    return any(pattern.search(text) for pattern in PLACEHOLDER_PATTERNS)


def explicitly_requests_research(request: str) -> bool:
    return RESEARCH_REQUEST_PATTERN.search(request) is not None


def _goal_is_vague(goal: str, request: str) -> bool:
    return len(goal) < len(request.strip()) * 0.5 and len(goal) < DESCRIPTIVE_GOAL_CHARS


def _goal_restates_request(goal: str, request: str) -> bool:
    return bool(goal) and _fold(goal) == _fold(request)


def _is_meta_step(description: str) -> bool:
    text = description.strip().lower()
    return (
        text.startswith(META_VERBS)
        and len(text.split()) <= META_STEP_MAX_WORDS
        and len(text) < META_STEP_MAX_CHARS
    )


def _is_lone_unjustified_research(plan: Plan, request: str) -> bool:
    return (
        len(plan.tasks) == 1
        and plan.tasks[0].type is StepType.RESEARCH
        and not explicitly_requests_research(request)
    )


def validate(plan: Plan, original_request: str) -> ValidationResult:
    reasons: list[str] = []
    goal = plan.goal.strip() if isinstance(plan.goal, str) else ""

    if not goal:
        reasons.append("goal is missing")
    else:
        if _goal_restates_request(goal, original_request):
            reasons.append("goal restates the request verbatim")
        if _goal_is_vague(goal, original_request):
            reasons.append("goal is too vague")
        if has_placeholder(goal):
            reasons.append("goal contains placeholder text")

    if not plan.tasks:
        reasons.append("plan has no steps")
    elif _is_lone_unjustified_research(plan, original_request):
        reasons.append("single research step without an explicit research request")

    for task in plan.tasks:
        description = task.description.strip()
        if len(description) < MIN_DESCRIPTION_CHARS:
            reasons.append(f"step {task.id} description is too short")
        elif _is_meta_step(description):
            reasons.append(f"step {task.id} is a vague meta step")

    return ValidationResult(valid=not reasons, reasons=reasons)


def _repair_goal(goal: str, request: str) -> str:
    request = " ".join(request.split())
    if not goal:
        return f"Carry out the request: {request}"
    if _goal_restates_request(goal, request):
        return f"Carry out the request: {goal}"
    if _goal_is_vague(goal, request):
        context = " ".join(request.split()[:GOAL_CONTEXT_WORDS])
        return f"{context}: {goal}"
    return goal


def _salvage_description(task: Task) -> str:
    description = task.description.strip()
    if description:
        return description
    command = task.params.get("command")
    if task.type is StepType.OS_ACTION and command:
        return f"Run command: {command}"
    path = task.params.get("path")
    if task.type is StepType.WRITE_FILE and path:
        return f"Write content to {path}"
    if task.operation:
        return f"Run the {task.operation} operation"
    return description


def _clarification_task() -> Task:
    return Task(
        id="1",
        description=CLARIFICATION_DESCRIPTION,
        capability=Capability.CONVERSATION,
        type=StepType.UNKNOWN,
        params={"clarification_needed": True},
    )


def normalize(plan: Plan, original_request: str) -> Plan | None:
    """Return a repaired copy of ``plan``, or None when it still fails validation."""
    goal = _repair_goal(plan.goal.strip() if isinstance(plan.goal, str) else "", original_request)

    if _is_lone_unjustified_research(plan, original_request):
        tasks = [_clarification_task()]
    else:
        tasks = [
            Task(
                id=task.id,
                description=_salvage_description(task),
                capability=task.capability,
                type=task.type,
                status=TaskStatus.PENDING,
                depends_on=list(task.depends_on),
                params=dict(task.params),
                operation=task.operation,
                priority=task.priority,
            )
            for task in plan.tasks
        ]

    # Deduplicate by normalized description; references follow the kept step.
    alias: dict[str, str] = {}
    unique: list[Task] = []
    seen: dict[str, str] = {}
    for task in tasks:
        key = _fold(task.description)
        if key in seen:
            alias[task.id] = seen[key]
            continue
        seen[key] = task.id
        alias[task.id] = task.id
        unique.append(task)

    renumber = {task.id: str(index) for index, task in enumerate(unique, start=1)}
    for task in unique:
        remapped: list[str] = []
        for dependency in task.depends_on:
            target = renumber[alias.get(dependency, dependency)]
            if target != renumber[task.id] and target not in remapped:
                remapped.append(target)
        task.depends_on = remapped
        task.id = renumber[task.id]

    try:
        candidate = create_plan(
            goal,
            unique,
            title=plan.title or goal[:80],
            execution=plan.execution,
            plan_id=plan.id,
            normalized=True,
        )
    except PlanDependencyError as exc:
        logger.info("plan %s rejected after merging duplicate steps: %s", plan.id, exc)
        return None
    candidate.created_at = plan.created_at
    candidate.updated_at = plan.updated_at

    result = validate(candidate, original_request)
    if not result.valid:
        logger.info("plan %s rejected after normalization: %s", plan.id, result.reasons)
        return None
    return candidate


def review(plan: Plan, original_request: str) -> GateVerdict:
    """Validate, then normalize once if needed."""
    first = validate(plan, original_request)
    if first.valid:
        return GateVerdict(plan=plan)
    logger.info("plan %s failed validation: %s", plan.id, first.reasons)
    repaired = normalize(plan, original_request)
    if repaired is None:
        return GateVerdict(plan=None, reasons=first.reasons)
    return GateVerdict(plan=repaired, normalized=True, reasons=first.reasons)
