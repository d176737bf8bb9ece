from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal
from uuid import uuid4

ExecutionStrategy = Literal["sequential", "parallel"]


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class Capability(StrEnum):
    CONVERSATION = "conversation"
    FILE = "file"
    SHELL = "shell"
    WEB = "web"
    CODE = "code"

    @classmethod
    def coerce(cls, value: object) -> Capability | None:
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class StepType(StrEnum):
    READ_FILE = "read_file"
    WRITE_FILE = "write_file"
    EDIT_FILE = "edit_file"
    ORGANIZE_FILES = "organize_files"
    ANALYZE_CONTENT = "analyze_content"
    RESEARCH = "research"
    OS_ACTION = "os_action"
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value: object) -> StepType:
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


STEP_TYPE_CAPABILITY: dict[StepType, Capability] = {
    StepType.READ_FILE: Capability.FILE,
    StepType.WRITE_FILE: Capability.FILE,
    StepType.EDIT_FILE: Capability.FILE,
    StepType.ORGANIZE_FILES: Capability.FILE,
    StepType.ANALYZE_CONTENT: Capability.CONVERSATION,
    StepType.RESEARCH: Capability.WEB,
    StepType.OS_ACTION: Capability.SHELL,
    StepType.UNKNOWN: Capability.CONVERSATION,
}


class TaskStatus(StrEnum):
    PENDING = "pending"
    WAITING = "waiting"
    RUNNING = "running"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


class PlanStatus(StrEnum):
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    LOCKED = "locked"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PLAN_STATUSES = frozenset(
    {PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.CANCELLED}
)


class PlanError(RuntimeError):
    """Base class for plan construction and state errors."""


class PlanDependencyError(PlanError):
    """Raised when a plan's dependency graph references unknown or duplicate tasks."""


class CircularDependencyError(PlanDependencyError):
    """Raised when a plan's dependency graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__("Circular dependency detected: " + " -> ".join(self.cycle))


class PlanStateError(PlanError):
    """Raised when a transition is not allowed from the plan's current state."""


@dataclass(slots=True)
class Message:
    role: str
    content: str

    def to_chat(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class TaskResult:
    success: bool
    content: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "content": self.content, "error": self.error}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskResult:
        return cls(
            success=bool(payload.get("success")),
            content=str(payload.get("content") or ""),
            error=payload.get("error"),
        )


@dataclass(slots=True)
class Task:
    id: str
    description: str
    capability: Capability = Capability.CONVERSATION
    type: StepType = StepType.UNKNOWN
    status: TaskStatus = TaskStatus.PENDING
    depends_on: list[str] = field(default_factory=list)
    params: dict[str, Any] = field(default_factory=dict)
    operation: str | None = None
    priority: int = 0
    result: TaskResult | None = None
    failure_count: int = 0
    started_at: str | None = None
    finished_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "capability": self.capability.value,
            "type": self.type.value,
            "status": self.status.value,
            "depends_on": list(self.depends_on),
            "params": dict(self.params),
            "operation": self.operation,
            "priority": self.priority,
            "result": self.result.to_dict() if self.result else None,
            "failure_count": self.failure_count,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        step_type = StepType.coerce(payload.get("type"))
        capability = Capability.coerce(payload.get("capability"))
        result = payload.get("result")
        return cls(
            id=str(payload["id"]),
            description=str(payload.get("description") or ""),
            capability=capability or STEP_TYPE_CAPABILITY[step_type],
            type=step_type,
            status=TaskStatus(payload.get("status") or TaskStatus.PENDING),
            depends_on=[str(item) for item in payload.get("depends_on") or []],
            params=dict(payload.get("params") or {}),
            operation=payload.get("operation"),
            priority=int(payload.get("priority") or 0),
            result=TaskResult.from_dict(result) if isinstance(result, dict) else None,
            failure_count=int(payload.get("failure_count") or 0),
            started_at=payload.get("started_at"),
            finished_at=payload.get("finished_at"),
        )


@dataclass(slots=True)
class Plan:
    id: str
    goal: str
    title: str
    tasks: list[Task]
    status: PlanStatus = PlanStatus.PROPOSED
    locked: bool = False
    execution: ExecutionStrategy = "sequential"
    normalized: bool = False
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def dependencies(self) -> dict[str, set[str]]:
        return build_graph(self.tasks)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PLAN_STATUSES

    def task(self, task_id: str) -> Task:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise PlanError(f"Unknown step '{task_id}' in plan {self.id}.")

    def task_status_map(self) -> dict[str, str]:
        return {task.id: task.status.value for task in self.tasks}

    def touch(self) -> None:
        self.updated_at = utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "title": self.title,
            "status": self.status.value,
            "locked": self.locked,
            "execution": self.execution,
            "normalized": self.normalized,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "tasks": [task.to_dict() for task in self.tasks],
            "dependencies": {
                task_id: sorted(deps) for task_id, deps in self.dependencies.items()
            },
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Plan:
        tasks = [Task.from_dict(item) for item in payload.get("tasks") or []]
        validate_dependencies(tasks)
        status = PlanStatus(payload.get("status") or PlanStatus.PROPOSED)
        locked = bool(payload.get("locked"))
        # Older snapshots stored the lock as a status.
        if status is PlanStatus.LOCKED:
            status = PlanStatus.PROPOSED
            locked = True
        execution = "parallel" if payload.get("execution") == "parallel" else "sequential"
        return cls(
            id=str(payload.get("id") or new_plan_id()),
            goal=str(payload.get("goal") or ""),
            title=str(payload.get("title") or ""),
            tasks=tasks,
            status=status,
            locked=locked,
            execution=execution,
            normalized=bool(payload.get("normalized")),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )


def new_plan_id() -> str:
    return f"plan-{uuid4().hex[:8]}"


def build_graph(tasks: Iterable[Task]) -> dict[str, set[str]]:
    """Map each task id to the ids it depends on, as declared."""
    return {task.id: set(task.depends_on) for task in tasks}


def validate_dependencies(tasks: Sequence[Task]) -> None:
    """Reject duplicate ids, unknown references, and cycles (self-dependency included)."""
    seen: set[str] = set()
    for task in tasks:
        if task.id in seen:
            raise PlanDependencyError(f"Duplicate step id '{task.id}'.")
        seen.add(task.id)

    graph = build_graph(tasks)
    for task in tasks:
        for dependency in task.depends_on:
            if dependency not in graph:
                raise PlanDependencyError(
                    f"Step '{task.id}' depends on unknown step '{dependency}'."
                )

    visited: set[str] = set()
    stack: list[str] = []
    on_stack: set[str] = set()

    def _visit(task_id: str) -> None:
        visited.add(task_id)
        stack.append(task_id)
        on_stack.add(task_id)
        for dependency in sorted(graph[task_id]):
            if dependency in on_stack:
                start = stack.index(dependency)
                raise CircularDependencyError([*stack[start:], dependency])
            if dependency not in visited:
                _visit(dependency)
        stack.pop()
        on_stack.discard(task_id)

    for task in tasks:
        if task.id not in visited:
            _visit(task.id)


def create_plan(
    goal: str,
    tasks: list[Task],
    *,
    title: str | None = None,
    execution: ExecutionStrategy = "sequential",
    plan_id: str | None = None,
    normalized: bool = False,
) -> Plan:
    """Build a proposed plan; dependency errors abort creation entirely."""
    validate_dependencies(tasks)
    return Plan(
        id=plan_id or new_plan_id(),
        goal=goal,
        title=title if title is not None else goal[:80],
        tasks=tasks,
        execution=execution,
        normalized=normalized,
    )


def ready_tasks(plan: Plan, skipped: Iterable[str] = ()) -> list[Task]:
    """Pending tasks whose dependencies are all completed (or skipped), highest priority first."""
    skipped_ids = set(skipped)
    by_id = {task.id: task for task in plan.tasks}
    ready: list[Task] = []
    for task in plan.tasks:
        if task.status is not TaskStatus.PENDING or task.id in skipped_ids:
            continue
        if all(
            dep in skipped_ids or by_id[dep].status is TaskStatus.COMPLETED
            for dep in task.depends_on
        ):
            ready.append(task)
    return sorted(ready, key=lambda item: -item.priority)


@dataclass(slots=True)
class TaskRunRecord:
    status: str
    started_at: str | None = None
    finished_at: str | None = None
    output: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "output": self.output,
            "error": self.error,
        }


@dataclass(slots=True)
class PlanRun:
    """Per-execution record for observability; the Plan remains the source of truth."""

    plan_id: str
    started_at: str = field(default_factory=utcnow_iso)
    per_task_status: dict[str, TaskRunRecord] = field(default_factory=dict)
    outcome: str = "running"
    finished_at: str | None = None
    failure_reason: str | None = None

    @classmethod
    def start(cls, plan: Plan) -> PlanRun:
        return cls(
            plan_id=plan.id,
            per_task_status={
                task.id: TaskRunRecord(status=task.status.value) for task in plan.tasks
            },
        )

    def record(self, task: Task) -> None:
        record = self.per_task_status.setdefault(task.id, TaskRunRecord(status=task.status.value))
        record.status = task.status.value
        record.started_at = task.started_at
        record.finished_at = task.finished_at
        if task.result is not None:
            record.output = task.result.content if task.result.success else None
            record.error = task.result.error
        else:
            record.output = None
            record.error = None

    def finish(self, outcome: str, failure_reason: str | None = None) -> None:
        self.outcome = outcome
        self.failure_reason = failure_reason
        self.finished_at = utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "outcome": self.outcome,
            "failure_reason": self.failure_reason,
            "per_task_status": {
                task_id: record.to_dict() for task_id, record in self.per_task_status.items()
            },
        }
