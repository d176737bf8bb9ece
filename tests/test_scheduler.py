import asyncio
from pathlib import Path
from typing import Any

import pytest

from workforce.backends.base import CompletionBackend, CompletionOptions
from workforce.capabilities import CapabilityRegistry, Operation
from workforce.models import (
    Capability,
    PlanStateError,
    PlanStatus,
    Task,
    TaskStatus,
    create_plan,
)
from workforce.operations import builtin_operations
from workforce.scheduler import Scheduler, stranded_tasks
from workforce.session import Session
from workforce.workers import WorkerError, WorkerFactory


class RecordingBackend(CompletionBackend):
    def __init__(self, reply: str = "done") -> None:
        self.reply = reply
        self.prompts: list[str] = []

    async def complete(
        self,
        messages: list[dict[str, str]],
        options: CompletionOptions | None = None,
    ) -> str:
        _ = options
        self.prompts.append(messages[-1]["content"])
        return self.reply


class Operations:
    """Async operation handlers that record how they were called."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0
        self.failures_left: dict[str, int] = {}

    async def work(self, params: dict[str, Any]) -> str:
        name = str(params["name"])
        self.calls.append(name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.01)
        finally:
            self.active -= 1
        if self.failures_left.get(name, 0) > 0:
            self.failures_left[name] -= 1
            raise WorkerError(f"{name} hiccup", transient=True)
        return f"{name} ok"

    async def broken(self, params: dict[str, Any]) -> str:
        self.calls.append(str(params["name"]))
        raise WorkerError(f"{params['name']} is broken")

    async def flaky(self, params: dict[str, Any]) -> str:
        self.calls.append(str(params["name"]))
        raise WorkerError(f"{params['name']} keeps timing out upstream", transient=True)

    async def hang(self, params: dict[str, Any]) -> str:
        self.calls.append(str(params["name"]))
        await asyncio.sleep(5)
        return "never"


def _registry(ops: Operations) -> CapabilityRegistry:
    registry = CapabilityRegistry()
    for capability in (Capability.WEB, Capability.FILE):
        prefix = capability.value
        registry.register_all(
            [
                Operation(f"{prefix}_work", capability, "Do work.", ops.work, ("name",)),
                Operation(f"{prefix}_broken", capability, "Always fail.", ops.broken, ("name",)),
                Operation(f"{prefix}_flaky", capability, "Fail transiently.", ops.flaky, ("name",)),
                Operation(f"{prefix}_hang", capability, "Never finish.", ops.hang, ("name",)),
            ]
        )
    return registry


def _task(
    task_id: str,
    *depends_on: str,
    kind: str = "work",
    capability: Capability = Capability.WEB,
) -> Task:
    return Task(
        id=task_id,
        description=f"Carry out step {task_id} of the job",
        capability=capability,
        depends_on=list(depends_on),
        operation=f"{capability.value}_{kind}",
        params={"name": task_id},
    )


def _session(*tasks: Task, execution: Any = "sequential") -> Session:
    plan = create_plan("Finish the weekly job", list(tasks), execution=execution)
    plan.status = PlanStatus.ACCEPTED
    session = Session(id="s1")
    session.active_plan = plan
    return session


def _scheduler(
    ops: Operations,
    backend: CompletionBackend | None = None,
    registry: CapabilityRegistry | None = None,
    **kwargs: Any,
) -> Scheduler:
    registry = registry or _registry(ops)
    kwargs.setdefault("retry_backoff_seconds", 0.0)
    return Scheduler(WorkerFactory(backend or RecordingBackend(), registry), registry, **kwargs)


def test_failing_root_strands_dependent_and_fails_plan() -> None:
    ops = Operations()
    session = _session(_task("t1", kind="flaky"), _task("t2", "t1"))

    run = asyncio.run(_scheduler(ops).execute(session))

    plan = session.active_plan
    assert plan is not None
    assert ops.calls == ["t1", "t1"]
    assert plan.task("t1").status is TaskStatus.FAILED
    assert plan.task("t1").failure_count == 2
    assert plan.task("t2").status is TaskStatus.PENDING
    assert plan.status is PlanStatus.FAILED
    assert run.outcome == "failed"
    assert run.failure_reason is not None
    assert run.failure_reason.startswith("Task t1 failed")
    assert "can no longer run: t2" in run.failure_reason


def test_transient_failure_succeeds_on_second_attempt() -> None:
    ops = Operations()
    ops.failures_left["t1"] = 1
    session = _session(_task("t1"), _task("t2", "t1"))

    run = asyncio.run(_scheduler(ops).execute(session))

    assert ops.calls == ["t1", "t1", "t2"]
    assert run.outcome == "completed"
    assert session.active_plan is not None
    assert session.active_plan.status is PlanStatus.COMPLETED
    assert session.active_plan.task("t1").failure_count == 1
    assert session.executed_steps == {"t1", "t2"}


def test_permanent_failure_is_not_retried() -> None:
    ops = Operations()
    session = _session(_task("t1", kind="broken"))

    asyncio.run(_scheduler(ops).execute(session))

    assert ops.calls == ["t1"]


def test_retry_ceiling_is_clamped_to_two() -> None:
    ops = Operations()
    session = _session(_task("t1", kind="flaky"))

    asyncio.run(_scheduler(ops, retry_ceiling=10).execute(session))

    assert ops.calls == ["t1", "t1"]


def test_independent_branch_completes_with_failures() -> None:
    ops = Operations()
    session = _session(_task("t1", kind="broken"), _task("t2"))

    run = asyncio.run(_scheduler(ops).execute(session))

    plan = session.active_plan
    assert plan is not None
    assert plan.task("t2").status is TaskStatus.COMPLETED
    assert plan.status is PlanStatus.COMPLETED
    assert run.outcome == "completed_with_failures"
    assert run.failure_reason == "Task t1 failed: t1 is broken"


def test_failure_budget_stops_dispatch() -> None:
    ops = Operations()
    session = _session(_task("t1", kind="broken"), _task("t2", kind="broken"), _task("t3"))

    run = asyncio.run(_scheduler(ops, failure_budget=0).execute(session))

    assert ops.calls == ["t1"]
    assert session.active_plan is not None
    assert session.active_plan.status is PlanStatus.FAILED
    assert run.outcome == "failed"
    assert "budget of 0 exceeded" in (run.failure_reason or "")


def test_parallel_batches_respect_max_parallel() -> None:
    ops = Operations()
    session = _session(_task("a"), _task("b"), _task("c"), execution="parallel")

    run = asyncio.run(_scheduler(ops, max_parallel=2).execute(session))

    assert run.outcome == "completed"
    assert ops.max_active == 2
    assert sorted(ops.calls) == ["a", "b", "c"]


def test_sequential_plans_run_one_task_at_a_time() -> None:
    ops = Operations()
    session = _session(_task("a"), _task("b"), _task("c"))

    asyncio.run(_scheduler(ops, max_parallel=3).execute(session))

    assert ops.max_active == 1
    assert ops.calls == ["a", "b", "c"]


def test_non_concurrent_capability_is_never_batched() -> None:
    ops = Operations()
    file_tasks = [_task(name, capability=Capability.FILE) for name in ("a", "b")]
    session = _session(*file_tasks, execution="parallel")
    session.approved_steps.update({"a", "b"})

    asyncio.run(_scheduler(ops, max_parallel=3).execute(session))

    assert ops.max_active == 1


def test_confirmation_step_pauses_until_allowed() -> None:
    ops = Operations()
    session = _session(_task("t1", capability=Capability.FILE), _task("t2", "t1"))
    scheduler = _scheduler(ops)

    first = asyncio.run(scheduler.execute(session))

    plan = session.active_plan
    assert plan is not None
    assert first.outcome == "awaiting_confirmation"
    assert plan.status is PlanStatus.ACCEPTED
    assert plan.task("t1").status is TaskStatus.BLOCKED
    assert session.pending_permission is not None
    assert session.pending_permission.task_id == "t1"
    assert ops.calls == []

    session.allow_step("t1")
    second = asyncio.run(scheduler.execute(session))

    assert second is first
    assert second.outcome == "completed"
    assert ops.calls == ["t1", "t2"]
    assert plan.status is PlanStatus.COMPLETED


def test_denied_step_fails_and_strands_dependents() -> None:
    ops = Operations()
    session = _session(_task("t1", capability=Capability.FILE), _task("t2", "t1"))
    scheduler = _scheduler(ops)
    asyncio.run(scheduler.execute(session))

    session.deny_step("t1")
    run = asyncio.run(scheduler.execute(session))

    assert ops.calls == []
    assert run.outcome == "failed"
    assert "Denied by user" in (run.failure_reason or "")


def test_only_one_permission_is_pending_at_a_time() -> None:
    ops = Operations()
    session = _session(
        _task("t1", capability=Capability.FILE),
        _task("t2", capability=Capability.FILE),
    )
    scheduler = _scheduler(ops)

    asyncio.run(scheduler.execute(session))

    plan = session.active_plan
    assert plan is not None
    assert plan.task("t1").status is TaskStatus.BLOCKED
    assert plan.task("t2").status is TaskStatus.WAITING

    session.allow_step("t1")
    run = asyncio.run(scheduler.execute(session))

    assert ops.calls == ["t1"]
    assert run.outcome == "awaiting_confirmation"
    assert plan.task("t2").status is TaskStatus.BLOCKED
    assert session.pending_permission is not None
    assert session.pending_permission.task_id == "t2"


def test_skipped_step_satisfies_its_dependents() -> None:
    ops = Operations()
    session = _session(_task("t1"), _task("t2", "t1"))
    session.skip_step("t1")

    run = asyncio.run(_scheduler(ops).execute(session))

    assert ops.calls == ["t2"]
    assert run.outcome == "completed"
    assert session.active_plan is not None
    assert session.active_plan.task("t1").status is TaskStatus.PENDING


def test_cancellation_discards_in_flight_results() -> None:
    ops = Operations()
    session = _session(_task("t1"), _task("t2", "t1"))
    plan = session.active_plan
    assert plan is not None

    async def _cancel_during_work(params: dict[str, Any]) -> str:
        ops.calls.append(str(params["name"]))
        session.cancel_plan()
        return "finished anyway"

    registry = _registry(ops)
    registry.register(
        Operation("web_cancel", Capability.WEB, "Cancel.", _cancel_during_work, ("name",))
    )
    plan.task("t1").operation = "web_cancel"

    run = asyncio.run(_scheduler(ops, registry=registry).execute(session))

    assert run.outcome == "cancelled"
    assert ops.calls == ["t1"]
    assert plan.status is PlanStatus.CANCELLED
    assert plan.task("t1").result is None
    assert session.active_plan is None


def test_worker_timeout_counts_as_transient_failure() -> None:
    ops = Operations()
    session = _session(_task("t1", kind="hang"))

    run = asyncio.run(_scheduler(ops, worker_timeout_seconds=0.01).execute(session))

    assert ops.calls == ["t1", "t1"]
    assert run.outcome == "completed_with_failures"
    assert "timed out" in (run.failure_reason or "")


def test_disabled_capability_fails_the_step_without_retry() -> None:
    ops = Operations()
    registry = _registry(ops)
    registry.set_enabled(Capability.WEB, False)
    session = _session(_task("t1"))

    run = asyncio.run(_scheduler(ops, registry=registry).execute(session))

    assert ops.calls == []
    assert session.active_plan is not None
    assert session.active_plan.task("t1").failure_count == 1
    assert "web capability is disabled" in (run.failure_reason or "")


def test_dependency_results_reach_downstream_workers() -> None:
    ops = Operations()
    backend = RecordingBackend("summary written")
    summarize = Task(
        id="t2",
        description="Summarize what step one produced",
        capability=Capability.WEB,
        depends_on=["t1"],
    )
    session = _session(_task("t1"), summarize)

    asyncio.run(_scheduler(ops, backend=backend).execute(session))

    assert len(backend.prompts) == 1
    assert '"t1": "t1 ok"' in backend.prompts[0]
    assert "Finish the weekly job" in backend.prompts[0]


def test_dependency_results_reach_downstream_conversation_steps() -> None:
    ops = Operations()
    backend = RecordingBackend("digest")
    summarize = Task(
        id="t2",
        description="Summarize the fetched page",
        capability=Capability.CONVERSATION,
        depends_on=["t1"],
    )
    session = _session(_task("t1"), summarize)

    run = asyncio.run(_scheduler(ops, backend=backend).execute(session))

    assert run.outcome == "completed"
    assert len(backend.prompts) == 1
    assert backend.prompts[0].startswith("Summarize the fetched page")
    assert '"t1": "t1 ok"' in backend.prompts[0]
    assert "Finish the weekly job" in backend.prompts[0]


def test_filesystem_error_fails_the_step_and_finishes_the_run(tmp_path: Path) -> None:
    (tmp_path / "notes.md").mkdir()
    registry = CapabilityRegistry()
    registry.register_all(builtin_operations(tmp_path))
    write = Task(
        id="1",
        description="Write the weekly notes file",
        capability=Capability.FILE,
        operation="write_file",
        params={"path": "notes.md", "content": "hello"},
    )
    session = _session(write)
    session.approved_steps.add("1")

    run = asyncio.run(_scheduler(Operations(), registry=registry).execute(session))

    plan = session.active_plan
    assert plan is not None
    task = plan.task("1")
    assert task.status is TaskStatus.FAILED
    assert task.failure_count == 1
    assert task.result is not None and task.result.error is not None
    assert task.result.error.startswith("Cannot write notes.md")
    assert run.finished_at is not None
    assert run.outcome != "running"


def test_execute_refuses_plans_that_are_not_runnable() -> None:
    ops = Operations()
    scheduler = _scheduler(ops)

    with pytest.raises(PlanStateError, match="no active plan"):
        asyncio.run(scheduler.execute(Session(id="empty")))

    proposed = _session(_task("t1"))
    assert proposed.active_plan is not None
    proposed.active_plan.status = PlanStatus.PROPOSED
    with pytest.raises(PlanStateError, match="Only an accepted plan"):
        asyncio.run(scheduler.execute(proposed))

    disabled = _session(_task("t1"))
    disabled.set_execution_mode("disabled")
    with pytest.raises(PlanStateError, match="Execution is disabled"):
        asyncio.run(scheduler.execute(disabled))
    assert ops.calls == []


def test_updates_are_reported_after_each_mutation() -> None:
    ops = Operations()
    updates: list[str] = []
    session = _session(_task("t1"), _task("t2", "t1"))
    scheduler = _scheduler(ops, on_update=lambda current: updates.append(current.id))

    asyncio.run(scheduler.execute(session))

    assert len(updates) >= 5
    assert set(updates) == {"s1"}


def test_stranded_tasks_follow_failures_transitively() -> None:
    plan = create_plan(
        "Finish the weekly job",
        [_task("a"), _task("b", "a"), _task("c", "b"), _task("d")],
    )
    plan.task("a").status = TaskStatus.FAILED

    assert [task.id for task in stranded_tasks(plan)] == ["b", "c"]
    assert stranded_tasks(plan, {"a"}) == []
