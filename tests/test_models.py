import pytest

from workforce.models import (
    Capability,
    CircularDependencyError,
    Plan,
    PlanDependencyError,
    PlanError,
    PlanRun,
    PlanStatus,
    StepType,
    Task,
    TaskResult,
    TaskStatus,
    build_graph,
    create_plan,
    ready_tasks,
    validate_dependencies,
)


def _task(task_id: str, *depends_on: str, **kwargs: object) -> Task:
    return Task(
        id=task_id,
        description=f"Do the work for step {task_id}",
        depends_on=list(depends_on),
        **kwargs,  # type: ignore[arg-type]
    )


def test_build_graph_echoes_declared_dependencies() -> None:
    graph = build_graph([_task("1"), _task("2", "1"), _task("3", "1", "2")])

    assert graph == {"1": set(), "2": {"1"}, "3": {"1", "2"}}


def test_two_task_cycle_rejects_plan_creation() -> None:
    tasks = [_task("t1", "t2"), _task("t2", "t1")]

    with pytest.raises(CircularDependencyError, match="Circular dependency detected") as info:
        create_plan("Sort the weekly notes into folders", tasks)

    assert info.value.cycle[0] == info.value.cycle[-1]
    assert set(info.value.cycle) == {"t1", "t2"}


def test_self_dependency_counts_as_cycle() -> None:
    with pytest.raises(CircularDependencyError):
        validate_dependencies([_task("1", "1")])


def test_unknown_dependency_is_a_hard_error() -> None:
    with pytest.raises(PlanDependencyError, match="unknown step 'missing'"):
        create_plan("Archive old drafts", [_task("1", "missing")])


def test_duplicate_ids_are_rejected() -> None:
    with pytest.raises(PlanDependencyError, match="Duplicate step id"):
        validate_dependencies([_task("1"), _task("1")])


def test_longer_cycle_is_detected_through_intermediate_steps() -> None:
    tasks = [_task("a", "c"), _task("b", "a"), _task("c", "b"), _task("d")]

    with pytest.raises(CircularDependencyError) as info:
        validate_dependencies(tasks)

    assert set(info.value.cycle) == {"a", "b", "c"}


def test_ready_tasks_requires_completed_dependencies() -> None:
    plan = create_plan("Prepare the report", [_task("1"), _task("2", "1"), _task("3")])

    assert [task.id for task in ready_tasks(plan)] == ["1", "3"]

    plan.task("1").status = TaskStatus.COMPLETED
    assert [task.id for task in ready_tasks(plan)] == ["2", "3"]


def test_ready_tasks_orders_by_priority_and_honours_skips() -> None:
    plan = create_plan(
        "Prepare the report",
        [_task("1"), _task("2", priority=5), _task("3", "1")],
    )

    assert [task.id for task in ready_tasks(plan)] == ["2", "1"]
    assert [task.id for task in ready_tasks(plan, skipped={"1"})] == ["2", "3"]


def test_failed_dependency_never_becomes_ready() -> None:
    plan = create_plan("Prepare the report", [_task("1"), _task("2", "1")])
    plan.task("1").status = TaskStatus.FAILED

    assert ready_tasks(plan) == []


def test_plan_roundtrip_preserves_tasks_and_results() -> None:
    plan = create_plan(
        "Rename today.md to week1.md in the workspace",
        [
            Task(
                id="1",
                description="Rename today.md to week1.md",
                capability=Capability.FILE,
                type=StepType.ORGANIZE_FILES,
                operation="rename_file",
                params={"source": "today.md", "destination": "week1.md"},
                result=TaskResult(success=True, content="renamed"),
                status=TaskStatus.COMPLETED,
            )
        ],
        execution="parallel",
    )
    plan.locked = True

    loaded = Plan.from_dict(plan.to_dict())

    assert loaded.id == plan.id
    assert loaded.execution == "parallel"
    assert loaded.locked is True
    assert loaded.tasks[0].operation == "rename_file"
    assert loaded.tasks[0].result == TaskResult(success=True, content="renamed")
    assert plan.to_dict()["dependencies"] == {"1": []}


def test_legacy_locked_status_loads_as_locked_modifier() -> None:
    payload = create_plan("Tidy the notes folder", [_task("1")]).to_dict()
    payload["status"] = "locked"

    loaded = Plan.from_dict(payload)

    assert loaded.status is PlanStatus.PROPOSED
    assert loaded.locked is True


def test_task_from_dict_coerces_unknown_type_and_derives_capability() -> None:
    task = Task.from_dict({"id": 3, "description": "Run the test suite", "type": "os_action"})
    odd = Task.from_dict({"id": "4", "description": "Something else", "type": "teleport"})

    assert task.id == "3"
    assert task.capability is Capability.SHELL
    assert odd.type is StepType.UNKNOWN
    assert odd.capability is Capability.CONVERSATION


def test_unknown_task_lookup_raises() -> None:
    plan = create_plan("Tidy the notes folder", [_task("1")])

    with pytest.raises(PlanError, match="Unknown step"):
        plan.task("9")


def test_plan_run_records_task_progress() -> None:
    plan = create_plan("Prepare the report", [_task("1"), _task("2", "1")])
    run = PlanRun.start(plan)
    task = plan.task("1")
    task.status = TaskStatus.FAILED
    task.result = TaskResult(success=False, error="boom")

    run.record(task)
    run.finish("failed", "Task 1 failed: boom")

    payload = run.to_dict()
    assert payload["outcome"] == "failed"
    assert payload["finished_at"] is not None
    assert payload["per_task_status"]["1"]["status"] == "failed"
    assert payload["per_task_status"]["1"]["error"] == "boom"
    assert payload["per_task_status"]["2"]["status"] == "pending"
