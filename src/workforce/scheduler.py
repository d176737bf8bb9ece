"""Dependency-driven execution of an accepted plan.

The scheduler dispatches ready tasks in batches, waits for the whole batch,
then recomputes readiness. Confirmation-requiring steps park the branch
until the session records an allow or deny; transient worker failures are
re-queued up to the retry ceiling; permanent failures degrade the plan
without aborting independent branches.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from workforce.capabilities import CapabilityError, CapabilityRegistry
from workforce.models import (
    Plan,
    PlanRun,
    PlanStateError,
    PlanStatus,
    Task,
    TaskStatus,
    ready_tasks,
    utcnow_iso,
)
from workforce.session import PendingPermission, Session
from workforce.workers.base import WorkerResult
from workforce.workers.factory import WorkerFactory

logger = logging.getLogger(__name__)

MAX_RETRY_CEILING = 2

SessionCallback = Callable[[Session], None]

OUTCOME_COMPLETED = "completed"
OUTCOME_COMPLETED_WITH_FAILURES = "completed_with_failures"
OUTCOME_FAILED = "failed"
OUTCOME_AWAITING_CONFIRMATION = "awaiting_confirmation"
OUTCOME_CANCELLED = "cancelled"


def stranded_tasks(plan: Plan, skipped: set[str] | frozenset[str] = frozenset()) -> list[Task]:
    """Unfinished tasks that can never become ready because an upstream task failed."""
    by_id = {task.id: task for task in plan.tasks}
    memo: dict[str, bool] = {}

    def _blocked_by_failure(task_id: str) -> bool:
        if task_id in memo:
            return memo[task_id]
        memo[task_id] = False
        task = by_id[task_id]
        result = False
        for dependency in task.depends_on:
            if dependency in skipped:
                continue
            upstream = by_id[dependency]
            if upstream.status is TaskStatus.FAILED or _blocked_by_failure(dependency):
                result = True
                break
        memo[task_id] = result
        return result

    return [
        task
        for task in plan.tasks
        if task.id not in skipped
        and task.status in {TaskStatus.PENDING, TaskStatus.WAITING, TaskStatus.BLOCKED}
        and _blocked_by_failure(task.id)
    ]


class Scheduler:
    def __init__(
        self,
        factory: WorkerFactory,
        registry: CapabilityRegistry,
        *,
        max_parallel: int = 3,
        retry_ceiling: int = MAX_RETRY_CEILING,
        retry_backoff_seconds: float = 0.5,
        failure_budget: int = 3,
        worker_timeout_seconds: float = 30.0,
        on_update: SessionCallback | None = None,
    ) -> None:
        self.factory = factory
        self.registry = registry
        self.max_parallel = max(1, int(max_parallel))
        self.retry_ceiling = min(MAX_RETRY_CEILING, max(1, int(retry_ceiling)))
        self.retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))
        self.failure_budget = max(0, int(failure_budget))
        self.worker_timeout_seconds = max(0.001, float(worker_timeout_seconds))
        self.on_update = on_update

    def _notify(self, session: Session) -> None:
        session.touch()
        if self.on_update is not None:
            self.on_update(session)

    async def execute(self, session: Session) -> PlanRun:
        """Run the session's accepted plan until it finishes, fails, or needs confirmation."""
        async with session.lock:
            plan = session.active_plan
            if plan is None:
                raise PlanStateError("There is no active plan to execute.")
            if session.execution_mode == "disabled":
                raise PlanStateError(
                    "Execution is disabled. Enable it with 'set execution mode manual'."
                )
            if plan.status is not PlanStatus.ACCEPTED:
                raise PlanStateError(f"Only an accepted plan can run (plan is {plan.status}).")

            for task in plan.tasks:
                if task.status is TaskStatus.WAITING:
                    task.status = TaskStatus.PENDING

            run = session.last_run
            if run is None or run.plan_id != plan.id or run.finished_at is None:
                run = PlanRun.start(plan)
            elif run.outcome == OUTCOME_AWAITING_CONFIRMATION:
                run.outcome = "running"
                run.finished_at = None
                run.failure_reason = None
            else:
                run = PlanRun.start(plan)
            session.last_run = run
            logger.info(
                "executing plan %s (%s) for session %s", plan.id, plan.execution, session.id
            )
            self._notify(session)

            await self._drive(session, plan, run)
            return run

    def _gate(self, session: Session, ready: list[Task]) -> list[Task]:
        """Drop tasks that need confirmation; the first one becomes the pending permission."""
        dispatchable: list[Task] = []
        for task in ready:
            if (
                session.execution_mode != "manual"
                or task.id in session.approved_steps
                or not self.registry.requires_confirmation(task)
            ):
                dispatchable.append(task)
                continue
            if session.pending_permission is None:
                task.status = TaskStatus.BLOCKED
                session.pending_permission = PendingPermission(
                    task_id=task.id,
                    capability=task.capability,
                    operation=task.operation,
                )
                logger.info("step %s is waiting for permission", task.id)
            else:
                task.status = TaskStatus.WAITING
        return dispatchable

    def _select_batch(self, plan: Plan, ready: list[Task]) -> list[Task]:
        first = ready[0]
        if plan.execution != "parallel" or self.max_parallel <= 1:
            return [first]
        if not self.registry.allows_concurrency(first.capability):
            return [first]
        batch = [task for task in ready if self.registry.allows_concurrency(task.capability)]
        return batch[: self.max_parallel]

    @staticmethod
    def _failed_count(plan: Plan) -> int:
        return sum(1 for task in plan.tasks if task.status is TaskStatus.FAILED)

    def _budget_exceeded(self, plan: Plan) -> bool:
        return self._failed_count(plan) > self.failure_budget

    async def _drive(self, session: Session, plan: Plan, run: PlanRun) -> None:
        while True:
            if plan.status is PlanStatus.CANCELLED:
                break
            if self._budget_exceeded(plan):
                break
            ready = self._gate(session, ready_tasks(plan, session.skipped_steps))
            if not ready:
                break

            batch = self._select_batch(plan, ready)
            for task in batch:
                task.status = TaskStatus.RUNNING
                task.started_at = utcnow_iso()
                task.finished_at = None
                run.record(task)
            self._notify(session)
            logger.debug("dispatching batch %s", [task.id for task in batch])

            results = await asyncio.gather(*(self._dispatch(plan, task) for task in batch))

            if plan.status is PlanStatus.CANCELLED:
                logger.info("plan %s cancelled; discarding %d result(s)", plan.id, len(results))
                break
            for task, result in zip(batch, results, strict=True):
                self._apply(session, task, result)
                run.record(task)
            self._notify(session)

        self._finalize(session, plan, run)

    def _apply(self, session: Session, task: Task, result: WorkerResult) -> None:
        if result.success:
            task.status = TaskStatus.COMPLETED
            task.result = result.to_task_result()
            task.finished_at = utcnow_iso()
            session.executed_steps.add(task.id)
            logger.info("step %s completed", task.id)
            return

        task.failure_count += 1
        task.result = result.to_task_result()
        if result.transient and task.failure_count < self.retry_ceiling:
            task.status = TaskStatus.PENDING
            task.finished_at = None
            logger.warning(
                "step %s failed (attempt %d/%d), retrying: %s",
                task.id,
                task.failure_count,
                self.retry_ceiling,
                result.error,
            )
            return
        task.status = TaskStatus.FAILED
        task.finished_at = utcnow_iso()
        logger.warning("step %s failed permanently: %s", task.id, result.error)

    def _worker_context(self, plan: Plan, task: Task) -> dict[str, Any]:
        dependency_results = {}
        for dependency in task.depends_on:
            upstream = plan.task(dependency)
            if upstream.status is TaskStatus.COMPLETED and upstream.result is not None:
                dependency_results[dependency] = upstream.result.content
        return {
            "goal": plan.goal,
            "step_type": task.type.value,
            "operation": task.operation,
            "params": dict(task.params),
            "dependency_results": dependency_results,
        }

    async def _dispatch(self, plan: Plan, task: Task) -> WorkerResult:
        if task.failure_count and self.retry_backoff_seconds > 0:
            await asyncio.sleep(self.retry_backoff_seconds * task.failure_count)
        try:
            worker = self.factory.spawn(
                task.capability, task, context=self._worker_context(plan, task)
            )
        except CapabilityError as exc:
            return WorkerResult(success=False, error=str(exc), transient=False)
        try:
            return await asyncio.wait_for(worker.run(), timeout=self.worker_timeout_seconds)
        except TimeoutError:
            return WorkerResult(
                success=False,
                error=f"Worker timed out after {self.worker_timeout_seconds:g}s.",
                transient=True,
            )

    @staticmethod
    def _describe_failures(plan: Plan) -> str:
        parts = []
        for task in plan.tasks:
            if task.status is TaskStatus.FAILED:
                error = task.result.error if task.result and task.result.error else "unknown error"
                parts.append(f"Task {task.id} failed: {error}")
        return "; ".join(parts)

    def _finalize(self, session: Session, plan: Plan, run: PlanRun) -> None:
        if plan.status is PlanStatus.CANCELLED:
            run.finish(OUTCOME_CANCELLED, "Plan was cancelled.")
            logger.info("plan %s run cancelled", plan.id)
            self._notify(session)
            return

        if self._budget_exceeded(plan):
            plan.status = PlanStatus.FAILED
            plan.touch()
            reason = (
                f"Step failure budget of {self.failure_budget} exceeded. "
                f"{self._describe_failures(plan)}"
            )
            run.finish(OUTCOME_FAILED, reason)
            logger.warning("plan %s failed: %s", plan.id, reason)
            self._notify(session)
            return

        if any(task.status in {TaskStatus.BLOCKED, TaskStatus.WAITING} for task in plan.tasks):
            pending = session.pending_permission
            reason = f"Step {pending.task_id} needs permission." if pending else None
            run.finish(OUTCOME_AWAITING_CONFIRMATION, reason)
            logger.info("plan %s paused: %s", plan.id, reason)
            self._notify(session)
            return

        stranded = stranded_tasks(plan, set(session.skipped_steps))
        failures = self._describe_failures(plan)
        if stranded:
            plan.status = PlanStatus.FAILED
            reason = (
                f"{failures}; tasks that can no longer run: "
                + ", ".join(task.id for task in stranded)
            )
            run.finish(OUTCOME_FAILED, reason)
            logger.warning("plan %s failed: %s", plan.id, reason)
        elif failures:
            plan.status = PlanStatus.COMPLETED
            run.finish(OUTCOME_COMPLETED_WITH_FAILURES, failures)
            logger.info("plan %s completed with failures: %s", plan.id, failures)
        else:
            plan.status = PlanStatus.COMPLETED
            run.finish(OUTCOME_COMPLETED)
            logger.info("plan %s completed", plan.id)
        plan.touch()
        self._notify(session)
