from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from workforce.config import EXECUTION_MODES, ExecutionMode
from workforce.models import (
    Capability,
    Message,
    Plan,
    PlanRun,
    PlanStateError,
    PlanStatus,
    TaskResult,
    TaskStatus,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20


@dataclass(slots=True)
class PendingPermission:
    task_id: str
    capability: Capability
    operation: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "capability": self.capability.value,
            "operation": self.operation,
        }


@dataclass(slots=True)
class Session:
    """State for one conversation. Plan mutation is serialized through ``lock``."""

    id: str
    history: deque[Message] = field(default_factory=lambda: deque(maxlen=DEFAULT_HISTORY_LIMIT))
    active_plan: Plan | None = None
    executed_steps: set[str] = field(default_factory=set)
    skipped_steps: set[str] = field(default_factory=set)
    approved_steps: set[str] = field(default_factory=set)
    pending_permission: PendingPermission | None = None
    execution_mode: ExecutionMode = "manual"
    last_run: PlanRun | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def touch(self) -> None:
        self.updated_at = utcnow_iso()

    def add_message(self, role: str, content: str) -> None:
        self.history.append(Message(role=role, content=content))
        self.touch()

    def messages(self, limit: int | None = None) -> list[Message]:
        items = list(self.history)
        if limit is not None:
            return items[-limit:] if limit > 0 else []
        return items

    def _require_plan(self) -> Plan:
        if self.active_plan is None:
            raise PlanStateError("There is no active plan.")
        return self.active_plan

    def _reset_step_bookkeeping(self) -> None:
        self.executed_steps.clear()
        self.skipped_steps.clear()
        self.approved_steps.clear()
        self.pending_permission = None

    def set_plan(self, plan: Plan) -> None:
        current = self.active_plan
        if current is not None and current.status is PlanStatus.ACCEPTED and self.lock.locked():
            raise PlanStateError(
                "The current plan is running; cancel it before proposing another."
            )
        self.active_plan = plan
        self.last_run = None
        self._reset_step_bookkeeping()
        self.touch()
        logger.info("session %s proposed plan %s", self.id, plan.id)

    def clear_plan(self) -> Plan | None:
        plan = self.active_plan
        self.active_plan = None
        self._reset_step_bookkeeping()
        self.touch()
        return plan

    def clear_completed_plan(self) -> bool:
        """Drop a completed plan so it cannot capture the next, unrelated turn."""
        if self.active_plan is not None and self.active_plan.status is PlanStatus.COMPLETED:
            logger.info("session %s auto-cleared completed plan %s", self.id, self.active_plan.id)
            self.clear_plan()
            return True
        return False

    def accept_plan(self) -> Plan:
        plan = self._require_plan()
        if plan.status is not PlanStatus.PROPOSED:
            raise PlanStateError(f"Only a proposed plan can be accepted (plan is {plan.status}).")
        plan.status = PlanStatus.ACCEPTED
        plan.touch()
        self.touch()
        return plan

    def cancel_plan(self) -> Plan:
        plan = self._require_plan()
        if plan.is_terminal:
            raise PlanStateError(f"The plan is already {plan.status}.")
        plan.status = PlanStatus.CANCELLED
        plan.touch()
        self.clear_plan()
        logger.info("session %s cancelled plan %s", self.id, plan.id)
        return plan

    def lock_plan(self) -> Plan:
        plan = self._require_plan()
        if plan.is_terminal:
            raise PlanStateError(f"A {plan.status} plan cannot be locked.")
        plan.locked = True
        plan.touch()
        self.touch()
        return plan

    def unlock_plan(self) -> Plan:
        plan = self._require_plan()
        if plan.is_terminal:
            raise PlanStateError(f"A {plan.status} plan cannot be unlocked.")
        plan.locked = False
        plan.touch()
        self.touch()
        return plan

    def _require_editable(self) -> Plan:
        plan = self._require_plan()
        if plan.locked:
            raise PlanStateError("The plan is locked; unlock it before changing its steps.")
        if plan.status is not PlanStatus.PROPOSED:
            raise PlanStateError(
                f"Steps can only be rearranged before execution (plan is {plan.status})."
            )
        return plan

    def replace_plan(self, plan: Plan) -> None:
        """Swap in an edited version of the active plan."""
        self._require_editable()
        self.set_plan(plan)

    def move_step(self, position: int, new_position: int) -> Plan:
        plan = self._require_editable()
        count = len(plan.tasks)
        if not (1 <= position <= count and 1 <= new_position <= count):
            raise PlanStateError(f"Step positions must be between 1 and {count}.")
        task = plan.tasks.pop(position - 1)
        plan.tasks.insert(new_position - 1, task)
        plan.touch()
        self._reset_step_bookkeeping()
        self.touch()
        return plan

    def skip_step(self, task_id: str) -> None:
        plan = self._require_plan()
        task = plan.task(task_id)
        if plan.is_terminal:
            raise PlanStateError(f"The plan is already {plan.status}.")
        if task.status is not TaskStatus.PENDING and task.status is not TaskStatus.WAITING:
            raise PlanStateError(f"Step {task_id} is {task.status} and cannot be skipped.")
        self.skipped_steps.add(task_id)
        self.touch()

    def unskip_step(self, task_id: str) -> None:
        plan = self._require_plan()
        plan.task(task_id)
        if task_id not in self.skipped_steps:
            raise PlanStateError(f"Step {task_id} is not skipped.")
        self.skipped_steps.discard(task_id)
        self.touch()

    def _require_pending_permission(self, task_id: str) -> PendingPermission:
        pending = self.pending_permission
        if pending is None or pending.task_id != task_id:
            raise PlanStateError(f"Step {task_id} is not waiting for permission.")
        return pending

    def allow_step(self, task_id: str) -> None:
        self._require_pending_permission(task_id)
        task = self._require_plan().task(task_id)
        self.approved_steps.add(task_id)
        task.status = TaskStatus.PENDING
        self.pending_permission = None
        self.touch()
        logger.info("session %s allowed step %s", self.id, task_id)

    def deny_step(self, task_id: str) -> None:
        self._require_pending_permission(task_id)
        task = self._require_plan().task(task_id)
        task.status = TaskStatus.FAILED
        task.result = TaskResult(success=False, error="Denied by user")
        task.finished_at = utcnow_iso()
        self.pending_permission = None
        self.touch()
        logger.info("session %s denied step %s", self.id, task_id)

    def set_execution_mode(self, mode: str) -> None:
        if mode not in EXECUTION_MODES:
            raise PlanStateError(
                f"Unknown execution mode '{mode}' (expected {' or '.join(EXECUTION_MODES)})."
            )
        self.execution_mode = mode  # type: ignore[assignment]
        self.touch()

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "session_id": self.id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "execution_mode": self.execution_mode,
            "executed_steps": sorted(self.executed_steps),
            "skipped_steps": sorted(self.skipped_steps),
            "approved_steps": sorted(self.approved_steps),
            "pending_permission": (
                self.pending_permission.to_dict() if self.pending_permission else None
            ),
            "plan": self.active_plan.to_dict() if self.active_plan else None,
            "last_run": self.last_run.to_dict() if self.last_run else None,
            "history": [message.to_chat() for message in self.history],
        }

    @classmethod
    def from_snapshot(
        cls,
        payload: dict[str, Any],
        *,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> Session:
        pending = payload.get("pending_permission")
        plan_payload = payload.get("plan")
        mode = payload.get("execution_mode")
        session = cls(
            id=str(payload["session_id"]),
            history=deque(
                (
                    Message(role=str(item.get("role")), content=str(item.get("content") or ""))
                    for item in payload.get("history") or []
                    if isinstance(item, dict)
                ),
                maxlen=history_limit,
            ),
            active_plan=Plan.from_dict(plan_payload) if isinstance(plan_payload, dict) else None,
            executed_steps=set(payload.get("executed_steps") or []),
            skipped_steps=set(payload.get("skipped_steps") or []),
            approved_steps=set(payload.get("approved_steps") or []),
            pending_permission=(
                PendingPermission(
                    task_id=str(pending["task_id"]),
                    capability=Capability(pending["capability"]),
                    operation=pending.get("operation"),
                )
                if isinstance(pending, dict)
                else None
            ),
            execution_mode=mode if mode in EXECUTION_MODES else "manual",
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )
        if session.active_plan is not None:
            # A process that died mid-batch leaves running steps behind.
            for task in session.active_plan.tasks:
                if task.status is TaskStatus.RUNNING:
                    task.status = TaskStatus.PENDING
                    task.started_at = None
        return session


SessionLoader = Callable[[str], Session | None]


class SessionStore:
    """In-process registry of sessions keyed by id, created lazily."""

    def __init__(
        self,
        *,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        execution_mode: ExecutionMode = "manual",
        loader: SessionLoader | None = None,
    ) -> None:
        self.history_limit = max(1, int(history_limit))
        self.execution_mode = execution_mode
        self.loader = loader
        self._sessions: dict[str, Session] = {}

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None and self.loader is not None:
            session = self.loader(session_id)
            if session is not None:
                self._sessions[session_id] = session
        return session

    def get_or_create(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            session = Session(
                id=session_id,
                history=deque(maxlen=self.history_limit),
                execution_mode=self.execution_mode,
            )
            self._sessions[session_id] = session
            logger.debug("created session %s", session_id)
        return session
