"""Session transport: one user turn in, one reply out.

The coordinator owns no state of its own. Every turn is appended to the
session history, routed to a command, a plan edit, or the synthesizer,
and the resulting reply is appended as the assistant turn.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from workforce.backends.base import BackendExecutionError
from workforce.capabilities import CapabilityError, CapabilityRegistry
from workforce.commands import (
    HELP_TEXT,
    Command,
    CommandError,
    parse_command,
    parse_move,
    resolve_step,
)
from workforce.intent import edit_plan_instruction
from workforce.models import (
    Capability,
    Message,
    Plan,
    PlanDependencyError,
    PlanError,
    PlanRun,
    PlanStateError,
    PlanStatus,
    TaskStatus,
)
from workforce.quality import review
from workforce.scheduler import Scheduler
from workforce.session import PendingPermission, Session, SessionStore
from workforce.speculative import Speculation, SpeculativeExecutor
from workforce.synthesizer import PlanSynthesizer, SynthesisOutcome

logger = logging.getLogger(__name__)

ReplyKind = Literal["reply", "clarification", "plan", "execution", "error"]

NORMALIZED_PREFIX = "I adjusted the plan slightly to make it more concrete and safer to execute."
NEED_MORE_DETAIL = (
    "I need a bit more detail before I can create a reliable plan. Here's a suggestion instead:"
)
STATUS_MARKERS: dict[TaskStatus, str] = {
    TaskStatus.PENDING: "pending",
    TaskStatus.WAITING: "waiting",
    TaskStatus.RUNNING: "running",
    TaskStatus.COMPLETED: "done",
    TaskStatus.BLOCKED: "needs permission",
    TaskStatus.FAILED: "failed",
}
OUTCOME_TEXT: dict[str, str] = {
    "completed": "completed successfully",
    "completed_with_failures": "completed, but some steps failed",
    "failed": "failed",
    "awaiting_confirmation": "is paused waiting for your permission",
    "cancelled": "was cancelled",
}
RESULT_PREVIEW_CHARS = 500


@dataclass(slots=True)
class Reply:
    kind: ReplyKind
    content: str
    session_id: str
    question: str | None = None
    options: list[str] = field(default_factory=list)
    plan: dict[str, Any] | None = None
    run: dict[str, Any] | None = None
    speculative: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "content": self.content,
            "session_id": self.session_id,
            "question": self.question,
            "options": list(self.options),
            "plan": self.plan,
            "run": self.run,
            "speculative": self.speculative,
        }


SessionCallback = Callable[[Session], None]
RunCallback = Callable[[Session, PlanRun], None]


def _preview(text: str) -> str:
    text = text.strip()
    if len(text) <= RESULT_PREVIEW_CHARS:
        return text
    return text[:RESULT_PREVIEW_CHARS].rstrip() + "..."


def _step_count(plan: Plan) -> str:
    count = len(plan.tasks)
    return f"{count} step" if count == 1 else f"{count} steps"


class Coordinator:
    def __init__(
        self,
        sessions: SessionStore,
        synthesizer: PlanSynthesizer,
        scheduler: Scheduler,
        speculative: SpeculativeExecutor,
        registry: CapabilityRegistry,
        *,
        on_change: SessionCallback | None = None,
        on_run: RunCallback | None = None,
    ) -> None:
        self.sessions = sessions
        self.synthesizer = synthesizer
        self.scheduler = scheduler
        self.speculative = speculative
        self.registry = registry
        self.on_change = on_change
        self.on_run = on_run

    def _changed(self, session: Session) -> None:
        if self.on_change is not None:
            self.on_change(session)

    def _reply(self, session: Session, content: str, **kwargs: Any) -> Reply:
        kind = kwargs.pop("kind", "reply")
        return Reply(kind=kind, content=content, session_id=session.id, **kwargs)

    def _error(self, session: Session, content: str) -> Reply:
        return Reply(kind="error", content=content, session_id=session.id)

    async def handle_message(self, session_id: str, message: str) -> Reply:
        session = self.sessions.get_or_create(session_id)
        text = message.strip()
        if not text:
            return self._error(session, "Please send a message.")
        session.add_message("user", text)
        reply = await self._route(session, text)
        session.add_message("assistant", reply.content)
        self._changed(session)
        return reply

    async def approve(self, session_id: str) -> Reply:
        session = self.sessions.get_or_create(session_id)
        session.add_message("user", "approve")
        reply = await self._approve(session)
        session.add_message("assistant", reply.content)
        self._changed(session)
        return reply

    def inspect(self, session_id: str) -> dict[str, Any]:
        """Read-only view of a session's plan, step statuses and pending confirmation."""
        session = self.sessions.get(session_id)
        if session is None:
            return {
                "session_id": session_id,
                "plan": None,
                "task_status": {},
                "pending_permission": None,
                "execution_mode": self.sessions.execution_mode,
                "skipped_steps": [],
                "last_run": None,
            }
        plan = session.active_plan
        return {
            "session_id": session.id,
            "plan": plan.to_dict() if plan else None,
            "task_status": plan.task_status_map() if plan else {},
            "pending_permission": (
                session.pending_permission.to_dict() if session.pending_permission else None
            ),
            "execution_mode": session.execution_mode,
            "skipped_steps": sorted(session.skipped_steps),
            "last_run": session.last_run.to_dict() if session.last_run else None,
        }

    async def _route(self, session: Session, text: str) -> Reply:
        command = parse_command(text)
        if command is not None:
            return await self._run_command(session, command)
        session.clear_completed_plan()

        instruction = edit_plan_instruction(text)
        if instruction is not None and session.active_plan is not None:
            return await self._edit_plan(session, session.active_plan, instruction)

        plan = session.active_plan
        plan_pending = plan is not None and plan.status is PlanStatus.PROPOSED
        history = session.messages()
        speculation = self.speculative.maybe_speculate(history, plan_pending=plan_pending)
        try:
            outcome = await self._synthesize(history, speculation)
        except BackendExecutionError as exc:
            logger.warning("completion failed for session %s: %s", session.id, exc)
            return self._error(session, f"I couldn't reach the language model: {exc}")
        except PlanDependencyError as exc:
            logger.warning("rejected plan for session %s: %s", session.id, exc)
            return self._error(session, f"I couldn't build a valid plan: {exc}")
        return await self._resolve(session, outcome, speculation, history)

    async def _synthesize(
        self,
        history: list[Message],
        speculation: Speculation | None,
    ) -> SynthesisOutcome:
        try:
            return await self.synthesizer.synthesize(history)
        except BaseException:
            if speculation is not None:
                self.speculative.discard(speculation)
            raise

    async def _resolve(
        self,
        session: Session,
        outcome: SynthesisOutcome,
        speculation: Speculation | None,
        history: list[Message],
    ) -> Reply:
        verdict = outcome.kind if outcome.fallback_reason is None else "fallback"
        adopted = await self.speculative.reconcile(speculation, verdict)

        if outcome.kind == "command":
            command = parse_command(outcome.request)
            if command is not None:
                return await self._run_command(session, command)
        if outcome.kind == "clarification":
            return self._clarification(session, outcome)
        if outcome.kind == "task" and outcome.plan is not None:
            return await self._propose(session, outcome.plan, outcome.request, history)

        if outcome.fallback_reason:
            logger.info("answering conversationally (%s)", outcome.fallback_reason)
        if adopted is not None:
            return self._reply(session, adopted.content, speculative=True)
        result = await self.speculative.answer(history)
        if not result.success:
            return self._error(session, f"I couldn't produce an answer right now: {result.error}")
        return self._reply(session, result.content)

    def _clarification(self, session: Session, outcome: SynthesisOutcome) -> Reply:
        question = outcome.question or "Could you tell me a bit more?"
        lines = [question]
        lines.extend(f"- {option}" for option in outcome.options)
        return self._reply(
            session,
            "\n".join(lines),
            kind="clarification",
            question=question,
            options=list(outcome.options),
        )

    async def _propose(
        self,
        session: Session,
        plan: Plan,
        request: str,
        history: list[Message],
    ) -> Reply:
        verdict = review(plan, request)
        if verdict.plan is None:
            logger.info("plan rejected by quality gate: %s", verdict.reasons)
            result = await self.speculative.answer(history)
            suggestion = (
                result.content if result.success else "Could you describe the task in more detail?"
            )
            return self._reply(session, f"{NEED_MORE_DETAIL}\n\n{suggestion}")
        try:
            session.set_plan(verdict.plan)
        except PlanStateError as exc:
            return self._error(session, str(exc))
        content = self._render_proposal(verdict.plan)
        if verdict.normalized:
            content = f"{NORMALIZED_PREFIX}\n\n{content}"
        return self._reply(session, content, kind="plan", plan=verdict.plan.to_dict())

    async def _edit_plan(self, session: Session, plan: Plan, instruction: str) -> Reply:
        if plan.locked:
            return self._error(
                session, "The current plan is locked. Say 'unlock plan' to make changes."
            )
        if plan.status is not PlanStatus.PROPOSED:
            return self._error(
                session, f"The plan can only be edited before it runs (plan is {plan.status})."
            )
        if not instruction:
            return self._reply(
                session, "Tell me how to change the plan, e.g. 'edit plan: add a step to ...'."
            )
        try:
            outcome = await self.synthesizer.revise(plan, instruction, session.messages())
        except BackendExecutionError as exc:
            return self._error(session, f"I couldn't reach the language model: {exc}")
        except PlanDependencyError as exc:
            return self._error(session, f"The revised plan is invalid and was not applied: {exc}")

        if outcome.kind == "clarification":
            return self._clarification(session, outcome)
        if outcome.plan is None:
            return self._reply(session, "I couldn't revise the plan, so it is unchanged.")
        verdict = review(outcome.plan, instruction)
        if verdict.plan is None:
            return self._reply(
                session,
                "The revised plan wasn't specific enough, so the current plan is unchanged.",
            )
        session.replace_plan(verdict.plan)
        content = "I've updated the plan.\n\n" + self._render_proposal(verdict.plan)
        return self._reply(session, content, kind="plan", plan=verdict.plan.to_dict())

    async def _run_command(self, session: Session, command: Command) -> Reply:
        try:
            return await self._dispatch_command(session, command)
        except (PlanError, CommandError, CapabilityError) as exc:
            return self._error(session, str(exc))

    def _require_plan(self, session: Session) -> Plan:
        if session.active_plan is None:
            raise PlanStateError("There is no active plan. Describe a task to create one.")
        return session.active_plan

    async def _dispatch_command(self, session: Session, command: Command) -> Reply:
        name = command.name
        logger.debug("session %s command %s %r", session.id, name, command.argument)
        if name == "approve":
            return await self._approve(session)
        if name in {"show_plan", "plan_status"}:
            plan = self._require_plan(session)
            return self._reply(session, self._render_status(session, plan), plan=plan.to_dict())
        if name == "cancel_plan":
            plan = session.cancel_plan()
            return self._reply(session, f"Plan '{plan.title}' cancelled.")
        if name == "lock_plan":
            session.lock_plan()
            return self._reply(session, "The current plan is now locked and cannot be modified.")
        if name == "unlock_plan":
            session.unlock_plan()
            return self._reply(session, "The current plan has been unlocked.")
        if name == "skip_step":
            task_id = resolve_step(self._require_plan(session), command.argument)
            session.skip_step(task_id)
            return self._reply(session, f"Step {task_id} will be skipped.")
        if name == "unskip_step":
            task_id = resolve_step(self._require_plan(session), command.argument)
            session.unskip_step(task_id)
            return self._reply(session, f"Step {task_id} will run again.")
        if name == "move_step":
            source, target = parse_move(command.argument)
            plan = session.move_step(source, target)
            return self._reply(
                session,
                f"Moved step {source} to position {target}.\n\n" + self._render_proposal(plan),
                plan=plan.to_dict(),
            )
        if name == "allow_step":
            task_id = resolve_step(self._require_plan(session), command.argument)
            session.allow_step(task_id)
            return await self._execute(session, prefix=f"Step {task_id} allowed.")
        if name == "deny_step":
            task_id = resolve_step(self._require_plan(session), command.argument)
            session.deny_step(task_id)
            return await self._execute(
                session, prefix=f"Step {task_id} was denied and will not be executed."
            )
        if name == "list_capabilities":
            return self._reply(session, self._render_capabilities())
        if name in {"enable_capability", "disable_capability"}:
            capability = Capability.coerce(command.argument)
            if capability is None:
                raise CommandError(
                    "Unknown capability. Choose one of: "
                    + ", ".join(item.value for item in Capability)
                )
            enabled = name == "enable_capability"
            self.registry.set_enabled(capability, enabled)
            state = "enabled" if enabled else "disabled"
            return self._reply(session, f"Capability '{capability.value}' {state}.")
        if name == "show_execution_mode":
            return self._reply(
                session,
                f"Execution mode: {session.execution_mode}\n"
                "manual: steps that need confirmation wait for 'allow step N'.\n"
                "disabled: no steps can be executed.",
            )
        if name == "set_execution_mode":
            session.set_execution_mode(command.argument.lower())
            return self._reply(session, f"Execution mode set to {session.execution_mode}.")
        return self._reply(session, HELP_TEXT)

    async def _approve(self, session: Session) -> Reply:
        plan = session.active_plan
        if plan is None:
            return self._error(session, "There is no plan to approve. Describe a task first.")
        if session.execution_mode == "disabled":
            return self._error(
                session,
                "Execution is currently disabled. Enable it with 'set execution mode manual'.",
            )
        if plan.is_terminal:
            return self._error(session, f"The plan is already {plan.status}.")
        if plan.status is PlanStatus.PROPOSED:
            session.accept_plan()
            self._changed(session)
        return await self._execute(session)

    async def _execute(self, session: Session, *, prefix: str | None = None) -> Reply:
        plan = self._require_plan(session)
        try:
            run = await self.scheduler.execute(session)
        except PlanStateError as exc:
            return self._error(session, str(exc))
        if self.on_run is not None:
            self.on_run(session, run)
        content = self._render_run(session, plan, run)
        if prefix:
            content = f"{prefix}\n\n{content}"
        return self._reply(
            session, content, kind="execution", plan=plan.to_dict(), run=run.to_dict()
        )

    def _render_steps(
        self, plan: Plan, *, skipped: set[str] | None = None, with_status: bool
    ) -> list[str]:
        skipped = skipped or set()
        lines: list[str] = []
        for position, task in enumerate(plan.tasks, start=1):
            label = f"{position}. [{task.type.value}] {task.description}"
            if task.id != str(position):
                label += f" (id {task.id})"
            if task.id in skipped:
                marker = "skipped"
            elif with_status:
                marker = STATUS_MARKERS[task.status]
            elif self.registry.requires_confirmation(task):
                marker = "needs confirmation"
            else:
                marker = ""
            if marker:
                label += f" - {marker}"
            lines.append(label)
            if with_status and task.result is not None:
                if task.result.success and task.result.content.strip():
                    lines.append(f"   {_preview(task.result.content)}")
                elif task.result.error:
                    lines.append(f"   error: {task.result.error}")
        return lines

    def _render_proposal(self, plan: Plan) -> str:
        lines = [f"I've created a plan with {_step_count(plan)} to {plan.goal.rstrip('.')}:"]
        lines.extend(self._render_steps(plan, with_status=False))
        lines.append("")
        lines.append(
            "Say 'approve' to run it, 'edit plan: ...' to change it, or 'cancel plan' to drop it."
        )
        return "\n".join(lines)

    def _render_status(self, session: Session, plan: Plan) -> str:
        state = f"{plan.status}{', locked' if plan.locked else ''}"
        lines = [f"Plan: {plan.title} ({state})", f"Goal: {plan.goal}"]
        lines.extend(self._render_steps(plan, skipped=session.skipped_steps, with_status=True))
        if session.pending_permission is not None:
            lines.append(self._permission_hint(session.pending_permission))
        return "\n".join(lines)

    @staticmethod
    def _permission_hint(pending: PendingPermission) -> str:
        detail = pending.capability.value
        if pending.operation:
            detail += f": {pending.operation}"
        return (
            f"Step {pending.task_id} ({detail}) needs your permission. "
            f"Say 'allow step {pending.task_id}' or 'deny step {pending.task_id}'."
        )

    def _render_run(self, session: Session, plan: Plan, run: PlanRun) -> str:
        summary = OUTCOME_TEXT.get(run.outcome, run.outcome)
        lines = [f"Plan '{plan.title}' {summary}."]
        lines.extend(self._render_steps(plan, skipped=session.skipped_steps, with_status=True))
        if run.failure_reason and run.outcome != "awaiting_confirmation":
            lines.append(f"Reason: {run.failure_reason}")
        if session.pending_permission is not None:
            lines.append(self._permission_hint(session.pending_permission))
        return "\n".join(lines)

    def _render_capabilities(self) -> str:
        lines = ["Capabilities:"]
        for row in self.registry.describe():
            flags = ["enabled" if row["enabled"] else "disabled"]
            if row["requires_confirmation"]:
                flags.append("needs confirmation")
            if row["concurrent"]:
                flags.append("parallel")
            operations = ", ".join(op["name"] for op in row["operations"]) or "none"
            lines.append(f"- {row['capability']} ({', '.join(flags)}); operations: {operations}")
        return "\n".join(lines)

