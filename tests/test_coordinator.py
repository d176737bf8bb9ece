import asyncio
import json
from pathlib import Path
from typing import Any

from workforce.backends.base import BackendExecutionError, CompletionBackend, CompletionOptions
from workforce.capabilities import CapabilityRegistry
from workforce.commands import HELP_TEXT
from workforce.coordinator import NEED_MORE_DETAIL, NORMALIZED_PREFIX, Coordinator, Reply
from workforce.models import Capability, PlanRun, PlanStatus, TaskStatus
from workforce.operations import builtin_operations
from workforce.scheduler import Scheduler
from workforce.session import Session, SessionStore
from workforce.speculative import SpeculativeExecutor
from workforce.synthesizer import PlanSynthesizer
from workforce.workers import WorkerFactory

CHAT_ANSWER = "I'm doing well, thanks for asking!"


class FakeModel(CompletionBackend):
    """JSON-mode calls get scripted plans; free-text calls get the chat answer."""

    def __init__(self, *plans: str, chat: str = CHAT_ANSWER) -> None:
        self.plans = list(plans)
        self.chat = chat
        self.plan_calls: list[list[dict[str, str]]] = []
        self.chat_calls: list[list[dict[str, str]]] = []

    async def complete(
        self,
        messages: list[dict[str, str]],
        options: CompletionOptions | None = None,
    ) -> str:
        if options is not None and options.json_only:
            self.plan_calls.append(messages)
            return self.plans.pop(0) if self.plans else "not json"
        self.chat_calls.append(messages)
        return self.chat


class UnreachableModel(CompletionBackend):
    async def complete(
        self,
        messages: list[dict[str, str]],
        options: CompletionOptions | None = None,
    ) -> str:
        _ = messages, options
        raise BackendExecutionError("All backend attempts failed", retriable=False)


class Harness:
    def __init__(
        self,
        root: Path,
        backend: CompletionBackend,
        *,
        speculation: bool = True,
        execution_mode: Any = "manual",
    ) -> None:
        self.registry = CapabilityRegistry()
        self.registry.register_all(builtin_operations(root))
        factory = WorkerFactory(backend, self.registry)
        self.sessions = SessionStore(execution_mode=execution_mode)
        self.changes: list[str] = []
        self.runs: list[PlanRun] = []
        self.coordinator = Coordinator(
            self.sessions,
            PlanSynthesizer(backend, registry=self.registry),
            Scheduler(factory, self.registry, retry_backoff_seconds=0.0),
            SpeculativeExecutor(factory, enabled=speculation),
            self.registry,
            on_change=lambda session: self.changes.append(session.id),
            on_run=lambda session, run: self.runs.append(run),
        )

    def send(self, message: str, session_id: str = "s1") -> Reply:
        return asyncio.run(self.coordinator.handle_message(session_id, message))

    def session(self, session_id: str = "s1") -> Session:
        session = self.sessions.get(session_id)
        assert session is not None
        return session


def _plan_json(
    goal: str = "Collect this week's meeting notes into one summary", **extra: Any
) -> str:
    payload: dict[str, Any] = {
        "goal": goal,
        "title": "Weekly summary",
        "steps": [
            {
                "id": "1",
                "type": "read_file",
                "description": "List every meeting note in the notes folder",
                "operation": "list_files",
                "params": {"path": "."},
            },
            {
                "id": "2",
                "type": "analyze_content",
                "description": "Summarize the notes into a short weekly digest",
                "depends_on": ["1"],
            },
        ],
    }
    payload.update(extra)
    return json.dumps(payload)


def test_rename_request_is_proposed_then_runs_after_permission(tmp_path: Path) -> None:
    (tmp_path / "today.md").write_text("monday notes", encoding="utf-8")
    harness = Harness(tmp_path, FakeModel())

    proposal = harness.send("rename note today.md to week1.md")

    assert proposal.kind == "plan"
    assert proposal.content.startswith(
        "I've created a plan with 1 step to Rename today.md to week1.md in the workspace:"
    )
    assert "needs confirmation" in proposal.content
    plan = harness.session().active_plan
    assert plan is not None and plan.status is PlanStatus.PROPOSED

    paused = harness.send("approve")

    assert paused.kind == "execution"
    assert paused.run is not None and paused.run["outcome"] == "awaiting_confirmation"
    assert "Say 'allow step 1' or 'deny step 1'." in paused.content
    assert (tmp_path / "today.md").exists()

    done = harness.send("allow step 1")

    assert done.kind == "execution"
    assert done.content.startswith("Step 1 allowed.")
    assert "completed successfully" in done.content
    assert (tmp_path / "week1.md").read_text(encoding="utf-8") == "monday notes"
    assert plan.status is PlanStatus.COMPLETED
    assert len(harness.runs) == 2


def test_conversation_adopts_speculative_answer(tmp_path: Path) -> None:
    backend = FakeModel()
    harness = Harness(tmp_path, backend)

    reply = harness.send("hey, how's it going?")

    assert reply.kind == "reply"
    assert reply.speculative is True
    assert reply.content == CHAT_ANSWER
    assert len(backend.chat_calls) == 1
    assert backend.plan_calls == []
    history = harness.session().messages()
    assert [(message.role, message.content) for message in history] == [
        ("user", "hey, how's it going?"),
        ("assistant", CHAT_ANSWER),
    ]


def test_speculation_does_not_change_the_answer(tmp_path: Path) -> None:
    fast_backend = FakeModel()
    slow_backend = FakeModel()
    fast = Harness(tmp_path, fast_backend, speculation=True)
    slow = Harness(tmp_path, slow_backend, speculation=False)

    for message in ("hello there", "hey, how's it going?"):
        fast_reply = fast.send(message)
        slow_reply = slow.send(message)
        assert fast_reply.content == slow_reply.content
        assert fast_reply.speculative is True
        assert slow_reply.speculative is False

    assert fast_backend.chat_calls == slow_backend.chat_calls
    assert fast_backend.chat_calls[1][1:] == [
        {"role": "user", "content": "hello there"},
        {"role": "assistant", "content": CHAT_ANSWER},
        {"role": "user", "content": "hey, how's it going?"},
    ]


def test_task_turn_discards_speculation(tmp_path: Path) -> None:
    harness = Harness(tmp_path, FakeModel(_plan_json()))

    reply = harness.send("plan a summary of my meeting notes")

    assert reply.kind == "plan"
    assert reply.speculative is False
    assert reply.content.startswith("I've created a plan with 2 steps to")
    assert reply.plan is not None and len(reply.plan["tasks"]) == 2


def test_circular_plan_is_reported_and_not_stored(tmp_path: Path) -> None:
    steps = [
        {"id": "t1", "description": "First half of the cleanup", "dependsOn": ["t2"]},
        {"id": "t2", "description": "Second half of the cleanup", "dependsOn": ["t1"]},
    ]
    harness = Harness(tmp_path, FakeModel(_plan_json(steps=steps)))

    reply = harness.send("plan the spring cleaning of the garage")

    assert reply.kind == "error"
    assert reply.content.startswith("I couldn't build a valid plan: Circular dependency detected")
    assert harness.session().active_plan is None


def test_rejected_plan_falls_back_to_suggestion(tmp_path: Path) -> None:
    harness = Harness(tmp_path, FakeModel(_plan_json(goal="Organize the [folder] notes")))

    reply = harness.send("plan a cleanup of my notes")

    assert reply.kind == "reply"
    assert reply.content == f"{NEED_MORE_DETAIL}\n\n{CHAT_ANSWER}"
    assert harness.session().active_plan is None


def test_normalized_plan_is_flagged(tmp_path: Path) -> None:
    request = "plan the spring cleaning of the garage"
    harness = Harness(tmp_path, FakeModel(_plan_json(goal=request)))

    reply = harness.send(request)

    assert reply.kind == "plan"
    assert reply.content.startswith(NORMALIZED_PREFIX)
    plan = harness.session().active_plan
    assert plan is not None and plan.normalized is True


def test_unparseable_plan_answers_conversationally(tmp_path: Path) -> None:
    backend = FakeModel("no json", "still no json")
    harness = Harness(tmp_path, backend)

    reply = harness.send("plan my move to a new apartment")

    assert reply.kind == "reply"
    assert reply.content == CHAT_ANSWER
    assert reply.speculative is False
    assert len(backend.plan_calls) == 2


def test_unreachable_model_produces_error_reply(tmp_path: Path) -> None:
    harness = Harness(tmp_path, UnreachableModel())

    task_reply = harness.send("plan the spring cleaning of the garage")
    chat_reply = harness.send("hey, how's it going?")

    assert task_reply.kind == "error"
    assert task_reply.content.startswith("I couldn't reach the language model")
    assert chat_reply.kind == "error"
    assert chat_reply.content.startswith("I couldn't produce an answer right now")


def test_disabled_execution_mode_blocks_approval(tmp_path: Path) -> None:
    harness = Harness(tmp_path, FakeModel(_plan_json()), execution_mode="disabled")
    harness.send("plan a summary of my meeting notes")

    reply = harness.send("approve")

    assert reply.kind == "error"
    assert "Execution is currently disabled" in reply.content
    plan = harness.session().active_plan
    assert plan is not None and plan.status is PlanStatus.PROPOSED

    harness.send("set execution mode manual")
    assert harness.session().execution_mode == "manual"


def test_plan_commands_rearrange_and_skip_steps(tmp_path: Path) -> None:
    harness = Harness(tmp_path, FakeModel(_plan_json()))
    harness.send("plan a summary of my meeting notes")

    moved = harness.send("move step 2 to 1")
    skipped = harness.send("skip step 1")
    status = harness.send("show plan")

    plan = harness.session().active_plan
    assert plan is not None
    assert moved.content.startswith("Moved step 2 to position 1.")
    assert [task.id for task in plan.tasks] == ["2", "1"]
    assert skipped.content == "Step 1 will be skipped."
    assert "- skipped" in status.content
    assert harness.send("move step 1 to 9").kind == "error"


def test_locked_plan_refuses_edits(tmp_path: Path) -> None:
    backend = FakeModel(_plan_json(), _plan_json(goal="Collect and archive this week's notes"))
    harness = Harness(tmp_path, backend)
    harness.send("plan a summary of my meeting notes")

    harness.send("lock plan")
    refused = harness.send("edit plan: also archive the notes")
    harness.send("unlock plan")
    edited = harness.send("edit plan: also archive the notes")

    assert refused.kind == "error"
    assert "locked" in refused.content
    assert edited.kind == "plan"
    assert edited.content.startswith("I've updated the plan.")
    plan = harness.session().active_plan
    assert plan is not None and plan.goal == "Collect and archive this week's notes"
    assert "also archive the notes" in backend.plan_calls[-1][-1]["content"]


def test_capability_commands(tmp_path: Path) -> None:
    harness = Harness(tmp_path, FakeModel())

    listing = harness.send("list capabilities")
    disabled = harness.send("disable capability web")
    unknown = harness.send("enable capability teleport")

    assert "- file (enabled, needs confirmation); operations: read_file" in listing.content
    assert disabled.content == "Capability 'web' disabled."
    assert harness.registry.is_enabled(Capability.WEB) is False
    assert unknown.kind == "error"
    assert harness.send("help").content == HELP_TEXT


def test_commands_without_a_plan_report_errors(tmp_path: Path) -> None:
    harness = Harness(tmp_path, FakeModel())

    assert harness.send("show plan").kind == "error"
    assert harness.send("approve").content.startswith("There is no plan to approve")
    assert harness.send("allow step 1").kind == "error"


def test_completed_plan_is_cleared_by_next_request(tmp_path: Path) -> None:
    (tmp_path / "today.md").write_text("notes", encoding="utf-8")
    harness = Harness(tmp_path, FakeModel())
    harness.send("rename today.md to week1.md")
    harness.send("approve")
    harness.send("allow step 1")

    harness.send("hey, how's it going?")

    assert harness.session().active_plan is None


def test_inspect_reports_pending_permission(tmp_path: Path) -> None:
    (tmp_path / "today.md").write_text("notes", encoding="utf-8")
    harness = Harness(tmp_path, FakeModel())
    harness.send("rename today.md to week1.md")
    harness.send("approve")

    view = harness.coordinator.inspect("s1")

    assert view["task_status"] == {"1": TaskStatus.BLOCKED.value}
    assert view["pending_permission"] == {
        "task_id": "1",
        "capability": "file",
        "operation": "rename_file",
    }
    assert view["last_run"]["outcome"] == "awaiting_confirmation"
    assert harness.coordinator.inspect("nobody")["plan"] is None


def test_empty_message_is_rejected_without_history(tmp_path: Path) -> None:
    harness = Harness(tmp_path, FakeModel())

    reply = harness.send("   ")

    assert reply.kind == "error"
    assert harness.session().messages() == []
    assert harness.changes == []


def test_approve_entry_point_records_turns(tmp_path: Path) -> None:
    harness = Harness(tmp_path, FakeModel(_plan_json()))
    harness.send("plan a summary of my meeting notes")

    reply = asyncio.run(harness.coordinator.approve("s1"))

    assert reply.kind == "execution"
    assert harness.session().messages()[-2].content == "approve"
    assert harness.changes.count("s1") >= 3


def test_plan_that_collapses_into_a_cycle_asks_for_detail(tmp_path: Path) -> None:
    steps = [
        {"id": "1", "description": "Collect the weekly report files", "depends_on": ["2"]},
        {"id": "2", "description": "Summarize the weekly report files", "depends_on": ["3"]},
        {"id": "3", "description": "collect the weekly report files"},
    ]
    harness = Harness(tmp_path, FakeModel(_plan_json(goal="Tidy", steps=steps)))

    reply = harness.send("plan a tidy-up of the weekly reports in my documents")

    assert reply.kind == "reply"
    assert reply.content.startswith(NEED_MORE_DETAIL)
    assert harness.session().active_plan is None


def test_fallback_answer_does_not_reuse_the_speculation(tmp_path: Path) -> None:
    backend = FakeModel("no json", "still no json")
    harness = Harness(tmp_path, backend)

    reply = harness.send("plan a weekend trip to the coast")

    assert reply.kind == "reply"
    assert reply.content == CHAT_ANSWER
    assert reply.speculative is False
    assert len(backend.plan_calls) == 2
