from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from importlib import resources
from typing import Any, Literal

from workforce.backends.base import CompletionBackend, CompletionOptions
from workforce.capabilities import CapabilityRegistry
from workforce.intent import Intent, classify_intent, has_file_target, match_command
from workforce.json_repair import extract_json_object
from workforce.models import (
    STEP_TYPE_CAPABILITY,
    Capability,
    Message,
    Plan,
    StepType,
    Task,
    create_plan,
)

logger = logging.getLogger(__name__)

OutcomeKind = Literal["conversation", "task", "clarification", "command"]

FALLBACK_PLANNER_PROMPT = """
You turn a user request into a JSON plan with keys goal, title, execution and steps.
Each step has id, type, capability, description, depends_on, operation and params.
Respond with JSON only.
""".strip()

JSON_REMINDER = (
    "That response could not be used. Reply again with only one JSON object "
    'that has a non-empty "steps" array, with no prose and no code fences.'
)

RENAME_PATTERN = re.compile(
    r"^(?:please\s+)?(?P<verb>rename|move)\s+(?:the\s+)?(?:(?:note|file|document|doc)\s+)?"
    r"(?P<source>[\w./-]+\.[A-Za-z0-9]{1,8})\s+(?:to|as|into)\s+(?P<destination>[\w./-]+?)"
    r"\s*[.!]?$",
    re.IGNORECASE,
)
READ_PATTERN = re.compile(
    r"^(?:please\s+)?(?:read|open|show)\s+(?:me\s+)?(?:the\s+)?(?:(?:note|file|document|doc)\s+)?"
    r"(?P<path>[\w./-]+\.[A-Za-z0-9]{1,8})\s*[.!?]?$",
    re.IGNORECASE,
)
FILE_CREATE_PATTERN = re.compile(
    r"\b(create|make|write|draft|new)\b.*\b(file|note|document|doc)\b", re.IGNORECASE
)


@dataclass(slots=True)
class SynthesisOutcome:
    """Verdict for one user turn.

    ``conversation`` outcomes carry no reply text; the caller answers them
    through a conversation worker (possibly a speculative one).
    """

    kind: OutcomeKind
    request: str
    intent: Intent
    reply: str | None = None
    plan: Plan | None = None
    question: str | None = None
    options: list[str] = field(default_factory=list)
    command: str | None = None
    fallback_reason: str | None = None


def latest_user_message(history: Sequence[Message]) -> str:
    for message in reversed(history):
        if message.role == "user":
            return message.content
    raise ValueError("Conversation history has no user message.")


def _load_planner_prompt() -> str:
    try:
        prompt_path = resources.files("workforce.prompts").joinpath("planner.md")
        return prompt_path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, ModuleNotFoundError):
        return FALLBACK_PLANNER_PROMPT


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def plan_from_payload(
    payload: dict[str, Any],
    *,
    registry: CapabilityRegistry | None = None,
) -> Plan:
    """Build a proposed plan from model JSON. Dependency errors propagate."""
    tasks: list[Task] = []
    raw_steps = [step for step in payload.get("steps") or [] if isinstance(step, dict)]
    for index, step in enumerate(raw_steps, start=1):
        step_type = StepType.coerce(step.get("type"))
        capability = Capability.coerce(step.get("capability")) or STEP_TYPE_CAPABILITY[step_type]
        raw_deps = step.get("depends_on", step.get("dependsOn")) or []
        if not isinstance(raw_deps, list):
            raw_deps = [raw_deps]
        operation = str(step.get("operation") or "").strip() or None
        if operation and registry is not None:
            registered = registry.get(operation)
            if registered is None:
                logger.info("dropping unknown operation %r from step %s", operation, index)
                operation = None
            else:
                capability = registered.capability
        params = step.get("params")
        tasks.append(
            Task(
                id=str(step.get("id") or index).strip(),
                description=str(step.get("description") or "").strip(),
                capability=capability,
                type=step_type,
                depends_on=list(dict.fromkeys(str(dep).strip() for dep in raw_deps)),
                params=dict(params) if isinstance(params, dict) else {},
                operation=operation,
                priority=_as_int(step.get("priority")),
            )
        )
    parallel = str(payload.get("execution") or "").lower() == "parallel"
    title = str(payload.get("title") or "").strip()
    return create_plan(
        str(payload.get("goal") or "").strip(),
        tasks,
        title=title or None,
        execution="parallel" if parallel else "sequential",
    )


def _clarification_from(
    payload: dict[str, Any], request: str, intent: Intent
) -> SynthesisOutcome | None:
    clarification = payload.get("clarification")
    if not isinstance(clarification, dict):
        return None
    question = str(clarification.get("question") or "").strip()
    if not question:
        return None
    options = [str(item) for item in clarification.get("options") or [] if str(item).strip()]
    return SynthesisOutcome(
        kind="clarification",
        request=request,
        intent=intent,
        question=question,
        options=options,
    )


class PlanSynthesizer:
    def __init__(
        self,
        backend: CompletionBackend,
        *,
        registry: CapabilityRegistry | None = None,
        temperature: float = 0.2,
        max_parse_attempts: int = 2,
        fast_path: bool = True,
        history_window: int = 6,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.temperature = temperature
        self.max_parse_attempts = max(1, int(max_parse_attempts))
        self.fast_path = fast_path
        self.history_window = max(0, int(history_window))
        self.system_prompt = _load_planner_prompt()

    def _has_operation(self, name: str) -> bool:
        return self.registry is not None and self.registry.get(name) is not None

    def _operations_json(self) -> str:
        if self.registry is None:
            return "[]"
        operations = [
            op.describe()
            for capability in Capability
            if self.registry.is_enabled(capability)
            for op in self.registry.operations_for(capability)
        ]
        return json.dumps(operations, ensure_ascii=False, indent=2)

    def _context_turns(self, history: Sequence[Message]) -> list[dict[str, str]]:
        earlier = list(history)[:-1]
        if self.history_window == 0:
            return []
        return [message.to_chat() for message in earlier[-self.history_window :]]

    def _planning_messages(self, history: Sequence[Message], request: str) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.system_prompt},
            *self._context_turns(history),
            {
                "role": "user",
                "content": (
                    f"Request: {request}\n\n"
                    f"Available operations:\n{self._operations_json()}"
                ),
            },
        ]

    def _fast_path(self, request: str, intent: Intent) -> SynthesisOutcome | None:
        text = request.strip()
        match = RENAME_PATTERN.match(text)
        if match and self._has_operation("rename_file"):
            verb = match["verb"].capitalize()
            source, destination = match["source"], match["destination"]
            task = Task(
                id="1",
                description=f"{verb} {source} to {destination} using the rename_file operation",
                capability=Capability.FILE,
                type=StepType.ORGANIZE_FILES,
                operation="rename_file",
                params={"source": source, "destination": destination},
            )
            plan = create_plan(
                f"{verb} {source} to {destination} in the workspace",
                [task],
                title=f"{verb} {source}",
            )
            return SynthesisOutcome(kind="task", request=request, intent=intent, plan=plan)

        match = READ_PATTERN.match(text)
        if match and self._has_operation("read_file"):
            path = match["path"]
            task = Task(
                id="1",
                description=f"Read {path} from the workspace",
                capability=Capability.FILE,
                type=StepType.READ_FILE,
                operation="read_file",
                params={"path": path},
            )
            plan = create_plan(f"Show the contents of {path}", [task], title=f"Read {path}")
            return SynthesisOutcome(kind="task", request=request, intent=intent, plan=plan)

        if (
            FILE_CREATE_PATTERN.search(text)
            and not has_file_target(text)
            and self._has_operation("write_file")
        ):
            return SynthesisOutcome(
                kind="clarification",
                request=request,
                intent=intent,
                question="What should the file be called?",
                options=["notes.md", "draft.txt", "I'll type a name"],
            )
        return None

    async def _plan_from_model(
        self,
        messages: list[dict[str, str]],
        request: str,
        intent: Intent,
    ) -> SynthesisOutcome:
        options = CompletionOptions(json_only=True, temperature=self.temperature)
        for attempt in range(1, self.max_parse_attempts + 1):
            raw = await self.backend.complete(messages, options)
            extraction = extract_json_object(raw)
            if extraction is not None:
                payload = extraction.payload
                clarification = _clarification_from(payload, request, intent)
                if clarification is not None:
                    return clarification
                steps = payload.get("steps")
                if isinstance(steps, list) and any(isinstance(step, dict) for step in steps):
                    if extraction.strategy != "direct":
                        logger.info("plan JSON recovered with %s", extraction.strategy)
                    plan = plan_from_payload(payload, registry=self.registry)
                    return SynthesisOutcome(kind="task", request=request, intent=intent, plan=plan)
            logger.warning(
                "plan response unusable (attempt %d/%d)", attempt, self.max_parse_attempts
            )
            messages = [
                *messages,
                {"role": "assistant", "content": raw},
                {"role": "user", "content": JSON_REMINDER},
            ]
        return SynthesisOutcome(
            kind="conversation",
            request=request,
            intent=intent,
            fallback_reason="unparseable_plan",
        )

    async def synthesize(self, history: Sequence[Message]) -> SynthesisOutcome:
        """Classify the latest turn and, for tasks, synthesize a proposed plan.

        Completion transport errors propagate to the caller; malformed plan
        JSON degrades to a conversation outcome.
        """
        request = latest_user_message(history)
        intent = classify_intent(request)
        logger.info("classified turn as %s", intent.value)
        if intent is Intent.COMMAND:
            return SynthesisOutcome(
                kind="command", request=request, intent=intent, command=match_command(request)
            )
        if intent is Intent.CHAT:
            return SynthesisOutcome(kind="conversation", request=request, intent=intent)
        if self.fast_path:
            shortcut = self._fast_path(request, intent)
            if shortcut is not None:
                logger.info("fast path produced a %s outcome", shortcut.kind)
                return shortcut
        return await self._plan_from_model(
            self._planning_messages(history, request), request, intent
        )

    async def revise(
        self,
        plan: Plan,
        instruction: str,
        history: Sequence[Message],
    ) -> SynthesisOutcome:
        """Ask the model for a complete replacement of ``plan`` following ``instruction``."""
        current = {
            "goal": plan.goal,
            "title": plan.title,
            "execution": plan.execution,
            "steps": [
                {
                    "id": task.id,
                    "type": task.type.value,
                    "capability": task.capability.value,
                    "description": task.description,
                    "depends_on": list(task.depends_on),
                    "operation": task.operation,
                    "params": task.params,
                }
                for task in plan.tasks
            ],
        }
        messages = [
            {"role": "system", "content": self.system_prompt},
            *self._context_turns(history),
            {
                "role": "user",
                "content": (
                    "Current plan:\n"
                    f"{json.dumps(current, ensure_ascii=False, indent=2)}\n\n"
                    f"Revise the plan as follows: {instruction}\n"
                    "Return the complete revised plan.\n\n"
                    f"Available operations:\n{self._operations_json()}"
                ),
            },
        ]
        return await self._plan_from_model(messages, instruction, Intent.TASK)
