from __future__ import annotations

import re
from dataclasses import dataclass

from workforce.intent import match_command
from workforce.models import Plan, PlanError

COMMAND_ALIASES: dict[str, str] = {
    "approve": "approve",
    "proceed with plan": "approve",
    "execute plan": "approve",
    "run plan": "approve",
    "show plan": "show_plan",
    "plan status": "plan_status",
    "cancel plan": "cancel_plan",
    "clear plan": "cancel_plan",
    "reset plan": "cancel_plan",
    "lock plan": "lock_plan",
    "unlock plan": "unlock_plan",
    "skip step": "skip_step",
    "unskip step": "unskip_step",
    "move step": "move_step",
    "allow step": "allow_step",
    "deny step": "deny_step",
    "list capabilities": "list_capabilities",
    "enable capability": "enable_capability",
    "disable capability": "disable_capability",
    "show execution mode": "show_execution_mode",
    "set execution mode": "set_execution_mode",
    "help": "help",
    "what can you do": "help",
}

MOVE_PATTERN = re.compile(r"^(?P<source>\S+)\s+to\s+(?P<target>\S+)$", re.IGNORECASE)

HELP_TEXT = """
Describe what you want done and I'll propose a plan, or just chat.

Plan commands:
- approve (or: proceed with plan, run plan) - execute the active plan
- show plan / plan status - inspect the active plan
- cancel plan - drop the active plan
- lock plan / unlock plan - freeze or unfreeze the plan's steps
- edit plan: <instruction> - ask for a revised plan
- skip step N / unskip step N - leave a step out of execution
- move step N to M - reorder steps before approval
- allow step N / deny step N - answer a pending permission request
- list capabilities / enable capability X / disable capability X
- show execution mode / set execution mode manual|disabled
""".strip()


class CommandError(ValueError):
    """Raised when a command is recognised but its argument is unusable."""


@dataclass(slots=True)
class Command:
    name: str
    argument: str = ""


def parse_command(message: str) -> Command | None:
    """Map a command turn to its canonical name and trailing argument."""
    matched = match_command(message)
    if matched is None:
        return None
    text = " ".join(message.strip().split())
    argument = text[len(matched) :].strip().lstrip(":").strip().rstrip(".!?")
    return Command(name=COMMAND_ALIASES[matched], argument=argument)


def resolve_step(plan: Plan, reference: str) -> str:
    """Resolve a step reference given as a task id or a 1-based position."""
    token = reference.strip().removeprefix("#")
    if not token:
        raise CommandError("Please name a step, e.g. 'skip step 2'.")
    for task in plan.tasks:
        if task.id == token:
            return task.id
    if token.isdigit():
        position = int(token)
        if 1 <= position <= len(plan.tasks):
            return plan.tasks[position - 1].id
    raise PlanError(f"Plan has no step '{token}'.")


def parse_move(argument: str) -> tuple[int, int]:
    match = MOVE_PATTERN.match(argument.strip())
    if match is None or not (match["source"].isdigit() and match["target"].isdigit()):
        raise CommandError("Usage: move step <from_number> to <to_number>")
    return int(match["source"]), int(match["target"])
