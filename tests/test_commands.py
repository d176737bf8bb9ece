import pytest

from workforce.commands import (
    COMMAND_ALIASES,
    Command,
    CommandError,
    parse_command,
    parse_move,
    resolve_step,
)
from workforce.intent import KNOWN_COMMANDS
from workforce.models import PlanError, Task, create_plan


def test_every_known_command_has_a_canonical_name() -> None:
    assert set(COMMAND_ALIASES) == set(KNOWN_COMMANDS)


def test_parse_command_extracts_name_and_argument() -> None:
    assert parse_command("Run plan") == Command(name="approve")
    assert parse_command("skip step: 2.") == Command(name="skip_step", argument="2")
    assert parse_command("move step 3 to 1") == Command(name="move_step", argument="3 to 1")
    assert parse_command("disable   capability  web") == Command(
        name="disable_capability", argument="web"
    )
    assert parse_command("what can you do?") == Command(name="help")
    assert parse_command("tell me a story") is None


def test_resolve_step_accepts_ids_and_positions() -> None:
    plan = create_plan(
        "Tidy the meeting notes folder",
        [
            Task(id="read", description="Read every meeting note"),
            Task(id="2", description="Archive the old meeting notes"),
        ],
    )

    assert resolve_step(plan, "read") == "read"
    assert resolve_step(plan, "#1") == "read"
    assert resolve_step(plan, "2") == "2"
    with pytest.raises(PlanError, match="no step '7'"):
        resolve_step(plan, "7")
    with pytest.raises(CommandError, match="name a step"):
        resolve_step(plan, "  ")


def test_parse_move_requires_two_positions() -> None:
    assert parse_move("3 to 1") == (3, 1)
    with pytest.raises(CommandError, match="Usage"):
        parse_move("first to last")
    with pytest.raises(CommandError):
        parse_move("3")
