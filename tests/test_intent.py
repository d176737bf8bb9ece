import pytest

from workforce.intent import (
    Intent,
    classify_intent,
    edit_plan_instruction,
    has_file_target,
    looks_like_command,
    looks_like_tool_use,
    match_command,
)


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("approve", Intent.COMMAND),
        ("Show Plan.", Intent.COMMAND),
        ("skip step 2", Intent.COMMAND),
        ("set execution mode manual", Intent.COMMAND),
        ("plan my week", Intent.TASK),
        ("what are the steps to bake bread", Intent.TASK),
        ("rename today.md to week1.md", Intent.TASK),
        ("write me a poem and save it", Intent.TASK),
        ("write a note about the groceries", Intent.TASK),
        ("set up a new project for the blog", Intent.TASK),
        ("organize my downloads", Intent.TASK),
        ("i want you to clean up the garage", Intent.TASK),
        ("edit plan: add a review step", Intent.TASK),
        ("write me a poem", Intent.CHAT),
        ("what is the capital of France?", Intent.CHAT),
        ("i want to learn about owls", Intent.CHAT),
        ("hello there", Intent.CHAT),
        ("", Intent.CHAT),
    ],
)
def test_classify_intent(message: str, expected: Intent) -> None:
    assert classify_intent(message) is expected


def test_exact_commands_only_match_the_whole_message() -> None:
    assert match_command("help") == "help"
    assert match_command("What can you do?") == "what can you do"
    assert match_command("help me understand recursion") is None
    assert match_command("approve the budget for me") is None
    assert classify_intent("approve the budget for me") is Intent.CHAT


def test_longest_command_prefix_wins() -> None:
    assert match_command("show execution mode") == "show execution mode"
    assert match_command("unskip step 3") == "unskip step"
    assert match_command("skip step: 3") == "skip step"


def test_file_target_detection() -> None:
    assert has_file_target("open notes/today.md please")
    assert not has_file_target("open my notes please")


def test_tool_use_and_command_heuristics() -> None:
    assert looks_like_tool_use("please fetch the page")
    assert not looks_like_tool_use("tell me a joke")
    assert looks_like_command("/reset")
    assert looks_like_command("!status")
    assert looks_like_command("cancel plan")
    assert not looks_like_command("cancel my subscription")


def test_edit_plan_instruction_strips_prefix() -> None:
    assert edit_plan_instruction("edit plan: add a review step") == "add a review step"
    assert edit_plan_instruction("Edit this plan - drop step 2") == "drop step 2"
    assert edit_plan_instruction("hello") is None
