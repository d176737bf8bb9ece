"""Rule-based classification of a user turn into command, task, or chat.

Rules are evaluated in order and the first match wins. The keyword lists
overlap on purpose; precedence between them is a tunable heuristic and is
pinned down by tests rather than by the patterns alone.
"""

from __future__ import annotations

import re
from enum import StrEnum


class Intent(StrEnum):
    COMMAND = "command"
    TASK = "task"
    CHAT = "chat"


KNOWN_COMMANDS: tuple[str, ...] = (
    "approve",
    "proceed with plan",
    "execute plan",
    "run plan",
    "show plan",
    "plan status",
    "cancel plan",
    "clear plan",
    "reset plan",
    "lock plan",
    "unlock plan",
    "skip step",
    "unskip step",
    "move step",
    "allow step",
    "deny step",
    "list capabilities",
    "enable capability",
    "disable capability",
    "show execution mode",
    "set execution mode",
    "help",
    "what can you do",
)

TASK_VERBS: tuple[str, ...] = (
    "plan",
    "organize",
    "clean",
    "refactor",
    "set up",
    "configure",
    "rename",
    "move",
    "delete",
    "migrate",
    "consolidate",
    "extract",
    "convert",
    "import",
    "export",
    "sync",
    "backup",
    "restore",
    "run",
    "search",
    "find",
    "list",
    "open",
    "execute",
    "shell",
    "terminal",
    "show",
)

TASK_PHRASES: tuple[str, ...] = (
    "do this for me",
    "handle this",
    "make me",
    "can you do",
    "fix this",
    "i need you to",
    "please organize",
    "i want to",
    "can you please",
    "i'd like to",
    "run this",
    "i want you to",
    "go ahead and",
    "take care of",
)

SAVE_INTENT_PATTERN = re.compile(
    r"\b(save|export|store|save\s+as|save\s+it|save\s+this|write\s+.*\bto\b)\b", re.IGNORECASE
)
FILE_TARGET_PATTERN = re.compile(r"[\w./-]+\.[A-Za-z0-9]{1,8}\b")
FILE_OP_PATTERN = re.compile(
    r"\b(open|read|rename|move|delete|organize|summarize|scan|analyze|export)\b", re.IGNORECASE
)
FILE_SCOPE_PATTERN = re.compile(
    r"\b(file|folder|directory|workspace|project|repo|document|doc|note)s?\b", re.IGNORECASE
)
FILE_CREATE_TARGET_PATTERN = re.compile(
    r"\b(file|folder|directory|workspace|document|doc|note)s?\b", re.IGNORECASE
)
WRITE_VERB_PATTERN = re.compile(r"\b(write|draft|create|compose|generate|build)\b", re.IGNORECASE)
SETUP_PATTERN = re.compile(r"\b(create|set\s+up|configure)\b", re.IGNORECASE)
PROJECT_PATTERN = re.compile(r"\bproject\b", re.IGNORECASE)
PLAN_INTENT_PATTERN = re.compile(
    r"^(plan\b|make\s+a\s+plan\b)|\bplan\s+steps\b|\bsteps?\s+to\b", re.IGNORECASE
)
EDIT_PLAN_PATTERN = re.compile(r"^edit(?:\s+this)?\s+plan\b[:\s-]*", re.IGNORECASE)
TOOL_USE_PATTERN = re.compile(
    r"\b(open|read|create|write|search|find|list|run|execute|install|make|build|test|debug|"
    r"fix|update|delete|remove|move|copy|rename|show|display|get|fetch|load|save|export|"
    r"import|download|upload|clone|pull|push|commit|checkout|branch|merge|deploy|start|"
    r"stop|restart|kill)\b",
    re.IGNORECASE,
)
COMMAND_MARKERS: tuple[str, ...] = ("/", "!")
# Only recognised when they make up the whole message.
EXACT_COMMANDS = frozenset({"approve", "help", "what can you do"})


def _normalize(message: str) -> str:
    return " ".join(message.strip().lower().split())


def match_command(message: str) -> str | None:
    """Return the known command a message starts with, if any."""
    text = _normalize(message).rstrip(".!?")
    # Longest first so overlapping prefixes resolve to the most specific command.
    for command in sorted(KNOWN_COMMANDS, key=len, reverse=True):
        if text == command:
            return command
        if command in EXACT_COMMANDS:
            continue
        if text.startswith(command + " ") or text.startswith(command + ":"):
            return command
    return None


def has_file_target(message: str) -> bool:
    return FILE_TARGET_PATTERN.search(message) is not None


def _starts_with_task_verb(text: str) -> bool:
    return any(text == verb or text.startswith(verb + " ") for verb in TASK_VERBS)


def _has_actionable_target(text: str) -> bool:
    if has_file_target(text) or FILE_SCOPE_PATTERN.search(text):
        return True
    return any(re.search(rf"\b{re.escape(verb)}\b", text) for verb in TASK_VERBS)


def classify_intent(message: str) -> Intent:
    text = _normalize(message)
    if not text:
        return Intent.CHAT
    if match_command(text):
        return Intent.COMMAND
    if PLAN_INTENT_PATTERN.search(text):
        return Intent.TASK
    if EDIT_PLAN_PATTERN.search(text):
        return Intent.TASK

    file_target = has_file_target(text)
    file_intent = FILE_OP_PATTERN.search(text) is not None and FILE_SCOPE_PATTERN.search(text)
    if SAVE_INTENT_PATTERN.search(text) or file_intent or file_target:
        return Intent.TASK

    write_verb = WRITE_VERB_PATTERN.search(text) is not None
    if write_verb and FILE_CREATE_TARGET_PATTERN.search(text):
        return Intent.TASK
    if SETUP_PATTERN.search(text) and PROJECT_PATTERN.search(text):
        return Intent.TASK
    if write_verb:
        return Intent.CHAT

    if _starts_with_task_verb(text):
        return Intent.TASK
    if any(phrase in text for phrase in TASK_PHRASES) and _has_actionable_target(text):
        return Intent.TASK
    return Intent.CHAT


def looks_like_tool_use(message: str) -> bool:
    return TOOL_USE_PATTERN.search(message) is not None


def looks_like_command(message: str) -> bool:
    text = message.strip()
    return text.startswith(COMMAND_MARKERS) or match_command(text) is not None


def edit_plan_instruction(message: str) -> str | None:
    """Return the edit instruction from an "edit plan: ..." turn, or None."""
    text = message.strip()
    match = EDIT_PLAN_PATTERN.match(text)
    if match is None:
        return None
    return text[match.end():].strip()
