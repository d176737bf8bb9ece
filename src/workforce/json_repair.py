"""Best-effort extraction of a JSON object from model output.

Each repair strategy is a plain function from raw text to a candidate
string; strategies are tried in order and the first candidate that parses
to a JSON object wins.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.IGNORECASE | re.DOTALL)
CLOSERS = {"{": "}", "[": "]"}


@dataclass(slots=True)
class JsonExtraction:
    payload: dict[str, Any]
    strategy: str


def _direct(text: str) -> str | None:
    return text.strip() or None


def _fenced(text: str) -> str | None:
    match = FENCE_PATTERN.search(text)
    return match.group(1).strip() if match else None


def _outer_span(text: str) -> str | None:
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    return text[start : end + 1]


def _from_first_brace(text: str) -> str | None:
    start = text.find("{")
    if start < 0:
        return None
    return text[start:].strip()


def _close_steps_array(text: str) -> str | None:
    candidate = _from_first_brace(text)
    if candidate is None or '"steps":' not in candidate:
        return None
    steps_at = candidate.find('"steps":')
    if "]" in candidate[steps_at:]:
        return None
    return candidate.rstrip().rstrip(",") + "]}"


def _scan(text: str) -> tuple[list[str], int | None, list[str]]:
    """Return (open stack at end, index after last nested close, stack at that index)."""
    stack: list[str] = []
    in_string = False
    escaped = False
    last_close: int | None = None
    stack_at_close: list[str] = []
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in CLOSERS:
            stack.append(char)
        elif char in ("}", "]"):
            if not stack or CLOSERS[stack[-1]] != char:
                break
            stack.pop()
            if stack:
                last_close = index + 1
                stack_at_close = list(stack)
    if in_string:
        stack.append('"')
    return stack, last_close, stack_at_close


def _closing_for(stack: list[str]) -> str:
    return "".join('"' if item == '"' else CLOSERS[item] for item in reversed(stack))


def _append_closers(text: str) -> str | None:
    candidate = _from_first_brace(text)
    if candidate is None:
        return None
    stack, _, _ = _scan(candidate)
    if not stack:
        return None
    return candidate.rstrip().rstrip(",") + _closing_for(stack)


def _truncate_balanced(text: str) -> str | None:
    candidate = _from_first_brace(text)
    if candidate is None:
        return None
    _, last_close, stack_at_close = _scan(candidate)
    if last_close is None:
        return None
    return candidate[:last_close] + _closing_for(stack_at_close)


REPAIR_STRATEGIES: tuple[tuple[str, Callable[[str], str | None]], ...] = (
    ("direct", _direct),
    ("fenced", _fenced),
    ("outer_span", _outer_span),
    ("close_steps_array", _close_steps_array),
    ("append_closers", _append_closers),
    ("truncate_balanced", _truncate_balanced),
)


def extract_json_object(text: str) -> JsonExtraction | None:
    if not text or not text.strip():
        return None
    for name, strategy in REPAIR_STRATEGIES:
        candidate = strategy(text)
        if not candidate:
            continue
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return JsonExtraction(payload=parsed, strategy=name)
    return None
