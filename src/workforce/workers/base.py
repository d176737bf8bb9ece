from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from importlib import resources
from typing import Any

from workforce.backends.base import BackendExecutionError, CompletionBackend, CompletionOptions
from workforce.capabilities import CapabilityError, Operation
from workforce.json_repair import extract_json_object
from workforce.models import Capability, TaskResult

logger = logging.getLogger(__name__)


class WorkerError(RuntimeError):
    """Raised inside a worker run; ``transient`` failures are eligible for retry."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class WorkerValidationError(WorkerError):
    """Raised when a worker's input or the model's answer is unusable. Never retried."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=False)


@dataclass(slots=True)
class WorkerResult:
    success: bool
    content: str = ""
    error: str | None = None
    transient: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_task_result(self) -> TaskResult:
        return TaskResult(success=self.success, content=self.content, error=self.error)


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, indent=2, default=str)


class Worker:
    """Runs one task description for one capability and then is thrown away."""

    capability: Capability = Capability.CONVERSATION
    prompt_file: str | None = None
    fallback_prompt: str = "You are a focused assistant that completes one task."
    temperature: float = 0.3

    def __init__(
        self,
        backend: CompletionBackend,
        description: str,
        *,
        context: dict[str, Any] | None = None,
        operations: Sequence[Operation] = (),
        model: str | None = None,
    ) -> None:
        foreign = [op.name for op in operations if op.capability is not self.capability]
        if foreign:
            raise CapabilityError(
                f"{type(self).__name__} cannot be granted operations outside the "
                f"{self.capability.value} capability: {', '.join(sorted(foreign))}"
            )
        self.backend = backend
        self.description = description
        self.context = dict(context or {})
        self.model = model
        self._operations = {op.name: op for op in operations}
        self.system_prompt = self._load_system_prompt()

    @property
    def allowed_operations(self) -> list[str]:
        return sorted(self._operations)

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("workforce.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    def _user_prompt(self) -> str:
        parts = [self.description]
        context = {
            key: value for key, value in self.context.items() if value not in (None, "", {}, [])
        }
        if context:
            parts.append("Context JSON:")
            parts.append(json.dumps(context, ensure_ascii=False, indent=2, default=str))
        if self._operations:
            parts.append(
                "Allowed operations (answer with a JSON object "
                '{"operation": name, "params": {...}} or {"content": text}):'
            )
            parts.append(
                json.dumps(
                    [op.describe() for op in self._operations.values()],
                    ensure_ascii=False,
                    indent=2,
                )
            )
        return "\n\n".join(parts)

    def _messages(self) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": self._user_prompt()},
        ]

    async def _complete(self, *, json_only: bool) -> str:
        text = await self.backend.complete(
            self._messages(),
            CompletionOptions(json_only=json_only, temperature=self.temperature, model=self.model),
        )
        if not text.strip():
            raise WorkerError("Model returned an empty response.", transient=True)
        return text.strip()

    async def _invoke(self, name: str, params: Any) -> tuple[str, dict[str, Any]]:
        operation = self._operations.get(name)
        if operation is None:
            raise WorkerValidationError(
                f"Operation '{name}' is outside the {self.capability.value} capability."
            )
        if not isinstance(params, dict):
            raise WorkerValidationError(f"Parameters for '{name}' must be an object.")
        result = await operation.invoke(params)
        return _render(result), {"mode": "operation", "operation": name, "params": params}

    async def _execute(self) -> tuple[str, dict[str, Any]]:
        declared = self.context.get("operation")
        if declared:
            return await self._invoke(str(declared), self.context.get("params") or {})
        if not self._operations:
            return await self._complete(json_only=False), {"mode": "completion"}

        raw = await self._complete(json_only=True)
        extraction = extract_json_object(raw)
        if extraction is None:
            return raw, {"mode": "completion"}
        payload = extraction.payload
        if payload.get("operation"):
            return await self._invoke(str(payload["operation"]), payload.get("params") or {})
        content = payload.get("content")
        if not content:
            raise WorkerValidationError("Model answered with neither an operation nor content.")
        return _render(content), {"mode": "completion"}

    async def run(self) -> WorkerResult:
        try:
            content, metadata = await self._execute()
        except WorkerError as exc:
            return WorkerResult(success=False, error=str(exc), transient=exc.transient)
        except CapabilityError as exc:
            return WorkerResult(success=False, error=str(exc), transient=False)
        except BackendExecutionError as exc:
            return WorkerResult(success=False, error=str(exc), transient=exc.retriable)
        except Exception as exc:
            logger.exception("%s worker raised unexpectedly", self.capability.value)
            error = f"{type(exc).__name__}: {exc}"
            return WorkerResult(success=False, error=error, transient=False)
        metadata["capability"] = self.capability.value
        return WorkerResult(success=True, content=content, metadata=metadata)
