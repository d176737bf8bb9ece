from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any

from workforce.config import CapabilitiesConfig
from workforce.models import Capability, Task

logger = logging.getLogger(__name__)

OperationHandler = Callable[[dict[str, Any]], Any]


class CapabilityError(RuntimeError):
    """Raised when an operation is unknown, disabled, or outside a worker's capability."""


@dataclass(slots=True)
class Operation:
    name: str
    capability: Capability
    description: str
    handler: OperationHandler
    parameters: tuple[str, ...] = ()
    requires_confirmation: bool = False

    async def invoke(self, params: dict[str, Any]) -> Any:
        missing = [name for name in self.parameters if name not in params]
        if missing:
            raise CapabilityError(
                f"Operation '{self.name}' is missing parameters: {', '.join(missing)}"
            )
        if inspect.iscoroutinefunction(self.handler):
            return await self.handler(params)
        return await asyncio.to_thread(self.handler, params)

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "capability": self.capability.value,
            "description": self.description,
            "parameters": list(self.parameters),
            "requires_confirmation": self.requires_confirmation,
        }


@dataclass(slots=True)
class CapabilityPolicy:
    requires_confirmation: bool = False
    concurrent: bool = False
    enabled: bool = True


DEFAULT_POLICIES: dict[Capability, CapabilityPolicy] = {
    Capability.CONVERSATION: CapabilityPolicy(concurrent=True),
    Capability.FILE: CapabilityPolicy(requires_confirmation=True),
    Capability.SHELL: CapabilityPolicy(requires_confirmation=True),
    Capability.WEB: CapabilityPolicy(concurrent=True),
    Capability.CODE: CapabilityPolicy(requires_confirmation=True),
}


def _capabilities(names: Iterable[str], setting: str) -> set[Capability]:
    resolved: set[Capability] = set()
    for name in names:
        capability = Capability.coerce(name)
        if capability is None:
            raise ValueError(f"Unknown capability '{name}' in [capabilities].{setting}")
        resolved.add(capability)
    return resolved


class CapabilityRegistry:
    """Named operations grouped by capability, plus per-capability execution policy."""

    def __init__(self, policies: dict[Capability, CapabilityPolicy] | None = None) -> None:
        source = policies or DEFAULT_POLICIES
        self._policies: dict[Capability, CapabilityPolicy] = {
            capability: replace(source.get(capability, CapabilityPolicy()))
            for capability in Capability
        }
        self._operations: dict[str, Operation] = {}

    @classmethod
    def from_config(cls, config: CapabilitiesConfig) -> CapabilityRegistry:
        confirm = _capabilities(config.requires_confirmation, "requires_confirmation")
        concurrent = _capabilities(config.concurrent, "concurrent")
        disabled = _capabilities(config.disabled, "disabled")
        return cls(
            {
                capability: CapabilityPolicy(
                    requires_confirmation=capability in confirm,
                    concurrent=capability in concurrent,
                    enabled=capability not in disabled,
                )
                for capability in Capability
            }
        )

    def register(self, operation: Operation) -> None:
        if operation.name in self._operations:
            raise CapabilityError(f"Operation '{operation.name}' is already registered.")
        self._operations[operation.name] = operation

    def register_all(self, operations: Iterable[Operation]) -> None:
        for operation in operations:
            self.register(operation)

    def get(self, name: str | None) -> Operation | None:
        if not name:
            return None
        return self._operations.get(name)

    def require(self, name: str) -> Operation:
        operation = self.get(name)
        if operation is None:
            raise CapabilityError(f"Unknown operation '{name}'.")
        return operation

    def operations_for(self, capability: Capability) -> list[Operation]:
        return [op for op in self._operations.values() if op.capability is capability]

    def policy(self, capability: Capability) -> CapabilityPolicy:
        return self._policies[capability]

    def is_enabled(self, capability: Capability) -> bool:
        return self._policies[capability].enabled

    def set_enabled(self, capability: Capability, enabled: bool) -> None:
        self._policies[capability].enabled = enabled
        logger.info("capability %s %s", capability.value, "enabled" if enabled else "disabled")

    def allows_concurrency(self, capability: Capability) -> bool:
        return self._policies[capability].concurrent

    def requires_confirmation(self, task: Task) -> bool:
        if self._policies[task.capability].requires_confirmation:
            return True
        operation = self.get(task.operation)
        return bool(operation and operation.requires_confirmation)

    def describe(self) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for capability in Capability:
            policy = self._policies[capability]
            rows.append(
                {
                    "capability": capability.value,
                    "enabled": policy.enabled,
                    "requires_confirmation": policy.requires_confirmation,
                    "concurrent": policy.concurrent,
                    "operations": [op.describe() for op in self.operations_for(capability)],
                }
            )
        return rows

