from __future__ import annotations

import logging
from typing import Any

from workforce.backends.base import CompletionBackend
from workforce.capabilities import CapabilityError, CapabilityRegistry
from workforce.models import Capability, Task
from workforce.workers.base import Worker
from workforce.workers.coder import CodeWorker
from workforce.workers.conversation import ConversationWorker
from workforce.workers.file import FileWorker
from workforce.workers.shell import ShellWorker
from workforce.workers.web import WebWorker

logger = logging.getLogger(__name__)

WORKER_TYPES: dict[Capability, type[Worker]] = {
    Capability.CONVERSATION: ConversationWorker,
    Capability.FILE: FileWorker,
    Capability.SHELL: ShellWorker,
    Capability.WEB: WebWorker,
    Capability.CODE: CodeWorker,
}


class WorkerFactory:
    """Builds a fresh worker per task, granted only its capability's operations."""

    def __init__(
        self,
        backend: CompletionBackend,
        registry: CapabilityRegistry,
        *,
        model: str | None = None,
        temperatures: dict[Capability, float] | None = None,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.model = model
        self.temperatures = dict(temperatures or {})

    def spawn(
        self,
        capability: Capability,
        task: Task | str,
        *,
        context: dict[str, Any] | None = None,
    ) -> Worker:
        if not self.registry.is_enabled(capability):
            raise CapabilityError(f"The {capability.value} capability is disabled.")
        description = task.description if isinstance(task, Task) else str(task)
        worker_type = WORKER_TYPES[capability]
        worker = worker_type(
            self.backend,
            description,
            context=context,
            operations=self.registry.operations_for(capability),
            model=self.model,
        )
        if capability in self.temperatures:
            worker.temperature = self.temperatures[capability]
        logger.debug(
            "spawned %s for %r with operations %s",
            worker_type.__name__,
            description[:60],
            worker.allowed_operations,
        )
        return worker
