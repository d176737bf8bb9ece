from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


class BackendExecutionError(RuntimeError):
    """Raised when a completion request fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        status_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.status_code = status_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a completion request exceeds its configured timeout."""


@dataclass(slots=True)
class CompletionOptions:
    json_only: bool = False
    temperature: float = 0.2
    model: str | None = None
    max_tokens: int | None = None


class CompletionBackend(ABC):
    name: str = "backend"

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, str]],
        options: CompletionOptions | None = None,
    ) -> str:
        """Run one completion over a chat message list and return its text."""
