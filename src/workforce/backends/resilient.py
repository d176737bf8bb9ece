from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from workforce.backends.base import (
    BackendExecutionError,
    BackendTimeoutError,
    CompletionBackend,
    CompletionOptions,
)

BackendEventHook = Callable[[dict[str, Any]], None]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


class ResilientBackend(CompletionBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover."""

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: CompletionBackend,
        retry_policy: RetryPolicy,
        *,
        fallback_name: str | None = None,
        fallback_backend: CompletionBackend | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name or primary_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        logger.debug("backend event: %s", event)
        if self.event_hook:
            self.event_hook(event)

    def _attempt_plan(self) -> list[tuple[str, CompletionBackend]]:
        attempts: list[tuple[str, CompletionBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_backend is not None and self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))
        return attempts

    def _record_failure(
        self,
        errors: list[str],
        backend_name: str,
        attempt: int,
        error: Exception,
        retriable: bool,
    ) -> None:
        errors.append(f"{backend_name}[{attempt}]: {error}")
        self._emit(
            {
                "event": "backend_attempt_failed",
                "backend": backend_name,
                "attempt": attempt,
                "call": "complete",
                "error": str(error),
                "retriable": retriable,
            }
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        options: CompletionOptions | None = None,
    ) -> str:
        errors: list[str] = []
        for backend_name, backend in self._attempt_plan():
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "call": "complete",
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    text = await asyncio.wait_for(
                        backend.complete(messages, options),
                        timeout=self.retry_policy.timeout_seconds,
                    )
                except TimeoutError:
                    error = BackendTimeoutError(
                        f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                        backend=backend_name,
                        retriable=True,
                    )
                    self._record_failure(errors, backend_name, attempt, error, True)
                    continue
                except BackendExecutionError as exc:
                    self._record_failure(errors, backend_name, attempt, exc, exc.retriable)
                    if not exc.retriable:
                        break
                    continue
                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                            "call": "complete",
                        }
                    )
                return text

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed for complete. {summary}",
            backend=self.name,
            retriable=False,
        )
