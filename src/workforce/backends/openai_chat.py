from __future__ import annotations

import asyncio
import logging
from typing import Any

from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI

from workforce.backends.base import (
    BackendExecutionError,
    BackendTimeoutError,
    CompletionBackend,
    CompletionOptions,
)

logger = logging.getLogger(__name__)


class OpenAIChatBackend(CompletionBackend):
    """Chat Completions backend; any OpenAI-compatible endpoint works via ``base_url``."""

    name = "openai"

    def __init__(
        self,
        *,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        api_key: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self._client: Any | None = client
        self._client_error: str | None = None
        if self._client is None:
            try:
                self._client = OpenAI(base_url=base_url or None, api_key=api_key or None)
            except Exception as exc:
                self._client = None
                self._client_error = str(exc)
                logger.warning("OpenAI client unavailable: %s", exc)

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        if isinstance(payload, dict):
            choices = payload.get("choices") or []
            if choices and isinstance(choices[0], dict):
                message = choices[0].get("message") or {}
                return str(message.get("content") or "")
            return ""
        choices = getattr(payload, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        return str(getattr(message, "content", None) or "")

    async def complete(
        self,
        messages: list[dict[str, str]],
        options: CompletionOptions | None = None,
    ) -> str:
        if self._client is None:
            raise BackendExecutionError(
                f"OpenAI client is not configured: {self._client_error or 'unknown error'}",
                backend=self.name,
                retriable=False,
            )
        opts = options or CompletionOptions()
        request: dict[str, Any] = {
            "model": opts.model or self.model,
            "messages": messages,
            "temperature": opts.temperature,
        }
        if opts.json_only:
            request["response_format"] = {"type": "json_object"}
        if opts.max_tokens:
            request["max_tokens"] = opts.max_tokens

        def _request() -> Any:
            return self._client.chat.completions.create(**request)

        try:
            payload = await asyncio.to_thread(_request)
        except APITimeoutError as exc:
            raise BackendTimeoutError(
                f"OpenAI request timed out: {exc}", backend=self.name, retriable=True
            ) from exc
        except APIConnectionError as exc:
            raise BackendExecutionError(
                f"OpenAI connection failed: {exc}", backend=self.name, retriable=True
            ) from exc
        except APIStatusError as exc:
            raise BackendExecutionError(
                f"OpenAI request failed with status {exc.status_code}: {exc}",
                backend=self.name,
                status_code=exc.status_code,
                retriable=exc.status_code == 429 or exc.status_code >= 500,
            ) from exc

        return self._extract_text(payload).strip()
