from workforce.backends.base import (
    BackendExecutionError,
    BackendTimeoutError,
    CompletionBackend,
    CompletionOptions,
)
from workforce.backends.openai_chat import OpenAIChatBackend
from workforce.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "BackendExecutionError",
    "BackendTimeoutError",
    "CompletionBackend",
    "CompletionOptions",
    "OpenAIChatBackend",
    "ResilientBackend",
    "RetryPolicy",
]
