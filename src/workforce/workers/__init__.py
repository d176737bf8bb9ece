from workforce.workers.base import Worker, WorkerError, WorkerResult, WorkerValidationError
from workforce.workers.coder import CodeWorker
from workforce.workers.conversation import ConversationWorker
from workforce.workers.factory import WORKER_TYPES, WorkerFactory
from workforce.workers.file import FileWorker
from workforce.workers.shell import ShellWorker
from workforce.workers.web import WebWorker

__all__ = [
    "WORKER_TYPES",
    "CodeWorker",
    "ConversationWorker",
    "FileWorker",
    "ShellWorker",
    "WebWorker",
    "Worker",
    "WorkerError",
    "WorkerFactory",
    "WorkerResult",
    "WorkerValidationError",
]
