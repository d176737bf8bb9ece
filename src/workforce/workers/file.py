from __future__ import annotations

from workforce.models import Capability
from workforce.workers.base import Worker


class FileWorker(Worker):
    capability = Capability.FILE
    fallback_prompt = """
You are the file specialist.
Complete the task using exactly one of the allowed file operations.
Use workspace-relative paths and never guess file contents.
""".strip()
    temperature = 0.1
