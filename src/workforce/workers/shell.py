from __future__ import annotations

from workforce.models import Capability
from workforce.workers.base import Worker


class ShellWorker(Worker):
    capability = Capability.SHELL
    fallback_prompt = """
You are the shell specialist.
Translate the task into a single non-interactive command using the allowed operations.
Never chain commands or rely on shell expansion.
""".strip()
    temperature = 0.0
