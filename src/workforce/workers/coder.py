from __future__ import annotations

from workforce.models import Capability
from workforce.workers.base import Worker


class CodeWorker(Worker):
    capability = Capability.CODE
    fallback_prompt = """
You are the code specialist.
Produce minimal, working code for the task and explain how to run it.
""".strip()
    temperature = 0.2
