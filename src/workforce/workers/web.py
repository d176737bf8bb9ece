from __future__ import annotations

from workforce.models import Capability
from workforce.workers.base import Worker


class WebWorker(Worker):
    capability = Capability.WEB
    fallback_prompt = """
You are the research specialist.
Answer the task with sourced, factual findings.
Say plainly when something cannot be verified.
""".strip()
