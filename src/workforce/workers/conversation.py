from __future__ import annotations

import json
from typing import Any

from workforce.models import Capability
from workforce.workers.base import Worker


class ConversationWorker(Worker):
    capability = Capability.CONVERSATION
    prompt_file = "conversation.md"
    fallback_prompt = """
You are a helpful, concise assistant.
Answer the user's latest message directly.
Use the recent turns only to resolve references; do not repeat them.
""".strip()
    temperature = 0.7

    def _user_prompt(self) -> str:
        # Plan steps carry goal and upstream results; chat turns only carry recent_turns.
        context = {
            key: value
            for key, value in self.context.items()
            if key != "recent_turns" and value not in (None, "", {}, [])
        }
        if not context:
            return self.description
        rendered = json.dumps(context, ensure_ascii=False, indent=2, default=str)
        return f"{self.description}\n\nContext JSON:\n{rendered}"

    def _messages(self) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": self.system_prompt}]
        for turn in self.context.get("recent_turns") or []:
            if isinstance(turn, dict) and turn.get("role") in {"user", "assistant"}:
                messages.append({"role": turn["role"], "content": str(turn.get("content") or "")})
        messages.append({"role": "user", "content": self._user_prompt()})
        return messages

    async def _execute(self) -> tuple[str, dict[str, Any]]:
        return await self._complete(json_only=False), {"mode": "completion"}
