from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from workforce.capabilities import CapabilityError
from workforce.intent import looks_like_command, looks_like_tool_use
from workforce.models import Capability, Message
from workforce.workers.base import WorkerResult
from workforce.workers.factory import WorkerFactory

logger = logging.getLogger(__name__)

Speculation = asyncio.Task[WorkerResult]


class SpeculativeExecutor:
    """Starts a conversation answer before the classification verdict is known.

    The speculative worker is built from exactly the same inputs as the
    regular conversation path, so adopting its result only saves latency.
    A discarded speculation keeps running in the background and its result
    is ignored.
    """

    def __init__(
        self,
        factory: WorkerFactory,
        *,
        enabled: bool = True,
        context_turns: int = 3,
    ) -> None:
        self.factory = factory
        self.enabled = enabled
        self.context_turns = max(0, int(context_turns))
        self._background: set[Speculation] = set()

    def conversation_context(self, history: Sequence[Message]) -> dict[str, object]:
        earlier = list(history)[:-1]
        recent = earlier[-self.context_turns :] if self.context_turns else []
        return {"recent_turns": [message.to_chat() for message in recent]}

    async def answer(self, history: Sequence[Message]) -> WorkerResult:
        """Answer the latest turn with a conversation worker."""
        if not history:
            return WorkerResult(success=False, error="Nothing to answer.")
        try:
            worker = self.factory.spawn(
                Capability.CONVERSATION,
                history[-1].content,
                context=self.conversation_context(history),
            )
        except CapabilityError as exc:
            return WorkerResult(success=False, error=str(exc))
        return await worker.run()

    def eligible(self, message: str, *, plan_pending: bool) -> bool:
        if not self.enabled or plan_pending:
            return False
        if looks_like_command(message):
            return False
        return not looks_like_tool_use(message)

    def maybe_speculate(
        self,
        history: Sequence[Message],
        *,
        plan_pending: bool = False,
    ) -> Speculation | None:
        if not history or not self.eligible(history[-1].content, plan_pending=plan_pending):
            return None
        snapshot = list(history)
        logger.debug("starting speculative conversation answer")
        return asyncio.create_task(self.answer(snapshot))

    async def reconcile(self, speculation: Speculation | None, verdict: str) -> WorkerResult | None:
        """Adopt a successful speculation for a conversation verdict; discard it otherwise."""
        if speculation is None:
            return None
        if verdict != "conversation":
            self.discard(speculation)
            return None
        try:
            result = await speculation
        except Exception:
            logger.exception("speculative conversation answer raised")
            return None
        if not result.success:
            logger.info("speculative answer failed: %s", result.error)
            return None
        logger.info("adopted speculative answer")
        return result

    def discard(self, speculation: Speculation) -> None:
        if speculation.done():
            self._consume(speculation)
            return
        self._background.add(speculation)
        speculation.add_done_callback(self._consume)
        logger.debug("discarded speculative answer; letting it finish in the background")

    def _consume(self, speculation: Speculation) -> None:
        self._background.discard(speculation)
        if speculation.cancelled():
            return
        error = speculation.exception()
        if error is not None:
            logger.debug("discarded speculation raised %r", error)

    @property
    def pending(self) -> int:
        return len(self._background)
