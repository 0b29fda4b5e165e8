"""Mock engine for running without a model or tool gateway.

Selected by ``mock_mode``. Answers every turn with the same canned text,
streamed in fixed-size chunks, and still records the turn in the store so
conversation endpoints behave as they do in live mode.
"""

from typing import AsyncIterator, Optional

from orchestrator.engine import TurnEngine
from shared.errors import PersistenceError
from shared.logging import bind_call, get_logger
from shared.models import CallContext, ChatRequest, ChatResponse, FinalEvent, StreamEvent, TokenEvent
from store.base import ConversationStore

logger = get_logger(__name__)

MOCK_ANSWER = "(mock) I am running without a language model."


class MockEngine(TurnEngine):
    """Deterministic stand-in for ``OrchestrationEngine``."""

    def __init__(
        self,
        store: Optional[ConversationStore] = None,
        answer: str = MOCK_ANSWER,
        chunk_size: int = 20
    ) -> None:
        self.store = store
        self.answer = answer
        self.chunk_size = chunk_size

    def chunks(self) -> list[str]:
        return [
            self.answer[start:start + self.chunk_size]
            for start in range(0, len(self.answer), self.chunk_size)
        ]

    async def _run(
        self,
        caller_key: str,
        request: ChatRequest,
        ctx: CallContext,
        streaming: bool
    ) -> AsyncIterator[StreamEvent]:
        self._validate(caller_key, request)
        log = bind_call(
            logger,
            ctx.request_id,
            caller_key,
            conversation_id=request.conversation_id,
            mode="mock"
        )
        log.info("Turn started", streaming=streaming)

        conversation_id = request.conversation_id
        if conversation_id and self.store is not None:
            try:
                await self.store.ensure_conversation(caller_key, conversation_id)
            except PersistenceError as e:
                log.warning("Conversation store unavailable", error=str(e))

        if streaming:
            for chunk in self.chunks():
                yield TokenEvent(text=chunk)

        steps = []
        if conversation_id:
            step = await self._persist_turn(caller_key, conversation_id, request.message, self.answer, log)
            if step is not None:
                steps.append(step)

        log.info("Turn finished")
        yield FinalEvent(response=ChatResponse(answer=self.answer, steps=steps))
