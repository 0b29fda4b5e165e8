"""Orchestration engine - the per-turn control loop.

The engine coordinates:
- Conversation history from the store
- Model rounds with the static tool catalog
- Tool execution via the gateway client
- Response assembly and persistence

A turn is a single async generator. Blocking callers drain it and keep the
final event; streaming callers receive partial-text events as the model
produces them. Both paths run the same loop, so they end in the same
response.
"""

import asyncio
import json
import time
import weakref
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Optional, TypeVar

from gateway_client.client import ToolGatewayClient
from orchestrator.assembler import ResponseAssembler
from orchestrator.llm import LLMProvider, TokenCallback, emit_token
from shared.config import EngineSettings
from shared.errors import (
    InvalidInputError,
    ModelError,
    ModelResponseError,
    PersistenceError,
    ToolExecutionError,
    TurnTimeoutError,
    UpstreamUnavailableError,
)
from shared.logging import bind_call, get_logger
from shared.models import (
    Attachment,
    CallContext,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    FinalEvent,
    ModelReply,
    Role,
    Step,
    StreamEvent,
    TokenEvent,
    ToolCall,
)
from store.base import ConversationStore

logger = get_logger(__name__)

T = TypeVar("T")


DEFAULT_SYSTEM_PROMPT = """You are a campaign analytics assistant for an advertising network.

Use the available tools to look up campaigns, advertisers, creatives, impressions, devices, venues, proof-of-play records and server metrics. Each tool has a specific purpose described in its definition.

Guidelines:
- Never make up numbers - use tools to get accurate data
- If a tool returns an error, explain the issue to the user
- If the request is ambiguous (for example, no campaign is named), ask for clarification
- Poster IDs returned by proof-of-play tools are not campaign IDs; look them up with search_creatives
- When a lookup returns no items, say that no data was found for those filters
- Keep answers short and lead with the figures the user asked for
"""

ROUND_LIMIT_PROMPT = "Please answer using the information gathered so far."

SYNTHESIS_FALLBACK = (
    "I gathered some information but could not put together a final answer "
    "within the allowed number of steps. Please try a more specific question."
)


async def _within(deadline: float, awaitable: Awaitable[T]) -> T:
    """Await under the turn deadline (loop time)."""
    async with asyncio.timeout_at(deadline):
        return await awaitable


def _clip(text: str, limit: int) -> tuple[str, bool]:
    if len(text) <= limit:
        return text, False
    return text[:limit], True


def _campaign_id(arguments: Any) -> Optional[str]:
    if not isinstance(arguments, dict):
        return None
    value = arguments.get("campaign_id")
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    value = str(value).strip()
    return value or None


def _persistence_step(error: Exception) -> Step:
    return Step(
        tool="conversation_store",
        status=503,
        error=f"persistence_degraded: {error}"
    )


class TurnEngine(ABC):
    """
    Common surface of the real and mock engines.

    Subclasses implement ``_run``; blocking, callback and iterator access are
    all derived from it.
    """

    store: Optional[ConversationStore] = None

    @abstractmethod
    def _run(
        self,
        caller_key: str,
        request: ChatRequest,
        ctx: CallContext,
        streaming: bool
    ) -> AsyncIterator[StreamEvent]:
        """Drive one turn, yielding token events (when streaming) then one final event."""

    @staticmethod
    def _validate(caller_key: str, request: ChatRequest) -> None:
        if not caller_key or not caller_key.strip():
            raise InvalidInputError("caller key is required")
        if not request.message or not request.message.strip():
            raise InvalidInputError("message is required")

    async def _persist_turn(
        self,
        caller_key: str,
        conversation_id: str,
        user_text: str,
        answer: str,
        log: Any
    ) -> Optional[Step]:
        """Append the user message and the answer; failures become a step."""
        if self.store is None:
            return None
        try:
            await self.store.append_message(caller_key, conversation_id, Role.USER, user_text)
            await self.store.append_message(caller_key, conversation_id, Role.ASSISTANT, answer)
        except PersistenceError as e:
            log.warning("Conversation persistence degraded", error=str(e))
            return _persistence_step(e)
        return None

    async def run_turn(
        self,
        caller_key: str,
        request: ChatRequest,
        ctx: Optional[CallContext] = None
    ) -> ChatResponse:
        """
        Run a turn and return its final response.

        Raises:
            InvalidInputError: If the caller key or message is empty
            NotFoundError: If the conversation belongs to another caller
            UpstreamUnavailableError: If the model fails on the first round or
                the turn deadline elapses
        """
        ctx = ctx or CallContext(caller_key=caller_key)
        response: Optional[ChatResponse] = None
        async for event in self._run(caller_key, request, ctx, streaming=False):
            if isinstance(event, FinalEvent):
                response = event.response
        if response is None:
            raise ModelResponseError("turn ended without a response")
        return response

    def stream_turn(
        self,
        caller_key: str,
        request: ChatRequest,
        ctx: Optional[CallContext] = None
    ) -> AsyncIterator[StreamEvent]:
        """Ordered event channel for one turn: token events, then exactly one final event."""
        ctx = ctx or CallContext(caller_key=caller_key)
        return self._run(caller_key, request, ctx, streaming=True)

    async def run_turn_streaming(
        self,
        caller_key: str,
        request: ChatRequest,
        on_token: TokenCallback,
        ctx: Optional[CallContext] = None
    ) -> ChatResponse:
        """Run a turn, forwarding partial answer text to ``on_token`` as it arrives."""
        response: Optional[ChatResponse] = None
        async for event in self.stream_turn(caller_key, request, ctx):
            if isinstance(event, TokenEvent):
                await emit_token(on_token, event.text)
            else:
                response = event.response
        if response is None:
            raise ModelResponseError("turn ended without a response")
        return response


class OrchestrationEngine(TurnEngine):
    """
    Drives a turn through model rounds and tool calls.

    This is the central component that:
    1. Loads recent conversation history
    2. Supplies the static tool catalog to the model
    3. Executes requested tool calls sequentially via the gateway client
    4. Records one step per tool call
    5. Assembles and persists the final answer
    """

    def __init__(
        self,
        llm_provider: LLMProvider,
        gateway: ToolGatewayClient,
        store: Optional[ConversationStore] = None,
        assembler: Optional[ResponseAssembler] = None,
        settings: Optional[EngineSettings] = None
    ) -> None:
        """
        Initialize the engine.

        Args:
            llm_provider: Model provider for completions
            gateway: Tool gateway client (carries the tool catalog)
            store: Optional conversation store; None disables history and persistence
            assembler: Response assembler
            settings: Loop limits and prompt configuration
        """
        self.llm = llm_provider
        self.gateway = gateway
        self.store = store
        self.assembler = assembler or ResponseAssembler()
        self.settings = settings or EngineSettings()
        self.system_prompt = self.settings.system_prompt or DEFAULT_SYSTEM_PROMPT
        self._locks: "weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    @property
    def tools(self) -> Optional[list[dict[str, Any]]]:
        return self.gateway.catalog.get_tools_for_llm() or None

    def _conversation_lock(self, caller_key: str, conversation_id: Optional[str]) -> Optional[asyncio.Lock]:
        if not conversation_id or not self.settings.serialize_conversation_turns:
            return None
        key = (caller_key, conversation_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _run(
        self,
        caller_key: str,
        request: ChatRequest,
        ctx: CallContext,
        streaming: bool
    ) -> AsyncIterator[StreamEvent]:
        self._validate(caller_key, request)

        log = bind_call(logger, ctx.request_id, caller_key, conversation_id=request.conversation_id)
        timeout = self.settings.turn_timeout_seconds
        deadline = asyncio.get_running_loop().time() + timeout
        started = time.monotonic()
        log.info("Turn started", streaming=streaming, attachments=len(request.attachments))

        try:
            lock = self._conversation_lock(caller_key, request.conversation_id)
            if lock is None:
                async for event in self._turn(caller_key, request, ctx, streaming, deadline, log):
                    yield event
            else:
                await _within(deadline, lock.acquire())
                try:
                    async for event in self._turn(caller_key, request, ctx, streaming, deadline, log):
                        yield event
                finally:
                    lock.release()
        except TimeoutError as e:
            log.warning("Turn timed out", timeout_seconds=timeout)
            raise TurnTimeoutError(f"turn exceeded {timeout:g}s") from e

        log.info("Turn finished", duration_ms=round((time.monotonic() - started) * 1000, 1))

    async def _turn(
        self,
        caller_key: str,
        request: ChatRequest,
        ctx: CallContext,
        streaming: bool,
        deadline: float,
        log: Any
    ) -> AsyncIterator[StreamEvent]:
        steps: list[Step] = []
        conversation_id = request.conversation_id

        history: list[ChatMessage] = []
        if conversation_id and self.store is not None:
            try:
                await _within(deadline, self.store.ensure_conversation(caller_key, conversation_id))
                history = await _within(deadline, self._load_history(caller_key, conversation_id))
            except PersistenceError as e:
                log.warning("Conversation history unavailable", error=str(e))
                steps.append(_persistence_step(e))

        messages: list[ChatMessage] = [
            ChatMessage(role=Role.SYSTEM, content=self.system_prompt),
            *history,
            ChatMessage(role=Role.USER, content=self._user_content(request)),
        ]
        tools = self.tools
        max_rounds = self.settings.max_rounds

        final_text: Optional[str] = None
        rounds = 0
        while rounds < max_rounds:
            rounds += 1
            reply: Optional[ModelReply] = None
            try:
                async for event in self._model_round(messages, tools, streaming, deadline):
                    if isinstance(event, TokenEvent):
                        yield event
                    else:
                        reply = event
            except ModelError as e:
                if rounds == 1:
                    log.error("Model unavailable", error=str(e))
                    raise UpstreamUnavailableError(str(e)) from e
                log.warning("Model round failed", round=rounds, error=str(e))
                steps.append(Step(tool="model", status=e.upstream_status, error=str(e)))
                continue

            log.debug("Model round", round=rounds, tool_calls=len(reply.tool_calls))
            if reply.is_final:
                final_text = reply.content
                break

            messages.append(ChatMessage(
                role=Role.ASSISTANT,
                content=reply.content,
                tool_calls=reply.tool_calls
            ))
            for call in reply.tool_calls:
                step = await self._execute_tool_call(call, request.attachments, ctx, deadline, log)
                steps.append(step)
                messages.append(ChatMessage(
                    role=Role.TOOL,
                    content=self._format_tool_result(step, log),
                    tool_call_id=call.id
                ))
        else:
            log.warning("Round limit reached", rounds=max_rounds)
            steps.append(Step(
                tool="round_limit",
                status=0,
                error=f"round_limit_exceeded: no final answer after {max_rounds} model rounds"
            ))
            messages.append(ChatMessage(role=Role.USER, content=ROUND_LIMIT_PROMPT))
            try:
                reply = None
                async for event in self._model_round(messages, None, streaming, deadline):
                    if isinstance(event, TokenEvent):
                        yield event
                    else:
                        reply = event
                final_text = reply.content
            except ModelError as e:
                log.warning("Final synthesis failed", error=str(e))
                final_text = SYNTHESIS_FALLBACK
                if streaming:
                    yield TokenEvent(text=final_text)

        answer = self.assembler.compose_answer(final_text)
        if streaming and not (final_text or "").strip():
            yield TokenEvent(text=answer)

        if conversation_id:
            step = await _within(
                deadline,
                self._persist_turn(caller_key, conversation_id, request.message, answer, log)
            )
            if step is not None:
                steps.append(step)

        log.info("Turn assembled", rounds=rounds, steps=len(steps))
        yield FinalEvent(response=self.assembler.assemble(answer, steps))

    async def _load_history(self, caller_key: str, conversation_id: str) -> list[ChatMessage]:
        """Recent user/assistant messages, oldest first, each clipped."""
        limit = self.settings.history_limit
        if limit <= 0:
            return []
        stored = await self.store.list_messages(caller_key, conversation_id, limit)
        history = []
        for message in stored:
            if message.role not in (Role.USER, Role.ASSISTANT):
                continue
            content, _ = _clip(message.content, self.settings.history_message_chars)
            history.append(ChatMessage(role=message.role, content=content))
        return history

    def _user_content(self, request: ChatRequest) -> str:
        """The user turn, with a description of each attachment."""
        if not request.attachments:
            return request.message

        lines = [request.message, "", "Attachments:"]
        limit = self.settings.attachment_text_chars
        for attachment in request.attachments:
            lines.append(
                f"- {attachment.file_name} ({attachment.content_type}, {attachment.size} bytes)"
            )
            if attachment.is_text and limit > 0:
                text = attachment.content().decode("utf-8", errors="replace")
                text, truncated = _clip(text, limit)
                lines.append(text + ("\n[truncated]" if truncated else ""))
        return "\n".join(lines)

    async def _model_round(
        self,
        messages: list[ChatMessage],
        tools: Optional[list[dict[str, Any]]],
        streaming: bool,
        deadline: float
    ) -> AsyncIterator[Any]:
        """One model call: token events (streaming only), then the reply."""
        if not streaming:
            yield await _within(deadline, self.llm.complete(messages, tools))
            return

        reply: Optional[ModelReply] = None
        events = self.llm.stream(messages, tools)
        try:
            while True:
                try:
                    event = await _within(deadline, anext(events))
                except StopAsyncIteration:
                    break
                if isinstance(event, TokenEvent):
                    yield event
                else:
                    reply = event
        finally:
            await events.aclose()

        if reply is None:
            raise ModelResponseError("model stream ended without a reply")
        yield reply

    async def _execute_tool_call(
        self,
        call: ToolCall,
        attachments: list[Attachment],
        ctx: CallContext,
        deadline: float,
        log: Any
    ) -> Step:
        """Execute a single tool call and record its outcome. Never raises for tool failures."""
        started = time.monotonic()
        try:
            arguments = json.loads(call.arguments or "{}")
        except ValueError as e:
            step = Step(tool=call.name, status=400, error=f"invalid tool arguments: {e}")
        else:
            campaign_id = _campaign_id(arguments)
            try:
                result = await _within(deadline, self.gateway.invoke(
                    call.name,
                    arguments,
                    attachments=attachments,
                    request_id=ctx.request_id
                ))
            except ToolExecutionError as e:
                step = Step(tool=call.name, campaign_id=campaign_id, status=e.status_code, error=str(e))
            else:
                if result.error is not None:
                    step = Step(tool=call.name, campaign_id=campaign_id, status=0, error=result.error)
                else:
                    step = Step(
                        tool=call.name,
                        campaign_id=campaign_id,
                        status=result.status_code,
                        body=result.text()
                    )

        log.info(
            "Tool call finished",
            tool=call.name,
            status=step.status,
            duration_ms=round((time.monotonic() - started) * 1000, 1)
        )
        return step

    def _format_tool_result(self, step: Step, log: Any) -> str:
        """Tool message content sent back to the model."""
        payload: dict[str, Any] = {"status": step.status}
        if step.error is not None:
            payload["error"] = step.error
        else:
            body, truncated = _clip(step.body or "", self.settings.tool_result_chars)
            payload["body"] = body
            if truncated:
                payload["truncated"] = True
                log.info("Tool result truncated", tool=step.tool, chars=len(step.body or ""))
        return json.dumps(payload, ensure_ascii=False)
