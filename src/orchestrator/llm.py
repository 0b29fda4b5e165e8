"""Model client layer using the OpenAI SDK.

Talks to an OpenAI-compatible chat completions endpoint. The model has no
direct gateway or application access: it only sees the messages and the
tool definitions it is given, and returns either a finished message or a
list of tool calls.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

import httpx
import openai
from openai import AsyncOpenAI

from shared.config import LLMSettings
from shared.errors import (
    InvalidInputError,
    ModelError,
    ModelResponseError,
    ModelStatusError,
    ModelTransportError,
)
from shared.logging import get_logger
from shared.models import ChatMessage, ModelReply, TokenEvent, ToolCall

logger = get_logger(__name__)

TokenCallback = Callable[[str], Union[None, Awaitable[None]]]


async def emit_token(on_token: TokenCallback, text: str) -> None:
    """Invoke a token callback that may be sync or async."""
    result = on_token(text)
    if inspect.isawaitable(result):
        await result


class LLMProvider(ABC):
    """
    Abstract base class for model providers.

    Integration rules:
    - The model receives only the catalog tools and the turn's messages
    - The model outputs either tool calls or a final message
    - The model never reaches the gateway or decides authorization
    """

    @abstractmethod
    async def complete(
        self,
        messages: list[ChatMessage],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> ModelReply:
        """
        Generate one completion.

        Args:
            messages: Working message list, system prompt first
            tools: Available tools in OpenAI function format; None disables tools

        Returns:
            Model reply with content and/or tool calls

        Raises:
            InvalidInputError: If ``messages`` is empty
            ModelError: On transport, status or response failures
        """

    @abstractmethod
    def stream(
        self,
        messages: list[ChatMessage],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> AsyncIterator[Union[TokenEvent, ModelReply]]:
        """
        Generate one completion incrementally.

        Yields zero or more ``TokenEvent`` in receipt order, then exactly one
        ``ModelReply`` carrying the accumulated content and tool calls.
        """

    async def complete_streaming(
        self,
        messages: list[ChatMessage],
        tools: Optional[list[dict[str, Any]]],
        on_token: TokenCallback
    ) -> ModelReply:
        """Stream a completion, forwarding content chunks to ``on_token``."""
        reply: Optional[ModelReply] = None
        async for event in self.stream(messages, tools):
            if isinstance(event, TokenEvent):
                await emit_token(on_token, event.text)
            else:
                reply = event
        if reply is None:
            raise ModelResponseError("model stream ended without a reply")
        return reply


def _to_openai_message(message: ChatMessage) -> dict[str, Any]:
    """Convert a working-list message to the chat completions wire format."""
    payload: dict[str, Any] = {"role": message.role.value, "content": message.content}
    if message.tool_calls:
        payload["content"] = message.content or None
        payload["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments},
            }
            for call in message.tool_calls
        ]
    if message.tool_call_id:
        payload["tool_call_id"] = message.tool_call_id
    return payload


def _map_error(error: Exception) -> ModelError:
    """Translate SDK and transport exceptions into model error kinds."""
    if isinstance(error, openai.APIStatusError):
        return ModelStatusError(
            f"model endpoint returned status {error.status_code}: {error.message}",
            upstream_status=error.status_code
        )
    if isinstance(error, (openai.APIConnectionError, httpx.RequestError)):
        return ModelTransportError(f"model endpoint unreachable: {error}")
    return ModelResponseError(f"model endpoint returned an unusable response: {error}")


class OpenAIProvider(LLMProvider):
    """Chat completions provider backed by the official OpenAI SDK."""

    def __init__(
        self,
        settings: LLMSettings,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self.settings = settings
        self._client = AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.api_base or None,
            timeout=settings.timeout_seconds,
            max_retries=0,
            http_client=http_client,
        )

    def _request_kwargs(
        self,
        messages: list[ChatMessage],
        tools: Optional[list[dict[str, Any]]]
    ) -> dict[str, Any]:
        if not messages:
            raise InvalidInputError("messages must not be empty")

        kwargs: dict[str, Any] = {
            "model": self.settings.model,
            "messages": [_to_openai_message(m) for m in messages],
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if self.settings.temperature is not None:
            kwargs["temperature"] = self.settings.temperature
        return kwargs

    async def complete(
        self,
        messages: list[ChatMessage],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> ModelReply:
        """Generate completion using the chat completions endpoint."""
        kwargs = self._request_kwargs(messages, tools)

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except (openai.APIError, httpx.RequestError) as e:
            error = _map_error(e)
            logger.error("LLM completion failed", error=str(error))
            raise error from e

        if not getattr(response, "choices", None):
            raise ModelResponseError("model endpoint returned no choices")

        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=tc.function.arguments or "{}"
            )
            for tc in (message.tool_calls or [])
            if getattr(tc, "function", None) is not None
        ]

        return ModelReply(
            content=message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or ("tool_calls" if tool_calls else "stop")
        )

    async def stream(
        self,
        messages: list[ChatMessage],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> AsyncIterator[Union[TokenEvent, ModelReply]]:
        """Stream a completion; tool call fragments are accumulated by index."""
        kwargs = self._request_kwargs(messages, tools)
        kwargs["stream"] = True

        content_parts: list[str] = []
        calls: dict[int, dict[str, Any]] = {}
        finish_reason = "stop"
        saw_choice = False

        try:
            stream = await self._client.chat.completions.create(**kwargs)
        except (openai.APIError, httpx.RequestError) as e:
            error = _map_error(e)
            logger.error("LLM stream failed to start", error=str(error))
            raise error from e

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                saw_choice = True
                choice = chunk.choices[0]
                delta = choice.delta

                if delta.content:
                    content_parts.append(delta.content)
                    yield TokenEvent(text=delta.content)

                for fragment in delta.tool_calls or []:
                    entry = calls.setdefault(
                        fragment.index,
                        {"id": "", "name": "", "arguments": []}
                    )
                    if fragment.id:
                        entry["id"] = fragment.id
                    if fragment.function is not None:
                        if fragment.function.name:
                            entry["name"] += fragment.function.name
                        if fragment.function.arguments:
                            entry["arguments"].append(fragment.function.arguments)

                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except (openai.APIError, httpx.RequestError) as e:
            error = _map_error(e)
            logger.error("LLM stream interrupted", error=str(error))
            raise error from e
        finally:
            await stream.close()

        if not saw_choice:
            raise ModelResponseError("model stream contained no choices")

        tool_calls = [
            ToolCall(
                id=entry["id"] or f"call_{index}",
                name=entry["name"],
                arguments="".join(entry["arguments"]) or "{}"
            )
            for index, entry in sorted(calls.items())
        ]

        yield ModelReply(
            content="".join(content_parts),
            tool_calls=tool_calls,
            finish_reason=finish_reason
        )


class MockLLMProvider(LLMProvider):
    """Scripted provider for tests: replays queued replies or raises queued errors."""

    def __init__(
        self,
        replies: Optional[list[Union[ModelReply, Exception]]] = None,
        chunk_size: int = 5,
        delay: float = 0.0
    ) -> None:
        self.call_history: list[dict[str, Any]] = []
        self.chunk_size = chunk_size
        self.delay = delay
        self._replies: deque[Union[ModelReply, Exception]] = deque(replies or [])

    def add_reply(self, reply: Union[ModelReply, Exception]) -> None:
        """Queue the next reply (or error) to return."""
        self._replies.append(reply)

    async def _next(
        self,
        messages: list[ChatMessage],
        tools: Optional[list[dict[str, Any]]]
    ) -> ModelReply:
        if not messages:
            raise InvalidInputError("messages must not be empty")
        self.call_history.append({"messages": list(messages), "tools": tools})
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self._replies:
            return ModelReply(content="This is a mock response.")
        reply = self._replies.popleft()
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def complete(
        self,
        messages: list[ChatMessage],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> ModelReply:
        return await self._next(messages, tools)

    async def stream(
        self,
        messages: list[ChatMessage],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> AsyncIterator[Union[TokenEvent, ModelReply]]:
        reply = await self._next(messages, tools)
        text = reply.content
        for start in range(0, len(text), self.chunk_size):
            yield TokenEvent(text=text[start:start + self.chunk_size])
        yield reply


def create_llm_provider(settings: LLMSettings) -> LLMProvider:
    """
    Factory function to create the model provider.

    Supports:
    - openai: OpenAI or any OpenAI-compatible chat completions endpoint

    Args:
        settings: LLM configuration settings

    Returns:
        Configured LLM provider

    Raises:
        ValueError: If provider is not supported
    """
    providers = {
        "openai": OpenAIProvider,
    }

    provider_class = providers.get(settings.provider)
    if not provider_class:
        raise ValueError(
            f"Unsupported LLM provider: {settings.provider}. "
            f"Supported: {list(providers.keys())}"
        )

    logger.info("Creating LLM provider", provider=settings.provider, model=settings.model)
    return provider_class(settings)
