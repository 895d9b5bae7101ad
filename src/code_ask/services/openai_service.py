from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterable, AsyncIterator

import httpx
import openai
from openai import AsyncOpenAI
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from code_ask.config import DEFAULT_OLLAMA_BASE_URL, ModelConfig
from code_ask.models.agent_schemas import ProviderError
from code_ask.models.events import Done, StreamEvent, TextDelta, ToolCallEnd, ToolCallStart
from code_ask.models.schemas import AssistantMessage, ToolCall, ToolMessage, Usage, UserMessage
from code_ask.services.llm_service import (
    ChatRequest,
    ChatResponse,
    Provider,
    new_call_id,
    parse_arguments,
)

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)


@dataclass
class _PendingCall:
    index: int
    id: str = ""
    name: str = ""
    parts: list[str] = field(default_factory=list)

    def finish(self) -> ToolCall:
        return ToolCall(
            id=self.id or new_call_id(),
            name=self.name,
            arguments=parse_arguments("".join(self.parts)),
        )


def _usage(raw: Any) -> Usage:
    if raw is None:
        return Usage()
    return Usage(
        input_tokens=raw.prompt_tokens or 0,
        output_tokens=raw.completion_tokens or 0,
        total_tokens=raw.total_tokens or 0,
    )


class OpenAIProvider(Provider):
    name = "openai"
    include_usage = True
    max_tokens_param = "max_completion_tokens"

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        try:
            self.client = AsyncOpenAI(
                api_key=config.api_key or None,
                base_url=config.base_url or None,
            )
        except openai.OpenAIError as e:
            raise ProviderError(str(e), provider=self.name) from e

    def _error(self, e: Exception) -> ProviderError:
        return ProviderError(str(e), provider=self.name, status_code=getattr(e, "status_code", None))

    def build_messages(self, request: ChatRequest) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        for msg in request.messages:
            if isinstance(msg, UserMessage):
                messages.append({"role": "user", "content": msg.content})
            elif isinstance(msg, AssistantMessage):
                entry: dict[str, Any] = {"role": "assistant", "content": msg.content or None}
                if msg.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                        }
                        for call in msg.tool_calls
                    ]
                messages.append(entry)
            elif isinstance(msg, ToolMessage):
                messages.append({"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.text})
        return messages

    def _kwargs(self, request: ChatRequest, stream: bool) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": request.model or self.config.model,
            "messages": self.build_messages(request),
        }
        if request.tools:
            kwargs["tools"] = request.tools
        max_tokens = request.max_tokens or self.config.max_tokens
        if max_tokens is not None:
            kwargs[self.max_tokens_param] = max_tokens
        temperature = request.temperature if request.temperature is not None else self.config.temperature
        if temperature is not None:
            kwargs["temperature"] = temperature
        if stream:
            kwargs["stream"] = True
            if self.include_usage:
                kwargs["stream_options"] = {"include_usage": True}
        return kwargs

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=2, max=30),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True,
    )
    async def _create(self, **kwargs: Any) -> Any:
        return await self.client.chat.completions.create(**kwargs)

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        try:
            stream = await self._create(**self._kwargs(request, stream=True))
        except openai.APIError as e:
            raise self._error(e) from e
        try:
            async for event in self.translate(stream):
                yield event
        except (openai.APIError, httpx.HTTPError) as e:
            raise self._error(e) from e
        finally:
            await stream.close()

    async def translate(self, chunks: AsyncIterable[Any]) -> AsyncIterator[StreamEvent]:
        """Turn chat completion chunks into canonical events.

        Tool call fragments are keyed by index; a new index closes the previous
        call, so Start/End pairs never interleave.
        """
        pending: _PendingCall | None = None
        usage = Usage()
        stop_reason = ""
        async for chunk in chunks:
            if getattr(chunk, "usage", None) is not None:
                usage = _usage(chunk.usage)
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            if delta is not None:
                if delta.content:
                    yield TextDelta(delta.content)
                for fragment in delta.tool_calls or []:
                    fn = fragment.function
                    if pending is None or fragment.index != pending.index:
                        if pending is not None:
                            yield ToolCallEnd(pending.finish())
                        pending = _PendingCall(index=fragment.index, id=fragment.id or "")
                        if fn is not None and fn.name:
                            pending.name = fn.name
                        if not pending.id:
                            pending.id = new_call_id()
                        yield ToolCallStart(ToolCall(id=pending.id, name=pending.name))
                    elif fn is not None and fn.name and not pending.name:
                        pending.name = fn.name
                    if fn is not None and fn.arguments:
                        pending.parts.append(fn.arguments)
            if choice.finish_reason:
                stop_reason = choice.finish_reason
        if not stop_reason:
            # Cut off before any finish_reason; send() reports the missing Done
            return
        if pending is not None:
            yield ToolCallEnd(pending.finish())
        yield Done(usage=usage, stop_reason=stop_reason)

    async def complete(self, request: ChatRequest) -> ChatResponse:
        try:
            response = await self._create(**self._kwargs(request, stream=False))
        except openai.APIError as e:
            raise self._error(e) from e
        return self.parse_response(response)

    def parse_response(self, response: Any) -> ChatResponse:
        if not response.choices:
            return ChatResponse(usage=_usage(response.usage))
        choice = response.choices[0]
        message = choice.message
        calls = [
            ToolCall(
                id=tc.id or new_call_id(),
                name=tc.function.name,
                arguments=parse_arguments(tc.function.arguments),
            )
            for tc in message.tool_calls or []
        ]
        return ChatResponse(
            content=message.content or "",
            tool_calls=calls,
            usage=_usage(response.usage),
            stop_reason=choice.finish_reason or "",
        )


class OpenAICompatibleProvider(OpenAIProvider):
    """Any server speaking the chat completions API. Used without streaming."""

    name = "openai-compatible"
    supports_streaming = False
    max_tokens_param = "max_tokens"


class OllamaProvider(OpenAIProvider):
    name = "ollama"
    include_usage = False
    max_tokens_param = "max_tokens"

    def __init__(self, config: ModelConfig) -> None:
        if not config.base_url or not config.api_key:
            config = replace(
                config,
                base_url=config.base_url or DEFAULT_OLLAMA_BASE_URL,
                api_key=config.api_key or "ollama",
            )
        super().__init__(config)
