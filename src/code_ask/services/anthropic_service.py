from __future__ import annotations

import logging
from typing import Any, AsyncIterable, AsyncIterator

import anthropic
import httpx
from anthropic import AsyncAnthropic
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from code_ask.config import ModelConfig
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

DEFAULT_MAX_TOKENS = 8192

TRANSIENT_ERRORS = (anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError)


def _convert_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    converted = []
    for tool in tools:
        fn = tool.get("function", tool)
        converted.append(
            {
                "name": fn["name"],
                "description": fn.get("description", ""),
                "input_schema": fn.get("parameters", {"type": "object", "properties": {}}),
            }
        )
    return converted


class AnthropicProvider(Provider):
    name = "anthropic"

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        self.client = AsyncAnthropic(
            api_key=config.api_key or None,
            base_url=config.base_url or None,
        )

    def _error(self, e: Exception) -> ProviderError:
        return ProviderError(str(e), provider=self.name, status_code=getattr(e, "status_code", None))

    def build_messages(self, request: ChatRequest) -> list[dict[str, Any]]:
        """Tool results travel as user turns; consecutive results share one turn."""
        messages: list[dict[str, Any]] = []
        for msg in request.messages:
            if isinstance(msg, UserMessage):
                messages.append({"role": "user", "content": msg.content})
            elif isinstance(msg, AssistantMessage):
                blocks: list[dict[str, Any]] = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                for call in msg.tool_calls:
                    blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
                if not blocks:
                    blocks.append({"type": "text", "text": "(no response)"})
                messages.append({"role": "assistant", "content": blocks})
            elif isinstance(msg, ToolMessage):
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.text,
                    "is_error": bool(msg.error),
                }
                last = messages[-1] if messages else None
                if last and last["role"] == "user" and isinstance(last["content"], list):
                    last["content"].append(block)
                else:
                    messages.append({"role": "user", "content": [block]})
        return messages

    def _kwargs(self, request: ChatRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": request.model or self.config.model,
            "messages": self.build_messages(request),
            "max_tokens": request.max_tokens or self.config.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if request.system:
            kwargs["system"] = request.system
        if request.tools:
            kwargs["tools"] = _convert_tools(request.tools)
        temperature = request.temperature if request.temperature is not None else self.config.temperature
        if temperature is not None:
            kwargs["temperature"] = temperature
        return kwargs

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=2, max=30),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True,
    )
    async def _create(self, **kwargs: Any) -> Any:
        return await self.client.messages.create(**kwargs)

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        try:
            stream = await self._create(stream=True, **self._kwargs(request))
        except anthropic.APIError as e:
            raise self._error(e) from e
        try:
            async for event in self.translate(stream):
                yield event
        except (anthropic.APIError, httpx.HTTPError) as e:
            raise self._error(e) from e
        finally:
            await stream.close()

    async def translate(self, events: AsyncIterable[Any]) -> AsyncIterator[StreamEvent]:
        """Turn raw Messages API stream events into canonical events."""
        usage = Usage()
        stop_reason = ""
        call: ToolCall | None = None
        parts: list[str] = []
        async for event in events:
            kind = event.type
            if kind == "message_start":
                raw = event.message.usage
                usage.input_tokens = raw.input_tokens or 0
                usage.output_tokens = raw.output_tokens or 0
            elif kind == "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    call = ToolCall(id=block.id or new_call_id(), name=block.name)
                    parts = []
                    yield ToolCallStart(call)
            elif kind == "content_block_delta":
                delta = event.delta
                if delta.type == "text_delta" and delta.text:
                    yield TextDelta(delta.text)
                elif delta.type == "input_json_delta" and call is not None:
                    parts.append(delta.partial_json)
            elif kind == "content_block_stop":
                if call is not None:
                    yield ToolCallEnd(call.model_copy(update={"arguments": parse_arguments("".join(parts))}))
                    call = None
            elif kind == "message_delta":
                stop_reason = event.delta.stop_reason or stop_reason
                if event.usage is not None and event.usage.output_tokens:
                    usage.output_tokens = event.usage.output_tokens
            elif kind == "message_stop":
                usage.total_tokens = usage.input_tokens + usage.output_tokens
                yield Done(usage=usage, stop_reason=stop_reason)
                return
        # No message_stop: the stream was cut off, send() reports it

    async def complete(self, request: ChatRequest) -> ChatResponse:
        try:
            message = await self._create(**self._kwargs(request))
        except anthropic.APIError as e:
            raise self._error(e) from e
        return self.parse_response(message)

    def parse_response(self, message: Any) -> ChatResponse:
        text: list[str] = []
        calls: list[ToolCall] = []
        for block in message.content:
            if block.type == "text":
                text.append(block.text)
            elif block.type == "tool_use":
                calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {})))
        usage = Usage(input_tokens=message.usage.input_tokens, output_tokens=message.usage.output_tokens)
        usage.total_tokens = usage.input_tokens + usage.output_tokens
        return ChatResponse(
            content="".join(text),
            tool_calls=calls,
            usage=usage,
            stop_reason=message.stop_reason or "",
        )
