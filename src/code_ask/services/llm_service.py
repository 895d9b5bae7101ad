"""Provider-agnostic chat interface.

Each backend adapter turns a :class:`ChatRequest` into the canonical event
sequence from :mod:`code_ask.models.events`. Streaming adapters translate the
SDK's incremental chunks; non-streaming ones make one request and synthesize
the events from the complete response.
"""

from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from code_ask.config import ModelConfig, get_model_config
from code_ask.models.agent_schemas import ProviderError
from code_ask.models.events import Done, StreamError, StreamEvent, TextDelta, ToolCallEnd
from code_ask.models.schemas import AssistantMessage, Message, ToolCall, Usage

logger = logging.getLogger(__name__)


@dataclass
class ChatRequest:
    model: str
    system: str
    messages: list[Message]
    # Function declarations in OpenAI's {"type": "function", "function": {...}} shape
    tools: list[dict[str, Any]] = field(default_factory=list)
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass
class ChatResponse:
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    stop_reason: str = ""


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def parse_arguments(raw: str | None) -> dict[str, Any]:
    """Decode accumulated argument JSON. Malformed input is kept for the tool to reject."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("Malformed tool arguments: %r", raw[:200])
        return {"_raw": raw}
    return value if isinstance(value, dict) else {"_value": value}


def events_from_response(response: ChatResponse) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    if response.content:
        events.append(TextDelta(response.content))
    events.extend(ToolCallEnd(call) for call in response.tool_calls)
    events.append(Done(usage=response.usage, stop_reason=response.stop_reason))
    return events


def call_names(messages: list[Message]) -> dict[str, str]:
    """Map tool call ids to function names, for backends that key results by name."""
    names: dict[str, str] = {}
    for msg in messages:
        if isinstance(msg, AssistantMessage):
            for call in msg.tool_calls:
                names[call.id] = call.name
    return names


class Provider(ABC):
    name: str = ""
    supports_streaming: bool = True

    def __init__(self, config: ModelConfig) -> None:
        self.config = config

    async def send(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """Yield canonical events, always ending in exactly one Done or StreamError.

        Closing this generator (including via task cancellation) closes the
        underlying backend stream.
        """
        events = self.stream(request) if self.supports_streaming else self._synthesized(request)
        try:
            async with aclosing(events):
                async for event in events:
                    yield event
                    if isinstance(event, Done):
                        return
        except ProviderError as e:
            yield StreamError(e)
            return
        yield StreamError(ProviderError("stream ended without a completion event", provider=self.name))

    async def _synthesized(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        response = await self.complete(request)
        for event in events_from_response(response):
            yield event

    def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError(f"{self.name} does not stream")

    @abstractmethod
    async def complete(self, request: ChatRequest) -> ChatResponse: ...


def create_provider(config: ModelConfig | None = None) -> Provider:
    if config is None:
        config = get_model_config()

    if config.provider == "anthropic":
        from code_ask.services.anthropic_service import AnthropicProvider

        return AnthropicProvider(config)
    if config.provider == "google":
        from code_ask.services.google_service import GoogleProvider

        return GoogleProvider(config)

    from code_ask.services.openai_service import (
        OllamaProvider,
        OpenAICompatibleProvider,
        OpenAIProvider,
    )

    if config.provider == "ollama":
        return OllamaProvider(config)
    if config.provider == "openai-compatible":
        return OpenAICompatibleProvider(config)
    if config.provider == "openai":
        return OpenAIProvider(config)
    raise ValueError(f"unknown provider: {config.provider!r}")
