from __future__ import annotations

import logging
from typing import Any, AsyncIterable, AsyncIterator

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from code_ask.config import ModelConfig
from code_ask.models.agent_schemas import ProviderError
from code_ask.models.events import Done, StreamEvent, TextDelta, ToolCallEnd, ToolCallStart
from code_ask.models.schemas import AssistantMessage, ToolCall, ToolMessage, Usage, UserMessage
from code_ask.services.llm_service import (
    ChatRequest,
    ChatResponse,
    Provider,
    call_names,
    new_call_id,
)

logger = logging.getLogger(__name__)


def _is_transient(e: BaseException) -> bool:
    if isinstance(e, genai_errors.ServerError):
        return True
    return isinstance(e, genai_errors.ClientError) and getattr(e, "code", None) == 429


def _usage(raw: Any) -> Usage:
    if raw is None:
        return Usage()
    return Usage(
        input_tokens=raw.prompt_token_count or 0,
        output_tokens=raw.candidates_token_count or 0,
        total_tokens=raw.total_token_count or 0,
    )


def _stop_reason(candidate: Any) -> str:
    reason = getattr(candidate, "finish_reason", None)
    if reason is None:
        return ""
    return getattr(reason, "value", str(reason))


class GoogleProvider(Provider):
    name = "google"

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        try:
            self.client = genai.Client(api_key=config.api_key or None)
        except ValueError as e:
            raise ProviderError(str(e), provider=self.name) from e

    def _error(self, e: Exception) -> ProviderError:
        return ProviderError(str(e), provider=self.name, status_code=getattr(e, "code", None))

    def build_contents(self, request: ChatRequest) -> list[types.Content]:
        """Function responses are keyed by name, recovered from the earlier calls."""
        names = call_names(request.messages)
        contents: list[types.Content] = []
        for msg in request.messages:
            if isinstance(msg, UserMessage):
                contents.append(types.Content(role="user", parts=[types.Part(text=msg.content)]))
            elif isinstance(msg, AssistantMessage):
                parts: list[types.Part] = []
                if msg.content:
                    parts.append(types.Part(text=msg.content))
                for call in msg.tool_calls:
                    parts.append(
                        types.Part(function_call=types.FunctionCall(id=call.id, name=call.name, args=call.arguments))
                    )
                if parts:
                    contents.append(types.Content(role="model", parts=parts))
            elif isinstance(msg, ToolMessage):
                response = {"error": msg.text} if msg.error else {"output": msg.text}
                part = types.Part(
                    function_response=types.FunctionResponse(
                        id=msg.tool_call_id,
                        name=names.get(msg.tool_call_id, "unknown"),
                        response=response,
                    )
                )
                last = contents[-1] if contents else None
                if last is not None and last.role == "user" and last.parts and last.parts[0].function_response:
                    last.parts.append(part)
                else:
                    contents.append(types.Content(role="user", parts=[part]))
        return contents

    def _config(self, request: ChatRequest) -> types.GenerateContentConfig:
        declarations = []
        for tool in request.tools:
            fn = tool.get("function", tool)
            declarations.append(
                types.FunctionDeclaration(
                    name=fn["name"],
                    description=fn.get("description", ""),
                    parameters_json_schema=fn.get("parameters"),
                )
            )
        temperature = request.temperature if request.temperature is not None else self.config.temperature
        return types.GenerateContentConfig(
            system_instruction=request.system or None,
            tools=[types.Tool(function_declarations=declarations)] if declarations else None,
            max_output_tokens=request.max_tokens or self.config.max_tokens,
            temperature=temperature,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=2, max=30),
        retry=retry_if_exception(_is_transient),
        reraise=True,
    )
    async def _open_stream(self, request: ChatRequest) -> Any:
        return await self.client.aio.models.generate_content_stream(
            model=request.model or self.config.model,
            contents=self.build_contents(request),
            config=self._config(request),
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=2, max=30),
        retry=retry_if_exception(_is_transient),
        reraise=True,
    )
    async def _generate(self, request: ChatRequest) -> Any:
        return await self.client.aio.models.generate_content(
            model=request.model or self.config.model,
            contents=self.build_contents(request),
            config=self._config(request),
        )

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        try:
            stream = await self._open_stream(request)
        except genai_errors.APIError as e:
            raise self._error(e) from e
        try:
            async for event in self.translate(stream):
                yield event
        except (genai_errors.APIError, httpx.HTTPError) as e:
            raise self._error(e) from e
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def translate(self, chunks: AsyncIterable[Any]) -> AsyncIterator[StreamEvent]:
        """Function calls arrive whole, so each one yields its Start and End together."""
        usage = Usage()
        stop_reason = ""
        async for chunk in chunks:
            if getattr(chunk, "usage_metadata", None) is not None:
                usage = _usage(chunk.usage_metadata)
            for candidate in (chunk.candidates or [])[:1]:
                content = candidate.content
                for part in (content.parts if content and content.parts else []):
                    if part.function_call is not None:
                        fc = part.function_call
                        call = ToolCall(id=fc.id or new_call_id(), name=fc.name or "", arguments=dict(fc.args or {}))
                        yield ToolCallStart(ToolCall(id=call.id, name=call.name))
                        yield ToolCallEnd(call)
                    elif part.text and not part.thought:
                        yield TextDelta(part.text)
                stop_reason = _stop_reason(candidate) or stop_reason
        if stop_reason:
            yield Done(usage=usage, stop_reason=stop_reason)

    async def complete(self, request: ChatRequest) -> ChatResponse:
        try:
            response = await self._generate(request)
        except genai_errors.APIError as e:
            raise self._error(e) from e

        text: list[str] = []
        calls: list[ToolCall] = []
        stop_reason = ""
        for candidate in (response.candidates or [])[:1]:
            content = candidate.content
            for part in (content.parts if content and content.parts else []):
                if part.function_call is not None:
                    fc = part.function_call
                    calls.append(ToolCall(id=fc.id or new_call_id(), name=fc.name or "", arguments=dict(fc.args or {})))
                elif part.text and not part.thought:
                    text.append(part.text)
            stop_reason = _stop_reason(candidate)
        return ChatResponse(
            content="".join(text),
            tool_calls=calls,
            usage=_usage(response.usage_metadata),
            stop_reason=stop_reason,
        )
