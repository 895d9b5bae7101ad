"""Bounded question-answering loop with tool calling and stuck-loop detection."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

from code_ask.config import LoopLimits
from code_ask.models.agent_schemas import Answer, MaxIterationsError, ProviderError
from code_ask.models.events import (
    Done,
    EventCallback,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallEnd,
    ToolCallStart,
    ToolResultEvent,
)
from code_ask.models.schemas import (
    AssistantMessage,
    Conversation,
    Resource,
    ToolCall,
    ToolMessage,
    Usage,
    UserMessage,
)
from code_ask.prompts.prompt_layer import build_system_prompt
from code_ask.services.llm_service import ChatRequest, Provider
from code_ask.services.storage_service import ConversationStore
from code_ask.tools import ToolRegistry

logger = logging.getLogger(__name__)

TITLE_MAX = 50
NO_RESPONSE = "I was unable to generate a response for this query."
INCOMPLETE_NOTE = "\n\n[Note: Response may be incomplete due to iteration limit]"
EVIDENCE_PREFIX = "Based on the search results, here is what I found:\n\n"
EVIDENCE_NOTE = "[Note: The model was unable to complete the response. Above are the raw search results.]"
NOTHING_FOUND = (
    "I was unable to find specific information about this topic in the codebase after "
    "multiple searches. The search patterns used did not return relevant results. Try "
    "rephrasing your question or being more specific about what you're looking for."
)

CANCELLED_OUTPUT = "Error: cancelled"

EMPTY_RESULT_MARKERS = ("no files found", "no matches", "not found")


def hash_tool_call(name: str, arguments: dict[str, Any]) -> str:
    """Stable key for (name, arguments); argument key order does not matter."""
    payload = json.dumps([name, arguments], sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.blake2b(payload.encode("utf-8"), digest_size=8).hexdigest()


def is_useful_result(text: str, min_chars: int = 30) -> bool:
    if len(text) < min_chars:
        return False
    lowered = text.lower()
    return not any(marker in lowered for marker in EMPTY_RESULT_MARKERS)


def make_title(question: str) -> str:
    question = question.strip()
    if len(question) > TITLE_MAX:
        return question[: TITLE_MAX - 3] + "..."
    return question


@dataclass
class LoopState:
    """Bookkeeping for one ask() call."""

    counts: dict[str, int] = field(default_factory=dict)
    empty_rounds: int = 0
    invocations: int = 0
    hint_injected: bool = False

    def record(self, call: ToolCall) -> bool:
        """Count an invocation. Returns True when the same call was made before."""
        key = hash_tool_call(call.name, call.arguments)
        self.counts[key] = self.counts.get(key, 0) + 1
        self.invocations += 1
        return self.counts[key] > 1


class AskAgent:
    def __init__(
        self,
        provider: Provider,
        registry: ToolRegistry,
        store: ConversationStore | None = None,
        resources: list[Resource] | None = None,
        limits: LoopLimits | None = None,
        model: str = "",
        max_tokens: int | None = None,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.store = store
        self.resources = resources or []
        self.limits = limits or LoopLimits()
        self.model = model or provider.config.model
        self.max_tokens = max_tokens
        self.conversation: Conversation | None = None

    def continue_conversation(self, conversation: Conversation) -> None:
        """Resume a stored conversation; the next ask() appends to its history."""
        self.conversation = conversation
        self.registry.set_conversation_id(conversation.id)

    def build_request(self, hint: bool = False) -> ChatRequest:
        assert self.conversation is not None
        return ChatRequest(
            model=self.model,
            system=build_system_prompt(self.resources, hint=hint),
            messages=list(self.conversation.messages),
            tools=self.registry.to_openai_tools(),
            max_tokens=self.max_tokens,
        )

    async def ask(self, question: str) -> Answer:
        return await self.ask_streaming(question, None)

    async def ask_streaming(self, question: str, on_event: EventCallback | None) -> Answer:
        """Answer one question, forwarding events to ``on_event`` as they happen.

        Raises ProviderError on backend failure and MaxIterationsError when the
        round budget runs out with no assistant text. The conversation is
        persisted in every case.
        """
        conversation = self._ensure_conversation(question)
        conversation.messages.append(UserMessage(content=question))

        def emit(event: StreamEvent) -> None:
            if on_event is not None:
                on_event(event)

        state = LoopState()
        usage = Usage()
        calls_made: list[ToolCall] = []
        limits = self.limits
        try:
            for round_no in range(1, limits.max_rounds + 1):
                content, calls, round_usage = await self._run_round(state.hint_injected, emit)
                usage.add(round_usage)
                conversation.messages.append(AssistantMessage(content=content, tool_calls=calls))

                if not calls:
                    final = content or self._last_assistant_text() or NO_RESPONSE
                    return Answer(content=final, tool_calls=calls_made, usage=usage, rounds=round_no)

                useful = False
                repeated = False
                for i, call in enumerate(calls):
                    if state.record(call):
                        repeated = True
                    try:
                        output = await asyncio.to_thread(self.registry.execute, call.name, call.arguments)
                    except asyncio.CancelledError:
                        self._answer_cancelled(calls[i:])
                        raise
                    calls_made.append(call)
                    if output.error is None and is_useful_result(output.output, limits.min_useful_chars):
                        useful = True
                    conversation.messages.append(
                        ToolMessage(tool_call_id=call.id, content=output.output, error=output.error)
                    )
                    emit(ToolResultEvent(call=call, output=output.output, error=output.error))

                state.empty_rounds = 0 if useful else state.empty_rounds + 1
                if (state.empty_rounds >= limits.empty_rounds_for_hint or repeated) and not state.hint_injected:
                    state.hint_injected = True
                    logger.info(
                        "Injecting search hint after round %d (empty rounds: %d, repeated: %s)",
                        round_no, state.empty_rounds, repeated,
                    )

                if state.empty_rounds >= limits.empty_rounds_to_stop or (
                    state.invocations >= limits.invocations_to_stop
                    and state.empty_rounds >= limits.empty_rounds_with_invocations
                ):
                    logger.info(
                        "Forcing completion after round %d (%d invocations, %d empty rounds)",
                        round_no, state.invocations, state.empty_rounds,
                    )
                    content = self._force_completion()
                    return Answer(
                        content=content, tool_calls=calls_made, usage=usage, rounds=round_no, forced=True
                    )

                self._persist()

            last = self._last_assistant_text()
            if not last:
                raise MaxIterationsError("max iterations reached")
            logger.warning("Reached %d rounds without a final answer", limits.max_rounds)
            return Answer(
                content=last + INCOMPLETE_NOTE,
                tool_calls=calls_made,
                usage=usage,
                rounds=limits.max_rounds,
                forced=True,
            )
        finally:
            self._persist()

    async def _run_round(self, hint: bool, emit: EventCallback) -> tuple[str, list[ToolCall], Usage]:
        request = self.build_request(hint=hint)
        parts: list[str] = []
        calls: list[ToolCall] = []
        usage = Usage()
        async with aclosing(self.provider.send(request)) as events:
            async for event in events:
                if isinstance(event, TextDelta):
                    parts.append(event.delta)
                elif isinstance(event, ToolCallEnd):
                    calls.append(event.call)
                elif isinstance(event, Done):
                    usage = event.usage
                elif isinstance(event, StreamError):
                    if isinstance(event.error, ProviderError):
                        raise event.error
                    raise ProviderError(str(event.error), provider=self.provider.name) from event.error
                if isinstance(event, (TextDelta, ToolCallStart, ToolCallEnd, Done)):
                    emit(event)
        return "".join(parts), calls, usage

    def _ensure_conversation(self, question: str) -> Conversation:
        if self.conversation is None:
            self.conversation = Conversation(
                id=uuid.uuid4().hex,
                title=make_title(question),
                provider=self.provider.name,
                model=self.model,
                resources=list(self.resources),
            )
            self.registry.set_conversation_id(self.conversation.id)
        return self.conversation

    def _answer_cancelled(self, calls: list[ToolCall]) -> None:
        # Every tool call in history must keep a matching result
        assert self.conversation is not None
        for call in calls:
            self.conversation.messages.append(
                ToolMessage(tool_call_id=call.id, content=CANCELLED_OUTPUT, error="cancelled")
            )

    def _last_assistant_text(self) -> str:
        """Latest non-empty model-written text anywhere in the conversation."""
        assert self.conversation is not None
        for msg in reversed(self.conversation.messages):
            if isinstance(msg, AssistantMessage) and msg.content and not msg.generated:
                return msg.content
        return ""

    def _force_completion(self) -> str:
        """Best-effort answer: last assistant text, else raw evidence, else a fixed message."""
        last = self._last_assistant_text()
        if last:
            return last

        assert self.conversation is not None
        limits = self.limits
        excerpts = []
        for msg in self.conversation.messages:
            if not isinstance(msg, ToolMessage) or msg.error is not None:
                continue
            if not is_useful_result(msg.content, limits.min_useful_chars):
                continue
            text = msg.content
            if len(text) > limits.evidence_excerpt_chars:
                text = text[: limits.evidence_excerpt_chars] + "..."
            excerpts.append(text)
            if len(excerpts) >= limits.evidence_excerpts:
                break

        if excerpts:
            content = EVIDENCE_PREFIX + "".join(f"{e}\n\n" for e in excerpts) + EVIDENCE_NOTE
        else:
            content = NOTHING_FOUND
        self.conversation.messages.append(AssistantMessage(content=content, generated=True))
        return content

    def _persist(self) -> None:
        if self.store is None or self.conversation is None:
            return
        try:
            self.store.save(self.conversation)
        except Exception as e:
            logger.warning("Failed to save conversation %s: %s", self.conversation.id, e)
