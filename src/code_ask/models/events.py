"""Canonical stream events.

Every backend adapter translates its own response format into this sequence:
any number of ``TextDelta`` / ``ToolCallStart`` / ``ToolCallEnd`` events,
terminated by exactly one ``Done`` or ``StreamError``. ``ToolResultEvent`` is
never produced by a backend; the loop emits it after running a tool so UIs can
show progress.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Union

from code_ask.models.schemas import ToolCall, Usage


@dataclass(frozen=True)
class TextDelta:
    delta: str


@dataclass(frozen=True)
class ToolCallStart:
    call: ToolCall


@dataclass(frozen=True)
class ToolCallEnd:
    call: ToolCall


@dataclass(frozen=True)
class Done:
    usage: Usage = field(default_factory=Usage)
    stop_reason: str = ""


@dataclass(frozen=True)
class StreamError:
    error: BaseException


@dataclass(frozen=True)
class ToolResultEvent:
    call: ToolCall
    output: str
    error: str | None = None


StreamEvent = Union[TextDelta, ToolCallStart, ToolCallEnd, Done, StreamError, ToolResultEvent]

EventCallback = Callable[[StreamEvent], None]
