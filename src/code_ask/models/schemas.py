from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: dict[str, Any] = {}


class UserMessage(BaseModel):
    role: Literal["user"] = "user"
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str = ""
    tool_calls: list[ToolCall] = []
    # Written by the loop itself (forced completion), not by the model
    generated: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class ToolMessage(BaseModel):
    role: Literal["tool"] = "tool"
    tool_call_id: str
    content: str = ""
    error: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def text(self) -> str:
        """What the model sees for this result."""
        if not self.content and self.error:
            return f"Error: {self.error}"
        return self.content


Message = Annotated[
    Union[UserMessage, AssistantMessage, ToolMessage],
    Field(discriminator="role"),
]


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: Usage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens


class Resource(BaseModel):
    name: str
    path: str
    notes: str = ""


class Conversation(BaseModel):
    id: str
    title: str
    created: datetime = Field(default_factory=utcnow)
    updated: datetime = Field(default_factory=utcnow)
    provider: str = ""
    model: str = ""
    resources: list[Resource] = []
    messages: list[Message] = []
