"""Models and errors for the question-answering loop."""

from __future__ import annotations

from pydantic import BaseModel, Field

from code_ask.models.schemas import ToolCall, Usage


class Answer(BaseModel):
    content: str
    tool_calls: list[ToolCall] = []
    usage: Usage = Field(default_factory=Usage)
    rounds: int = 0
    forced: bool = False


class MaxIterationsError(Exception):
    """Raised when the round budget runs out with no assistant content at all."""


class ProviderError(Exception):
    """A backend request failed or its stream ended abnormally."""

    def __init__(self, message: str, provider: str = "", status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code

    def __str__(self) -> str:
        base = super().__str__()
        if self.provider:
            base = f"{self.provider}: {base}"
        if self.status_code is not None:
            base = f"{base} (status {self.status_code})"
        return base


class ToolError(Exception):
    """Bad arguments or a filesystem problem inside a tool."""


class SearchError(Exception):
    """Invalid pattern, or the external matcher failed or timed out."""


class ConversationNotFoundError(KeyError):
    """No stored conversation with the given id."""


class ConversationLoadError(Exception):
    """A stored conversation exists but cannot be read or parsed."""
