"""Tool plugin system for the agentic loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import ValidationError

from code_ask.models.agent_schemas import SearchError, ToolError
from code_ask.tools.truncation import Truncator

logger = logging.getLogger(__name__)


@dataclass
class ToolOutput:
    title: str
    output: str
    metadata: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class Tool:
    name: str
    description: str
    parameters: dict[str, Any]
    execute: Callable[[dict[str, Any]], ToolOutput]


class ToolRegistry:
    def __init__(self, truncator: Truncator | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        self.truncator = truncator or Truncator()
        self.conversation_id = ""

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def register_many(self, tools: list[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> Tool:
        return self._tools[name]

    def list_all(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def set_conversation_id(self, conversation_id: str) -> None:
        """Group saved full outputs under this conversation."""
        self.conversation_id = conversation_id

    def to_openai_tools(self) -> list[dict[str, Any]]:
        result = []
        for tool in self._tools.values():
            result.append(
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
            )
        return result

    def execute(self, name: str, args: dict[str, Any]) -> ToolOutput:
        """Run a tool. Every failure comes back as content, never as an exception."""
        tool = self._tools.get(name)
        if tool is None:
            message = f"unknown tool '{name}'. Available tools: {', '.join(self.names())}"
            return ToolOutput(title=name, output=f"Error: {message}", error=message)

        try:
            result = tool.execute(args)
        except ValidationError as e:
            message = f"invalid arguments for '{name}': {_describe(e)}"
            return ToolOutput(title=name, output=f"Error: {message}", error=message)
        except (ToolError, SearchError) as e:
            return ToolOutput(title=name, output=f"Error: {e}", error=str(e))
        except Exception as e:
            logger.exception("Tool '%s' failed", name)
            return ToolOutput(title=name, output=f"Error executing '{name}': {e}", error=str(e))

        truncation = self.truncator.apply(result.output, name, self.conversation_id)
        if truncation.truncated:
            result.output = truncation.content
            result.metadata["truncated"] = True
            if truncation.output_path is not None:
                result.metadata["output_path"] = str(truncation.output_path)
        return result


def _describe(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "arguments"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def create_default_registry(work_dir, engine=None, truncator: Truncator | None = None) -> ToolRegistry:
    """Registry with the four read-only tools rooted at ``work_dir``."""
    from code_ask.search import SearchEngine
    from code_ask.tools.search_tools import create_search_tools

    registry = ToolRegistry(truncator=truncator)
    registry.register_many(create_search_tools(work_dir, engine or SearchEngine()))
    return registry


__all__ = ["Tool", "ToolOutput", "ToolRegistry", "Truncator", "create_default_registry"]
