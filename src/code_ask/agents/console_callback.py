"""Rich console rendering of the ask loop's events."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from code_ask.models.agent_schemas import Answer
from code_ask.models.events import StreamEvent, TextDelta, ToolCallEnd, ToolResultEvent
from code_ask.tools import ToolRegistry

MAX_RESULT_LINES = 12
MAX_RESULT_CHARS = 1200

TOOL_ICONS = {
    "grep": "🔍",
    "glob": "🗂 ",
    "read": "👁 ",
    "list": "📂",
}


def _truncate(text: str) -> str:
    lines = text.splitlines()
    if len(lines) > MAX_RESULT_LINES or len(text) > MAX_RESULT_CHARS:
        truncated = "\n".join(lines[:MAX_RESULT_LINES])
        if len(truncated) > MAX_RESULT_CHARS:
            truncated = truncated[:MAX_RESULT_CHARS]
        omitted = len(lines) - MAX_RESULT_LINES
        if omitted > 0:
            truncated += f"\n... ({omitted} more lines)"
        return truncated
    return text


def _format_args(args: dict[str, Any]) -> str:
    parts = []
    for key, value in args.items():
        s = str(value)
        if len(s) > 80:
            s = s[:80] + "..."
        parts.append(f"{key}={s!r}")
    return ", ".join(parts)


class ConsoleCallback:
    """Event callback for ``AskAgent.ask_streaming``.

    Text deltas are written as they arrive; tool calls and their results are
    shown between them.
    """

    def __init__(self, console: Console | None = None, show_results: bool = False) -> None:
        self.console = console or Console()
        self.show_results = show_results
        self._in_text = False

    def __call__(self, event: StreamEvent) -> None:
        if isinstance(event, TextDelta):
            self.console.print(event.delta, end="", markup=False, highlight=False)
            self._in_text = True
        elif isinstance(event, ToolCallEnd):
            self._end_text()
            icon = TOOL_ICONS.get(event.call.name, "🔧")
            line = Text(f"  {icon} ")
            line.append(event.call.name, style="bold cyan")
            line.append(f"({_format_args(event.call.arguments)})", style="dim")
            self.console.print(line)
        elif isinstance(event, ToolResultEvent):
            if event.error:
                self.console.print(Text(f"    {_truncate(event.error)}", style="red"))
            elif self.show_results:
                self.console.print(
                    Panel(Text(_truncate(event.output), style="dim"), title="[dim]result", border_style="dim")
                )

    def _end_text(self) -> None:
        if self._in_text:
            self.console.print()
            self._in_text = False

    def print_tools(self, registry: ToolRegistry) -> None:
        table = Table(title="Available tools", border_style="dim", show_lines=False)
        table.add_column("Tool", style="bold cyan", no_wrap=True)
        table.add_column("Description", style="dim")
        for tool in registry.list_all():
            icon = TOOL_ICONS.get(tool.name, "🔧")
            params = ", ".join(tool.parameters.get("properties", {}))
            table.add_row(f"{icon} {tool.name}({params})", tool.description.splitlines()[0])
        self.console.print(table)
        self.console.print()

    def on_finish(self, answer: Answer, streamed: bool = True) -> None:
        self._end_text()
        if not streamed or answer.forced:
            self.console.print()
            self.console.print(Panel(Markdown(answer.content), border_style="green", padding=(0, 1)))
        u = answer.usage
        self.console.print(
            f"[dim]{answer.rounds} rounds, {len(answer.tool_calls)} tool calls, "
            f"{u.input_tokens} in / {u.output_tokens} out tokens[/dim]"
        )
