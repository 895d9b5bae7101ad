"""Tests for ToolRegistry dispatch and error handling."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel

from code_ask.models.agent_schemas import SearchError, ToolError
from code_ask.search import RipgrepCapability, SearchEngine
from code_ask.tools import Tool, ToolOutput, ToolRegistry, Truncator, create_default_registry


def _tool(name: str, execute) -> Tool:
    return Tool(name=name, description=f"{name} tool", parameters={"type": "object", "properties": {}}, execute=execute)


def _registry(tmp_path: Path) -> ToolRegistry:
    return create_default_registry(tmp_path, engine=SearchEngine(RipgrepCapability.unavailable()))


class TestDispatch:
    def test_default_tools(self, tmp_path: Path):
        registry = _registry(tmp_path)
        assert registry.names() == ["grep", "glob", "read", "list"]

    def test_openai_format(self, tmp_path: Path):
        schemas = _registry(tmp_path).to_openai_tools()
        assert [s["function"]["name"] for s in schemas] == ["grep", "glob", "read", "list"]
        assert all(s["type"] == "function" for s in schemas)
        assert schemas[0]["function"]["parameters"]["required"] == ["pattern"]

    def test_unknown_tool(self, tmp_path: Path):
        result = _registry(tmp_path).execute("search", {"q": "x"})
        assert result.output == "Error: unknown tool 'search'. Available tools: grep, glob, read, list"
        assert result.error

    def test_invalid_arguments(self, tmp_path: Path):
        result = _registry(tmp_path).execute("grep", {})
        assert result.output.startswith("Error: invalid arguments for 'grep': pattern")
        assert result.error

    def test_tool_error_becomes_content(self, tmp_path: Path):
        result = _registry(tmp_path).execute("read", {"file_path": "missing.py"})
        assert result.output.startswith("Error: file not found:")
        assert result.error.startswith("file not found:")

    def test_search_error_becomes_content(self):
        def fail(args):
            raise SearchError("ripgrep timed out after 30s")

        registry = ToolRegistry()
        registry.register(_tool("grep", fail))
        result = registry.execute("grep", {})
        assert result.output == "Error: ripgrep timed out after 30s"

    def test_unexpected_error_logged(self, caplog):
        def boom(args):
            raise RuntimeError("kaput")

        registry = ToolRegistry()
        registry.register(_tool("boom", boom))
        result = registry.execute("boom", {})
        assert result.output == "Error executing 'boom': kaput"
        assert result.error == "kaput"
        assert any("Tool 'boom' failed" in r.message for r in caplog.records)

    def test_pydantic_model_errors_described(self):
        class Args(BaseModel):
            count: int

        def typed(args):
            Args.model_validate(args)
            return ToolOutput(title="ok", output="ok")

        registry = ToolRegistry()
        registry.register(_tool("typed", typed))
        result = registry.execute("typed", {"count": "many"})
        assert "count:" in result.error


class TestTruncation:
    def test_output_truncated_and_saved(self, tmp_path: Path):
        out_dir = tmp_path / "outputs"

        def big(args):
            return ToolOutput(title="big", output="\n".join(str(i) for i in range(1000)))

        registry = ToolRegistry(truncator=Truncator(output_dir=out_dir))
        registry.register(_tool("big", big))
        registry.set_conversation_id("conv42")
        result = registry.execute("big", {})

        assert result.metadata["truncated"] is True
        saved = Path(result.metadata["output_path"])
        assert saved.parent == out_dir / "conv42"
        assert saved.read_text().count("\n") == 999
        assert "[Output truncated at 500 lines. Total: 1000 lines]" in result.output

    def test_error_output_not_truncated(self):
        def fail(args):
            raise ToolError("x" * 100)

        registry = ToolRegistry(truncator=Truncator(max_bytes=10))
        registry.register(_tool("fail", fail))
        result = registry.execute("fail", {})
        assert result.output == "Error: " + "x" * 100
