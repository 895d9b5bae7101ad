"""Read-only filesystem tools backed by the search engine."""

from __future__ import annotations

import difflib
import os
import re
from pathlib import Path

from pydantic import AliasChoices, BaseModel, Field

from code_ask.models.agent_schemas import ToolError
from code_ask.search import SearchEngine, is_binary_file
from code_ask.search.engine import truncate_line
from code_ask.search.walker import is_hidden
from code_ask.tools import Tool, ToolOutput

MAX_MATCHES = 100
MAX_FILES = 100
MAX_LINE_LENGTH = 2000
DEFAULT_READ_LIMIT = 2000
MAX_READ_BYTES = 50 * 1024
MAX_SUGGESTIONS = 3

TRUNCATED_NOTE = "\n(Results are truncated. Consider using a more specific path or pattern.)"
NO_FILES = "No files found"

GREP_DESCRIPTION = """Fast content search tool that works with any codebase size.
Searches file contents using regular expressions.
Supports full regex syntax (e.g., "log.*Error", "function\\s+\\w+").
Filter files by pattern with the include parameter (e.g., "*.js", "*.{ts,tsx}").
Returns file paths and line numbers with matches, sorted by modification time."""

GLOB_DESCRIPTION = """Fast file pattern matching tool that works with any codebase size.
Supports glob patterns like "**/*.js" or "src/**/*.ts".
Returns matching file paths sorted by modification time."""

READ_DESCRIPTION = """Reads a file from the local filesystem.
By default, it reads up to 2000 lines starting from the beginning of the file.
You can optionally specify a line offset and limit for long files.
Any lines longer than 2000 characters will be truncated.
Results are returned with line numbers starting at 1."""

LIST_DESCRIPTION = """Lists files and directories in a given path.
Use this tool to explore the structure of a codebase."""


class GrepArgs(BaseModel):
    pattern: str = Field(min_length=1)
    path: str = ""
    include: str | None = None


class GlobArgs(BaseModel):
    pattern: str = Field(min_length=1)
    path: str = ""


class ReadArgs(BaseModel):
    file_path: str = Field(min_length=1, validation_alias=AliasChoices("file_path", "filePath", "path"))
    offset: int = Field(default=0, ge=0)
    limit: int | None = Field(default=None, ge=0)


class ListArgs(BaseModel):
    path: str = ""


def create_search_tools(work_dir: str | Path, engine: SearchEngine) -> list[Tool]:
    work = Path(os.path.abspath(work_dir))

    def resolve(path: str) -> Path:
        if not path:
            return work
        p = Path(path)
        return p if p.is_absolute() else work / p

    def rel(path: Path) -> str:
        relative = os.path.relpath(path, work)
        return path.as_posix() if relative == "." else Path(relative).as_posix()

    def grep(args: dict) -> ToolOutput:
        a = GrepArgs.model_validate(args)
        try:
            re.compile(a.pattern)
            pattern = a.pattern
        except re.error:
            pattern = re.escape(a.pattern)

        result = engine.grep(
            resolve(a.path), pattern, include=a.include,
            max_matches=MAX_MATCHES, max_line_length=MAX_LINE_LENGTH,
        )
        if not result.matches:
            return ToolOutput(title=a.pattern, output=NO_FILES, metadata={"matches": 0, "truncated": False})

        lines = [f"Found {len(result.matches)} matches"]
        current: Path | None = None
        for match in result.matches:
            if match.path != current:
                if current is not None:
                    lines.append("")
                current = match.path
                lines.append(f"{rel(match.path)}:")
            lines.append(f"  Line {match.line}: {match.text}")
        output = "\n".join(lines) + "\n"
        if result.truncated:
            output += TRUNCATED_NOTE
        return ToolOutput(
            title=a.pattern,
            output=output,
            metadata={"matches": len(result.matches), "truncated": result.truncated},
        )

    def glob(args: dict) -> ToolOutput:
        a = GlobArgs.model_validate(args)
        root = resolve(a.path)
        result = engine.glob(root, a.pattern, max_files=MAX_FILES)
        if not result.files:
            return ToolOutput(title=root.name, output=NO_FILES, metadata={"count": 0, "truncated": False})

        output = "".join(f"{rel(f.path)}\n" for f in result.files)
        if result.truncated:
            output += TRUNCATED_NOTE
        return ToolOutput(
            title=root.name,
            output=output,
            metadata={"count": len(result.files), "truncated": result.truncated},
        )

    def read(args: dict) -> ToolOutput:
        a = ReadArgs.model_validate(args)
        path = resolve(a.file_path)
        if not path.exists():
            suggestions = suggest_similar_files(path)
            if suggestions:
                listing = "\n  ".join(str(s) for s in suggestions)
                raise ToolError(f"file not found: {path}\n\nDid you mean one of these?\n  {listing}")
            raise ToolError(f"file not found: {path}")
        if path.is_dir():
            raise ToolError(f"path is a directory, not a file: {path}")
        if is_binary_file(path):
            raise ToolError(f"cannot read binary file: {path}")

        limit = a.limit or DEFAULT_READ_LIMIT
        lines: list[str] = []
        bytes_read = 0
        last_line = 0
        truncated_by_bytes = False
        has_more = False
        try:
            with open(path, encoding="utf-8", errors="replace", newline="") as f:
                for line_no, raw in enumerate(f, 1):
                    last_line = line_no
                    if line_no <= a.offset:
                        continue
                    if len(lines) >= limit:
                        has_more = True
                        break
                    line = truncate_line(raw.rstrip("\r\n"), MAX_LINE_LENGTH)
                    size = len(line.encode("utf-8")) + 1
                    if bytes_read + size > MAX_READ_BYTES:
                        truncated_by_bytes = True
                        break
                    lines.append(line)
                    bytes_read += size
        except OSError as e:
            raise ToolError(f"failed to read file: {e}") from e

        out = ["<file>"]
        out.extend(f"{a.offset + i + 1:05d}| {line}" for i, line in enumerate(lines))
        last_read = a.offset + len(lines)
        if truncated_by_bytes:
            out.append(
                f"\n(Output truncated at {MAX_READ_BYTES} bytes. "
                f"Use 'offset' parameter to read beyond line {last_read})"
            )
        elif has_more:
            out.append(f"\n(File has more lines. Use 'offset' parameter to read beyond line {last_read})")
        else:
            out.append(f"\n(End of file - total {last_line} lines)")
        out.append("</file>")

        return ToolOutput(
            title=rel(path),
            output="\n".join(out),
            metadata={"truncated": truncated_by_bytes or has_more},
        )

    def list_dir(args: dict) -> ToolOutput:
        a = ListArgs.model_validate(args)
        path = resolve(a.path)
        if not path.exists():
            raise ToolError(f"directory not found: {path}")
        if not path.is_dir():
            raise ToolError(f"path is not a directory: {path}")

        dirs: list[str] = []
        files: list[str] = []
        try:
            entries = list(os.scandir(path))
        except OSError as e:
            raise ToolError(f"failed to read directory: {e}") from e
        for entry in entries:
            if is_hidden(entry.name):
                continue
            if entry.is_dir():
                dirs.append(entry.name + "/")
            else:
                files.append(entry.name)

        title = rel(path) if path != work else path.name
        out = [f"{title}/"]
        out.extend(f"  {d}" for d in sorted(dirs))
        out.extend(f"  {f}" for f in sorted(files))
        if not dirs and not files:
            out.append("  (empty directory)")
        return ToolOutput(
            title=title,
            output="\n".join(out) + "\n",
            metadata={"directories": len(dirs), "files": len(files)},
        )

    return [
        Tool(
            name="grep",
            description=GREP_DESCRIPTION,
            parameters={
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": "The regex pattern to search for in file contents",
                    },
                    "path": {
                        "type": "string",
                        "description": "The directory to search in. Defaults to the working directory.",
                    },
                    "include": {
                        "type": "string",
                        "description": 'File pattern to include in the search (e.g. "*.js", "*.{ts,tsx}")',
                    },
                },
                "required": ["pattern"],
            },
            execute=grep,
        ),
        Tool(
            name="glob",
            description=GLOB_DESCRIPTION,
            parameters={
                "type": "object",
                "properties": {
                    "pattern": {"type": "string", "description": "The glob pattern to match files against"},
                    "path": {
                        "type": "string",
                        "description": "The directory to search in. Defaults to the working directory.",
                    },
                },
                "required": ["pattern"],
            },
            execute=glob,
        ),
        Tool(
            name="read",
            description=READ_DESCRIPTION,
            parameters={
                "type": "object",
                "properties": {
                    "file_path": {"type": "string", "description": "The path to the file to read"},
                    "offset": {"type": "integer", "description": "The line number to start reading from (0-based)"},
                    "limit": {"type": "integer", "description": "The number of lines to read (defaults to 2000)"},
                },
                "required": ["file_path"],
            },
            execute=read,
        ),
        Tool(
            name="list",
            description=LIST_DESCRIPTION,
            parameters={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "The directory path to list. Defaults to the working directory.",
                    },
                },
                "required": [],
            },
            execute=list_dir,
        ),
    ]


def suggest_similar_files(target: Path, limit: int = MAX_SUGGESTIONS) -> list[Path]:
    """Files beside ``target`` whose names look like it, closest first."""
    directory = target.parent
    if not directory.is_dir():
        return []
    try:
        names = [e.name for e in os.scandir(directory) if e.is_file()]
    except OSError:
        return []

    wanted = target.name.lower()
    stem = os.path.splitext(wanted)[0]
    by_lower = {n.lower(): n for n in names}

    ranked: list[str] = []
    for lower, name in sorted(by_lower.items()):
        other_stem = os.path.splitext(lower)[0]
        if wanted in lower or lower in wanted or stem == other_stem:
            ranked.append(name)
    for lower in difflib.get_close_matches(wanted, list(by_lower), n=limit, cutoff=0.6):
        if by_lower[lower] not in ranked:
            ranked.append(by_lower[lower])
    return [directory / name for name in ranked[:limit]]
