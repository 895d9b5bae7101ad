"""Delegation to an external ripgrep binary.

Ripgrep only does traversal, ignore handling and regex matching here. The
engine post-filters what it returns with the same rules as the in-process
walker, so both paths produce the same results.

Patterns are validated with Python ``re`` but executed by ripgrep's Rust regex
engine. Syntax Rust rejects (lookaround, backreferences) makes ripgrep fail and
the search falls back in-process. POSIX classes such as ``[[:alpha:]]`` are
accepted by both engines with different meanings; that gap remains.
"""

from __future__ import annotations

import base64
import json
import logging
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Iterator

from code_ask.models.agent_schemas import SearchError

logger = logging.getLogger(__name__)

# Only the root's own .gitignore hierarchy counts, not global or parent config
RG_FLAGS = [
    "--no-config",
    "--no-messages",
    "--no-require-git",
    "--no-ignore-parent",
    "--no-ignore-global",
    "--no-ignore-exclude",
    "--no-ignore-dot",
]


class RipgrepError(SearchError):
    """ripgrep exited abnormally; the caller may retry in-process."""


class RipgrepCapability:
    """Whether ripgrep is usable, resolved once on first use.

    Pass ``path`` to pin a binary, or use :meth:`unavailable` to force the
    in-process search.
    """

    def __init__(self, path: str | None = None, enabled: bool = True) -> None:
        self._path = path
        self._enabled = enabled
        self._resolved = path is not None or not enabled

    @classmethod
    def unavailable(cls) -> RipgrepCapability:
        return cls(enabled=False)

    @property
    def path(self) -> str | None:
        if not self._resolved:
            self._path = shutil.which("rg")
            self._resolved = True
            logger.debug("ripgrep %s", f"found at {self._path}" if self._path else "not found")
        return self._path if self._enabled else None

    @property
    def available(self) -> bool:
        return self.path is not None


def _run(args: list[str], timeout: float) -> Iterator[str]:
    """Stream stdout lines of a ripgrep process, killing it after ``timeout`` seconds."""
    proc = subprocess.Popen(
        args,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    timed_out = threading.Event()

    def kill() -> None:
        timed_out.set()
        proc.kill()

    timer = threading.Timer(timeout, kill)
    timer.daemon = True
    timer.start()
    produced = False
    try:
        assert proc.stdout is not None
        for raw in proc.stdout:
            produced = True
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")
        stderr = proc.stderr.read().decode("utf-8", errors="replace") if proc.stderr else ""
        code = proc.wait()
    finally:
        timer.cancel()
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        for stream in (proc.stdout, proc.stderr):
            if stream is not None:
                stream.close()

    if timed_out.is_set():
        raise SearchError(f"ripgrep timed out after {timeout:g}s")
    # 1 means no matches; 2 with output means some files were unreadable
    if (code == 2 and not produced) or code not in (0, 1, 2):
        raise RipgrepError(stderr.strip() or f"ripgrep exited with code {code}")


def _text(field: dict) -> str:
    if "text" in field:
        return field["text"]
    return base64.b64decode(field.get("bytes", "")).decode("utf-8", errors="replace")


def rg_grep(rg_path: str, root: Path, pattern: str, timeout: float) -> Iterator[tuple[Path, int, str]]:
    """Yield ``(path, line_number, line_text)`` for each matching line."""
    # --text: the binary decision is left to the post-filter sniff, as in-process
    args = [rg_path, "--json", "--text", *RG_FLAGS, "--regexp", pattern, "--", str(root)]
    for line in _run(args, timeout):
        if not line:
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping unparseable ripgrep line: %r", line[:200])
            continue
        if message.get("type") != "match":
            continue
        data = message["data"]
        yield (
            Path(_text(data["path"])),
            data["line_number"],
            _text(data["lines"]).rstrip("\r\n"),
        )


def rg_files(rg_path: str, root: Path, timeout: float) -> Iterator[Path]:
    """Yield every file ripgrep would search under ``root``."""
    args = [rg_path, "--files", *RG_FLAGS, "--", str(root)]
    for line in _run(args, timeout):
        if line:
            yield Path(line)
