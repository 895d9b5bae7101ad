"""Size limits for tool output fed back to the model.

Oversized output is cut to a preview. When an output directory is configured
the full text is kept on disk under ``<output_dir>/<conversation_id>/`` and the
preview points at it.
"""

from __future__ import annotations

import logging
import os
import secrets
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_OUTPUT_LINES = 500
MAX_OUTPUT_BYTES = 50 * 1024
OUTPUT_FILE_EXPIRY = 24 * 60 * 60


@dataclass
class TruncationResult:
    content: str
    truncated: bool = False
    output_path: Path | None = None


def truncate_in_memory(output: str, max_lines: int = MAX_OUTPUT_LINES, max_bytes: int = MAX_OUTPUT_BYTES) -> str:
    """Cut by lines first, then by UTF-8 bytes, annotating each cut."""
    lines = output.split("\n")
    content = output
    if len(lines) > max_lines:
        content = "\n".join(lines[:max_lines])
        content += f"\n\n[Output truncated at {max_lines} lines. Total: {len(lines)} lines]"

    encoded = content.encode("utf-8")
    if len(encoded) > max_bytes:
        content = encoded[:max_bytes].decode("utf-8", errors="ignore")
        content += f"\n\n[Output truncated at {max_bytes // 1024}KB]"
    return content


class Truncator:
    def __init__(
        self,
        output_dir: Path | None = None,
        max_lines: int = MAX_OUTPUT_LINES,
        max_bytes: int = MAX_OUTPUT_BYTES,
    ) -> None:
        self.output_dir = output_dir
        self.max_lines = max_lines
        self.max_bytes = max_bytes

    def needs_truncation(self, output: str) -> bool:
        return (
            output.count("\n") + 1 > self.max_lines
            or len(output.encode("utf-8")) > self.max_bytes
        )

    def apply(self, output: str, tool_name: str, conversation_id: str = "") -> TruncationResult:
        if not self.needs_truncation(output):
            return TruncationResult(content=output)

        preview = truncate_in_memory(output, self.max_lines, self.max_bytes)
        if self.output_dir is None:
            return TruncationResult(content=preview, truncated=True)

        path = self._save(output, tool_name, conversation_id or "default")
        if path is None:
            return TruncationResult(content=preview, truncated=True)
        return TruncationResult(
            content=preview + f"\n\n[Full output saved to: {path}]",
            truncated=True,
            output_path=path,
        )

    def _save(self, output: str, tool_name: str, conversation_id: str) -> Path | None:
        assert self.output_dir is not None
        directory = self.output_dir / conversation_id
        path = directory / f"{tool_name}-{secrets.token_hex(4)}.txt"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path.write_text(output, encoding="utf-8")
        except OSError as e:
            logger.warning("Could not save full %s output to %s: %s", tool_name, path, e)
            return None
        return path


def cleanup_old_outputs(output_dir: Path | None, max_age: float = OUTPUT_FILE_EXPIRY) -> int:
    """Delete saved outputs older than ``max_age`` seconds. Returns the count removed."""
    if output_dir is None or not output_dir.is_dir():
        return 0
    cutoff = time.time() - max_age
    removed = 0
    for dirpath, _dirnames, filenames in os.walk(output_dir):
        for name in filenames:
            path = Path(dirpath) / name
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.debug("Skipping %s: %s", path, e)
    return removed


def cleanup_empty_conversation_dirs(output_dir: Path | None) -> int:
    if output_dir is None or not output_dir.is_dir():
        return 0
    removed = 0
    for child in output_dir.iterdir():
        if not child.is_dir():
            continue
        try:
            if not any(child.iterdir()):
                child.rmdir()
                removed += 1
        except OSError as e:
            logger.debug("Skipping %s: %s", child, e)
    return removed
