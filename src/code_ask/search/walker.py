"""Directory traversal shared by the in-process search and the ripgrep post-filter.

Hidden entries are skipped, ``.gitignore`` files are honoured per directory
and fully ignored directories are pruned without descending.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import pathspec

logger = logging.getLogger(__name__)

IGNORE_FILE = ".gitignore"

BINARY_EXTENSIONS = frozenset({
    ".zip", ".tar", ".gz", ".exe", ".dll", ".so", ".class", ".jar",
    ".war", ".7z", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".pdf", ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".mp3",
    ".mp4", ".avi", ".mov", ".bin", ".dat", ".obj", ".o", ".a",
    ".lib", ".wasm", ".pyc", ".pyo",
})

BINARY_SNIFF_BYTES = 4096
NON_PRINTABLE_RATIO = 0.3

_BRACES = re.compile(r"\{([^{}]*)\}")


@dataclass(frozen=True)
class FileEntry:
    path: Path
    rel: str  # posix path relative to the search root


@dataclass(frozen=True)
class _IgnoreRules:
    base: str  # posix dir relative to the search root, "" for the root
    spec: pathspec.PathSpec

    def matches(self, rel: str, is_dir: bool) -> bool:
        if self.base:
            if not rel.startswith(self.base + "/"):
                return False
            rel = rel[len(self.base) + 1:]
        return self.spec.match_file(rel + "/" if is_dir else rel)


def is_hidden(name: str) -> bool:
    return name.startswith(".")


def is_binary_extension(path: Path | str) -> bool:
    return os.path.splitext(str(path))[1].lower() in BINARY_EXTENSIONS


def is_binary_content(data: bytes) -> bool:
    if not data:
        return False
    if b"\x00" in data:
        return True
    non_printable = sum(1 for b in data if b < 9 or 13 < b < 32)
    return non_printable / len(data) > NON_PRINTABLE_RATIO


def is_binary_file(path: Path | str) -> bool:
    """Extension denylist first, then a sniff of the first few KB."""
    if is_binary_extension(path):
        return True
    try:
        with open(path, "rb") as f:
            head = f.read(BINARY_SNIFF_BYTES)
    except OSError:
        return True
    return is_binary_content(head)


def expand_braces(pattern: str) -> list[str]:
    """Expand ``*.{ts,tsx}`` style alternatives, which fnmatch lacks."""
    match = _BRACES.search(pattern)
    if match is None:
        return [pattern]
    head, tail = pattern[: match.start()], pattern[match.end():]
    expanded: list[str] = []
    for option in match.group(1).split(","):
        expanded.extend(expand_braces(head + option + tail))
    return expanded


def _match_segments(pattern: list[str], parts: list[str]) -> bool:
    if not pattern:
        return not parts
    head, rest = pattern[0], pattern[1:]
    if head == "**":
        # zero or more whole directories
        return any(_match_segments(rest, parts[i:]) for i in range(len(parts) + 1))
    if not parts:
        return False
    return fnmatch.fnmatchcase(parts[0], head) and _match_segments(rest, parts[1:])


def glob_matches(pattern: str, name: str, rel: str) -> bool:
    """Match a glob against a bare filename or a root-relative path.

    ``*`` and ``?`` stay within one path segment; only a ``**`` segment
    crosses directories, so ``**/x`` also matches ``x`` at the root.
    """
    for alternative in expand_braces(pattern):
        segments = alternative.split("/")
        if _match_segments(segments, [name]) or _match_segments(segments, rel.split("/")):
            return True
    return False


def _load_rules(directory: Path, base: str) -> _IgnoreRules | None:
    ignore_path = directory / IGNORE_FILE
    if not ignore_path.is_file():
        return None
    try:
        with open(ignore_path, encoding="utf-8", errors="replace") as f:
            spec = pathspec.GitIgnoreSpec.from_lines(f)
    except OSError as e:
        logger.debug("Cannot read %s: %s", ignore_path, e)
        return None
    return _IgnoreRules(base=base, spec=spec)


class IgnoreMatcher:
    """Answers "is this root-relative path ignored" using every applicable ignore file.

    Rules are loaded lazily per directory and cached, so repeated checks in the
    same tree (the ripgrep post-filter) stay cheap.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self._rules: dict[str, _IgnoreRules | None] = {}

    def rules_for(self, base: str) -> _IgnoreRules | None:
        if base not in self._rules:
            directory = self.root / base if base else self.root
            self._rules[base] = _load_rules(directory, base)
        return self._rules[base]

    def _ancestors(self, rel: str) -> list[str]:
        parts = rel.split("/")[:-1]
        bases = [""]
        for i in range(len(parts)):
            bases.append("/".join(parts[: i + 1]))
        return bases

    def is_ignored(self, rel: str, is_dir: bool = False) -> bool:
        for base in self._ancestors(rel):
            rules = self.rules_for(base)
            if rules is not None and rules.matches(rel, is_dir):
                return True
        return False

    def is_excluded(self, rel: str) -> bool:
        """Hidden component anywhere in the path, or ignored itself or via a parent."""
        parts = rel.split("/")
        if any(is_hidden(p) for p in parts):
            return True
        for i in range(1, len(parts)):
            if self.is_ignored("/".join(parts[:i]), is_dir=True):
                return True
        return self.is_ignored(rel)


def iter_files(root: Path) -> Iterator[FileEntry]:
    """Yield every eligible file under ``root`` in sorted, deterministic order."""
    root = Path(root)
    if root.is_file():
        yield FileEntry(path=root, rel=root.name)
        return

    matcher = IgnoreMatcher(root)
    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        base = current.relative_to(root).as_posix()
        if base == ".":
            base = ""

        def rel_of(name: str) -> str:
            return f"{base}/{name}" if base else name

        dirnames[:] = sorted(
            d for d in dirnames
            if not is_hidden(d) and not matcher.is_ignored(rel_of(d), is_dir=True)
        )
        for name in sorted(filenames):
            if is_hidden(name):
                continue
            rel = rel_of(name)
            if matcher.is_ignored(rel):
                continue
            yield FileEntry(path=current / name, rel=rel)
