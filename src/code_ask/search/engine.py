from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from code_ask.models.agent_schemas import SearchError
from code_ask.search.ripgrep import RipgrepCapability, RipgrepError, rg_files, rg_grep
from code_ask.search.walker import IgnoreMatcher, glob_matches, is_binary_file, iter_files

logger = logging.getLogger(__name__)

DEFAULT_MAX_MATCHES = 100
DEFAULT_MAX_FILES = 100
DEFAULT_MAX_LINE_LENGTH = 2000


@dataclass(frozen=True)
class Match:
    path: Path
    line: int
    text: str
    mtime: float


@dataclass(frozen=True)
class FileInfo:
    path: Path
    mtime: float


@dataclass
class GrepResult:
    matches: list[Match] = field(default_factory=list)
    truncated: bool = False
    total: int = 0


@dataclass
class GlobResult:
    files: list[FileInfo] = field(default_factory=list)
    truncated: bool = False
    total: int = 0


def truncate_line(text: str, max_length: int) -> str:
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


class SearchEngine:
    """Content and filename search over a directory tree.

    Results are ranked newest-first by modification time across the whole
    result set, then capped. Ripgrep is used when the capability says it is
    available; the in-process walker is always the fallback.
    """

    def __init__(self, ripgrep: RipgrepCapability | None = None, timeout: float = 30.0) -> None:
        self.ripgrep = ripgrep or RipgrepCapability()
        self.timeout = timeout

    # ------------------------------------------------------------------
    # grep
    # ------------------------------------------------------------------

    def grep(
        self,
        root: str | Path,
        pattern: str,
        include: str | None = None,
        max_matches: int = DEFAULT_MAX_MATCHES,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
    ) -> GrepResult:
        root = Path(os.path.abspath(root))
        if not root.exists():
            raise SearchError(f"path not found: {root}")
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise SearchError(f"invalid regex {pattern!r}: {e}") from e

        raw: list[tuple[Path, int, str]] | None = None
        rg_path = self.ripgrep.path
        if rg_path:
            try:
                raw = self._filter_rg(root, rg_grep(rg_path, root, pattern, self.timeout), include)
            except RipgrepError as e:
                logger.debug("ripgrep failed, searching in-process: %s", e)
        if raw is None:
            raw = list(self._grep_fallback(root, regex, include))

        mtimes: dict[Path, float | None] = {}
        matches = []
        for path, line, text in raw:
            mtime = _mtime(path, mtimes)
            if mtime is None:
                continue
            matches.append(Match(path=path, line=line, text=truncate_line(text, max_line_length), mtime=mtime))

        matches.sort(key=lambda m: (-m.mtime, str(m.path), m.line))
        return GrepResult(
            matches=matches[:max_matches],
            truncated=len(matches) > max_matches,
            total=len(matches),
        )

    def _grep_fallback(self, root: Path, regex: re.Pattern, include: str | None) -> Iterable[tuple[Path, int, str]]:
        for entry in iter_files(root):
            if include and root.is_dir() and not glob_matches(include, entry.path.name, entry.rel):
                continue
            if is_binary_file(entry.path):
                continue
            try:
                with open(entry.path, encoding="utf-8", errors="replace", newline="") as f:
                    for line_no, line in enumerate(f, 1):
                        text = line.rstrip("\r\n")
                        if regex.search(text):
                            yield entry.path, line_no, text
            except OSError as e:
                logger.debug("Cannot read %s: %s", entry.path, e)

    def _filter_rg(
        self,
        root: Path,
        results: Iterable[tuple[Path, int, str]],
        include: str | None,
    ) -> list[tuple[Path, int, str]]:
        kept = []
        verdicts: dict[Path, bool] = {}
        matcher = IgnoreMatcher(root) if root.is_dir() else None
        for path, line, text in results:
            if path not in verdicts:
                verdicts[path] = self._eligible(root, path, matcher, include)
            if verdicts[path]:
                kept.append((path, line, text))
        return kept

    def _eligible(self, root: Path, path: Path, matcher: IgnoreMatcher | None, include: str | None) -> bool:
        if matcher is not None:
            try:
                rel = path.relative_to(root).as_posix()
            except ValueError:
                return False
            if matcher.is_excluded(rel):
                return False
            if include and not glob_matches(include, path.name, rel):
                return False
        return not is_binary_file(path)

    # ------------------------------------------------------------------
    # glob
    # ------------------------------------------------------------------

    def glob(self, root: str | Path, pattern: str, max_files: int = DEFAULT_MAX_FILES) -> GlobResult:
        root = Path(os.path.abspath(root))
        if not root.is_dir():
            raise SearchError(f"not a directory: {root}")

        paths: list[Path] | None = None
        rg_path = self.ripgrep.path
        if rg_path:
            try:
                matcher = IgnoreMatcher(root)
                paths = []
                for path in rg_files(rg_path, root, self.timeout):
                    try:
                        rel = path.relative_to(root).as_posix()
                    except ValueError:
                        continue
                    if not matcher.is_excluded(rel) and glob_matches(pattern, path.name, rel):
                        paths.append(path)
            except RipgrepError as e:
                logger.debug("ripgrep failed, listing in-process: %s", e)
                paths = None
        if paths is None:
            paths = [e.path for e in iter_files(root) if glob_matches(pattern, e.path.name, e.rel)]

        mtimes: dict[Path, float | None] = {}
        files = []
        for path in paths:
            mtime = _mtime(path, mtimes)
            if mtime is not None:
                files.append(FileInfo(path=path, mtime=mtime))

        files.sort(key=lambda f: (-f.mtime, str(f.path)))
        return GlobResult(files=files[:max_files], truncated=len(files) > max_files, total=len(files))


def _mtime(path: Path, cache: dict[Path, float | None]) -> float | None:
    if path not in cache:
        try:
            cache[path] = os.stat(path).st_mtime
        except OSError:
            cache[path] = None
    return cache[path]
