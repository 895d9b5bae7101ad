"""Tests for the search engine, run against both the in-process walker and ripgrep."""

from __future__ import annotations

import os
import shutil
import stat
import sys
from pathlib import Path

import pytest

from code_ask.models.agent_schemas import SearchError
from code_ask.search import RipgrepCapability, SearchEngine
from code_ask.search.walker import expand_braces, glob_matches, is_binary_content

RG = shutil.which("rg")


@pytest.fixture(params=["fallback", "ripgrep"])
def engine(request) -> SearchEngine:
    if request.param == "ripgrep":
        if RG is None:
            pytest.skip("ripgrep not installed")
        return SearchEngine(RipgrepCapability(path=RG))
    return SearchEngine(RipgrepCapability.unavailable())


def _write(path: Path, content: str | bytes, mtime: float | None = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def _names(paths) -> list[str]:
    return [p.name for p in paths]


class TestRanking:
    def test_grep_cap_keeps_newest(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "a.go", "foo\n", mtime=1_000_000)
        _write(tmp_path / "b.go", "foo\n", mtime=2_000_000)
        _write(tmp_path / "c.go", "foo\n", mtime=3_000_000)

        result = engine.grep(tmp_path, "foo", max_matches=2)

        assert _names(m.path for m in result.matches) == ["c.go", "b.go"]
        assert result.truncated
        assert result.total == 3

    def test_grep_cap_ignores_traversal_order(self, tmp_path: Path, engine: SearchEngine):
        # Traversal visits a/ before z/, but z/ holds the newest file
        _write(tmp_path / "a" / "old.go", "foo\n", mtime=1_000_000)
        _write(tmp_path / "a" / "older.go", "foo\n", mtime=500_000)
        _write(tmp_path / "z" / "new.go", "foo\n", mtime=3_000_000)

        result = engine.grep(tmp_path, "foo", max_matches=1)

        assert _names(m.path for m in result.matches) == ["new.go"]

    def test_glob_cap_keeps_newest(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "a.go", "", mtime=1_000_000)
        _write(tmp_path / "b.go", "", mtime=2_000_000)
        _write(tmp_path / "c.go", "", mtime=3_000_000)

        result = engine.glob(tmp_path, "*.go", max_files=2)

        assert _names(f.path for f in result.files) == ["c.go", "b.go"]
        assert result.truncated

    def test_same_file_matches_in_line_order(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "x.py", "foo one\nbar\nfoo two\n")

        result = engine.grep(tmp_path, "foo")

        assert [m.line for m in result.matches] == [1, 3]
        assert [m.text for m in result.matches] == ["foo one", "foo two"]
        assert not result.truncated

    def test_equal_mtime_sorted_by_path(self, tmp_path: Path, engine: SearchEngine):
        for name in ("b.txt", "a.txt", "c.txt"):
            _write(tmp_path / name, "hit\n", mtime=1_000_000)

        result = engine.grep(tmp_path, "hit")

        assert _names(m.path for m in result.matches) == ["a.txt", "b.txt", "c.txt"]


class TestExclusions:
    def test_hidden_entries_skipped(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "visible.py", "needle\n")
        _write(tmp_path / ".secret.py", "needle\n")
        _write(tmp_path / ".hidden" / "inner.py", "needle\n")

        result = engine.grep(tmp_path, "needle")

        assert _names(m.path for m in result.matches) == ["visible.py"]

    def test_root_gitignore(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / ".gitignore", "build/\n*.log\n")
        _write(tmp_path / "main.go", "needle\n")
        _write(tmp_path / "app.log", "needle\n")
        _write(tmp_path / "build" / "out.go", "needle\n")

        grep = engine.grep(tmp_path, "needle")
        glob = engine.glob(tmp_path, "*")

        assert _names(m.path for m in grep.matches) == ["main.go"]
        assert _names(f.path for f in glob.files) == ["main.go"]

    def test_nested_gitignore_applies_to_its_directory(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "sub" / ".gitignore", "gen.go\n")
        _write(tmp_path / "sub" / "gen.go", "needle\n", mtime=2_000_000)
        _write(tmp_path / "other" / "gen.go", "needle\n", mtime=1_000_000)

        result = engine.grep(tmp_path, "needle")

        assert [m.path.relative_to(tmp_path).as_posix() for m in result.matches] == ["other/gen.go"]

    def test_binary_files_skipped(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "text.txt", "needle\n")
        _write(tmp_path / "image.png", "needle\n")
        _write(tmp_path / "blob.dat2", b"needle\x00\x01\x02")

        result = engine.grep(tmp_path, "needle")

        assert _names(m.path for m in result.matches) == ["text.txt"]

    def test_null_byte_past_sniff_window_still_searched(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "late.txt", "needle one\n" + "x" * 5000 + "\n\x00\nneedle two\n")

        result = engine.grep(tmp_path, "needle")

        assert [m.line for m in result.matches] == [1, 4]


class TestGrep:
    def test_lookahead_pattern(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "a.txt", "foobar\nfoobaz\n")

        result = engine.grep(tmp_path, "foo(?=bar)")

        assert [m.text for m in result.matches] == ["foobar"]

    def test_include_filter(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "a.py", "needle\n")
        _write(tmp_path / "b.go", "needle\n")
        _write(tmp_path / "c.ts", "needle\n")

        result = engine.grep(tmp_path, "needle", include="*.{py,ts}")

        assert sorted(_names(m.path for m in result.matches)) == ["a.py", "c.ts"]

    def test_include_relative_path(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "pkg" / "a.py", "needle\n")
        _write(tmp_path / "other" / "a.py", "needle\n")
        _write(tmp_path / "pkg" / "sub" / "b.py", "needle\n")

        result = engine.grep(tmp_path, "needle", include="pkg/*.py")

        assert [m.path.parent.name for m in result.matches] == ["pkg"]

    def test_long_lines_truncated(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "long.txt", "needle" + "x" * 50 + "\n")

        result = engine.grep(tmp_path, "needle", max_line_length=10)

        assert result.matches[0].text == "needlexxxx..."

    def test_invalid_regex(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "a.txt", "foo(\n")
        with pytest.raises(SearchError):
            engine.grep(tmp_path, "foo(")

    def test_missing_root(self, tmp_path: Path, engine: SearchEngine):
        with pytest.raises(SearchError):
            engine.grep(tmp_path / "nope", "x")

    def test_single_file_root(self, tmp_path: Path, engine: SearchEngine):
        target = _write(tmp_path / "one.py", "alpha\nbeta\n")
        _write(tmp_path / "two.py", "alpha\n")

        result = engine.grep(target, "alpha")

        assert _names(m.path for m in result.matches) == ["one.py"]

    def test_mtime_recorded(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "a.txt", "hit\n", mtime=1_234_567)

        result = engine.grep(tmp_path, "hit")

        assert result.matches[0].mtime == pytest.approx(1_234_567)


class TestGlob:
    def test_double_star_matches_root_files(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "top.go", "", mtime=2_000_000)
        _write(tmp_path / "deep" / "inner.go", "", mtime=1_000_000)
        _write(tmp_path / "readme.md", "")

        result = engine.glob(tmp_path, "**/*.go")

        assert _names(f.path for f in result.files) == ["top.go", "inner.go"]

    def test_relative_path_pattern(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "src" / "a.ts", "")
        _write(tmp_path / "src" / "sub" / "deep.ts", "")
        _write(tmp_path / "lib" / "b.ts", "")

        result = engine.glob(tmp_path, "src/*.ts")

        assert _names(f.path for f in result.files) == ["a.ts"]

    def test_double_star_crosses_directories(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "src" / "a.ts", "", mtime=2_000_000)
        _write(tmp_path / "src" / "sub" / "deep.ts", "", mtime=1_000_000)

        result = engine.glob(tmp_path, "src/**/*.ts")

        assert _names(f.path for f in result.files) == ["a.ts", "deep.ts"]

    def test_no_match(self, tmp_path: Path, engine: SearchEngine):
        _write(tmp_path / "a.py", "")
        result = engine.glob(tmp_path, "*.rs")
        assert result.files == []
        assert not result.truncated

    def test_root_must_be_directory(self, tmp_path: Path, engine: SearchEngine):
        target = _write(tmp_path / "a.py", "")
        with pytest.raises(SearchError):
            engine.glob(target, "*.py")


# ---------------------------------------------------------------------------
# ripgrep capability and process handling
# ---------------------------------------------------------------------------

def _fake_rg(tmp_path: Path, body: str) -> str:
    script = tmp_path / "fake-rg"
    script.write_text("#!/bin/sh\n" + body + "\n")
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return str(script)


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
class TestRipgrepProcess:
    def test_timeout_kills_process(self, tmp_path: Path):
        repo = tmp_path / "repo"
        _write(repo / "a.txt", "foo\n")
        engine = SearchEngine(RipgrepCapability(path=_fake_rg(tmp_path, "exec sleep 10")), timeout=0.2)

        with pytest.raises(SearchError, match="timed out"):
            engine.grep(repo, "foo")

    def test_failure_falls_back_in_process(self, tmp_path: Path):
        repo = tmp_path / "repo"
        _write(repo / "a.txt", "foo\n")
        engine = SearchEngine(RipgrepCapability(path=_fake_rg(tmp_path, "echo broken >&2; exit 2")))

        grep = engine.grep(repo, "foo")
        glob = engine.glob(repo, "*.txt")

        assert _names(m.path for m in grep.matches) == ["a.txt"]
        assert _names(f.path for f in glob.files) == ["a.txt"]


class TestRipgrepCapability:
    def test_detected_lazily_once(self, monkeypatch):
        calls = []

        def fake_which(name):
            calls.append(name)
            return "/usr/bin/rg"

        monkeypatch.setattr("code_ask.search.ripgrep.shutil.which", fake_which)
        capability = RipgrepCapability()
        assert calls == []
        assert capability.available
        assert capability.path == "/usr/bin/rg"
        assert calls == ["rg"]

    def test_unavailable_never_looks_up_rg(self, monkeypatch):
        monkeypatch.setattr(
            "code_ask.search.ripgrep.shutil.which",
            lambda name: pytest.fail("should not look up rg"),
        )
        capability = RipgrepCapability.unavailable()
        assert not capability.available
        assert capability.path is None

    def test_pinned_path(self):
        assert RipgrepCapability(path="/opt/rg").path == "/opt/rg"


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    def test_expand_braces(self):
        assert expand_braces("*.{ts,tsx}") == ["*.ts", "*.tsx"]
        assert expand_braces("plain") == ["plain"]

    @pytest.mark.parametrize(
        "pattern,name,rel,expected",
        [
            ("*.py", "a.py", "pkg/a.py", True),
            ("pkg/*.py", "a.py", "pkg/a.py", True),
            ("**/*.py", "a.py", "a.py", True),
            ("*.go", "a.py", "pkg/a.py", False),
            ("*.{js,jsx}", "b.jsx", "b.jsx", True),
            ("src/*.ts", "deep.ts", "src/sub/deep.ts", False),
            ("src/**/*.ts", "deep.ts", "src/sub/deep.ts", True),
            ("src/**/*.ts", "a.ts", "src/a.ts", True),
            ("**/test_*.py", "test_x.py", "a/b/test_x.py", True),
            ("a?c", "c", "a/c", False),
        ],
    )
    def test_glob_matches(self, pattern, name, rel, expected):
        assert glob_matches(pattern, name, rel) is expected

    def test_binary_content(self):
        assert is_binary_content(b"abc\x00def")
        assert is_binary_content(bytes(range(1, 9)) * 10)
        assert not is_binary_content(b"plain text\n\twith tabs\r\n")
        assert not is_binary_content(b"")
