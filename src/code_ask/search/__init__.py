from code_ask.search.engine import FileInfo, GlobResult, GrepResult, Match, SearchEngine
from code_ask.search.ripgrep import RipgrepCapability
from code_ask.search.walker import is_binary_file, iter_files

__all__ = [
    "FileInfo",
    "GlobResult",
    "GrepResult",
    "Match",
    "RipgrepCapability",
    "SearchEngine",
    "is_binary_file",
    "iter_files",
]
