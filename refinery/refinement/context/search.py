"""
File search and file read collaborators for context building.

``FileSearch`` and ``FileReader`` are protocols so hosts can plug in their own
index. The ``Workspace*`` implementations walk the file tree in a worker
thread and never return a path outside their root.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from .skeleton import skeletonize

logger = logging.getLogger(__name__)

SOURCE_INCLUDE = "**/*.{ts,tsx,js,jsx,py,java,go,rs,cs,vue,svelte}"
LISTING_INCLUDE = "**/*.{ts,tsx,js,jsx,py,html,css,json}"

EXCLUDED_DIRS = {
    "node_modules", ".git", "dist", "build", "out", ".next", ".nuxt",
    "coverage", "vendor", "tmp", "temp", ".cache", ".vscode", ".idea",
    "__pycache__", ".pytest_cache", ".venv", "venv", "env", ".env",
    ".refinery",
}
EXCLUDED_PATTERNS = [
    "**/*.min.js",
    "**/*.map",
    "**/package-lock.json",
    "**/yarn.lock",
    "**/*.log",
]

# File extensions that are always binary/non-text; skip entirely in search
BINARY_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico",
    ".pdf", ".zip", ".gz", ".tar", ".bz2", ".xz", ".7z",
    ".db", ".sqlite", ".sqlite3", ".db-wal", ".db-shm",
    ".wasm", ".dylib", ".so", ".dll", ".exe", ".bin",
    ".ttf", ".woff", ".woff2", ".eot",
    ".mp4", ".mp3", ".mov", ".avi", ".wav",
    ".lock",
}

_BRACE_RE = re.compile(r"\{([^{}]*)\}")


class ContextSafetyError(RuntimeError):
    """Raised when a read would escape the workspace root."""


@dataclass
class SearchMatch:
    path: Path
    line: int
    column: int
    match_text: str
    line_preview: str


@dataclass
class SearchOptions:
    include: str = SOURCE_INCLUDE
    exclude: list[str] = field(default_factory=lambda: list(EXCLUDED_PATTERNS))
    max_results: int = 100
    max_files: int = 300
    case_sensitive: bool = False


@runtime_checkable
class FileSearch(Protocol):
    async def search(self, keyword: str, options: SearchOptions) -> list[SearchMatch]:
        """Return literal occurrences of ``keyword`` in files selected by ``options``."""
        ...

    async def list_files(self, include: str, max_files: int) -> list[Path]:
        """Return files matching ``include``, capped at ``max_files``."""
        ...


@runtime_checkable
class FileReader(Protocol):
    async def read_text(self, path: Path) -> str:
        ...

    async def skeleton(self, path: Path) -> str | None:
        """Signatures-only projection, or None when the file type is unsupported."""
        ...


def expand_braces(pattern: str) -> list[str]:
    match = _BRACE_RE.search(pattern)
    if not match:
        return [pattern]
    head, tail = pattern[: match.start()], pattern[match.end():]
    expanded: list[str] = []
    for alternative in match.group(1).split(","):
        expanded.extend(expand_braces(f"{head}{alternative}{tail}"))
    return expanded


def matches_glob(relative_path: str, pattern: str) -> bool:
    for candidate in expand_braces(pattern):
        if fnmatch.fnmatch(relative_path, candidate):
            return True
        # "**/x" also matches "x" at the root.
        if candidate.startswith("**/") and fnmatch.fnmatch(relative_path, candidate[3:]):
            return True
    return False


def is_within(root: Path, candidate: Path) -> bool:
    try:
        candidate.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


class WorkspaceFileSearch:
    """Pure-Python literal search over a workspace tree."""

    def __init__(self, root: Path):
        self.root = root.resolve()

    def _iter_files(self, include: str, exclude: list[str], max_files: int) -> list[Path]:
        files: list[Path] = []
        if not self.root.is_dir():
            return files
        for dirpath, dirnames, filenames in os.walk(self.root):
            # Pruned in place so excluded trees are never entered.
            dirnames[:] = sorted(name for name in dirnames if name not in EXCLUDED_DIRS)
            current = Path(dirpath)
            for name in sorted(filenames):
                if len(files) >= max_files:
                    return files
                file_path = current / name
                if file_path.is_symlink() or not file_path.is_file():
                    continue
                if file_path.suffix.lower() in BINARY_EXTENSIONS:
                    continue
                relative = file_path.relative_to(self.root).as_posix()
                if not matches_glob(relative, include):
                    continue
                if any(matches_glob(relative, pattern) for pattern in exclude):
                    continue
                files.append(file_path)
        return files

    def _search_sync(self, keyword: str, options: SearchOptions) -> list[SearchMatch]:
        needle = keyword if options.case_sensitive else keyword.lower()
        matches: list[SearchMatch] = []
        for file_path in self._iter_files(options.include, options.exclude, options.max_files):
            if len(matches) >= options.max_results:
                break
            try:
                content = file_path.read_text(encoding="utf-8", errors="ignore")
            except OSError as exc:
                logger.debug("Skipping unreadable file %s: %s", file_path, exc)
                continue
            for line_num, line in enumerate(content.splitlines(), start=1):
                haystack = line if options.case_sensitive else line.lower()
                column = haystack.find(needle)
                if column < 0:
                    continue
                matches.append(
                    SearchMatch(
                        path=file_path,
                        line=line_num,
                        column=column,
                        match_text=line[column: column + len(keyword)],
                        # Truncate individual lines to avoid minified blowup
                        line_preview=line.strip()[:500],
                    )
                )
                if len(matches) >= options.max_results:
                    break
        return matches

    async def search(self, keyword: str, options: SearchOptions) -> list[SearchMatch]:
        if not keyword:
            return []
        return await asyncio.to_thread(self._search_sync, keyword, options)

    async def list_files(self, include: str, max_files: int) -> list[Path]:
        return await asyncio.to_thread(self._iter_files, include, list(EXCLUDED_PATTERNS), max_files)


class WorkspaceFileReader:
    """Reads text and skeletons for files inside a single workspace root."""

    def __init__(self, root: Path):
        self.root = root.resolve()

    def _safe_path(self, path: Path) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        candidate = candidate.resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError as exc:
            raise ContextSafetyError(f"Path escapes workspace root: {path}") from exc
        return candidate

    async def read_text(self, path: Path) -> str:
        safe = self._safe_path(path)
        return await asyncio.to_thread(safe.read_text, encoding="utf-8", errors="ignore")

    async def skeleton(self, path: Path) -> str | None:
        safe = self._safe_path(path)
        content = await self.read_text(safe)
        return skeletonize(safe.name, content)
