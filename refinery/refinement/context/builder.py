"""
Context relevance builder.

Turns a free-text feature request into a bounded context package for the
Analyst: keyword extraction, workspace search, relevance ranking, then full
content for the best files and signatures-only skeletons for the rest.

Every path that reaches the output is checked against the workspace root.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from ...config import ContextConfig
from ..runtime.budget import TokenBudgetManager, estimate_tokens
from .search import (
    EXCLUDED_DIRS,
    LISTING_INCLUDE,
    ContextSafetyError,
    FileReader,
    FileSearch,
    SearchOptions,
    WorkspaceFileReader,
    WorkspaceFileSearch,
    is_within,
)

logger = logging.getLogger(__name__)

EMPTY_CONTEXT = "(No workspace context available)"

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "shall", "can", "need", "dare",
        "to", "of", "in", "for", "on", "with", "at", "by", "from", "as",
        "into", "through", "during", "before", "after", "above", "below",
        "and", "but", "or", "nor", "so", "yet", "both", "either", "neither",
        "not", "only", "own", "same", "than", "too", "very", "just",
        "i", "me", "my", "we", "our", "you", "your", "it", "its", "this", "that",
        "want", "make", "create", "add", "implement", "build", "feature",
        "like", "new", "use", "using", "also", "when", "how", "what", "which",
        "please", "help", "some", "any", "all", "each", "every",
        "file", "files", "code", "project", "app", "application",
    }
)
IDENTIFIER_RE = re.compile(r"[A-Z][a-z]+(?:[A-Z][a-z]+)*|[a-z]+(?:_[a-z]+)+")

SUFFIX_BOOSTS = (
    (("service", "manager", "controller"), 10),
    (("handler", "provider", "client"), 8),
    (("api",), 7),
    (("model", "schema"), 6),
    (("util", "utils", "helper", "config"), 5),
    (("type", "types", "interface"), 4),
)
PREFIX_BOOSTS = (
    (("auth",), 8),
    (("user", "api"), 6),
    (("http", "db", "database"), 5),
)
PATH_BOOSTS = (
    ("src/", 15),
    ("lib/", 10),
    ("core/", 12),
    ("services/", 10),
    ("components/", 8),
    ("utils/", 5),
    ("api/", 8),
    ("engine/", 10),
)
ENTRY_POINTS = {"index.ts", "index.js", "main.ts", "main.js", "app.ts", "app.js", "main.py", "app.py", "__main__.py"}
INLINE_EXTENSIONS = {".html", ".css", ".json"}
INLINE_MAX_CHARS = 5000
MAX_STRUCTURAL_SKELETONS = 20

LANGUAGE_IDS = {
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "jsx",
    ".py": "python",
    ".java": "java",
    ".go": "go",
    ".rs": "rust",
    ".cs": "csharp",
    ".vue": "vue",
    ".svelte": "svelte",
}


@dataclass
class RelevantFile:
    path: Path
    relative_path: str
    match_count: int = 0
    score: int = 0
    content: str | None = None


@dataclass
class SmartContext:
    content: str
    full_content_files: int = 0
    skeleton_files: int = 0
    estimated_tokens: int = 0
    relevant_files: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)


def keyword_priority(keyword: str) -> int:
    score = 0
    for suffixes, boost in SUFFIX_BOOSTS:
        if keyword.endswith(suffixes):
            score += boost
    for prefixes, boost in PREFIX_BOOSTS:
        if keyword.startswith(prefixes):
            score += boost
    if len(keyword) > 8:
        score += 3
    if len(keyword) > 12:
        score += 2
    if "_" in keyword:
        score += 2
    return score


class ContextRelevanceBuilder:
    """Builds a ranked, budgeted context package scoped to one workspace root."""

    def __init__(
        self,
        workspace_root: Path | None,
        file_search: FileSearch | None = None,
        file_reader: FileReader | None = None,
        config: ContextConfig | None = None,
    ):
        self.workspace_root = Path(workspace_root).expanduser().resolve() if workspace_root else None
        self.config = config or ContextConfig()
        if self.workspace_root is not None:
            self.file_search = file_search or WorkspaceFileSearch(self.workspace_root)
            self.file_reader = file_reader or WorkspaceFileReader(self.workspace_root)
        else:
            self.file_search = file_search
            self.file_reader = file_reader
        self._budget = TokenBudgetManager()

    def is_within_workspace(self, path: Path) -> bool:
        if self.workspace_root is None:
            return False
        return is_within(self.workspace_root, Path(path))

    def _relative(self, path: Path) -> str:
        return Path(path).resolve().relative_to(self.workspace_root).as_posix()

    async def build_context(self, request: str, token_budget: int = 20000) -> SmartContext:
        if self.workspace_root is None or not self.workspace_root.is_dir():
            return SmartContext(content=EMPTY_CONTEXT, estimated_tokens=estimate_tokens(EMPTY_CONTEXT))

        keywords = self.extract_keywords(request)
        if not keywords:
            logger.info("No keywords in request; using skeleton-only context")
            return await self._skeleton_only_context(token_budget, keywords)

        files = await self.search_relevant_files(keywords)
        if not files:
            logger.info("No files matched %s; using skeleton-only context", keywords)
            return await self._skeleton_only_context(token_budget, keywords)

        ranked = self.rank_by_relevance(files, keywords, request)
        context = await self.generate_context(ranked, token_budget, keywords)
        if not context.content:
            logger.info("No ranked file fit the budget; using skeleton-only context")
            return await self._skeleton_only_context(token_budget, keywords)
        return context

    def extract_keywords(self, request: str) -> list[str]:
        words = re.sub(r"[^a-z0-9_\s-]", " ", request.lower()).split()
        identifiers = [match.lower() for match in IDENTIFIER_RE.findall(request)]

        keywords: list[str] = []
        for word in words + identifiers:
            word = word.strip("-_")
            if len(word) <= 2 or word in STOP_WORDS or word in keywords:
                continue
            keywords.append(word)

        # Stable sort: equal priority keeps the order words appear in.
        keywords.sort(key=keyword_priority, reverse=True)
        return keywords[: self.config.max_keywords]

    async def search_relevant_files(self, keywords: list[str]) -> list[RelevantFile]:
        options = SearchOptions(
            max_results=self.config.max_matches_per_keyword,
            max_files=self.config.max_files_per_keyword,
            case_sensitive=False,
        )
        by_path: dict[str, RelevantFile] = {}
        for keyword in keywords:
            try:
                matches = await self.file_search.search(keyword, options)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Search for %r failed: %s", keyword, exc)
                continue

            for match in matches:
                path = Path(match.path)
                if not path.is_absolute():
                    path = self.workspace_root / path
                if not self.is_within_workspace(path):
                    logger.debug("Discarding match outside workspace: %s", path)
                    continue
                relative = self._relative(path)
                if any(part in EXCLUDED_DIRS for part in relative.split("/")[:-1]):
                    continue
                existing = by_path.get(relative)
                if existing is None:
                    by_path[relative] = RelevantFile(path=path.resolve(), relative_path=relative, match_count=1)
                else:
                    existing.match_count += 1
        return list(by_path.values())

    def rank_by_relevance(
        self,
        files: list[RelevantFile],
        keywords: list[str],
        request: str = "",
    ) -> list[RelevantFile]:
        test_related = any("test" in keyword or "spec" in keyword for keyword in keywords) or bool(
            re.search(r"\b(?:test|tests|testing|spec|specs)\b", request.lower())
        )
        for file in files:
            score = file.match_count * 10
            path_lower = file.relative_path.lower()

            for fragment, boost in PATH_BOOSTS:
                if fragment in path_lower:
                    score += boost

            if not test_related and ("test" in path_lower or "spec" in path_lower):
                score -= 20
            if "example" in path_lower or "demo" in path_lower:
                score -= 15

            file_name = path_lower.rsplit("/", 1)[-1]
            for keyword in keywords:
                if keyword.lower() in file_name:
                    score += 20
            if file_name in ENTRY_POINTS:
                score += 5

            file.score = max(0, score)

        return sorted(files, key=lambda item: item.score, reverse=True)

    async def generate_context(
        self,
        ranked_files: list[RelevantFile],
        token_budget: int,
        keywords: list[str],
    ) -> SmartContext:
        full_budget = int(token_budget * self.config.full_content_ratio)
        skeleton_budget = token_budget - full_budget
        full_parts: list[str] = []
        skeleton_parts: list[str] = []
        included: set[str] = set()
        relevant_paths: list[str] = []
        skeleton_paths: list[str] = []
        current = 0
        full_count = 0
        skeleton_count = 0

        for file in ranked_files:
            if current >= full_budget:
                break
            if file.score < self.config.min_full_content_score:
                continue
            try:
                content = await self.file_reader.read_text(file.path)
            except (OSError, ContextSafetyError) as exc:
                logger.warning("Skipping %s: %s", file.relative_path, exc)
                continue

            if estimate_tokens(content) > self.config.max_file_tokens:
                skeleton = await self._skeleton(file.path)
                if skeleton:
                    part = f"## {file.relative_path}\n```\n{skeleton}\n```"
                    tokens = estimate_tokens(part)
                    if current + tokens <= full_budget:
                        skeleton_parts.append(part)
                        included.add(file.relative_path)
                        skeleton_paths.append(file.relative_path)
                        current += tokens
                        skeleton_count += 1
                continue

            suffix = Path(file.relative_path).suffix.lower()
            part = (
                f"## {file.relative_path} (Full Content - Score: {file.score})\n"
                f"```{LANGUAGE_IDS.get(suffix, 'text')}\n{content}\n```"
            )
            tokens = estimate_tokens(part)
            if current + tokens > full_budget:
                continue
            file.content = content
            full_parts.append(part)
            included.add(file.relative_path)
            relevant_paths.append(file.relative_path)
            current += tokens
            full_count += 1
            if full_count >= self.config.max_full_files:
                break

        if current < token_budget:
            remaining = min(skeleton_budget, token_budget - current)
            structural, structural_paths = await self._structural_skeleton(
                [file for file in ranked_files if file.relative_path not in included],
                remaining,
            )
            if structural:
                skeleton_parts.append(f"## Additional Project Structure (Signatures Only)\n{structural}")
                skeleton_count += len(structural_paths)
                skeleton_paths.extend(structural_paths)

        parts: list[str] = []
        if full_parts:
            parts.append("# Relevant Files (Full Content)\n\nThese files are most relevant to your request:\n")
            parts.extend(full_parts)
        if skeleton_parts:
            parts.append("\n# Project Structure Overview (Signatures Only)\n")
            parts.extend(skeleton_parts)

        content = self._fit("\n\n".join(parts), token_budget)
        logger.debug(
            "Context: %d full files, %d skeletons, ~%d tokens",
            full_count,
            skeleton_count,
            estimate_tokens(content),
        )
        return SmartContext(
            content=content,
            full_content_files=full_count,
            skeleton_files=skeleton_count,
            estimated_tokens=estimate_tokens(content),
            relevant_files=relevant_paths + skeleton_paths,
            keywords=keywords,
        )

    async def _skeleton(self, path: Path) -> str | None:
        try:
            return await self.file_reader.skeleton(path)
        except (OSError, ContextSafetyError) as exc:
            logger.debug("No skeleton for %s: %s", path, exc)
            return None

    async def _structural_skeleton(self, files: list[RelevantFile], token_budget: int) -> tuple[str, list[str]]:
        skeletons: list[str] = []
        paths: list[str] = []
        current = 0
        for file in files[:MAX_STRUCTURAL_SKELETONS]:
            if current >= token_budget:
                break
            skeleton = await self._skeleton(file.path)
            if not skeleton:
                continue
            tokens = estimate_tokens(skeleton)
            if current + tokens <= token_budget:
                skeletons.append(skeleton)
                paths.append(file.relative_path)
                current += tokens
        return "\n\n---\n\n".join(skeletons), paths

    async def _skeleton_only_context(self, token_budget: int, keywords: list[str]) -> SmartContext:
        try:
            candidates = await self.file_search.list_files(LISTING_INCLUDE, self.config.max_listed_files)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Listing workspace files failed: %s", exc)
            candidates = []
        files = [path for path in candidates if self.is_within_workspace(path)]
        listing = [self._relative(path) for path in files]

        parts: list[str] = []
        current = 0
        if listing:
            header = f"## Project Files in {self.workspace_root.name}\n```\n" + "\n".join(listing) + "\n```"
            parts.append(header)
            current += estimate_tokens(header)

        skeleton_count = 0
        for path in files:
            if current >= token_budget:
                break
            skeleton = await self._skeleton(path)
            if not skeleton:
                continue
            tokens = estimate_tokens(skeleton)
            if current + tokens <= token_budget:
                parts.append(skeleton)
                current += tokens
                skeleton_count += 1

        if skeleton_count == 0:
            for path, relative in zip(files, listing):
                suffix = path.suffix.lower()
                if current >= token_budget or suffix not in INLINE_EXTENSIONS:
                    continue
                try:
                    content = await self.file_reader.read_text(path)
                except (OSError, ContextSafetyError) as exc:
                    logger.debug("Skipping %s: %s", relative, exc)
                    continue
                if len(content) >= INLINE_MAX_CHARS:
                    continue
                part = f"## {relative}\n```{suffix[1:]}\n{content}\n```"
                tokens = estimate_tokens(part)
                if current + tokens <= token_budget:
                    parts.append(part)
                    current += tokens
                    skeleton_count += 1

        if not parts:
            parts.append(
                f"## Workspace: {self.workspace_root.name}\n"
                "(No recognizable source files found. This may be an empty project "
                "or use unsupported file types.)"
            )

        content = self._fit("\n\n---\n\n".join(parts), token_budget)
        return SmartContext(
            content=content,
            full_content_files=0,
            skeleton_files=skeleton_count,
            estimated_tokens=estimate_tokens(content),
            relevant_files=listing,
            keywords=keywords,
        )

    def _fit(self, content: str, token_budget: int) -> str:
        if not content:
            return content
        return self._budget.truncate_context(content, token_budget).content
