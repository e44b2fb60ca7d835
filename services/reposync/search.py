"""
Heuristic relevance search over source files.

Supports:
- Searching a project directory on disk
- Searching file content stored in the cache for a synced repository
- Term extraction from free-text queries
- Windowing of large files around their best matching line
- Context type classification and prompt formatting

This is a linear scan: every query reads and scores every corpus file.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator, Optional

from loguru import logger

from .sync import get_file_extension
from .utils import CancellationToken, check_cancelled, timed_operation
from .vocabulary import (
    CODE_EXTENSIONS,
    EXCLUDE_DIRS,
    SEARCH_TERM_SET,
    SEARCH_TERMS,
    detect_language,
)

if TYPE_CHECKING:
    from .cache import RepoCache
    from .config import SearchConfig


class ContextType(str, Enum):
    FUNCTION = "function"
    CLASS = "class"
    INTERFACE = "interface"
    COMPONENT = "component"
    CONFIG = "config"
    TEST = "test"
    DOCUMENTATION = "documentation"


@dataclass
class CodeContext:
    """A scored file (or window of one) matching a query."""
    file_path: str
    file_name: str
    repository: str
    content: str
    relevance_score: float
    language: str
    context_type: ContextType
    line_numbers: Optional[tuple[int, int]] = None  # 1-based, inclusive


@dataclass
class CodeSearchResult:
    contexts: list[CodeContext] = field(default_factory=list)
    total_matches: int = 0  # matches before truncation to max_results
    search_terms: list[str] = field(default_factory=list)
    confidence: float = 0.0


@dataclass
class CorpusFile:
    """A candidate file; content is loaded only when the file is scored."""
    relative_path: str
    name: str
    full_path: Optional[Path] = None
    content: Optional[str] = None

    def read(self) -> str:
        if self.content is not None:
            return self.content
        return self.full_path.read_text(encoding="utf-8")


# Leading capital or lowercase run followed by a hump, e.g. UserService, useState
_CAMEL_CASE_RE = re.compile(r"^[A-Za-z][a-z]+[A-Z]")
_NON_WORD_RE = re.compile(r"[^\w\s]")

LOCAL_REPOSITORY = "current-project"


def extract_search_terms(query: str) -> list[str]:
    """
    Pull search terms out of a free-text query.

    Keeps tokens longer than two characters that are technical vocabulary,
    longer than four characters, or camelCase in the original query; then
    adds every vocabulary term found verbatim in the query. Order is kept,
    duplicates dropped.
    """
    terms: list[str] = []
    for token in _NON_WORD_RE.sub(" ", query).split():
        word = token.lower()
        if len(word) <= 2:
            continue
        if word in SEARCH_TERM_SET or len(word) > 4 or _CAMEL_CASE_RE.match(token):
            terms.append(word)

    lowered = query.lower()
    terms.extend(term for term in SEARCH_TERMS if term in lowered)

    return list(dict.fromkeys(terms))


def is_code_file(name: str) -> bool:
    extension = get_file_extension(name)
    return bool(extension) and f".{extension}" in CODE_EXTENSIONS


def classify_context(file_path: str, content: str) -> ContextType:
    """First matching rule wins."""
    path = file_path.lower()
    text = content.lower()

    if "test" in path or "spec" in path:
        return ContextType.TEST
    if "config" in path or ".env" in path or "package.json" in path:
        return ContextType.CONFIG
    if "readme" in path or ".md" in path:
        return ContextType.DOCUMENTATION
    if "class " in text:
        return ContextType.CLASS
    if "interface " in text:
        return ContextType.INTERFACE
    if "function " in text or "const " in text or "def " in text:
        return ContextType.FUNCTION
    if "component" in path or "react" in text or "jsx" in text:
        return ContextType.COMPONENT
    return ContextType.FUNCTION


class CodeContextSearcher:
    """
    Scores corpus files against a query and returns the best matches.

    The corpus is either a directory tree on disk (``project_path``) or the
    content cached for a synced repository.
    """

    def __init__(
        self,
        project_path: str | Path = ".",
        cache: Optional["RepoCache"] = None,
        max_results: int = 10,
        min_relevance: float = 0.1,
        window_threshold_chars: int = 2000,
        window_radius_lines: int = 15,
        prompt_char_budget: int = 1500,
    ):
        self.project_path = Path(project_path)
        self.cache = cache
        self.max_results = max_results
        self.min_relevance = min_relevance
        self.window_threshold_chars = window_threshold_chars
        self.window_radius_lines = window_radius_lines
        self.prompt_char_budget = prompt_char_budget

    @classmethod
    def from_config(cls, config: "SearchConfig", cache: Optional["RepoCache"] = None) -> "CodeContextSearcher":
        return cls(
            project_path=config.project_path,
            cache=cache,
            max_results=config.max_results,
            min_relevance=config.min_relevance,
            window_threshold_chars=config.window_threshold_chars,
            window_radius_lines=config.window_radius_lines,
            prompt_char_budget=config.prompt_char_budget,
        )

    # =========================================================================
    # Search Methods
    # =========================================================================

    def search_code_context(
        self,
        query: str,
        max_results: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> CodeSearchResult:
        """
        Search the project directory for files relevant to a query.

        Args:
            query: Free-text query.
            max_results: Result cap; defaults to the configured value.
            cancel_token: Checked before each file is scored.

        Returns:
            CodeSearchResult with ranked contexts and a confidence in [0, 1].
        """
        with timed_operation(f"Code search in {self.project_path}", log_level="debug"):
            return self._search(
                self.iter_project_files(),
                query,
                max_results or self.max_results,
                LOCAL_REPOSITORY,
                cancel_token,
            )

    def search_cached_repository(
        self,
        repo_id: str,
        query: str,
        max_results: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> CodeSearchResult:
        """Search file content already stored in the cache for a repository."""
        if self.cache is None:
            raise ValueError("search_cached_repository requires a cache")

        repo = self.cache.get_repository_sync_status(repo_id)
        repository = repo.full_name if repo else repo_id

        with timed_operation(f"Cached code search in {repository}", log_level="debug"):
            return self._search(
                self.iter_cached_files(repo_id),
                query,
                max_results or self.max_results,
                repository,
                cancel_token,
            )

    # =========================================================================
    # Corpus
    # =========================================================================

    def iter_project_files(self) -> Iterator[CorpusFile]:
        """Walk the project directory, pruning excluded and hidden directories."""
        if not self.project_path.is_dir():
            logger.warning(f"Project path {self.project_path} is not a directory")
            return

        def on_error(error: OSError) -> None:
            logger.warning(f"Could not scan directory {error.filename}: {error}")

        for dirpath, dirnames, filenames in os.walk(self.project_path, onerror=on_error):
            dirnames[:] = sorted(
                d for d in dirnames if d not in EXCLUDE_DIRS and not d.startswith(".")
            )
            for name in sorted(filenames):
                if not is_code_file(name):
                    continue
                full_path = Path(dirpath) / name
                yield CorpusFile(
                    relative_path=full_path.relative_to(self.project_path).as_posix(),
                    name=name,
                    full_path=full_path,
                )

    def iter_cached_files(self, repo_id: str) -> Iterator[CorpusFile]:
        """Cached files with stored content, filtered the same way as the directory walk."""
        for record in self.cache.get_files(repo_id):
            if record.type != "file" or record.content is None:
                continue
            parts = record.path.split("/")
            if any(p in EXCLUDE_DIRS or p.startswith(".") for p in parts[:-1]):
                continue
            if not is_code_file(record.name):
                continue
            yield CorpusFile(relative_path=record.path, name=record.name, content=record.content)

    # =========================================================================
    # Scoring
    # =========================================================================

    def _search(
        self,
        corpus: Iterable[CorpusFile],
        query: str,
        max_results: int,
        repository: str,
        cancel_token: Optional[CancellationToken],
    ) -> CodeSearchResult:
        terms = extract_search_terms(query)
        contexts: list[CodeContext] = []

        for file in corpus:
            check_cancelled(cancel_token, f"scoring {file.relative_path}")
            try:
                content = file.read()
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Could not read file {file.relative_path}: {e}")
                continue

            score = self.score_file(file.name, file.relative_path, content, terms, query)
            if score <= self.min_relevance:
                continue

            context = CodeContext(
                file_path=file.relative_path,
                file_name=file.name,
                repository=repository,
                content=content,
                relevance_score=score,
                language=detect_language(file.name),
                context_type=classify_context(file.relative_path, content),
            )

            if len(content) > self.window_threshold_chars:
                window = self.extract_relevant_section(content, terms)
                if window is not None:
                    context.content, context.line_numbers = window

            contexts.append(context)

        # sorted() is stable, so equal scores keep corpus order
        ranked = sorted(contexts, key=lambda c: c.relevance_score, reverse=True)
        kept = ranked[:max_results]

        logger.debug(f"Query {query!r}: {len(contexts)} matches, terms={terms}")

        return CodeSearchResult(
            contexts=kept,
            total_matches=len(contexts),
            search_terms=terms,
            confidence=self.calculate_confidence(kept, terms),
        )

    def score_file(
        self,
        file_name: str,
        relative_path: str,
        content: str,
        terms: list[str],
        query: str,
    ) -> float:
        """Relevance of one file to the extracted terms, in [0, 1]."""
        score = 0.0
        name = file_name.lower()
        path = relative_path.lower()
        text = content.lower()

        for term in terms:
            if term in name:
                score += 0.3
            if term in path:
                score += 0.2

        for term in terms:
            occurrences = len(re.findall(rf"\b{re.escape(term)}\b", text))
            if occurrences:
                score += min(occurrences * 0.05, 0.2)

        lowered_query = query.lower()
        if "test" in lowered_query and ("test" in name or "spec" in name):
            score += 0.2
        if "config" in lowered_query and ("config" in name or "env" in name):
            score += 0.2
        if "component" in lowered_query and "component" in name:
            score += 0.2

        return min(max(score, 0.0), 1.0)

    def extract_relevant_section(
        self,
        content: str,
        terms: list[str],
    ) -> Optional[tuple[str, tuple[int, int]]]:
        """
        Window of lines around the line matching the most terms.

        Returns:
            (section, (start, end)) with 1-based inclusive line numbers, or
            None when no line contains any term.
        """
        lines = content.split("\n")
        best_index = None
        best_score = 0

        for index, line in enumerate(lines):
            lowered = line.lower()
            line_score = sum(1 for term in terms if term in lowered)
            if line_score > best_score:
                best_index, best_score = index, line_score

        if best_index is None:
            return None

        start = max(0, best_index - self.window_radius_lines)
        end = min(len(lines) - 1, best_index + self.window_radius_lines)
        return "\n".join(lines[start:end + 1]), (start + 1, end + 1)

    @staticmethod
    def calculate_confidence(contexts: list[CodeContext], terms: list[str]) -> float:
        if not contexts:
            return 0.0

        confidence = min(len(contexts) * 0.1, 0.3)
        average = sum(c.relevance_score for c in contexts) / len(contexts)
        confidence += average * 0.4
        if terms:
            confidence += 0.3
        return min(confidence, 1.0)

    # =========================================================================
    # Output
    # =========================================================================

    def format_contexts_for_prompt(self, contexts: list[CodeContext]) -> str:
        """Render contexts as the text block handed to the answer generator."""
        if not contexts:
            return "No relevant code context found in the repository."

        budget = self.prompt_char_budget
        parts = ["\n=== RELEVANT CODE CONTEXT FROM REPOSITORY ===\n\n"]

        for index, context in enumerate(contexts, start=1):
            parts.append(f"**{index}. {context.file_name}** ({context.repository})\n")
            parts.append(f"Path: {context.file_path}\n")
            parts.append(
                f"Type: {context.context_type.value} | Language: {context.language} | "
                f"Relevance: {context.relevance_score * 100:.1f}%\n"
            )
            if context.line_numbers:
                start, end = context.line_numbers
                parts.append(f"Lines: {start}-{end}\n")

            parts.append(f"```{context.language}\n")
            parts.append(context.content[:budget])
            if len(context.content) > budget:
                parts.append("\n... (truncated)")
            parts.append("\n```\n\n")

        parts.append("=== END CODE CONTEXT ===\n")
        return "".join(parts)
