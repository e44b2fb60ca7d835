"""
Issue analysis: turns a free-text problem statement into matched issues,
code suggestions and code contexts.

Steps:
1. Extract keywords and topic buckets from the statement
2. Match candidate issues (cached issues, or the built-in samples)
3. Search the code corpus with the raw statement
4. Look up suggestion templates for the extracted keywords
5. Combine everything into a confidence figure and a summary
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from loguru import logger

from .cache import IssueRecord, RepoCache
from .search import CodeContext, CodeContextSearcher
from .vocabulary import ANALYSIS_TERMS, SUGGESTION_RULES, contains_term, get_context_buckets


@dataclass
class IssueMatch:
    """An issue considered relevant to a statement."""
    id: str
    title: str
    body: str
    labels: list[str]
    state: str
    repository: str
    url: str
    relevance_score: float
    suggested_actions: list[str] = field(default_factory=list)


@dataclass
class CodeSuggestion:
    id: str
    title: str
    description: str
    code: str
    language: str
    priority: str  # 'high' | 'medium' | 'low'
    category: str  # 'bug_fix' | 'performance' | 'security' | 'best_practice' | 'feature'
    file_path: Optional[str] = None
    repository: Optional[str] = None


@dataclass
class AnalysisResult:
    relevant_issues: list[IssueMatch] = field(default_factory=list)
    code_suggestions: list[CodeSuggestion] = field(default_factory=list)
    code_contexts: list[CodeContext] = field(default_factory=list)
    summary: str = ""
    confidence: float = 0.0


# Used when no cached issues are configured
SAMPLE_ISSUES = [
    IssueMatch(
        id="issue-1",
        title="Authentication timeout in production",
        body=(
            "Users experiencing timeout errors when logging in during peak hours. "
            "JWT tokens seem to expire unexpectedly."
        ),
        labels=["bug", "authentication", "production"],
        state="open",
        repository="main-app",
        url="https://github.com/company/main-app/issues/142",
        relevance_score=0.9,
        suggested_actions=[
            "Check JWT token expiration settings",
            "Review authentication middleware",
            "Add timeout handling in login flow",
        ],
    ),
    IssueMatch(
        id="issue-2",
        title="React component re-rendering performance issue",
        body=(
            "Dashboard components are re-rendering too frequently, causing UI lag. "
            "Need to optimize with React.memo and useMemo."
        ),
        labels=["performance", "react", "frontend"],
        state="open",
        repository="frontend-app",
        url="https://github.com/company/frontend-app/issues/89",
        relevance_score=0.8,
        suggested_actions=[
            "Implement React.memo for expensive components",
            "Use useMemo for heavy calculations",
            "Add React DevTools profiler analysis",
        ],
    ),
    IssueMatch(
        id="issue-3",
        title="Database connection pool exhaustion",
        body=(
            "API endpoints failing with connection pool errors during high traffic. "
            "Need to optimize database connections."
        ),
        labels=["database", "performance", "backend"],
        state="open",
        repository="api-service",
        url="https://github.com/company/api-service/issues/156",
        relevance_score=0.85,
        suggested_actions=[
            "Increase database connection pool size",
            "Implement connection pooling best practices",
            "Add database monitoring and alerts",
        ],
    ),
]

FALLBACK_SUMMARY = (
    "I couldn't find specific relevant issues, code suggestions, or repository context "
    "for your request. Try providing more technical details or specific error messages."
)

_EDGE_PUNCTUATION = ".,;:!?()[]{}\"'`"


def extract_keywords(statement: str) -> list[str]:
    """
    Keywords of a statement: words overlapping an analysis term, plus every
    analysis term (including multi-word ones) present in the statement.
    """
    lowered = statement.lower()
    keywords: list[str] = []

    for raw in lowered.split():
        word = raw.strip(_EDGE_PUNCTUATION)
        if word and any(_overlaps(word, term) for term in ANALYSIS_TERMS):
            keywords.append(word)

    keywords.extend(term for term in ANALYSIS_TERMS if contains_term(lowered, term))

    return list(dict.fromkeys(keywords))


def _overlaps(word: str, term: str) -> bool:
    if word == term:
        return True
    if len(term) > 2 and term in word:
        return True
    return len(word) > 2 and word in term


class IssueAnalyzer:
    """
    Combines keyword extraction, issue matching and code search for a
    problem statement.

    With a cache and repository ids, candidate issues are the cached issues
    of those repositories; otherwise SAMPLE_ISSUES are used.
    """

    def __init__(
        self,
        searcher: CodeContextSearcher,
        cache: Optional[RepoCache] = None,
        repo_ids: Optional[list[str]] = None,
        max_issue_matches: int = 5,
        max_code_contexts: int = 5,
    ):
        self.searcher = searcher
        self.cache = cache
        self.repo_ids = list(repo_ids or [])
        self.max_issue_matches = max_issue_matches
        self.max_code_contexts = max_code_contexts

    def analyze(self, statement: str) -> AnalysisResult:
        """Analyze a statement. Confidence is always in [0, 1]."""
        keywords = extract_keywords(statement)
        buckets = get_context_buckets(statement)
        logger.debug(f"Analysis keywords={keywords} buckets={buckets}")

        issues = self.find_relevant_issues(keywords, buckets)
        contexts = self.searcher.search_code_context(statement, self.max_code_contexts).contexts
        suggestions = self.generate_suggestions(keywords)

        confidence = self.calculate_confidence(issues, suggestions, keywords, contexts)
        summary = self.generate_summary(statement, issues, suggestions, contexts)

        logger.info(
            f"Analysis found {len(issues)} issues, {len(suggestions)} suggestions, "
            f"{len(contexts)} code contexts (confidence {confidence:.2f})"
        )
        return AnalysisResult(
            relevant_issues=issues,
            code_suggestions=suggestions,
            code_contexts=contexts,
            summary=summary,
            confidence=confidence,
        )

    # =========================================================================
    # Issue Matching
    # =========================================================================

    def candidate_issues(self, keywords: list[str], buckets: list[str]) -> list[IssueMatch]:
        if self.cache is None or not self.repo_ids:
            return list(SAMPLE_ISSUES)

        candidates = []
        for repo_id in self.repo_ids:
            repo = self.cache.get_repository_sync_status(repo_id)
            repository = repo.full_name if repo else repo_id
            for issue in self.cache.get_issues(repo_id):
                candidates.append(self._from_cached(issue, repository, keywords, buckets))
        return candidates

    def find_relevant_issues(self, keywords: list[str], buckets: list[str]) -> list[IssueMatch]:
        """Issues mentioning a keyword or labelled with a matched bucket, best first."""
        matches = []
        for issue in self.candidate_issues(keywords, buckets):
            text = f"{issue.title} {issue.body} {' '.join(issue.labels)}".lower()
            labels = [label.lower() for label in issue.labels]
            if any(k in text for k in keywords) or any(b in label for b in buckets for label in labels):
                matches.append(issue)

        matches.sort(key=lambda m: m.relevance_score, reverse=True)
        return matches[: self.max_issue_matches]

    def _from_cached(
        self,
        issue: IssueRecord,
        repository: str,
        keywords: list[str],
        buckets: list[str],
    ) -> IssueMatch:
        labels = [label.name for label in issue.labels]
        return IssueMatch(
            id=str(issue.issue_id),
            title=issue.title,
            body=issue.body or "",
            labels=labels,
            state=issue.state,
            repository=repository,
            url=issue.html_url,
            relevance_score=score_issue(issue.title, issue.body or "", labels, keywords, buckets),
        )

    # =========================================================================
    # Suggestions, Confidence, Summary
    # =========================================================================

    def generate_suggestions(self, keywords: list[str]) -> list[CodeSuggestion]:
        found = set(keywords)
        suggestions = []
        for rule in SUGGESTION_RULES:
            if rule["triggers"] & found:
                suggestions.append(CodeSuggestion(
                    **{k: v for k, v in rule.items() if k != "triggers"}
                ))
        return suggestions

    @staticmethod
    def calculate_confidence(
        issues: list[IssueMatch],
        suggestions: list[CodeSuggestion],
        keywords: list[str],
        contexts: list[CodeContext],
    ) -> float:
        confidence = min(len(keywords) * 0.1, 0.3)
        confidence += min(len(issues) * 0.15, 0.4)
        confidence += min(len(suggestions) * 0.1, 0.3)
        confidence += 0.05 * sum(1 for i in issues if i.relevance_score > 0.8)

        if contexts:
            confidence += min(len(contexts) * 0.1, 0.2)
            confidence += 0.05 * sum(1 for c in contexts if c.relevance_score > 0.5)

        return min(max(confidence, 0.0), 1.0)

    @staticmethod
    def generate_summary(
        statement: str,
        issues: list[IssueMatch],
        suggestions: list[CodeSuggestion],
        contexts: list[CodeContext],
    ) -> str:
        if not issues and not suggestions and not contexts:
            return FALLBACK_SUMMARY

        preview = statement[:100] + ("..." if len(statement) > 100 else "")
        lines = [f'Based on your request: "{preview}"', ""]

        if contexts:
            plural = "s" if len(contexts) > 1 else ""
            lines.append(f"**Found {len(contexts)} relevant code file{plural} in repository:**")
            for ctx in contexts[:3]:
                lines.append(
                    f"- {ctx.file_name} ({ctx.context_type.value}) - "
                    f"{ctx.relevance_score * 100:.1f}% relevant"
                )
            lines.append("")

        if issues:
            plural = "s" if len(issues) > 1 else ""
            lines.append(f"**Found {len(issues)} relevant issue{plural}:**")
            for issue in issues[:3]:
                lines.append(f"- {issue.title} ({issue.repository})")
            lines.append("")

        if suggestions:
            plural = "s" if len(suggestions) > 1 else ""
            lines.append(f"**Generated {len(suggestions)} code suggestion{plural}:**")
            for suggestion in suggestions:
                lines.append(f"- {suggestion.title} ({suggestion.category})")
            lines.append("")

        lines.append(
            "The AI response will include relevant code context and actionable "
            "suggestions based on your repository."
        )
        return "\n".join(lines)


def score_issue(
    title: str,
    body: str,
    labels: list[str],
    keywords: list[str],
    buckets: list[str],
) -> float:
    """
    Relevance of a cached issue: title hits weigh most, then label and
    bucket hits, then body hits. Clamped to [0, 1].
    """
    title_l = title.lower()
    body_l = body.lower()
    labels_l = [label.lower() for label in labels]

    score = 0.0
    for keyword in keywords:
        if keyword in title_l:
            score += 0.25
        elif any(keyword in label for label in labels_l):
            score += 0.15
        elif keyword in body_l:
            score += 0.1
    score += 0.1 * sum(1 for b in buckets if any(b in label for label in labels_l))

    return min(score, 1.0)
