"""
Repository Sync and Code Context System

Mirrors GitHub repository file trees and issue trackers into a local SQLite
cache, rebuilds directory hierarchies, and scores source files against
free-text questions.

Features:
- Full-replace file tree sync with progress events
- Paginated issue sync with a per-state budget
- Heuristic relevance search with windowing of large files
- Issue analysis combining issue matching, code search and suggestions
- Per-repository locking and cooperative cancellation
"""

from .config import (
    Config,
    RepositoryConfig,
    GitHubConfig,
    CacheConfig,
    IssueSyncConfig,
    SearchConfig,
    LoggingConfig,
)
from .cache import (
    RepoCache,
    RepositoryRecord,
    FileRecord,
    IssueRecord,
    IssueLabel,
    IssueFilters,
    IssuesCount,
    SyncStatus,
)
from .github_client import GitHubClient, GitHubRepository, GitHubIssue, GitHubLabel, GitTreeEntry
from .tree import TreeNode, build_tree, flatten_tree
from .sync import RepositorySyncEngine, SyncProgress, ProgressStatus, FileSyncResult
from .issues_sync import IssueSyncEngine, IssuesSyncProgress, IssuesSyncResult, IssueSyncStats
from .search import CodeContextSearcher, CodeContext, CodeSearchResult, ContextType
from .analysis import IssueAnalyzer, IssueMatch, CodeSuggestion, AnalysisResult
from .utils import (
    setup_logging,
    timed_operation,
    KeyedLock,
    CancellationToken,
    RepoSyncError,
    FetchError,
    NotFoundError,
    StorageError,
    ValidationError,
    ConfigError,
    SyncCancelled,
)

__all__ = [
    # Config
    "Config",
    "RepositoryConfig",
    "GitHubConfig",
    "CacheConfig",
    "IssueSyncConfig",
    "SearchConfig",
    "LoggingConfig",
    # Cache
    "RepoCache",
    "RepositoryRecord",
    "FileRecord",
    "IssueRecord",
    "IssueLabel",
    "IssueFilters",
    "IssuesCount",
    "SyncStatus",
    # GitHub
    "GitHubClient",
    "GitHubRepository",
    "GitHubIssue",
    "GitHubLabel",
    "GitTreeEntry",
    # Tree
    "TreeNode",
    "build_tree",
    "flatten_tree",
    # Sync
    "RepositorySyncEngine",
    "SyncProgress",
    "ProgressStatus",
    "FileSyncResult",
    "IssueSyncEngine",
    "IssuesSyncProgress",
    "IssuesSyncResult",
    "IssueSyncStats",
    # Search & analysis
    "CodeContextSearcher",
    "CodeContext",
    "CodeSearchResult",
    "ContextType",
    "IssueAnalyzer",
    "IssueMatch",
    "CodeSuggestion",
    "AnalysisResult",
    # Utils
    "setup_logging",
    "timed_operation",
    "KeyedLock",
    "CancellationToken",
    "RepoSyncError",
    "FetchError",
    "NotFoundError",
    "StorageError",
    "ValidationError",
    "ConfigError",
    "SyncCancelled",
]

__version__ = "0.1.0"
