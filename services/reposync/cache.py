"""
SQLite cache layer for the repository sync system.

Holds everything pulled from the hosting provider so the file tree, file
contents and issues can be served without network calls.
Tables:
  - repositories: id → name, full_name, default_branch, sync_status, total_files
  - files: (repo_id, path) → kind, sha, size, download_url, content, parent_path
  - issues: (repo_id, issue_id) / (repo_id, number) → issue fields, labels, assignees

Bulk replaces run inside a single transaction, so a reader on another
connection sees either the previous set or the new one. A reader that
started before the commit keeps seeing the previous set until it re-reads.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from loguru import logger

from .tree import TreeNode, build_tree
from .utils import StorageError


class SyncStatus(str, Enum):
    """Lifecycle of a repository's file sync."""
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class RepositoryRecord:
    """Represents a cached repository."""
    id: str
    name: str
    full_name: str
    default_branch: str
    last_synced: datetime
    total_files: int = 0
    sync_status: SyncStatus = SyncStatus.PENDING


@dataclass
class FileRecord:
    """A file or directory of a cached repository tree."""
    repo_id: str
    path: str
    name: str
    type: str  # 'file' or 'dir'
    sha: str
    parent_path: str
    last_synced: datetime
    size: Optional[int] = None
    download_url: Optional[str] = None
    content: Optional[str] = None


@dataclass
class IssueLabel:
    name: str
    color: str = ""
    description: Optional[str] = None


@dataclass
class IssueRecord:
    """Represents a cached issue."""
    issue_id: int
    repo_id: str
    number: int
    title: str
    body: Optional[str]
    state: str  # 'open' or 'closed'
    html_url: str
    created_at: datetime
    updated_at: datetime
    last_synced: datetime
    closed_at: Optional[datetime] = None
    author_login: str = ""
    author_avatar_url: str = ""
    assignees: list[str] = field(default_factory=list)
    labels: list[IssueLabel] = field(default_factory=list)
    milestone: Optional[str] = None
    comments: int = 0


@dataclass
class IssueFilters:
    """Filters for get_issues. Pagination applies after filtering and sorting."""
    state: Optional[str] = None
    assignee: Optional[str] = None
    label: Optional[str] = None
    offset: int = 0
    limit: Optional[int] = None


@dataclass
class IssuesCount:
    open: int
    closed: int

    @property
    def total(self) -> int:
        return self.open + self.closed


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class RepoCache:
    """
    SQLite-backed store for repositories, file trees and issues.

    Every public method opens its own connection via a context manager;
    sqlite3 failures are re-raised as StorageError.
    """

    def __init__(self, db_path: str | Path, vacuum_on_startup: bool = False):
        """
        Initialize cache database.

        Args:
            db_path: Path to SQLite database file.
            vacuum_on_startup: If True, run VACUUM on startup to optimize.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Initializing cache at {self.db_path}")
        self._init_db()

        if vacuum_on_startup:
            self._vacuum()

    @contextmanager
    def _get_connection(self, operation: str = "query") -> Iterator[sqlite3.Connection]:
        """Get a database connection; the block runs as one transaction."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open cache at {self.db_path}: {e}", operation=operation) from e

        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Cache {operation} failed: {e}")
            raise StorageError(f"Cache {operation} failed: {e}", operation=operation) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection("init") as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS repositories (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    full_name TEXT NOT NULL,
                    default_branch TEXT NOT NULL,
                    last_synced TEXT NOT NULL,
                    total_files INTEGER NOT NULL DEFAULT 0,
                    sync_status TEXT NOT NULL
                        CHECK (sync_status IN ('pending', 'syncing', 'completed', 'error'))
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS files (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    repo_id TEXT NOT NULL,
                    path TEXT NOT NULL,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL CHECK (type IN ('file', 'dir')),
                    sha TEXT NOT NULL,
                    size INTEGER,
                    download_url TEXT,
                    content TEXT,
                    parent_path TEXT NOT NULL,
                    last_synced TEXT NOT NULL,
                    UNIQUE(repo_id, path)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS issues (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    repo_id TEXT NOT NULL,
                    issue_id INTEGER NOT NULL,
                    number INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    body TEXT,
                    state TEXT NOT NULL CHECK (state IN ('open', 'closed')),
                    html_url TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    closed_at TEXT,
                    author_login TEXT NOT NULL DEFAULT '',
                    author_avatar_url TEXT NOT NULL DEFAULT '',
                    assignees TEXT NOT NULL DEFAULT '[]',
                    labels TEXT NOT NULL DEFAULT '[]',
                    milestone TEXT,
                    comments INTEGER NOT NULL DEFAULT 0,
                    last_synced TEXT NOT NULL,
                    UNIQUE(repo_id, issue_id),
                    UNIQUE(repo_id, number)
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_files_repo_parent
                ON files(repo_id, parent_path)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_issues_repo_state_updated
                ON issues(repo_id, state, updated_at)
            """)

    def _vacuum(self) -> None:
        """Run VACUUM to optimize database file."""
        with self._get_connection("vacuum") as conn:
            conn.execute("VACUUM")
        logger.debug("Cache database vacuumed")

    # =========================================================================
    # Repository Operations
    # =========================================================================

    def upsert_repository(self, repo: RepositoryRecord) -> None:
        """Insert or update repository metadata. Files and issues are untouched."""
        with self._get_connection("upsert_repository") as conn:
            conn.execute("""
                INSERT INTO repositories
                    (id, name, full_name, default_branch, last_synced, total_files, sync_status)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    full_name = excluded.full_name,
                    default_branch = excluded.default_branch,
                    last_synced = excluded.last_synced,
                    total_files = excluded.total_files,
                    sync_status = excluded.sync_status
            """, (
                repo.id,
                repo.name,
                repo.full_name,
                repo.default_branch,
                _iso(repo.last_synced),
                repo.total_files,
                SyncStatus(repo.sync_status).value,
            ))

    def update_repository_status(
        self,
        repo_id: str,
        status: SyncStatus,
        total_files: Optional[int] = None,
    ) -> bool:
        """Transition sync status and stamp last_synced. Returns True if the repository exists."""
        with self._get_connection("update_repository_status") as conn:
            cursor = conn.execute("""
                UPDATE repositories
                SET sync_status = ?,
                    last_synced = ?,
                    total_files = COALESCE(?, total_files)
                WHERE id = ?
            """, (
                SyncStatus(status).value,
                _iso(datetime.now(timezone.utc)),
                total_files,
                repo_id,
            ))
            return cursor.rowcount > 0

    def get_repository_sync_status(self, repo_id: str) -> RepositoryRecord | None:
        """Point read of a repository record."""
        with self._get_connection("get_repository") as conn:
            row = conn.execute(
                "SELECT * FROM repositories WHERE id = ?", (repo_id,)
            ).fetchone()
            return self._row_to_repository(row) if row else None

    def get_repository_by_full_name(self, full_name: str) -> RepositoryRecord | None:
        """Look up a repository by owner/name (case-insensitive)."""
        with self._get_connection("get_repository") as conn:
            row = conn.execute(
                "SELECT * FROM repositories WHERE lower(full_name) = lower(?)", (full_name,)
            ).fetchone()
            return self._row_to_repository(row) if row else None

    def list_repositories(self) -> list[RepositoryRecord]:
        with self._get_connection("list_repositories") as conn:
            rows = conn.execute("SELECT * FROM repositories ORDER BY full_name").fetchall()
            return [self._row_to_repository(row) for row in rows]

    # =========================================================================
    # File Operations
    # =========================================================================

    def replace_files(self, repo_id: str, files: Iterable[FileRecord]) -> int:
        """
        Replace a repository's whole file set in one transaction.

        Returns:
            Number of files written.
        """
        rows = [
            (
                repo_id,
                f.path,
                f.name,
                f.type,
                f.sha,
                f.size,
                f.download_url,
                f.content,
                f.parent_path,
                _iso(f.last_synced),
            )
            for f in files
        ]

        with self._get_connection("replace_files") as conn:
            deleted = conn.execute("DELETE FROM files WHERE repo_id = ?", (repo_id,)).rowcount
            conn.executemany("""
                INSERT INTO files
                    (repo_id, path, name, type, sha, size, download_url, content, parent_path, last_synced)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, rows)

        logger.debug(f"Replaced files for {repo_id}: {deleted} removed, {len(rows)} inserted")
        return len(rows)

    def get_files(self, repo_id: str) -> list[FileRecord]:
        """Get the flat file list of a repository, ordered by path."""
        with self._get_connection("get_files") as conn:
            rows = conn.execute(
                "SELECT * FROM files WHERE repo_id = ? ORDER BY path", (repo_id,)
            ).fetchall()
            return [self._row_to_file(row) for row in rows]

    def get_file_tree(self, repo_id: str) -> list[TreeNode]:
        """Get the cached files of a repository as a nested tree."""
        return build_tree(self.get_files(repo_id))

    def get_file(self, repo_id: str, path: str) -> FileRecord | None:
        """Get a file record by repo and path."""
        with self._get_connection("get_file") as conn:
            row = conn.execute(
                "SELECT * FROM files WHERE repo_id = ? AND path = ?", (repo_id, path)
            ).fetchone()
            return self._row_to_file(row) if row else None

    def get_file_content(self, repo_id: str, path: str) -> str | None:
        """Quick lookup of cached content for a file."""
        with self._get_connection("get_file_content") as conn:
            row = conn.execute(
                "SELECT content FROM files WHERE repo_id = ? AND path = ?", (repo_id, path)
            ).fetchone()
            return row["content"] if row else None

    def save_file_content(self, repo_id: str, path: str, content: str) -> bool:
        """Store fetched content on an existing file record. Returns True if updated."""
        with self._get_connection("save_file_content") as conn:
            cursor = conn.execute(
                "UPDATE files SET content = ? WHERE repo_id = ? AND path = ?",
                (content, repo_id, path),
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Issue Operations
    # =========================================================================

    def replace_issues(
        self,
        repo_id: str,
        issues: Iterable[IssueRecord],
        states: Optional[Iterable[str]] = None,
    ) -> int:
        """
        Replace cached issues in one transaction.

        Args:
            repo_id: Repository id.
            issues: Fresh issue set.
            states: If given, only cached issues in these states are removed
                (plus stale copies of the incoming issues); otherwise the whole
                repository's issue set is replaced.

        Returns:
            Number of issues written.
        """
        latest: dict[int, IssueRecord] = {}
        for issue in issues:
            current = latest.get(issue.issue_id)
            if current is None or issue.updated_at >= current.updated_at:
                latest[issue.issue_id] = issue

        rows = [self._issue_to_row(repo_id, issue) for issue in latest.values()]

        with self._get_connection("replace_issues") as conn:
            if states is None:
                conn.execute("DELETE FROM issues WHERE repo_id = ?", (repo_id,))
            else:
                scoped = list(states)
                placeholders = ", ".join("?" for _ in scoped)
                if scoped:
                    conn.execute(
                        f"DELETE FROM issues WHERE repo_id = ? AND state IN ({placeholders})",
                        (repo_id, *scoped),
                    )
                conn.executemany(
                    "DELETE FROM issues WHERE repo_id = ? AND (issue_id = ? OR number = ?)",
                    [(repo_id, issue.issue_id, issue.number) for issue in latest.values()],
                )

            conn.executemany("""
                INSERT INTO issues
                    (repo_id, issue_id, number, title, body, state, html_url,
                     created_at, updated_at, closed_at, author_login, author_avatar_url,
                     assignees, labels, milestone, comments, last_synced)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, rows)

        return len(rows)

    def get_issues(self, repo_id: str, filters: Optional[IssueFilters] = None) -> list[IssueRecord]:
        """
        Get cached issues, newest update first.

        State, assignee and label filters are applied before offset/limit.
        """
        filters = filters or IssueFilters()

        query = "SELECT * FROM issues WHERE repo_id = ?"
        params: list[Any] = [repo_id]
        if filters.state:
            query += " AND state = ?"
            params.append(filters.state)
        query += " ORDER BY updated_at DESC, number DESC"

        with self._get_connection("get_issues") as conn:
            issues = [self._row_to_issue(row) for row in conn.execute(query, params).fetchall()]

        if filters.assignee:
            issues = [i for i in issues if filters.assignee in i.assignees]
        if filters.label:
            wanted = filters.label.lower()
            issues = [i for i in issues if any(l.name.lower() == wanted for l in i.labels)]

        start = max(filters.offset, 0)
        end = start + filters.limit if filters.limit is not None else None
        return issues[start:end]

    def get_issues_count(self, repo_id: str) -> IssuesCount:
        """Open/closed issue counts for a repository."""
        with self._get_connection("get_issues_count") as conn:
            rows = conn.execute("""
                SELECT state, COUNT(*) AS n FROM issues
                WHERE repo_id = ?
                GROUP BY state
            """, (repo_id,)).fetchall()

        counts = {row["state"]: row["n"] for row in rows}
        return IssuesCount(open=counts.get("open", 0), closed=counts.get("closed", 0))

    def search_issues(self, repo_id: str, query: str) -> list[IssueRecord]:
        """Case-insensitive substring search over title and body."""
        needle = query.casefold()
        return [
            issue for issue in self.get_issues(repo_id)
            if needle in issue.title.casefold() or needle in (issue.body or "").casefold()
        ]

    def get_last_issue_sync(self, repo_id: str) -> datetime | None:
        """Most recent last_synced among a repository's issues."""
        with self._get_connection("get_last_issue_sync") as conn:
            row = conn.execute(
                "SELECT MAX(last_synced) AS last FROM issues WHERE repo_id = ?", (repo_id,)
            ).fetchone()
            return _dt(row["last"])

    # =========================================================================
    # Bulk Operations
    # =========================================================================

    def clear_repository(self, repo_id: str) -> None:
        """Delete a repository together with its files and issues."""
        with self._get_connection("clear_repository") as conn:
            conn.execute("DELETE FROM files WHERE repo_id = ?", (repo_id,))
            conn.execute("DELETE FROM issues WHERE repo_id = ?", (repo_id,))
            conn.execute("DELETE FROM repositories WHERE id = ?", (repo_id,))
        logger.info(f"Cleared cached data for repository {repo_id}")

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        with self._get_connection("get_stats") as conn:
            stats = {
                "repo_count": conn.execute("SELECT COUNT(*) FROM repositories").fetchone()[0],
                "file_count": conn.execute("SELECT COUNT(*) FROM files").fetchone()[0],
                "files_with_content": conn.execute(
                    "SELECT COUNT(*) FROM files WHERE content IS NOT NULL"
                ).fetchone()[0],
                "issue_count": conn.execute("SELECT COUNT(*) FROM issues").fetchone()[0],
            }

            page_count = conn.execute("PRAGMA page_count").fetchone()[0]
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]
            stats["db_size_bytes"] = page_count * page_size

            return stats

    # =========================================================================
    # Row Mapping
    # =========================================================================

    def _row_to_repository(self, row: sqlite3.Row) -> RepositoryRecord:
        return RepositoryRecord(
            id=row["id"],
            name=row["name"],
            full_name=row["full_name"],
            default_branch=row["default_branch"],
            last_synced=_dt(row["last_synced"]),
            total_files=row["total_files"],
            sync_status=SyncStatus(row["sync_status"]),
        )

    def _row_to_file(self, row: sqlite3.Row) -> FileRecord:
        return FileRecord(
            repo_id=row["repo_id"],
            path=row["path"],
            name=row["name"],
            type=row["type"],
            sha=row["sha"],
            size=row["size"],
            download_url=row["download_url"],
            content=row["content"],
            parent_path=row["parent_path"],
            last_synced=_dt(row["last_synced"]),
        )

    def _issue_to_row(self, repo_id: str, issue: IssueRecord) -> tuple:
        return (
            repo_id,
            issue.issue_id,
            issue.number,
            issue.title,
            issue.body,
            issue.state,
            issue.html_url,
            _iso(issue.created_at),
            _iso(issue.updated_at),
            _iso(issue.closed_at),
            issue.author_login,
            issue.author_avatar_url,
            json.dumps(issue.assignees),
            json.dumps([label.__dict__ for label in issue.labels]),
            issue.milestone,
            issue.comments,
            _iso(issue.last_synced),
        )

    def _row_to_issue(self, row: sqlite3.Row) -> IssueRecord:
        return IssueRecord(
            issue_id=row["issue_id"],
            repo_id=row["repo_id"],
            number=row["number"],
            title=row["title"],
            body=row["body"],
            state=row["state"],
            html_url=row["html_url"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            closed_at=_dt(row["closed_at"]),
            author_login=row["author_login"],
            author_avatar_url=row["author_avatar_url"],
            assignees=json.loads(row["assignees"]),
            labels=[IssueLabel(**label) for label in json.loads(row["labels"])],
            milestone=row["milestone"],
            comments=row["comments"],
            last_synced=_dt(row["last_synced"]),
        )

    def close(self) -> None:
        """Connections are opened per operation; nothing to release."""
        pass
