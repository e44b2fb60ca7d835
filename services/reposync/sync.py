"""
File tree sync engine.

Pulls the full recursive tree of a repository branch and replaces the
cached file set for that repository:
1. Upsert the repository with status 'syncing'
2. Fetch the recursive tree (failure aborts and marks the repository 'error')
3. Transform each entry into a FileRecord (bad entries are logged and skipped)
4. Persist the whole set with one replace_files call
5. Mark the repository 'completed' with the final file count

Key principles:
- Idempotency: re-syncing an unchanged tree yields the same cached file set
- Atomic persist: readers see the old file set or the new one, never a mix
- Serialized per repository: two syncs of the same repo id never interleave
- Cache-first content: file bodies are fetched lazily and written back
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from loguru import logger

from .cache import FileRecord, RepoCache, RepositoryRecord, SyncStatus
from .github_client import GitHubClient, GitHubRepository, GitTreeEntry
from .tree import TreeNode
from .utils import (
    CancellationToken,
    KeyedLock,
    check_cancelled,
    timed_operation,
)


class ProgressStatus(str, Enum):
    """Status carried by progress events."""
    STARTING = "starting"
    SYNCING = "syncing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class SyncProgress:
    """Progress event for a file tree sync."""
    total: int
    completed: int
    current_file: str
    status: ProgressStatus
    error: Optional[str] = None

    @property
    def progress_percent(self) -> float:
        if self.total == 0:
            return 0.0
        return (self.completed / self.total) * 100


@dataclass
class FileSyncResult:
    """Result of a file tree sync."""
    repo_id: str
    total_entries: int
    files_saved: int
    entries_skipped: int = 0
    duration_seconds: float = 0.0

    @property
    def partial(self) -> bool:
        return self.entries_skipped > 0


ProgressCallback = Callable[[SyncProgress], None]


def parent_path_of(path: str) -> str:
    """Path with its last segment removed; empty string at the root."""
    head, sep, _ = path.rpartition("/")
    return head if sep else ""


def format_file_size(num_bytes: Optional[int]) -> str:
    """Human readable size, e.g. '1.5 KB'."""
    if not num_bytes:
        return "0 B"
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            break
        size /= 1024
    if unit == "B":
        return f"{int(size)} B"
    return f"{round(size, 2):g} {unit}"


def get_file_extension(filename: str) -> str:
    """Lowercased extension without the dot; empty when there is none."""
    name = filename.rsplit("/", 1)[-1]
    if "." not in name.lstrip("."):
        return ""
    return name.rsplit(".", 1)[-1].lower()


class RepositorySyncEngine:
    """
    Keeps the cached file tree of repositories in step with the provider.

    Progress events are delivered synchronously to ``on_progress`` on the
    caller's thread.
    """

    def __init__(
        self,
        cache: RepoCache,
        github: GitHubClient,
        on_progress: Optional[ProgressCallback] = None,
        locks: Optional[KeyedLock] = None,
    ):
        """
        Initialize sync engine.

        Args:
            cache: Cache store the tree is persisted to.
            github: Provider client.
            on_progress: Observer for SyncProgress events.
            locks: Per-repository mutex; share one instance between engines
                that may sync the same repositories.
        """
        self.cache = cache
        self.github = github
        self.on_progress = on_progress
        self.locks = locks or KeyedLock()

    def _emit(self, progress: SyncProgress) -> None:
        if self.on_progress is not None:
            self.on_progress(progress)

    # =========================================================================
    # Main Sync Entry Point
    # =========================================================================

    def sync_repository(
        self,
        repo: GitHubRepository,
        branch: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> FileSyncResult:
        """
        Sync the file tree of one repository.

        Args:
            repo: Repository metadata from the provider.
            branch: Branch to sync; defaults to the repository's default branch.
            cancel_token: Checked between entries. A cancelled sync marks the
                repository 'error' and persists nothing.

        Returns:
            FileSyncResult with counts.

        Raises:
            FetchError: The tree could not be fetched.
            StorageError: The cache write failed.
            SyncCancelled: The token was cancelled.
        """
        with self.locks.hold(repo.id):
            with timed_operation(f"File sync of {repo.full_name}"):
                return self._sync_locked(repo, branch or repo.default_branch, cancel_token)

    def _sync_locked(
        self,
        repo: GitHubRepository,
        branch: str,
        cancel_token: Optional[CancellationToken],
    ) -> FileSyncResult:
        start = time.perf_counter()
        logger.info(f"Starting file sync for {repo.full_name}@{branch}")

        self.cache.upsert_repository(RepositoryRecord(
            id=repo.id,
            name=repo.name,
            full_name=repo.full_name,
            default_branch=repo.default_branch,
            last_synced=datetime.now(timezone.utc),
            total_files=0,
            sync_status=SyncStatus.SYNCING,
        ))
        self._emit(SyncProgress(
            total=0, completed=0, current_file="Fetching repository tree...",
            status=ProgressStatus.STARTING,
        ))

        try:
            check_cancelled(cancel_token, "tree fetch")
            entries = self.github.get_repository_tree(repo.full_name, branch)
            logger.info(f"Fetched {len(entries)} tree entries for {repo.full_name}")

            records: list[FileRecord] = []
            skipped = 0
            synced_at = datetime.now(timezone.utc)

            for index, entry in enumerate(entries, start=1):
                check_cancelled(cancel_token, f"processing {entry.path}")
                try:
                    records.append(self._to_file_record(repo.id, entry, synced_at))
                except Exception as e:
                    skipped += 1
                    logger.error(f"Error processing tree entry {entry.path!r}: {e}")

                self._emit(SyncProgress(
                    total=len(entries),
                    completed=index,
                    current_file=entry.path,
                    status=ProgressStatus.SYNCING,
                ))

            check_cancelled(cancel_token, "persist")
            saved = self.cache.replace_files(repo.id, records)
            self.cache.update_repository_status(repo.id, SyncStatus.COMPLETED, total_files=saved)

        except Exception as e:
            logger.error(f"File sync failed for {repo.full_name}: {e}")
            self.cache.update_repository_status(repo.id, SyncStatus.ERROR)
            self._emit(SyncProgress(
                total=0, completed=0, current_file="Sync failed",
                status=ProgressStatus.ERROR, error=str(e),
            ))
            raise

        self._emit(SyncProgress(
            total=len(entries), completed=len(entries),
            current_file="Sync completed", status=ProgressStatus.COMPLETED,
        ))

        result = FileSyncResult(
            repo_id=repo.id,
            total_entries=len(entries),
            files_saved=saved,
            entries_skipped=skipped,
            duration_seconds=time.perf_counter() - start,
        )
        logger.info(
            f"File sync for {repo.full_name} done: {saved} saved, {skipped} skipped"
        )
        return result

    def _to_file_record(self, repo_id: str, entry: GitTreeEntry, synced_at: datetime) -> FileRecord:
        if entry.type not in ("blob", "tree"):
            raise ValueError(f"Unsupported tree entry type: {entry.type}")
        if not entry.path or entry.path.startswith("/") or entry.path.endswith("/"):
            raise ValueError(f"Malformed tree path: {entry.path!r}")

        is_file = entry.type == "blob"
        return FileRecord(
            repo_id=repo_id,
            path=entry.path,
            name=entry.path.rsplit("/", 1)[-1],
            type="file" if is_file else "dir",
            sha=entry.sha,
            size=entry.size,
            download_url=entry.url if is_file and entry.url else None,
            parent_path=parent_path_of(entry.path),
            last_synced=synced_at,
        )

    # =========================================================================
    # Content
    # =========================================================================

    def get_file_content(self, repo_full_name: str, path: str, sha: Optional[str] = None) -> str:
        """
        Get file content, serving from cache when present.

        On a cache miss the content is fetched with ``sha`` as ref (the client
        falls back to the default branch) and written back to the cache.
        """
        repo = self.cache.get_repository_by_full_name(repo_full_name)
        if repo is not None:
            cached = self.cache.get_file_content(repo.id, path)
            if cached is not None:
                logger.debug(f"Cache hit for {repo_full_name}:{path}")
                return cached

        content = self.github.get_file_content(repo_full_name, path, sha)

        if repo is not None and not self.cache.save_file_content(repo.id, path, content):
            logger.debug(f"{path} is not in the cached tree of {repo_full_name}, content not stored")
        return content

    def get_cached_file_content(self, repo_id: str, path: str) -> str | None:
        return self.cache.get_file_content(repo_id, path)

    def cache_file_content(self, repo_id: str, path: str, content: str) -> bool:
        return self.cache.save_file_content(repo_id, path, content)

    # =========================================================================
    # Cache Queries
    # =========================================================================

    def get_cached_file_tree(self, repo_id: str) -> list[TreeNode]:
        return self.cache.get_file_tree(repo_id)

    def get_repository_sync_status(self, repo_id: str) -> RepositoryRecord | None:
        return self.cache.get_repository_sync_status(repo_id)

    def is_repository_synced(self, repo_id: str) -> bool:
        record = self.cache.get_repository_sync_status(repo_id)
        return record is not None and record.sync_status == SyncStatus.COMPLETED

    def clear_repository_cache(self, repo_id: str) -> None:
        with self.locks.hold(repo_id):
            self.cache.clear_repository(repo_id)
