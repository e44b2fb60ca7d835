"""
Issue sync engine.

Pages through a repository's open and/or closed issues and replaces the
cached issues for the synced states. The issue budget is split evenly when
both states are requested; an odd remainder goes to open issues.

Page loop termination, per state:
- the provider returns an empty page
- the page is shorter than the page size (last page)
- the state's budget is filled
- ceil(budget / page_size) + 1 pages have been requested

A failed page ends that state's loop; whatever was accumulated is still
persisted and the result is flagged as partial.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from loguru import logger

from .cache import IssueLabel, IssueRecord, RepoCache
from .config import PROVIDER_MAX_PAGE_SIZE
from .github_client import GitHubClient, GitHubIssue, GitHubRepository
from .sync import ProgressStatus
from .utils import (
    CancellationToken,
    FetchError,
    KeyedLock,
    SyncCancelled,
    check_cancelled,
    split_full_name,
)


@dataclass
class IssuesSyncProgress:
    """Progress event for an issue sync."""
    repo_id: str
    repo_name: str
    current_page: int = 1
    total_pages: int = 1
    issues_processed: int = 0
    total_issues: int = 0
    current_state: str = "open"
    status: ProgressStatus = ProgressStatus.STARTING
    error: Optional[str] = None


@dataclass
class IssuesSyncResult:
    """Result of an issue sync."""
    success: bool
    repo_id: str
    open_count: int = 0
    closed_count: int = 0
    failed_pages: list[tuple[str, int]] = field(default_factory=list)
    message: str = ""
    duration_seconds: float = 0.0

    @property
    def total(self) -> int:
        return self.open_count + self.closed_count

    @property
    def partial(self) -> bool:
        return bool(self.failed_pages)


@dataclass
class IssueSyncStats:
    total: int
    open: int
    closed: int
    last_synced: Optional[datetime] = None


IssuesProgressCallback = Callable[[IssuesSyncProgress], None]


def split_budget(max_issues: int, states: list[str]) -> dict[str, int]:
    """Per-state issue budget; the first state takes the odd remainder."""
    budgets = {}
    remaining = max(max_issues, 0)
    for index, state in enumerate(states):
        share = math.ceil(remaining / (len(states) - index))
        budgets[state] = share
        remaining -= share
    return budgets


class IssueSyncEngine:
    """
    Keeps cached issues of repositories in step with the provider.

    Repositories are processed one at a time; progress events are delivered
    synchronously on the caller's thread.
    """

    def __init__(
        self,
        cache: RepoCache,
        github: GitHubClient,
        on_progress: Optional[IssuesProgressCallback] = None,
        page_size: int = PROVIDER_MAX_PAGE_SIZE,
        locks: Optional[KeyedLock] = None,
    ):
        if not 1 <= page_size <= PROVIDER_MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {PROVIDER_MAX_PAGE_SIZE}")

        self.cache = cache
        self.github = github
        self.on_progress = on_progress
        self.page_size = page_size
        self.locks = locks or KeyedLock()

    def _emit(self, progress: IssuesSyncProgress) -> None:
        if self.on_progress is not None:
            self.on_progress(replace(progress))

    # =========================================================================
    # Main Sync Entry Point
    # =========================================================================

    def sync_repository_issues(
        self,
        repo: GitHubRepository,
        sync_open: bool = True,
        sync_closed: bool = False,
        max_issues: int = 100,
        cancel_token: Optional[CancellationToken] = None,
    ) -> IssuesSyncResult:
        """
        Sync issues of one repository.

        Args:
            repo: Repository metadata from the provider.
            sync_open: Fetch open issues.
            sync_closed: Fetch closed issues.
            max_issues: Total issue budget, split evenly across requested states
                (open issues take an odd remainder).
            cancel_token: Checked before every page request.

        Returns:
            IssuesSyncResult; ``partial`` is set when a page request failed.

        Raises:
            ValidationError: Malformed repository reference.
            StorageError: The cache write failed.
            SyncCancelled: The token was cancelled (nothing is persisted).
        """
        owner, name = split_full_name(repo.full_name)

        with self.locks.hold(repo.id):
            start = time.perf_counter()
            progress = IssuesSyncProgress(repo_id=repo.id, repo_name=repo.name)
            self._emit(progress)

            states = [s for s, wanted in (("open", sync_open), ("closed", sync_closed)) if wanted]
            if not states:
                logger.warning(f"No issue states requested for {repo.full_name}, nothing to sync")
                progress.status = ProgressStatus.COMPLETED
                self._emit(progress)
                return IssuesSyncResult(success=True, repo_id=repo.id, message="No states requested")

            budgets = split_budget(max_issues, states)
            # a state with no budget is neither fetched nor cleared
            synced_states = [s for s in states if budgets[s] > 0]
            failed_pages: list[tuple[str, int]] = []
            records: list[IssueRecord] = []

            try:
                for state in synced_states:
                    progress.current_state = state
                    progress.status = ProgressStatus.SYNCING
                    self._emit(progress)

                    issues = self._fetch_state(
                        owner, name, state, budgets[state], progress, failed_pages, cancel_token
                    )
                    synced_at = datetime.now(timezone.utc)
                    records.extend(self._to_record(repo.id, issue, state, synced_at) for issue in issues)

                check_cancelled(cancel_token, "issue persist")
                self.cache.replace_issues(repo.id, records, states=synced_states)

            except Exception as e:
                logger.error(f"Issue sync failed for {repo.full_name}: {e}")
                progress.status = ProgressStatus.ERROR
                progress.error = str(e)
                self._emit(progress)
                raise

            open_count = sum(1 for r in records if r.state == "open")
            closed_count = len(records) - open_count

            progress.status = ProgressStatus.COMPLETED
            progress.total_issues = len(records)
            progress.issues_processed = len(records)
            self._emit(progress)

            message = f"Synced {open_count} open and {closed_count} closed issues"
            if failed_pages:
                message += f" ({len(failed_pages)} page(s) failed, results are partial)"
            logger.info(f"{repo.full_name}: {message}")

            return IssuesSyncResult(
                success=True,
                repo_id=repo.id,
                open_count=open_count,
                closed_count=closed_count,
                failed_pages=failed_pages,
                message=message,
                duration_seconds=time.perf_counter() - start,
            )

    def _fetch_state(
        self,
        owner: str,
        repo: str,
        state: str,
        budget: int,
        progress: IssuesSyncProgress,
        failed_pages: list[tuple[str, int]],
        cancel_token: Optional[CancellationToken],
    ) -> list[GitHubIssue]:
        """Page through one issue state until a termination condition holds."""
        if budget <= 0:
            return []

        page_size = min(self.page_size, budget)
        max_pages = math.ceil(budget / page_size) + 1
        progress.total_pages = math.ceil(budget / page_size)

        collected: list[GitHubIssue] = []
        page = 1

        while len(collected) < budget and page <= max_pages:
            check_cancelled(cancel_token, f"{state} issues page {page}")

            try:
                raw_page = self.github.list_issues(owner, repo, state=state, page=page, per_page=page_size)
            except FetchError as e:
                logger.error(f"Error fetching {state} issues page {page} of {owner}/{repo}: {e}")
                failed_pages.append((state, page))
                break

            if not raw_page:
                break

            # pull requests count toward the page length but are not issues
            issues = [issue for issue in raw_page if not issue.is_pull_request]
            collected.extend(issues[: budget - len(collected)])

            progress.current_page = page
            progress.issues_processed = len(collected)
            self._emit(progress)

            if len(raw_page) < page_size:
                break
            page += 1

        logger.debug(f"Fetched {len(collected)} {state} issues from {owner}/{repo} in {page} page(s)")
        return collected

    def _to_record(
        self,
        repo_id: str,
        issue: GitHubIssue,
        requested_state: str,
        synced_at: datetime,
    ) -> IssueRecord:
        return IssueRecord(
            issue_id=issue.id,
            repo_id=repo_id,
            number=issue.number,
            title=issue.title or "",
            body=issue.body,
            state=issue.state if issue.state in ("open", "closed") else requested_state,
            html_url=issue.html_url,
            created_at=issue.created_at,
            updated_at=issue.updated_at,
            closed_at=issue.closed_at,
            author_login=issue.author_login or "",
            author_avatar_url=issue.author_avatar_url or "",
            assignees=list(issue.assignees or []),
            labels=[
                IssueLabel(name=label.name, color=label.color, description=label.description)
                for label in issue.labels
            ],
            milestone=issue.milestone,
            comments=issue.comments or 0,
            last_synced=synced_at,
        )

    # =========================================================================
    # Bulk Operations
    # =========================================================================

    def sync_multiple_repositories(
        self,
        repos: Iterable[GitHubRepository],
        sync_open: bool = True,
        sync_closed: bool = False,
        max_issues_per_repo: int = 100,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[IssuesSyncResult]:
        """
        Sync issues for several repositories, one after another.

        A failure on one repository is logged and recorded; the loop moves on.
        """
        results = []
        for repo in repos:
            try:
                results.append(self.sync_repository_issues(
                    repo,
                    sync_open=sync_open,
                    sync_closed=sync_closed,
                    max_issues=max_issues_per_repo,
                    cancel_token=cancel_token,
                ))
            except SyncCancelled:
                raise
            except Exception as e:
                logger.error(f"Failed to sync issues for repository {repo.full_name}: {e}")
                results.append(IssuesSyncResult(success=False, repo_id=repo.id, message=str(e)))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Issue sync finished: {succeeded}/{len(results)} repositories succeeded")
        return results

    def get_sync_stats(self, repo_id: str) -> IssueSyncStats:
        """Cached issue counts and the most recent sync time."""
        counts = self.cache.get_issues_count(repo_id)
        return IssueSyncStats(
            total=counts.total,
            open=counts.open,
            closed=counts.closed,
            last_synced=self.cache.get_last_issue_sync(repo_id),
        )
