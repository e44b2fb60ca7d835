"""
Shared fixtures: a temporary cache and an in-memory stand-in for the
GitHub client.
"""

from datetime import datetime, timedelta, timezone

import pytest

from services.reposync.cache import RepoCache
from services.reposync.github_client import GitHubIssue, GitHubLabel, GitHubRepository, GitTreeEntry
from services.reposync.utils import FetchError, NotFoundError


BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_repo(repo_id="101", full_name="acme/widgets", default_branch="main"):
    return GitHubRepository(
        id=repo_id,
        name=full_name.split("/")[1],
        full_name=full_name,
        default_branch=default_branch,
    )


def make_entry(path, type="blob", size=10):
    return GitTreeEntry(
        path=path,
        sha=f"sha-{path}",
        type=type,
        size=size if type == "blob" else None,
        url=f"https://api.github.com/blobs/{path}",
    )


def make_issue(number, state="open", labels=(), is_pull_request=False, minutes=0, **kwargs):
    created = BASE_TIME + timedelta(minutes=number)
    return GitHubIssue(
        id=1000 + number,
        number=number,
        title=kwargs.pop("title", f"Issue {number}"),
        body=kwargs.pop("body", f"Body of issue {number}"),
        state=state,
        html_url=f"https://github.com/acme/widgets/issues/{number}",
        created_at=created,
        updated_at=created + timedelta(minutes=minutes),
        closed_at=created + timedelta(days=1) if state == "closed" else None,
        labels=[GitHubLabel(name=name) for name in labels],
        is_pull_request=is_pull_request,
        **kwargs,
    )


class FakeGitHub:
    """Serves canned trees, issue pages and file contents."""

    def __init__(self):
        self.trees: dict[str, list[GitTreeEntry]] = {}
        self.issues: dict[str, list[GitHubIssue]] = {"open": [], "closed": []}
        self.contents: dict[tuple[str, str], str] = {}
        self.tree_error: Exception | None = None
        self.fail_pages: set[tuple[str, int]] = set()
        self.issue_calls: list[tuple[str, int, int]] = []
        self.content_calls: list[tuple[str, str, str | None]] = []

    def get_repository_tree(self, full_name, branch="main"):
        if self.tree_error is not None:
            raise self.tree_error
        return list(self.trees.get(full_name, []))

    def list_issues(self, owner, repo, state="open", page=1, per_page=100):
        self.issue_calls.append((state, page, per_page))
        if (state, page) in self.fail_pages:
            raise FetchError(f"page {page} failed", status_code=502)
        items = self.issues[state]
        start = (page - 1) * per_page
        return items[start:start + per_page]

    def get_file_content(self, full_name, path, ref=None):
        self.content_calls.append((full_name, path, ref))
        try:
            return self.contents[(full_name, path)]
        except KeyError:
            raise NotFoundError(f"File not found at path: {path}", path=path) from None


@pytest.fixture
def cache(tmp_path):
    return RepoCache(tmp_path / "reposync.db")


@pytest.fixture
def github():
    return FakeGitHub()
