"""
GitHub API client for repository, tree, issue and content retrieval.

Uses GitHub REST API with optional authentication for higher rate limits:
- Unauthenticated: 60 requests/hour
- Authenticated: 5000 requests/hour

Endpoints:
  - GET /user/repos - List repositories of the authenticated user
  - GET /repos/{owner}/{repo} - Repository metadata
  - GET /repos/{owner}/{repo}/issues - Issues by state, paginated
  - GET /repos/{owner}/{repo}/git/trees/{ref}?recursive=1 - Full file tree
  - GET /repos/{owner}/{repo}/contents/{path}?ref= - File content
"""

from __future__ import annotations

import base64
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar
from urllib.parse import quote

import httpx
from loguru import logger

from .config import PROVIDER_MAX_PAGE_SIZE, GitHubConfig
from .utils import FetchError, NotFoundError, backoff_delay, split_full_name

T = TypeVar("T")


@dataclass
class GitHubRepository:
    """Repository metadata as returned by the provider."""
    id: str
    name: str
    full_name: str
    default_branch: str = "main"
    description: Optional[str] = None
    html_url: str = ""


@dataclass
class GitHubLabel:
    name: str
    color: str = ""
    description: Optional[str] = None


@dataclass
class GitHubIssue:
    """An issue (or pull request) from the issues list endpoint."""
    id: int
    number: int
    title: str
    body: Optional[str]
    state: str  # 'open' or 'closed'
    html_url: str
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None
    labels: list[GitHubLabel] = field(default_factory=list)
    author_login: str = ""
    author_avatar_url: str = ""
    assignees: list[str] = field(default_factory=list)
    milestone: Optional[str] = None
    comments: int = 0
    is_pull_request: bool = False


@dataclass
class GitTreeEntry:
    """Represents an entry in a git tree."""
    path: str
    sha: str
    type: str  # 'blob' or 'tree'
    mode: str = ""
    size: Optional[int] = None
    url: str = ""


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a GitHub ISO-8601 timestamp into an aware UTC datetime."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


class GitHubClient:
    """
    GitHub REST API client with rate limit handling.

    Every failure surfaces as FetchError (NotFoundError for 404); malformed
    owner/repo references raise ValidationError before any request is made.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize GitHub client.

        Args:
            token: GitHub personal access token. Falls back to GITHUB_TOKEN.
            base_url: API root, overridable for GitHub Enterprise.
            timeout: Per-request timeout in seconds.
            max_retries: Maximum number of attempts per request.
            base_delay: Initial delay between retries (seconds).
            max_delay: Maximum delay between retries (seconds).
            transport: Optional httpx transport (used by tests).
        """
        if token is None:
            token = os.getenv("GITHUB_TOKEN")
            if token:
                logger.info("GitHub token loaded from environment")

        self.token = token
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "reposync/1.0",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
            logger.info("Using authenticated GitHub API (5000 req/hour limit)")
        else:
            logger.warning("Using unauthenticated GitHub API (60 req/hour limit)")

        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

        self._rate_limit_remaining: Optional[int] = None
        self._rate_limit_reset: Optional[datetime] = None
        self._default_branches: dict[str, str] = {}

    @classmethod
    def from_config(cls, config: GitHubConfig) -> "GitHubClient":
        return cls(
            token=config.token,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=config.max_retries,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================================================================
    # Public API
    # =========================================================================

    def list_repositories(self, limit: int = 100) -> list[GitHubRepository]:
        """
        List repositories of the authenticated user, most recently updated first.

        Args:
            limit: Maximum number of repositories to return.
        """
        repos: list[GitHubRepository] = []
        per_page = min(PROVIDER_MAX_PAGE_SIZE, max(limit, 1))
        page = 1

        while len(repos) < limit:
            response = self._request_with_retry(
                "GET",
                "/user/repos",
                params={"sort": "updated", "per_page": per_page, "page": page},
            )
            data = self._decode(response, list)
            repos.extend(
                self._convert(self._to_repository, item, response)
                for item in data[: limit - len(repos)]
            )

            if len(data) < per_page:
                break
            page += 1

        return repos

    def get_repository(self, full_name: str) -> GitHubRepository:
        """Fetch metadata for a single repository."""
        owner, repo = split_full_name(full_name)
        response = self._request_with_retry("GET", f"/repos/{owner}/{repo}")
        result = self._convert(self._to_repository, self._decode(response, dict), response)
        self._default_branches[result.full_name.lower()] = result.default_branch
        return result

    def list_issues(
        self,
        owner: str,
        repo: str,
        state: str = "open",
        page: int = 1,
        per_page: int = PROVIDER_MAX_PAGE_SIZE,
    ) -> list[GitHubIssue]:
        """
        Fetch one page of issues.

        The endpoint also returns pull requests; they are kept in the page
        (flagged with is_pull_request) so callers can tell a short page from
        a filtered one.

        Args:
            owner: Repository owner.
            repo: Repository name.
            state: 'open', 'closed' or 'all'.
            page: 1-based page number.
            per_page: Page size, capped at the provider maximum.
        """
        split_full_name(f"{owner}/{repo}")
        if state not in ("open", "closed", "all"):
            raise ValueError(f"Invalid issue state: {state}")

        response = self._request_with_retry(
            "GET",
            f"/repos/{owner}/{repo}/issues",
            params={
                "state": state,
                "page": page,
                "per_page": min(per_page, PROVIDER_MAX_PAGE_SIZE),
                "sort": "updated",
                "direction": "desc",
            },
        )
        return [self._convert(self._to_issue, item, response) for item in self._decode(response, list)]

    def get_repository_tree(self, full_name: str, branch: str = "main") -> list[GitTreeEntry]:
        """
        Get the complete recursive file tree for a branch.

        Args:
            full_name: Repository in owner/repo format.
            branch: Branch name, tag or tree SHA.

        Returns:
            List of GitTreeEntry objects (blobs and trees).
        """
        owner, repo = split_full_name(full_name)
        response = self._request_with_retry(
            "GET",
            f"/repos/{owner}/{repo}/git/trees/{quote(branch, safe='')}",
            params={"recursive": "1"},
        )
        data = self._decode(response, dict)

        if data.get("truncated"):
            logger.warning(f"Tree for {full_name}@{branch} was truncated by the API")

        entries = []
        for item in data.get("tree") or []:
            entry = self._convert(self._to_tree_entry, item, response)
            if entry is not None:
                entries.append(entry)
        return entries

    def get_file_content(self, full_name: str, path: str, ref: Optional[str] = None) -> str:
        """
        Get decoded file content.

        If the lookup at ``ref`` is not found, it is retried once against the
        repository's default branch before NotFoundError is raised.

        Args:
            full_name: Repository in owner/repo format.
            path: File path within the repository.
            ref: Branch name, tag or commit SHA.
        """
        split_full_name(full_name)

        if ref:
            try:
                return self._fetch_content(full_name, path, ref)
            except NotFoundError:
                logger.debug(f"{path} not found at {ref}, retrying on default branch")

        default_branch = self._default_branch(full_name)
        try:
            return self._fetch_content(full_name, path, default_branch)
        except NotFoundError:
            suffix = f" (ref: {ref})" if ref else ""
            raise NotFoundError(f"File not found at path: {path}{suffix}", path=path) from None

    def check_rate_limit(self) -> dict[str, Any]:
        """
        Check current rate limit status.

        Returns:
            Dict with the core rate limit resource.
        """
        try:
            response = self._client.get("/rate_limit")
            response.raise_for_status()
            return response.json().get("resources", {}).get("core", {})
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning(f"Could not check rate limit: {e}")
            return {}

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _default_branch(self, full_name: str) -> str:
        cached = self._default_branches.get(full_name.lower())
        if cached:
            return cached
        return self.get_repository(full_name).default_branch

    def _fetch_content(self, full_name: str, path: str, ref: str) -> str:
        owner, repo = split_full_name(full_name)
        endpoint = f"/repos/{owner}/{repo}/contents/{quote(path.lstrip('/'))}"
        response = self._request_with_retry("GET", endpoint, params={"ref": ref})
        data = self._decode(response, (dict, list))

        if isinstance(data, list):
            raise FetchError(f"Path is a directory: {path}")

        content = data.get("content")
        if content is None:
            raise NotFoundError(f"File content not found: {path}", path=path)

        if data.get("encoding") == "base64":
            try:
                return base64.b64decode(content).decode("utf-8", errors="replace")
            except ValueError as e:
                raise FetchError(f"Undecodable content for {path}: {e}", status_code=response.status_code) from e
        return content

    def _decode(self, response: httpx.Response, expected: type | tuple[type, ...]) -> Any:
        """
        Decode a JSON response body.

        Raises:
            FetchError: If the body is not JSON, or not of the expected type.
        """
        endpoint = response.request.url.path
        try:
            data = response.json()
        except ValueError as e:
            raise FetchError(
                f"Invalid JSON from {endpoint}: {e}", status_code=response.status_code
            ) from e

        if not isinstance(data, expected):
            raise FetchError(
                f"Unexpected response from {endpoint}: got {type(data).__name__}",
                status_code=response.status_code,
            )
        return data

    def _convert(self, convert: Callable[[Any], T], item: Any, response: httpx.Response) -> T:
        """Map one response item, raising FetchError when it is malformed."""
        try:
            return convert(item)
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise FetchError(
                f"Malformed item in response from {response.request.url.path}: {e!r}",
                status_code=response.status_code,
            ) from e

    def _to_tree_entry(self, item: dict[str, Any]) -> Optional[GitTreeEntry]:
        if item.get("type") not in ("blob", "tree"):
            # submodules show up as 'commit'
            return None
        return GitTreeEntry(
            path=item.get("path", ""),
            sha=item.get("sha", ""),
            type=item["type"],
            mode=item.get("mode", ""),
            size=item.get("size"),
            url=item.get("url", ""),
        )

    def _to_repository(self, item: dict[str, Any]) -> GitHubRepository:
        return GitHubRepository(
            id=str(item["id"]),
            name=item["name"],
            full_name=item["full_name"],
            default_branch=item.get("default_branch") or "main",
            description=item.get("description"),
            html_url=item.get("html_url", ""),
        )

    def _to_issue(self, item: dict[str, Any]) -> GitHubIssue:
        labels = []
        for label in item.get("labels", []):
            if isinstance(label, str):
                labels.append(GitHubLabel(name=label))
            else:
                labels.append(GitHubLabel(
                    name=label.get("name") or "",
                    color=label.get("color") or "",
                    description=label.get("description"),
                ))

        user = item.get("user") or {}
        milestone = item.get("milestone") or {}

        return GitHubIssue(
            id=item["id"],
            number=item["number"],
            title=item.get("title", ""),
            body=item.get("body"),
            state=item.get("state", "open"),
            html_url=item.get("html_url", ""),
            created_at=parse_timestamp(item.get("created_at")) or datetime.now(timezone.utc),
            updated_at=parse_timestamp(item.get("updated_at")) or datetime.now(timezone.utc),
            closed_at=parse_timestamp(item.get("closed_at")),
            labels=labels,
            author_login=user.get("login", ""),
            author_avatar_url=user.get("avatar_url", ""),
            assignees=[a.get("login", "") for a in item.get("assignees") or []],
            milestone=milestone.get("title"),
            comments=item.get("comments", 0),
            is_pull_request="pull_request" in item,
        )

    def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
    ) -> httpx.Response:
        """
        Make HTTP request with exponential backoff retry.

        Raises:
            NotFoundError: On 404.
            FetchError: On other client errors or when all retries fail.
        """
        last_error: Optional[str] = None

        for attempt in range(self.max_retries):
            try:
                response = self._client.request(method, endpoint, params=params)
            except httpx.RequestError as e:
                last_error = str(e)
                wait_time = backoff_delay(attempt, self.base_delay, self.max_delay)
                logger.warning(f"Request error {e}, retrying in {wait_time:.2f}s")
                time.sleep(wait_time)
                continue

            self._update_rate_limit(response)

            if response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
                reset_time = response.headers.get("X-RateLimit-Reset")
                wait_time = self.base_delay
                if reset_time:
                    wait_time = max(int(reset_time) - int(time.time()), self.base_delay)
                wait_time = min(wait_time, self.max_delay)
                last_error = "rate limit exceeded"
                logger.warning(f"Rate limit exceeded, waiting {wait_time}s")
                time.sleep(wait_time)
                continue

            if response.status_code >= 500:
                last_error = f"server error {response.status_code}"
                wait_time = backoff_delay(attempt, self.base_delay, self.max_delay)
                logger.warning(f"Server error {response.status_code}, retrying in {wait_time:.2f}s")
                time.sleep(wait_time)
                continue

            if response.status_code == 404:
                raise NotFoundError(f"Not found: {endpoint}")

            if response.status_code >= 400:
                raise FetchError(
                    f"GitHub API error {response.status_code} for {endpoint}",
                    status_code=response.status_code,
                )

            return response

        logger.error(f"All {self.max_retries} retries failed for {endpoint}")
        raise FetchError(f"Request to {endpoint} failed after {self.max_retries} attempts: {last_error}")

    def _update_rate_limit(self, response: httpx.Response) -> None:
        """Update rate limit tracking from response headers."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        limit = response.headers.get("X-RateLimit-Limit")

        if remaining:
            self._rate_limit_remaining = int(remaining)
            if self._rate_limit_remaining < 10:
                logger.warning(f"Rate limit low: {self._rate_limit_remaining}/{limit} requests remaining")
            elif self._rate_limit_remaining < 50:
                logger.info(f"Rate limit: {self._rate_limit_remaining}/{limit} requests remaining")

        if reset:
            self._rate_limit_reset = datetime.fromtimestamp(int(reset), tz=timezone.utc)
