"""
Tests for the paginated issue sync engine.
"""

import math

import httpx
import pytest

from conftest import make_issue, make_repo
from services.reposync.github_client import GitHubClient
from services.reposync.issues_sync import IssueSyncEngine, split_budget
from services.reposync.sync import ProgressStatus
from services.reposync.utils import CancellationToken, SyncCancelled, ValidationError


REPO = make_repo()


def seed(github, open_count=0, closed_count=0):
    github.issues["open"] = [make_issue(n, "open") for n in range(1, open_count + 1)]
    github.issues["closed"] = [
        make_issue(n, "closed") for n in range(open_count + 1, open_count + closed_count + 1)
    ]


class TestSyncRepositoryIssues:
    """Test pagination, budgets and persistence."""

    def test_open_only(self, cache, github):
        seed(github, open_count=7, closed_count=3)
        engine = IssueSyncEngine(cache, github)

        result = engine.sync_repository_issues(REPO)

        assert result.success
        assert (result.open_count, result.closed_count) == (7, 0)
        assert cache.get_issues_count(REPO.id).open == 7

    def test_budget_split_between_states(self, cache, github):
        seed(github, open_count=6, closed_count=20)
        engine = IssueSyncEngine(cache, github)

        result = engine.sync_repository_issues(REPO, sync_open=True, sync_closed=True, max_issues=10)

        counts = cache.get_issues_count(REPO.id)
        assert counts.open == 5
        assert counts.closed == 5
        assert counts.total <= 10
        assert result.total == 10

    def test_single_state_gets_whole_budget(self, cache, github):
        seed(github, closed_count=20)
        engine = IssueSyncEngine(cache, github)

        engine.sync_repository_issues(REPO, sync_open=False, sync_closed=True, max_issues=10)

        assert cache.get_issues_count(REPO.id).closed == 10

    def test_paginates_until_short_page(self, cache, github):
        seed(github, open_count=25)
        engine = IssueSyncEngine(cache, github, page_size=10)

        engine.sync_repository_issues(REPO, max_issues=100)

        assert [page for _, page, _ in github.issue_calls] == [1, 2, 3]
        assert cache.get_issues_count(REPO.id).open == 25

    def test_page_size_capped_by_budget(self, cache, github):
        seed(github, open_count=50)
        engine = IssueSyncEngine(cache, github)

        engine.sync_repository_issues(REPO, max_issues=8)

        assert github.issue_calls == [("open", 1, 8)]
        assert cache.get_issues_count(REPO.id).open == 8

    @pytest.mark.parametrize("max_issues,page_size,remote", [
        (10, 3, 100),
        (100, 7, 1000),
        (5, 100, 3),
        (1, 1, 10),
    ])
    def test_pagination_terminates_within_bound(self, cache, github, max_issues, page_size, remote):
        seed(github, open_count=remote)
        engine = IssueSyncEngine(cache, github, page_size=page_size)

        engine.sync_repository_issues(REPO, max_issues=max_issues)

        effective = min(page_size, max_issues)
        assert len(github.issue_calls) <= math.ceil(max_issues / effective) + 1
        assert cache.get_issues_count(REPO.id).open == min(max_issues, remote)

    def test_pull_requests_excluded(self, cache, github):
        github.issues["open"] = [
            make_issue(1),
            make_issue(2, is_pull_request=True),
            make_issue(3),
        ]
        engine = IssueSyncEngine(cache, github, page_size=3)

        engine.sync_repository_issues(REPO, max_issues=10)

        assert sorted(i.number for i in cache.get_issues(REPO.id)) == [1, 3]

    def test_full_page_of_pull_requests_does_not_stop_pagination(self, cache, github):
        github.issues["open"] = [
            make_issue(1, is_pull_request=True),
            make_issue(2, is_pull_request=True),
            make_issue(3),
        ]
        engine = IssueSyncEngine(cache, github, page_size=2)

        engine.sync_repository_issues(REPO, max_issues=2)

        assert [i.number for i in cache.get_issues(REPO.id)] == [3]

    def test_failed_page_keeps_partial_results(self, cache, github):
        seed(github, open_count=25)
        github.fail_pages = {("open", 2)}
        engine = IssueSyncEngine(cache, github, page_size=10)

        result = engine.sync_repository_issues(REPO, max_issues=100)

        assert result.success
        assert result.partial
        assert result.failed_pages == [("open", 2)]
        assert cache.get_issues_count(REPO.id).open == 10

    def test_unparseable_page_keeps_partial_results(self, cache):
        def handler(request):
            if request.url.params["page"] == "1":
                return httpx.Response(200, json=[
                    {
                        "id": 9000 + n,
                        "number": n,
                        "title": f"Issue {n}",
                        "state": "open",
                        "html_url": f"https://github.com/acme/widgets/issues/{n}",
                        "created_at": "2024-01-01T10:00:00Z",
                        "updated_at": "2024-01-02T10:00:00Z",
                    }
                    for n in (1, 2)
                ])
            return httpx.Response(200, text="not json")

        client = GitHubClient(token="t", base_delay=0, transport=httpx.MockTransport(handler))
        engine = IssueSyncEngine(cache, client, page_size=2)

        result = engine.sync_repository_issues(REPO, max_issues=10)

        assert result.success
        assert result.partial
        assert result.failed_pages == [("open", 2)]
        assert cache.get_issues_count(REPO.id).open == 2

    def test_single_issue_budget_keeps_closed_issues(self, cache, github):
        seed(github, open_count=3, closed_count=4)
        engine = IssueSyncEngine(cache, github)
        engine.sync_repository_issues(REPO, sync_closed=True, max_issues=10)
        github.issue_calls.clear()

        engine.sync_repository_issues(REPO, sync_closed=True, max_issues=1)

        counts = cache.get_issues_count(REPO.id)
        assert (counts.open, counts.closed) == (1, 4)
        assert [state for state, _, _ in github.issue_calls] == ["open"]

    def test_closed_only_sync_keeps_open_issues(self, cache, github):
        seed(github, open_count=4, closed_count=3)
        engine = IssueSyncEngine(cache, github)
        engine.sync_repository_issues(REPO, sync_open=True, sync_closed=False)

        engine.sync_repository_issues(REPO, sync_open=False, sync_closed=True)

        counts = cache.get_issues_count(REPO.id)
        assert (counts.open, counts.closed) == (4, 3)

    def test_count_invariant_after_resyncs(self, cache, github):
        engine = IssueSyncEngine(cache, github)
        for open_count, closed_count in [(3, 2), (1, 5), (0, 0), (6, 1)]:
            seed(github, open_count=open_count, closed_count=closed_count)
            engine.sync_repository_issues(REPO, sync_open=True, sync_closed=True, max_issues=50)

            counts = cache.get_issues_count(REPO.id)
            assert counts.open + counts.closed == counts.total
            assert (counts.open, counts.closed) == (open_count, closed_count)

    def test_provider_fields_are_kept(self, cache, github):
        github.issues["open"] = [
            make_issue(1, labels=["bug"], author_login="octo", assignees=["alice"], comments=4),
        ]
        engine = IssueSyncEngine(cache, github)

        engine.sync_repository_issues(REPO)

        [issue] = cache.get_issues(REPO.id)
        assert issue.author_login == "octo"
        assert issue.assignees == ["alice"]
        assert issue.comments == 4
        assert [l.name for l in issue.labels] == ["bug"]

    def test_progress_events(self, cache, github):
        seed(github, open_count=3, closed_count=2)
        events = []
        engine = IssueSyncEngine(cache, github, on_progress=events.append)

        engine.sync_repository_issues(REPO, sync_open=True, sync_closed=True, max_issues=10)

        assert events[0].status == ProgressStatus.STARTING
        assert events[-1].status == ProgressStatus.COMPLETED
        assert events[-1].total_issues == 5
        states = [e.current_state for e in events if e.status == ProgressStatus.SYNCING]
        assert "open" in states and "closed" in states

    def test_cancel_persists_nothing(self, cache, github):
        seed(github, open_count=30)
        token = CancellationToken()
        events = []

        def on_progress(event):
            events.append(event)
            if event.issues_processed >= 10:
                token.cancel()

        engine = IssueSyncEngine(cache, github, on_progress=on_progress, page_size=10)

        with pytest.raises(SyncCancelled):
            engine.sync_repository_issues(REPO, max_issues=100, cancel_token=token)

        assert cache.get_issues(REPO.id) == []
        assert events[-1].status == ProgressStatus.ERROR

    def test_invalid_repository_reference(self, cache, github):
        engine = IssueSyncEngine(cache, github)
        bad = make_repo(full_name="acme/widgets")
        bad.full_name = "not a repo"

        with pytest.raises(ValidationError):
            engine.sync_repository_issues(bad)

        assert github.issue_calls == []

    def test_invalid_page_size(self, cache, github):
        with pytest.raises(ValueError):
            IssueSyncEngine(cache, github, page_size=101)


class TestBulkAndStats:

    def test_sync_multiple_continues_after_failure(self, cache, github):
        seed(github, open_count=2)
        engine = IssueSyncEngine(cache, github)
        bad = make_repo(repo_id="999", full_name="acme/widgets")
        bad.full_name = "broken"
        good = make_repo(repo_id="202", full_name="acme/gizmos")

        results = engine.sync_multiple_repositories([bad, good])

        assert [r.success for r in results] == [False, True]
        assert cache.get_issues_count("202").open == 2

    def test_get_sync_stats(self, cache, github):
        seed(github, open_count=2, closed_count=1)
        engine = IssueSyncEngine(cache, github)
        assert engine.get_sync_stats(REPO.id).last_synced is None

        engine.sync_repository_issues(REPO, sync_open=True, sync_closed=True)

        stats = engine.get_sync_stats(REPO.id)
        assert (stats.total, stats.open, stats.closed) == (3, 2, 1)
        assert stats.last_synced is not None


class TestSplitBudget:

    @pytest.mark.parametrize("max_issues,states,expected", [
        (10, ["open", "closed"], {"open": 5, "closed": 5}),
        (7, ["open", "closed"], {"open": 4, "closed": 3}),
        (1, ["open", "closed"], {"open": 1, "closed": 0}),
        (10, ["closed"], {"closed": 10}),
        (0, ["open"], {"open": 0}),
    ])
    def test_split(self, max_issues, states, expected):
        assert split_budget(max_issues, states) == expected
