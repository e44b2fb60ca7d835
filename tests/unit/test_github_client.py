"""
Tests for the GitHub REST client, served by an in-process httpx transport.
"""

import base64

import httpx
import pytest

from services.reposync.github_client import GitHubClient, parse_timestamp
from services.reposync.utils import FetchError, NotFoundError, ValidationError


def make_client(handler, **kwargs):
    kwargs.setdefault("token", "test-token")
    return GitHubClient(transport=httpx.MockTransport(handler), base_delay=0, **kwargs)


def issue_json(number, **extra):
    item = {
        "id": 5000 + number,
        "number": number,
        "title": f"Issue {number}",
        "body": "body",
        "state": "open",
        "html_url": f"https://github.com/acme/widgets/issues/{number}",
        "created_at": "2024-01-01T10:00:00Z",
        "updated_at": "2024-01-02T10:00:00Z",
        "closed_at": None,
        "labels": [{"name": "bug", "color": "d73a4a", "description": None}],
        "user": {"login": "octo", "avatar_url": "https://avatars/octo"},
        "assignees": [{"login": "alice"}],
        "milestone": {"title": "v1"},
        "comments": 2,
    }
    item.update(extra)
    return item


class TestListIssues:

    def test_request_params_and_mapping(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[
                issue_json(1),
                issue_json(2, pull_request={"url": "https://api.github.com/pulls/2"}),
            ])

        client = make_client(handler)
        issues = client.list_issues("acme", "widgets", state="closed", page=3, per_page=500)

        [request] = seen
        assert request.url.path == "/repos/acme/widgets/issues"
        params = request.url.params
        assert params["state"] == "closed"
        assert params["page"] == "3"
        assert params["per_page"] == "100"
        assert params["sort"] == "updated"
        assert params["direction"] == "desc"
        assert request.headers["Authorization"] == "Bearer test-token"

        first, second = issues
        assert not first.is_pull_request
        assert second.is_pull_request
        assert first.author_login == "octo"
        assert first.assignees == ["alice"]
        assert first.milestone == "v1"
        assert [l.name for l in first.labels] == ["bug"]
        assert first.updated_at == parse_timestamp("2024-01-02T10:00:00Z")

    def test_invalid_reference_makes_no_request(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        client = make_client(handler)

        with pytest.raises(ValidationError):
            client.list_issues("acme", "", state="open")
        assert seen == []

    def test_invalid_state(self):
        client = make_client(lambda request: httpx.Response(200, json=[]))

        with pytest.raises(ValueError):
            client.list_issues("acme", "widgets", state="merged")


class TestRepositoryTree:

    def test_commit_entries_skipped(self):
        def handler(request):
            assert request.url.path == "/repos/acme/widgets/git/trees/main"
            assert request.url.params["recursive"] == "1"
            return httpx.Response(200, json={"tree": [
                {"path": "src", "type": "tree", "sha": "a", "mode": "040000"},
                {"path": "src/a.ts", "type": "blob", "sha": "b", "size": 12},
                {"path": "vendor/lib", "type": "commit", "sha": "c"},
            ], "truncated": False})

        entries = make_client(handler).get_repository_tree("acme/widgets", "main")

        assert [(e.path, e.type) for e in entries] == [("src", "tree"), ("src/a.ts", "blob")]
        assert entries[1].size == 12


class TestFileContent:

    def test_base64_decoded(self):
        encoded = base64.b64encode("print('hi')\n".encode()).decode()

        def handler(request):
            assert request.url.path == "/repos/acme/widgets/contents/src/app.py"
            assert request.url.params["ref"] == "abc123"
            return httpx.Response(200, json={"content": encoded, "encoding": "base64"})

        content = make_client(handler).get_file_content("acme/widgets", "src/app.py", "abc123")

        assert content == "print('hi')\n"

    def test_falls_back_to_default_branch(self):
        refs = []

        def handler(request):
            if request.url.path == "/repos/acme/widgets":
                return httpx.Response(200, json={
                    "id": 1, "name": "widgets", "full_name": "acme/widgets", "default_branch": "trunk",
                })
            ref = request.url.params["ref"]
            refs.append(ref)
            if ref == "trunk":
                return httpx.Response(200, json={"content": "plain", "encoding": "utf-8"})
            return httpx.Response(404, json={"message": "Not Found"})

        content = make_client(handler).get_file_content("acme/widgets", "README.md", "stale-sha")

        assert content == "plain"
        assert refs == ["stale-sha", "trunk"]

    def test_missing_everywhere_raises_not_found(self):
        def handler(request):
            if request.url.path == "/repos/acme/widgets":
                return httpx.Response(200, json={
                    "id": 1, "name": "widgets", "full_name": "acme/widgets", "default_branch": "main",
                })
            return httpx.Response(404, json={"message": "Not Found"})

        with pytest.raises(NotFoundError) as excinfo:
            make_client(handler).get_file_content("acme/widgets", "missing.py", "abc")

        assert excinfo.value.path == "missing.py"


class TestRetries:

    def test_server_error_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(502)
            return httpx.Response(200, json={
                "id": 7, "name": "widgets", "full_name": "acme/widgets", "default_branch": "main",
            })

        repo = make_client(handler, max_retries=3).get_repository("acme/widgets")

        assert len(calls) == 3
        assert repo.id == "7"

    def test_retries_exhausted(self):
        client = make_client(lambda request: httpx.Response(503), max_retries=2)

        with pytest.raises(FetchError) as excinfo:
            client.get_repository("acme/widgets")

        assert not isinstance(excinfo.value, NotFoundError)

    def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(422, json={"message": "Unprocessable"})

        with pytest.raises(FetchError) as excinfo:
            make_client(handler).get_repository("acme/widgets")

        assert excinfo.value.status_code == 422
        assert len(calls) == 1


class TestListRepositories:

    def test_pages_until_limit(self):
        def handler(request):
            page = int(request.url.params["page"])
            per_page = int(request.url.params["per_page"])
            start = (page - 1) * per_page
            return httpx.Response(200, json=[
                {"id": n, "name": f"r{n}", "full_name": f"acme/r{n}"}
                for n in range(start, min(start + per_page, 5))
            ])

        repos = make_client(handler).list_repositories(limit=3)

        assert [r.full_name for r in repos] == ["acme/r0", "acme/r1", "acme/r2"]
        assert repos[0].default_branch == "main"


class TestMalformedResponses:
    """Bodies that are not the JSON the endpoint promises surface as FetchError."""

    def test_html_body(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>proxy login</html>"))

        with pytest.raises(FetchError) as excinfo:
            client.get_repository_tree("acme/widgets", "main")

        assert excinfo.value.status_code == 200

    def test_wrong_top_level_type(self):
        client = make_client(lambda request: httpx.Response(200, json={"message": "moved"}))

        with pytest.raises(FetchError):
            client.list_issues("acme", "widgets")

    def test_issue_missing_required_field(self):
        broken = issue_json(2)
        del broken["number"]
        client = make_client(lambda request: httpx.Response(200, json=[issue_json(1), broken]))

        with pytest.raises(FetchError):
            client.list_issues("acme", "widgets")

    def test_tree_item_not_an_object(self):
        client = make_client(lambda request: httpx.Response(200, json={"tree": ["src/a.ts"]}))

        with pytest.raises(FetchError):
            client.get_repository_tree("acme/widgets", "main")
