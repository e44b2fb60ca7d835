"""
Tests for the reposync CLI commands that work offline.
"""

from datetime import datetime, timezone

import pytest
import yaml
from typer.testing import CliRunner

from services.reposync.cache import FileRecord, IssueRecord, RepoCache, RepositoryRecord
from services.reposync.cli import app


NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)

runner = CliRunner()


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("GITHUB_TOKEN", "REPOSYNC_CACHE_PATH", "REPOSYNC_PROJECT_PATH", "REPOSYNC_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def write_config(root, repositories=None):
    data = {
        "repositories": repositories or [{"full_name": "acme/widgets"}],
        "cache": {"path": str(root / "cache.db")},
        "search": {"project_path": str(root / "project")},
        "logging": {"level": "WARNING", "file": None},
    }
    path = root / "reposync_config.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def seed_cache(root):
    cache = RepoCache(root / "cache.db")
    cache.upsert_repository(RepositoryRecord(
        id="r1", name="widgets", full_name="acme/widgets", default_branch="main", last_synced=NOW,
    ))
    cache.replace_files("r1", [
        FileRecord("r1", "src", "src", "dir", "s0", "", NOW),
        FileRecord("r1", "src/a.ts", "a.ts", "file", "s1", "src", NOW, size=2048),
    ])
    cache.replace_issues("r1", [
        IssueRecord(
            issue_id=1, repo_id="r1", number=3, title="Crash on save", body="", state="open",
            html_url="https://github.com/acme/widgets/issues/3",
            created_at=NOW, updated_at=NOW, last_synced=NOW,
        ),
    ])
    return cache


class TestValidateConfig:

    def test_valid(self, workspace):
        config = write_config(workspace)

        result = runner.invoke(app, ["validate-config", "--config", str(config)])

        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_invalid_reference(self, workspace):
        config = write_config(workspace, repositories=[{"full_name": "not-a-repo"}])

        result = runner.invoke(app, ["validate-config", "--config", str(config)])

        assert result.exit_code == 1
        assert "Invalid repository reference" in result.output

    def test_missing_file(self, workspace):
        result = runner.invoke(app, ["validate-config", "--config", str(workspace / "nope.yaml")])

        assert result.exit_code == 1
        assert "Error loading config" in result.output


class TestCacheCommands:

    def test_tree(self, workspace):
        config = write_config(workspace)
        seed_cache(workspace)

        result = runner.invoke(app, ["tree", "acme/widgets", "--config", str(config)])

        assert result.exit_code == 0
        assert "src/" in result.output
        assert "a.ts" in result.output
        assert "2 KB" in result.output

    def test_tree_of_uncached_repository(self, workspace):
        config = write_config(workspace)
        seed_cache(workspace)

        result = runner.invoke(app, ["tree", "acme/gizmos", "--config", str(config)])

        assert result.exit_code == 1
        assert "Repository not cached" in result.output

    def test_issues(self, workspace):
        config = write_config(workspace)
        seed_cache(workspace)

        result = runner.invoke(app, ["issues", "acme/widgets", "--config", str(config)])

        assert result.exit_code == 0
        assert "1 open / 0 closed" in result.output
        assert "Crash on save" in result.output

    def test_cache_clear(self, workspace):
        config = write_config(workspace)
        cache = seed_cache(workspace)

        result = runner.invoke(app, ["cache-clear", "acme/widgets", "--force", "--config", str(config)])

        assert result.exit_code == 0
        assert cache.get_repository_by_full_name("acme/widgets") is None
        assert cache.get_files("r1") == []


class TestSearchCommand:

    def test_prompt_block_for_project(self, workspace):
        config = write_config(workspace)
        project = workspace / "project" / "auth"
        project.mkdir(parents=True)
        (project / "login.ts").write_text("export function login() { /* login timeout */ }")

        result = runner.invoke(app, ["search", "login timeout", "--prompt", "--config", str(config)])

        assert result.exit_code == 0
        assert "=== RELEVANT CODE CONTEXT FROM REPOSITORY ===" in result.output
        assert "Path: auth/login.ts" in result.output
