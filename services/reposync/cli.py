"""
CLI interface for the repository sync system.

Provides commands for:
- File tree and issue sync
- Browsing the cached tree and issues
- Code search and issue analysis
- Cache management
- Status and configuration validation

Usage Examples:
    # Sync one repository's file tree and issues
    reposync sync --repo octocat/hello-world --issues --verbose

    # Search the local project for code relevant to a question
    reposync search "login timeout bug"

    # Analyze a problem statement against cached issues
    reposync analyze "JWT token expires during login"
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table
from rich.tree import Tree

from .cache import IssueFilters, RepoCache
from .config import Config, RepositoryConfig
from .github_client import GitHubClient
from .tree import TreeNode
from .utils import RepoSyncError, setup_logging

app = typer.Typer(
    name="reposync",
    help="Repository Sync and Code Context CLI",
    add_completion=False,
)

console = Console()

ConfigOption = typer.Option(None, "--config", "-c", help="Path to reposync_config.yaml")


def _load_config(config_path: Optional[Path], verbose: bool = False) -> Config:
    # .env in the working directory supplies GITHUB_TOKEN and REPOSYNC_* overrides
    load_dotenv()
    try:
        config = Config.load(config_path)
    except Exception as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        raise typer.Exit(1)

    setup_logging(
        level="DEBUG" if verbose else config.logging.level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count,
        verbose=not verbose,
    )
    return config


def _open_cache(config: Config) -> RepoCache:
    return RepoCache(config.cache.path, config.cache.vacuum_on_startup)


def _targets(config: Config, repo: Optional[str], all_repos: bool) -> list[RepositoryConfig]:
    if repo:
        return [config.get_repository(repo) or RepositoryConfig(full_name=repo)]
    if all_repos:
        return config.get_enabled_repositories()
    console.print("[yellow]Specify --repo OWNER/NAME or --all[/yellow]")
    raise typer.Exit(1)


def _cached_repo_id(cache: RepoCache, full_name: str) -> str:
    record = cache.get_repository_by_full_name(full_name)
    if record is None:
        console.print(f"[red]Repository not cached: {full_name}. Run 'reposync sync' first.[/red]")
        raise typer.Exit(1)
    return record.id


# =============================================================================
# Sync Commands
# =============================================================================

@app.command("repos")
def list_repos(
    config_path: Optional[Path] = ConfigOption,
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum repositories to list"),
):
    """List repositories visible to the configured token."""
    config = _load_config(config_path)

    with GitHubClient.from_config(config.github) as github:
        try:
            repos = github.list_repositories(limit=limit)
        except RepoSyncError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)

    table = Table(title="Repositories", box=box.ROUNDED)
    table.add_column("Full name", style="cyan")
    table.add_column("Default branch")
    table.add_column("Description", style="dim")
    for r in repos:
        table.add_row(r.full_name, r.default_branch, r.description or "")
    console.print(table)


@app.command("sync")
def sync_repos(
    config_path: Optional[Path] = ConfigOption,
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Repository to sync (owner/name)"),
    all_repos: bool = typer.Option(False, "--all", "-a", help="Sync all enabled repositories"),
    issues: bool = typer.Option(False, "--issues", "-i", help="Also sync issues"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
):
    """
    Sync repository file trees into the local cache.

    Each run fully replaces the cached file set of the repository.
    """
    config = _load_config(config_path, verbose)
    targets = _targets(config, repo, all_repos)

    from .issues_sync import IssueSyncEngine
    from .sync import RepositorySyncEngine

    cache = _open_cache(config)
    failures = 0

    with GitHubClient.from_config(config.github) as github:
        with Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("sync", total=None)

            def on_progress(event) -> None:
                progress.update(
                    task,
                    description=event.current_file[-60:],
                    completed=event.completed,
                    total=event.total or None,
                )

            engine = RepositorySyncEngine(cache, github, on_progress=on_progress)
            issue_engine = IssueSyncEngine(
                cache, github, page_size=config.issues.page_size, locks=engine.locks
            )

            for target in targets:
                try:
                    remote = github.get_repository(target.full_name)
                    result = engine.sync_repository(remote, branch=target.branch)
                    console.print(
                        f"[green]✓ {remote.full_name}: {result.files_saved} entries"
                        f"{f', {result.entries_skipped} skipped' if result.entries_skipped else ''}[/green]"
                    )

                    if issues and target.sync_issues:
                        issue_result = issue_engine.sync_repository_issues(
                            remote,
                            sync_open=config.issues.sync_open,
                            sync_closed=config.issues.sync_closed,
                            max_issues=config.issues.max_issues,
                        )
                        style = "yellow" if issue_result.partial else "green"
                        console.print(f"  [{style}]{issue_result.message}[/{style}]")

                except RepoSyncError as e:
                    failures += 1
                    console.print(f"[red]✗ {target.full_name}: {e}[/red]")

    if failures:
        raise typer.Exit(1)


@app.command("sync-issues")
def sync_issues(
    config_path: Optional[Path] = ConfigOption,
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Repository (owner/name)"),
    all_repos: bool = typer.Option(False, "--all", "-a", help="Sync all enabled repositories"),
    open_: Optional[bool] = typer.Option(None, "--open/--no-open", help="Sync open issues"),
    closed: Optional[bool] = typer.Option(None, "--closed/--no-closed", help="Sync closed issues"),
    max_issues: Optional[int] = typer.Option(None, "--max", "-m", help="Issue budget per repository"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
):
    """Sync issues of one or more repositories."""
    config = _load_config(config_path, verbose)
    targets = [t for t in _targets(config, repo, all_repos) if t.sync_issues or repo]

    from .issues_sync import IssueSyncEngine

    cache = _open_cache(config)

    with GitHubClient.from_config(config.github) as github:
        engine = IssueSyncEngine(cache, github, page_size=config.issues.page_size)

        remotes = []
        for target in targets:
            try:
                remotes.append(github.get_repository(target.full_name))
            except RepoSyncError as e:
                console.print(f"[red]✗ {target.full_name}: {e}[/red]")

        results = engine.sync_multiple_repositories(
            remotes,
            sync_open=config.issues.sync_open if open_ is None else open_,
            sync_closed=config.issues.sync_closed if closed is None else closed,
            max_issues_per_repo=max_issues or config.issues.max_issues,
        )

    for remote, result in zip(remotes, results):
        if not result.success:
            console.print(f"[red]✗ {remote.full_name}: {result.message}[/red]")
        elif result.partial:
            console.print(f"[yellow]! {remote.full_name}: {result.message}[/yellow]")
        else:
            console.print(f"[green]✓ {remote.full_name}: {result.message}[/green]")


# =============================================================================
# Cache Browsing
# =============================================================================

@app.command("tree")
def show_tree(
    repo: str = typer.Argument(..., help="Repository (owner/name)"),
    config_path: Optional[Path] = ConfigOption,
):
    """Show the cached file tree of a repository."""
    config = _load_config(config_path)
    cache = _open_cache(config)

    from .sync import format_file_size

    def add(branch: Tree, nodes: list[TreeNode]) -> None:
        for node in nodes:
            if node.is_dir:
                add(branch.add(f"[bold blue]{node.name}/[/bold blue]"), node.children)
            else:
                branch.add(f"{node.name} [dim]({format_file_size(node.size)})[/dim]")

    root = Tree(f"[bold]{repo}[/bold]")
    add(root, cache.get_file_tree(_cached_repo_id(cache, repo)))
    console.print(root)


@app.command("issues")
def list_issues(
    repo: str = typer.Argument(..., help="Repository (owner/name)"),
    config_path: Optional[Path] = ConfigOption,
    state: Optional[str] = typer.Option(None, "--state", "-s", help="open or closed"),
    assignee: Optional[str] = typer.Option(None, "--assignee", help="Assignee login"),
    label: Optional[str] = typer.Option(None, "--label", "-l", help="Label name"),
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Substring to search in title/body"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum issues to show"),
):
    """List cached issues of a repository."""
    config = _load_config(config_path)
    cache = _open_cache(config)
    repo_id = _cached_repo_id(cache, repo)

    if query:
        issues = cache.search_issues(repo_id, query)[:limit]
    else:
        issues = cache.get_issues(
            repo_id, IssueFilters(state=state, assignee=assignee, label=label, limit=limit)
        )

    counts = cache.get_issues_count(repo_id)
    table = Table(
        title=f"{repo} issues ({counts.open} open / {counts.closed} closed)",
        box=box.ROUNDED,
    )
    table.add_column("#", style="cyan", justify="right")
    table.add_column("State")
    table.add_column("Title")
    table.add_column("Labels", style="dim")
    table.add_column("Updated")

    for issue in issues:
        state_style = "green" if issue.state == "open" else "magenta"
        table.add_row(
            str(issue.number),
            f"[{state_style}]{issue.state}[/{state_style}]",
            issue.title,
            ", ".join(l.name for l in issue.labels),
            issue.updated_at.strftime("%Y-%m-%d"),
        )
    console.print(table)


# =============================================================================
# Search Commands
# =============================================================================

@app.command("search")
def search_code(
    query: str = typer.Argument(..., help="Free-text question"),
    config_path: Optional[Path] = ConfigOption,
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Search cached content of a repository"),
    project: Optional[Path] = typer.Option(None, "--project", "-p", help="Project directory to scan"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Maximum results"),
    prompt: bool = typer.Option(False, "--prompt", help="Print the formatted context block"),
):
    """Find files relevant to a question."""
    config = _load_config(config_path)

    from .search import CodeContextSearcher

    cache = _open_cache(config) if repo else None
    searcher = CodeContextSearcher.from_config(config.search, cache=cache)
    if project:
        searcher.project_path = project

    if repo:
        result = searcher.search_cached_repository(_cached_repo_id(cache, repo), query, limit)
    else:
        result = searcher.search_code_context(query, limit)

    if prompt:
        console.print(searcher.format_contexts_for_prompt(result.contexts), markup=False)
        return

    table = Table(
        title=f"{len(result.contexts)} of {result.total_matches} matches "
              f"(confidence {result.confidence:.2f})",
        box=box.ROUNDED,
    )
    table.add_column("Score", justify="right", style="cyan")
    table.add_column("Path")
    table.add_column("Type")
    table.add_column("Lines", style="dim")
    for ctx in result.contexts:
        lines = f"{ctx.line_numbers[0]}-{ctx.line_numbers[1]}" if ctx.line_numbers else ""
        table.add_row(f"{ctx.relevance_score:.2f}", ctx.file_path, ctx.context_type.value, lines)
    console.print(table)
    console.print(f"[dim]Terms: {', '.join(result.search_terms) or '(none)'}[/dim]")


@app.command("analyze")
def analyze_statement(
    statement: str = typer.Argument(..., help="Problem statement"),
    config_path: Optional[Path] = ConfigOption,
):
    """Match issues, code and suggestions against a problem statement."""
    config = _load_config(config_path)

    from .analysis import IssueAnalyzer
    from .search import CodeContextSearcher

    cache = _open_cache(config)
    repo_ids = [
        record.id
        for record in (
            cache.get_repository_by_full_name(r.full_name) for r in config.get_enabled_repositories()
        )
        if record is not None
    ]

    analyzer = IssueAnalyzer(
        CodeContextSearcher.from_config(config.search),
        cache=cache,
        repo_ids=repo_ids,
    )
    result = analyzer.analyze(statement)

    console.print(Panel(result.summary, title=f"Analysis (confidence {result.confidence:.2f})", box=box.ROUNDED))
    for issue in result.relevant_issues:
        console.print(f"  [cyan]{issue.relevance_score:.2f}[/cyan] {issue.title} [dim]{issue.url}[/dim]")


# =============================================================================
# Management Commands
# =============================================================================

@app.command("status")
def show_status(config_path: Optional[Path] = ConfigOption):
    """Show cached repositories and cache statistics."""
    config = _load_config(config_path)
    cache = _open_cache(config)

    table = Table(title="Cached Repositories", box=box.ROUNDED)
    table.add_column("Repository", style="cyan")
    table.add_column("Status")
    table.add_column("Files", justify="right")
    table.add_column("Open", justify="right")
    table.add_column("Closed", justify="right")
    table.add_column("Last synced")

    status_styles = {"completed": "green", "syncing": "yellow", "error": "red", "pending": "dim"}
    for record in cache.list_repositories():
        counts = cache.get_issues_count(record.id)
        style = status_styles.get(record.sync_status.value, "white")
        table.add_row(
            record.full_name,
            f"[{style}]{record.sync_status.value}[/{style}]",
            str(record.total_files),
            str(counts.open),
            str(counts.closed),
            record.last_synced.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)

    stats = cache.get_stats()
    console.print(
        f"\nFiles: {stats['file_count']} ({stats['files_with_content']} with content) | "
        f"Issues: {stats['issue_count']} | "
        f"DB size: {stats['db_size_bytes'] / 1024:.1f} KB"
    )


@app.command("cache-clear")
def cache_clear(
    repo: str = typer.Argument(..., help="Repository (owner/name)"),
    config_path: Optional[Path] = ConfigOption,
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
):
    """Delete a repository with its cached files and issues."""
    config = _load_config(config_path)
    cache = _open_cache(config)
    repo_id = _cached_repo_id(cache, repo)

    if not force and not typer.confirm(f"This will DELETE all cached data for '{repo}'. Continue?"):
        console.print("[blue]Operation cancelled[/blue]")
        raise typer.Exit(0)

    cache.clear_repository(repo_id)
    console.print(f"[green]✓ Cleared {repo}[/green]")


@app.command("validate-config")
def validate_config(config_path: Optional[Path] = ConfigOption):
    """Validate configuration file."""
    config = _load_config(config_path)

    errors = config.validate()

    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  • {error}")
        raise typer.Exit(1)
    else:
        console.print("[green]✓ Configuration is valid[/green]")
        console.print(f"\nLoaded {len(config.repositories)} repositories "
                      f"({len(config.get_enabled_repositories())} enabled)")


# =============================================================================
# Entry Point
# =============================================================================

def main():
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
