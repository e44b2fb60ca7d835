"""
Configuration management for the repository sync system.

Loads and validates settings from reposync_config.yaml with environment
variable overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger

from .utils import ConfigError, ValidationError, split_full_name


# GitHub caps per_page at 100 on list endpoints
PROVIDER_MAX_PAGE_SIZE = 100


@dataclass
class RepositoryConfig:
    """A repository to keep in the local cache."""
    full_name: str
    branch: Optional[str] = None  # None means the repository's default branch
    sync_issues: bool = True
    enabled: bool = True


@dataclass
class GitHubConfig:
    """Provider client settings."""
    token: Optional[str] = None
    base_url: str = "https://api.github.com"
    timeout: float = 30.0
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0


@dataclass
class CacheConfig:
    """SQLite cache settings."""
    path: str = "./cache/reposync.db"
    vacuum_on_startup: bool = False


@dataclass
class IssueSyncConfig:
    """Issue pagination settings."""
    sync_open: bool = True
    sync_closed: bool = False
    max_issues: int = 100
    page_size: int = PROVIDER_MAX_PAGE_SIZE


@dataclass
class SearchConfig:
    """Relevance search settings."""
    project_path: str = "."
    max_results: int = 10
    min_relevance: float = 0.1
    window_threshold_chars: int = 2000
    window_radius_lines: int = 15
    prompt_char_budget: int = 1500


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: Optional[str] = "./logs/reposync.log"
    max_size_mb: int = 20
    backup_count: int = 5


@dataclass
class Config:
    """
    Main configuration container.

    Loads from reposync_config.yaml with optional environment variable overrides.
    """
    repositories: list[RepositoryConfig] = field(default_factory=list)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    issues: IssueSyncConfig = field(default_factory=IssueSyncConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "Config":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to reposync_config.yaml. If None, the default
                locations are tried and built-in defaults are used when none exist.

        Returns:
            Config instance with loaded settings.
        """
        if config_path is None:
            candidates = [
                Path("reposync_config.yaml"),
                Path.home() / ".config" / "reposync" / "reposync_config.yaml",
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                logger.info("No config file found, using defaults")
                config = cls()
                config._apply_env_overrides()
                return config

        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        logger.info(f"Loading config from {config_path}")

        with open(config_path, "r") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config root must be a mapping: {config_path}")

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        config = cls()

        try:
            if "repositories" in data:
                config.repositories = [
                    RepositoryConfig(**repo) for repo in data["repositories"] or []
                ]

            if "github" in data:
                gh = data["github"] or {}
                config.github = GitHubConfig(
                    token=gh.get("token", config.github.token),
                    base_url=gh.get("base_url", config.github.base_url),
                    timeout=gh.get("timeout", config.github.timeout),
                    max_retries=gh.get("max_retries", config.github.max_retries),
                    base_delay=gh.get("base_delay", config.github.base_delay),
                    max_delay=gh.get("max_delay", config.github.max_delay),
                )

            if "cache" in data:
                cache = data["cache"] or {}
                config.cache = CacheConfig(
                    path=cache.get("path", config.cache.path),
                    vacuum_on_startup=cache.get("vacuum_on_startup", config.cache.vacuum_on_startup),
                )

            if "issues" in data:
                iss = data["issues"] or {}
                config.issues = IssueSyncConfig(
                    sync_open=iss.get("sync_open", config.issues.sync_open),
                    sync_closed=iss.get("sync_closed", config.issues.sync_closed),
                    max_issues=iss.get("max_issues", config.issues.max_issues),
                    page_size=iss.get("page_size", config.issues.page_size),
                )

            if "search" in data:
                srch = data["search"] or {}
                config.search = SearchConfig(
                    project_path=srch.get("project_path", config.search.project_path),
                    max_results=srch.get("max_results", config.search.max_results),
                    min_relevance=srch.get("min_relevance", config.search.min_relevance),
                    window_threshold_chars=srch.get(
                        "window_threshold_chars", config.search.window_threshold_chars
                    ),
                    window_radius_lines=srch.get("window_radius_lines", config.search.window_radius_lines),
                    prompt_char_budget=srch.get("prompt_char_budget", config.search.prompt_char_budget),
                )

            if "logging" in data:
                log_cfg = data["logging"] or {}
                config.logging = LoggingConfig(
                    level=log_cfg.get("level", config.logging.level),
                    file=log_cfg.get("file", config.logging.file),
                    max_size_mb=log_cfg.get("max_size_mb", config.logging.max_size_mb),
                    backup_count=log_cfg.get("backup_count", config.logging.backup_count),
                )
        except (TypeError, AttributeError) as e:
            raise ConfigError(f"Malformed configuration: {e}") from e

        config._apply_env_overrides()

        return config

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if os.getenv("GITHUB_TOKEN"):
            self.github.token = os.getenv("GITHUB_TOKEN")

        if os.getenv("REPOSYNC_CACHE_PATH"):
            self.cache.path = os.getenv("REPOSYNC_CACHE_PATH")

        if os.getenv("REPOSYNC_PROJECT_PATH"):
            self.search.project_path = os.getenv("REPOSYNC_PROJECT_PATH")

        if os.getenv("REPOSYNC_LOG_LEVEL"):
            self.logging.level = os.getenv("REPOSYNC_LOG_LEVEL").upper()

    def get_enabled_repositories(self) -> list[RepositoryConfig]:
        """Return only enabled repositories."""
        return [repo for repo in self.repositories if repo.enabled]

    def get_repository(self, full_name: str) -> RepositoryConfig | None:
        """Get a configured repository by its owner/name reference."""
        wanted = full_name.lower()
        for repo in self.repositories:
            if repo.full_name.lower() == wanted:
                return repo
        return None

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of errors.
        Empty list means configuration is valid.
        """
        errors = []

        seen = set()
        for repo in self.repositories:
            try:
                split_full_name(repo.full_name)
            except ValidationError:
                errors.append(f"Invalid repository reference: {repo.full_name!r}")
            key = repo.full_name.lower()
            if key in seen:
                errors.append(f"Duplicate repository: {repo.full_name}")
            seen.add(key)

        if self.issues.max_issues < 1:
            errors.append("issues.max_issues must be at least 1")
        if not 1 <= self.issues.page_size <= PROVIDER_MAX_PAGE_SIZE:
            errors.append(f"issues.page_size must be between 1 and {PROVIDER_MAX_PAGE_SIZE}")
        if not (self.issues.sync_open or self.issues.sync_closed):
            errors.append("At least one of issues.sync_open / issues.sync_closed must be enabled")

        if self.search.max_results < 1:
            errors.append("search.max_results must be at least 1")
        if not 0.0 <= self.search.min_relevance < 1.0:
            errors.append("search.min_relevance must be in [0, 1)")
        if self.search.window_radius_lines < 0:
            errors.append("search.window_radius_lines cannot be negative")

        if self.github.max_retries < 1:
            errors.append("github.max_retries must be at least 1")

        return errors
