"""
Logging and error handling utilities for the repository sync system.

Provides:
- Structured logging with rotation
- Custom exception classes
- Exponential backoff helper
- Performance timing context manager
- Per-repository locking and cooperative cancellation
"""

from __future__ import annotations

import random
import re
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from loguru import logger


# =============================================================================
# Logging Setup
# =============================================================================

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{module}</magenta>:<cyan>{function}</cyan> | "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{name}:{function}:{line} | "
    "{message}"
)

VERBOSE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<level>{message}</level>"
)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = "./logs/reposync.log",
    max_size_mb: int = 20,
    backup_count: int = 5,
    verbose: bool = False,
) -> None:
    """
    Configure loguru sinks for the sync system.

    Args:
        level: Console logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to the rotating log file. None disables the file sink.
        max_size_mb: Maximum log file size before rotation.
        backup_count: Number of rotated log files to keep.
        verbose: If True, use the compact console format.
    """
    logger.remove()

    logger.add(
        sys.stderr,
        format=VERBOSE_FORMAT if verbose else CONSOLE_FORMAT,
        level=level,
        colorize=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            str(log_path),
            format=FILE_FORMAT,
            level="DEBUG",
            rotation=f"{max_size_mb} MB",
            retention=backup_count,
            compression="zip",
            enqueue=True,
        )

    logger.info(f"Logging configured: level={level}, file={log_file}")


# =============================================================================
# Custom Exceptions
# =============================================================================

class RepoSyncError(Exception):
    """Base exception for repository sync errors."""
    pass


class FetchError(RepoSyncError):
    """A call to the hosting provider failed."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(FetchError):
    """Requested content does not exist on the provider."""
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, status_code=404)
        self.path = path


class StorageError(RepoSyncError):
    """Error with SQLite cache operations."""
    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class ValidationError(RepoSyncError):
    """Malformed identifier or argument."""
    pass


class ConfigError(RepoSyncError):
    """Error with configuration."""
    pass


class SyncCancelled(RepoSyncError):
    """A sync or scan was cancelled between units of work."""
    pass


# =============================================================================
# Identifiers
# =============================================================================

_FULL_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


def split_full_name(full_name: str) -> tuple[str, str]:
    """
    Split an ``owner/repo`` reference.

    Raises:
        ValidationError: If the reference is not exactly two non-empty segments.
    """
    candidate = (full_name or "").strip().strip("/")
    if not _FULL_NAME_RE.match(candidate):
        raise ValidationError(f"Invalid repository reference: {full_name!r}")
    owner, repo = candidate.split("/")
    return owner, repo


# =============================================================================
# Backoff
# =============================================================================

def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff with jitter."""
    delay = base_delay * (2 ** attempt)
    delay = delay * (0.5 + random.random())
    return min(delay, max_delay)


# =============================================================================
# Performance Timing
# =============================================================================

@contextmanager
def timed_operation(operation_name: str, log_level: str = "info") -> Iterator[None]:
    """
    Context manager for timing operations.

    Example:
        with timed_operation("Scanning corpus"):
            scan()
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start_time
        getattr(logger, log_level)(f"{operation_name} completed in {elapsed:.3f}s")


# =============================================================================
# Concurrency Helpers
# =============================================================================

class KeyedLock:
    """
    One mutex per key.

    Used to serialize syncs of the same repository id; different ids
    proceed independently.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        if not lock.acquire(blocking=False):
            logger.debug(f"Waiting for in-flight sync of {key}")
            lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def is_locked(self, key: str) -> bool:
        return self._lock_for(key).locked()


class CancellationToken:
    """Cooperative cancellation flag checked between units of work."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            raise SyncCancelled(f"Cancelled{f' during {where}' if where else ''}")


def check_cancelled(token: Optional[CancellationToken], where: str = "") -> None:
    """No-op when no token was supplied."""
    if token is not None:
        token.raise_if_cancelled(where)
