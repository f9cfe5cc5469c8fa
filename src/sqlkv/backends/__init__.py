"""
Storage backends for sqlkv.

Provides the StorageBackend interface, its sqlite3 implementations, and
open_backend() which picks one from a path (":memory:" -> MemoryBackend,
anything else -> FileBackend).
"""

from __future__ import annotations

from pathlib import Path

from sqlkv.backends.base import Row, Statement, StorageBackend
from sqlkv.backends.sqlite import FileBackend, MemoryBackend, SQLiteBackend
from sqlkv.config import MEMORY_PATH, Settings, get_settings


def open_backend(
    path: Path | str | None = None,
    settings: Settings | None = None,
) -> StorageBackend:
    """Open the backend matching a database path.

    Args:
        path: Database file or ":memory:". Defaults to settings.DB_PATH.
        settings: Settings to read tuning from. Defaults to get_settings().

    Returns:
        A freshly opened backend owned by the caller.
    """
    settings = settings or get_settings()
    target = str(path) if path is not None else settings.DB_PATH
    if target == MEMORY_PATH:
        return MemoryBackend()
    return FileBackend(
        target,
        journal_mode=settings.JOURNAL_MODE,
        synchronous=settings.SYNCHRONOUS,
        busy_timeout_ms=settings.BUSY_TIMEOUT_MS,
    )


__all__ = [
    "FileBackend",
    "MemoryBackend",
    "Row",
    "SQLiteBackend",
    "Statement",
    "StorageBackend",
    "open_backend",
]
