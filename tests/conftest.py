"""
Pytest configuration and fixtures for sqlkv tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Generator

import pytest

from sqlkv.backends import FileBackend, MemoryBackend
from sqlkv.config import clear_settings_cache
from sqlkv.store import KVStore

# 2023-11-14T22:13:20Z
FIXED_NOW_MS = 1_700_000_000_000


class FakeClock:
    """Controllable millisecond clock for expiration tests."""

    def __init__(self, now: int = FIXED_NOW_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture(autouse=True)
def isolated_env(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> Generator[None, None, None]:
    """Drop SQLKV_* variables and keep any local .env out of reach."""
    for name in list(os.environ):
        if name.startswith("SQLKV_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    """Provide a fake clock starting at FIXED_NOW_MS."""
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> Generator[KVStore, None, None]:
    """Provide an in-memory store driven by the fake clock."""
    kv = KVStore(MemoryBackend(), clock=clock)
    yield kv
    kv.close()


@pytest.fixture
def file_store(temp_dir: Path, clock: FakeClock) -> Generator[KVStore, None, None]:
    """Provide a file-backed store driven by the fake clock."""
    kv = KVStore(FileBackend(temp_dir / "data" / "kv.db"), clock=clock)
    yield kv
    kv.close()
