"""
Tests for storage backends.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from sqlkv.backends import FileBackend, MemoryBackend, open_backend
from sqlkv.backends.sqlite import _as_rollback_image
from sqlkv.config import Settings
from sqlkv.exceptions import BackendError


@pytest.fixture
def backend() -> MemoryBackend:
    """Provide an in-memory backend with a scratch table."""
    mem = MemoryBackend()
    mem.exec_script("CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT);")
    yield mem
    mem.close()


def _names(backend: MemoryBackend) -> list[str]:
    return [row["name"] for row in backend.query_all("SELECT name FROM t ORDER BY id")]


class TestStatements:
    """Test prepared statement handles."""

    def test_run_get_all(self, backend: MemoryBackend) -> None:
        """Test run returns row counts and get/all return dict rows."""
        insert = backend.prepare("INSERT INTO t (name) VALUES (?)")

        assert insert.run("a") == 1
        assert insert.run("b") == 1

        select = backend.prepare("SELECT name FROM t WHERE name = ?")
        assert select.get("a") == {"name": "a"}
        assert select.get("zzz") is None
        assert backend.prepare("SELECT name FROM t ORDER BY id").all() == [
            {"name": "a"},
            {"name": "b"},
        ]

    def test_all_on_mutation_returns_empty(self, backend: MemoryBackend) -> None:
        """Test all() on a statement without results returns []."""
        assert backend.prepare("INSERT INTO t (name) VALUES ('x')").all() == []
        assert _names(backend) == ["x"]

    def test_sql_errors_are_wrapped(self, backend: MemoryBackend) -> None:
        """Test engine errors surface as BackendError with context."""
        with pytest.raises(BackendError) as exc_info:
            backend.run("INSERT INTO missing VALUES (1)")

        assert exc_info.value.context["backend"] == ":memory:"
        assert exc_info.value.context["operation"] == "run"


class TestTransactions:
    """Test transaction wrapping."""

    def test_commit(self, backend: MemoryBackend) -> None:
        """Test a successful callback is committed and its result returned."""
        def work() -> str:
            backend.run("INSERT INTO t (name) VALUES ('a')")
            return "done"

        assert backend.transaction(work) == "done"
        assert _names(backend) == ["a"]
        assert backend.in_transaction is False

    def test_rollback_on_error(self, backend: MemoryBackend) -> None:
        """Test a failing callback rolls everything back and re-raises."""
        def work() -> None:
            backend.run("INSERT INTO t (name) VALUES ('a')")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            backend.transaction(work)

        assert _names(backend) == []
        assert backend.in_transaction is False

    def test_nested_rollback_is_partial(self, backend: MemoryBackend) -> None:
        """Test an inner failure only undoes the inner savepoint."""
        def inner() -> None:
            backend.run("INSERT INTO t (name) VALUES ('inner')")
            raise ValueError("inner failed")

        def outer() -> None:
            backend.run("INSERT INTO t (name) VALUES ('outer')")
            with pytest.raises(ValueError):
                backend.transaction(inner)
            backend.run("INSERT INTO t (name) VALUES ('after')")

        backend.transaction(outer)

        assert _names(backend) == ["outer", "after"]

    def test_nested_commit(self, backend: MemoryBackend) -> None:
        """Test nested transactions commit with the outer one."""
        backend.transaction(
            lambda: backend.transaction(
                lambda: backend.run("INSERT INTO t (name) VALUES ('deep')")
            )
        )

        assert _names(backend) == ["deep"]

    def test_outer_failure_undoes_inner_commit(self, backend: MemoryBackend) -> None:
        """Test a released savepoint is still rolled back by its outer level."""
        def outer() -> None:
            backend.transaction(lambda: backend.run("INSERT INTO t (name) VALUES ('x')"))
            raise KeyError("late failure")

        with pytest.raises(KeyError):
            backend.transaction(outer)

        assert _names(backend) == []

    def test_backend_errors_inside_roll_back(self, backend: MemoryBackend) -> None:
        """Test a failing statement aborts the transaction as BackendError."""
        def work() -> None:
            backend.run("INSERT INTO t (name) VALUES ('a')")
            backend.run("INSERT INTO t (id, name) VALUES (1, 'dup')")

        with pytest.raises(BackendError):
            backend.transaction(work)

        assert _names(backend) == []


class TestLifecycle:
    """Test close semantics."""

    def test_closed_backend_raises(self) -> None:
        """Test every call after close raises BackendError."""
        mem = MemoryBackend()
        mem.close()

        assert mem.closed
        with pytest.raises(BackendError):
            mem.run("SELECT 1")
        with pytest.raises(BackendError):
            mem.query_one("SELECT 1")
        with pytest.raises(BackendError):
            mem.transaction(lambda: None)
        with pytest.raises(BackendError):
            mem.serialize()

    def test_close_twice(self) -> None:
        """Test close is idempotent."""
        mem = MemoryBackend()
        mem.close()
        mem.close()

    def test_repr(self) -> None:
        """Test repr shows label and state."""
        mem = MemoryBackend()
        assert repr(mem) == "MemoryBackend(':memory:', open)"
        mem.close()
        assert repr(mem) == "MemoryBackend(':memory:', closed)"


class TestSerialization:
    """Test serialize/restore_image."""

    def test_round_trip(self, backend: MemoryBackend) -> None:
        """Test an image restores into a fresh backend."""
        backend.run("INSERT INTO t (name) VALUES ('saved')")
        image = backend.serialize()

        other = MemoryBackend()
        other.restore_image(image)

        assert _names(other) == ["saved"]
        other.close()

    def test_restore_inside_transaction_fails(self, backend: MemoryBackend) -> None:
        """Test restore is refused while a transaction is open."""
        image = backend.serialize()

        with pytest.raises(BackendError):
            backend.transaction(lambda: backend.restore_image(image))

    def test_restore_rejects_garbage(self, backend: MemoryBackend) -> None:
        """Test non-database bytes are rejected and the data kept."""
        backend.run("INSERT INTO t (name) VALUES ('kept')")

        with pytest.raises(BackendError):
            backend.restore_image(b"\x00garbage" * 512)

        assert _names(backend) == ["kept"]

    def test_wal_header_is_cleared(self) -> None:
        """Test WAL version bytes are rewritten to rollback-journal bytes."""
        header = bytearray(100)
        header[18:20] = b"\x02\x02"

        patched = _as_rollback_image(bytes(header))

        assert patched[18:20] == b"\x01\x01"
        assert len(patched) == 100
        assert _as_rollback_image(b"short") == b"short"


class TestFileBackend:
    """Test file-backed storage."""

    def test_creates_parent_directories(self, temp_dir: Path) -> None:
        """Test the database directory is created on open."""
        path = temp_dir / "a" / "b" / "kv.db"
        backend = FileBackend(path)

        assert path.exists()
        backend.close()

    def test_applies_pragmas(self, temp_dir: Path) -> None:
        """Test journal mode and busy timeout come from the arguments."""
        backend = FileBackend(temp_dir / "kv.db", journal_mode="WAL", busy_timeout_ms=1234)

        assert backend.query_one("PRAGMA journal_mode") == {"journal_mode": "wal"}
        assert backend.query_one("PRAGMA busy_timeout") == {"timeout": 1234}
        backend.close()

    def test_unopenable_path(self, temp_dir: Path) -> None:
        """Test a path that cannot be a database raises BackendError."""
        directory = temp_dir / "is_a_dir"
        directory.mkdir()

        with pytest.raises(BackendError):
            FileBackend(directory)

    def test_failed_pragmas_close_connection(
        self, temp_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test the connection is closed when the pragma script fails."""
        opened: list[sqlite3.Connection] = []

        class RecordingBackend(FileBackend):
            def _open_connection(self) -> sqlite3.Connection:
                conn = super()._open_connection()
                opened.append(conn)
                return conn

        monkeypatch.setattr(
            "sqlkv.backends.sqlite.pragma_script", lambda *args: "PRAGMA journal_mode = ;"
        )

        with pytest.raises(BackendError):
            RecordingBackend(temp_dir / "kv.db")

        assert len(opened) == 1
        with pytest.raises(sqlite3.ProgrammingError):
            opened[0].execute("SELECT 1")


class TestOpenBackend:
    """Test backend selection."""

    def test_memory_path(self) -> None:
        """Test ':memory:' selects MemoryBackend."""
        backend = open_backend(":memory:", Settings(_env_file=None))
        assert isinstance(backend, MemoryBackend)
        backend.close()

    def test_file_path_uses_settings(self, temp_dir: Path) -> None:
        """Test file paths select FileBackend tuned by settings."""
        settings = Settings(_env_file=None, JOURNAL_MODE="delete", BUSY_TIMEOUT_MS=42)
        backend = open_backend(temp_dir / "kv.db", settings)

        assert isinstance(backend, FileBackend)
        assert backend.query_one("PRAGMA journal_mode") == {"journal_mode": "delete"}
        assert backend.busy_timeout_ms == 42
        backend.close()

    def test_default_path_from_settings(self, temp_dir: Path) -> None:
        """Test the path falls back to settings.DB_PATH."""
        settings = Settings(_env_file=None, DB_PATH=str(temp_dir / "env.db"))
        backend = open_backend(settings=settings)

        assert backend.label == str(temp_dir / "env.db")
        backend.close()
