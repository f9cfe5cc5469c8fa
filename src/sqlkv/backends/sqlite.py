"""
SQLite storage backends built on the standard sqlite3 module.

- SQLiteBackend: shared connection handling, statement execution,
  explicit transactions (nested levels become SAVEPOINTs) and
  whole-database serialize/restore
- MemoryBackend: private ":memory:" database
- FileBackend: database file on disk, tuned with PRAGMAs from settings

Connections run with isolation_level=None so sqlite3 never opens or
commits transactions implicitly; transaction() issues BEGIN/COMMIT itself.
A re-entrant lock serialises every call on the connection.
"""

from __future__ import annotations

import sqlite3
import threading
from abc import abstractmethod
from pathlib import Path
from typing import Any, Callable, Sequence, TypeVar

from sqlkv.backends.base import Row, StorageBackend
from sqlkv.config import MEMORY_PATH
from sqlkv.exceptions import BackendError, ValidationError
from sqlkv.logging import get_logger
from sqlkv.statements import pragma_script

T = TypeVar("T")

logger = get_logger(__name__)

# Bytes 18-19 of the database header: file format write/read version.
# 1 = rollback journal, 2 = WAL.
_HEADER_VERSION_OFFSET = 18


def _as_rollback_image(image: bytes) -> bytes:
    """Mark a serialized image as rollback-journal format.

    An image taken from a WAL database keeps the WAL version bytes, and an
    in-memory connection cannot open it. Clearing them makes every image
    loadable anywhere; restoring into a WAL file sets them back.
    """
    start, end = _HEADER_VERSION_OFFSET, _HEADER_VERSION_OFFSET + 2
    if len(image) >= end and image[start:end] == b"\x02\x02":
        return image[:start] + b"\x01\x01" + image[end:]
    return image


class SQLiteBackend(StorageBackend):
    """Base class for sqlite3-backed storage."""

    def __init__(self, label: str) -> None:
        self._label = label
        self._lock = threading.RLock()
        self._depth = 0  # open transaction levels
        self._conn: sqlite3.Connection | None = None
        try:
            self._conn = self._open_connection()
        except sqlite3.Error as e:
            raise BackendError(
                f"Cannot open database: {e}",
                context={"backend": label, "operation": "open"},
            ) from e
        self._conn.row_factory = sqlite3.Row
        logger.debug("Opened %s", self)

    @abstractmethod
    def _open_connection(self) -> sqlite3.Connection:
        """Create the underlying connection."""
        ...

    @property
    def label(self) -> str:
        return self._label

    @property
    def closed(self) -> bool:
        return self._conn is None

    @property
    def in_transaction(self) -> bool:
        """Whether a transaction() call is currently open."""
        return self._depth > 0

    def _connection(self, operation: str) -> sqlite3.Connection:
        if self._conn is None:
            raise BackendError(
                "Backend is closed",
                context={"backend": self._label, "operation": operation},
            )
        return self._conn

    def _error(self, e: sqlite3.Error, operation: str) -> BackendError:
        return BackendError(
            str(e),
            context={"backend": self._label, "operation": operation},
        )

    def _execute(self, sql: str, params: Sequence[Any], operation: str) -> sqlite3.Cursor:
        conn = self._connection(operation)
        try:
            return conn.execute(sql, tuple(params))
        except sqlite3.Error as e:
            raise self._error(e, operation) from e
        except (OverflowError, UnicodeEncodeError) as e:
            # raised by sqlite3 while binding, before SQLite sees the statement
            raise ValidationError(
                f"Parameter cannot be bound: {e}",
                context={"backend": self._label, "operation": operation},
            ) from e

    def run(self, sql: str, params: Sequence[Any] = ()) -> int:
        with self._lock:
            return self._execute(sql, params, "run").rowcount

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Row | None:
        with self._lock:
            cursor = self._execute(sql, params, "get")
            try:
                row = cursor.fetchone()
            except sqlite3.Error as e:
                raise self._error(e, "get") from e
            return dict(row) if row is not None else None

    def query_all(self, sql: str, params: Sequence[Any] = ()) -> list[Row]:
        with self._lock:
            cursor = self._execute(sql, params, "all")
            if cursor.description is None:
                return []
            try:
                return [dict(row) for row in cursor.fetchall()]
            except sqlite3.Error as e:
                raise self._error(e, "all") from e

    def exec_script(self, script: str) -> None:
        with self._lock:
            conn = self._connection("exec_script")
            try:
                conn.executescript(script)
            except sqlite3.Error as e:
                raise self._error(e, "exec_script") from e

    def transaction(self, fn: Callable[[], T]) -> T:
        with self._lock:
            conn = self._connection("transaction")
            level = self._depth
            if level == 0:
                begin, commit, rollback = "BEGIN", "COMMIT", ("ROLLBACK",)
            else:
                name = f"sqlkv_sp{level}"
                begin = f"SAVEPOINT {name}"
                commit = f"RELEASE {name}"
                rollback = (f"ROLLBACK TO {name}", f"RELEASE {name}")

            try:
                conn.execute(begin)
            except sqlite3.Error as e:
                raise self._error(e, "transaction") from e

            self._depth += 1
            try:
                result = fn()
                conn.execute(commit)
            except BaseException as exc:
                self._rollback(conn, rollback, exc)
                if isinstance(exc, sqlite3.Error):
                    raise self._error(exc, "transaction") from exc
                raise
            finally:
                self._depth -= 1
            return result

    def _rollback(
        self,
        conn: sqlite3.Connection,
        statements: tuple[str, ...],
        cause: BaseException,
    ) -> None:
        logger.warning(
            "Rolling back transaction after %s",
            type(cause).__name__,
            depth=self._depth,
        )
        if self._conn is None:
            return
        try:
            for sql in statements:
                conn.execute(sql)
        except sqlite3.Error as e:
            # SQLite may already have rolled back on its own (e.g. SQLITE_FULL)
            logger.warning("Rollback statement failed: %s", e)

    def serialize(self) -> bytes:
        with self._lock:
            conn = self._connection("serialize")
            try:
                image = conn.serialize()
            except sqlite3.Error as e:
                raise self._error(e, "serialize") from e
            return _as_rollback_image(bytes(image))

    def restore_image(self, image: bytes) -> None:
        with self._lock:
            conn = self._connection("restore")
            if self._depth:
                raise BackendError(
                    "Cannot restore inside a transaction",
                    context={"backend": self._label, "operation": "restore"},
                )
            source = sqlite3.connect(":memory:")
            try:
                source.deserialize(_as_rollback_image(image))
                # Forces SQLite to parse the header and schema
                source.execute("SELECT count(*) FROM sqlite_master").fetchone()
                source.backup(conn)
            except sqlite3.Error as e:
                raise self._error(e, "restore") from e
            finally:
                source.close()

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.close()
            except sqlite3.Error as e:
                raise self._error(e, "close") from e
            finally:
                self._conn = None
                self._depth = 0
            logger.debug("Closed %s", self)


class MemoryBackend(SQLiteBackend):
    """Private in-memory database; contents vanish on close."""

    def __init__(self) -> None:
        super().__init__(MEMORY_PATH)

    def _open_connection(self) -> sqlite3.Connection:
        return sqlite3.connect(
            MEMORY_PATH,
            isolation_level=None,
            check_same_thread=False,
        )


class FileBackend(SQLiteBackend):
    """Database file on disk.

    Args:
        path: Database file. Parent directories are created.
        journal_mode: SQLite journal mode (e.g. "WAL").
        synchronous: SQLite synchronous level (e.g. "NORMAL").
        busy_timeout_ms: How long to wait on a locked database.
    """

    def __init__(
        self,
        path: Path | str,
        journal_mode: str = "WAL",
        synchronous: str = "NORMAL",
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.path = Path(path)
        self.journal_mode = journal_mode
        self.synchronous = synchronous
        self.busy_timeout_ms = busy_timeout_ms
        super().__init__(str(self.path))
        try:
            self.exec_script(pragma_script(journal_mode, synchronous, busy_timeout_ms))
        except BackendError:
            self.close()
            raise

    def _open_connection(self) -> sqlite3.Connection:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackendError(
                f"Cannot create database directory: {e}",
                context={"backend": str(self.path), "operation": "open"},
            ) from e
        return sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000,
            isolation_level=None,
            check_same_thread=False,
        )
