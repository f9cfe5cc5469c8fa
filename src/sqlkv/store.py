"""
KVStore: key-value semantics on top of a StorageBackend.

Every entry is one row of the entries table: the key, the codec-encoded
value, and an optional expiry in epoch milliseconds.

Expiration is handled two ways that never replace each other:
- lazily: get() deletes the one expired row it touches and returns None
- eagerly: cleanup() bulk-deletes every expired row

Read-only inspection (exists, get_expire, keys, pagination, count) reports
raw rows, expired or not, so callers can look at expired state without
triggering deletion.
"""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import Any, Iterable, Sequence

from sqlkv.backends import StorageBackend, open_backend
from sqlkv.backends.base import Row, Statement
from sqlkv.batch import BatchCoordinator
from sqlkv.codec import decode, encode
from sqlkv.config import Settings, get_settings
from sqlkv.exceptions import BackendError, DecodeError, ValidationError
from sqlkv.logging import get_logger, log_context
from sqlkv.statements import STATEMENTS, schema_script
from sqlkv.types import (
    Clock,
    Entry,
    ExpiresAt,
    KVValue,
    check_int64,
    from_epoch_ms,
    now_ms,
    to_epoch_ms,
)

logger = get_logger(__name__)

ALL_KEYS = "%"


def _check_str(field: str, value: Any) -> None:
    if not isinstance(value, str):
        raise ValidationError(
            f"{field} must be a string",
            context={"field": field, "type": type(value).__name__},
        )
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as e:
        raise ValidationError(
            f"{field} is not valid UTF-8",
            context={"field": field, "reason": str(e)},
        ) from e


def _check_positive(field: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(
            f"{field} must be a positive integer",
            context={"field": field, "value": value},
        )


class KVStore:
    """Key-value store with per-key expiration.

    The store owns its backend: close() (or leaving a ``with`` block) runs
    a final cleanup and closes the backend. Any call after that raises
    BackendError.

    Args:
        backend: Opened backend; ownership passes to the store.
        clock: Callable returning the current time in epoch milliseconds.
        cleanup_on_close: Run cleanup() before closing the backend.
    """

    def __init__(
        self,
        backend: StorageBackend,
        *,
        clock: Clock = now_ms,
        cleanup_on_close: bool = True,
    ) -> None:
        self._backend = backend
        self._clock = clock
        self.cleanup_on_close = cleanup_on_close
        self._backend.exec_script(schema_script())
        self._statements = self._prepare_statements()
        self._batch = BatchCoordinator(self)

    @classmethod
    def open(
        cls,
        path: Path | str | None = None,
        settings: Settings | None = None,
        *,
        clock: Clock = now_ms,
    ) -> KVStore:
        """Open a store on a fresh backend chosen from the path.

        Args:
            path: Database file or ":memory:". Defaults to settings.DB_PATH.
            settings: Settings to use. Defaults to get_settings().
            clock: Clock override (mainly for tests).
        """
        settings = settings or get_settings()
        backend = open_backend(path, settings)
        try:
            store = cls(backend, clock=clock, cleanup_on_close=settings.CLEANUP_ON_CLOSE)
        except BaseException:
            backend.close()
            raise
        logger.debug("Opened store %s", backend.label)
        return store

    def _prepare_statements(self) -> dict[str, Statement]:
        return {name: self._backend.prepare(sql) for name, sql in STATEMENTS.items()}

    @property
    def backend(self) -> StorageBackend:
        """The backend this store owns."""
        return self._backend

    @property
    def closed(self) -> bool:
        return self._backend.closed

    def _fetch(self, key: str) -> Entry | None:
        row = self._statements["get"].get(key)
        if row is None:
            return None
        value = row["value"]
        if not isinstance(value, bytes):
            raise DecodeError(
                "Stored value is not a blob",
                context={"key": key, "type": type(value).__name__},
            )
        return Entry(key=row["key"], value=value, expires_at=row["expires_at"])

    # ------------------------------------------------------------------
    # Single-key operations
    # ------------------------------------------------------------------

    def get(self, key: str) -> KVValue:
        """Get the value stored under key.

        Returns:
            The decoded value, or None if the key is missing or expired.
            An expired row is deleted on the way out.

        Raises:
            DecodeError: If the stored bytes are corrupted.
        """
        _check_str("key", key)
        entry = self._fetch(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self._statements["delete"].run(key)
            logger.debug("Removed expired entry on read", key=key)
            return None
        return decode(entry.value)

    def set(self, key: str, value: KVValue, expires_at: ExpiresAt = None) -> None:
        """Insert or overwrite key.

        Args:
            key: Entry key.
            value: Any value the codec supports.
            expires_at: datetime, timedelta from now, epoch milliseconds,
                or None for no expiry. Overwrites any previous expiry.

        Raises:
            ValidationError: If the key, value or expiry is invalid.
        """
        _check_str("key", key)
        expires_ms = to_epoch_ms(expires_at, self._clock())
        self._statements["set"].run(key, encode(value), expires_ms)

    def exists(self, key: str) -> bool:
        """Check whether a row exists for key.

        This looks at the raw row only: an expired entry that has not been
        reclaimed yet still exists. Use get() for an expiration-aware read.
        """
        _check_str("key", key)
        row = self._statements["exists"].get(key)
        return bool(row and row["present"])

    def delete(self, key: str) -> bool:
        """Delete key. Returns True if a row was removed."""
        _check_str("key", key)
        return self._statements["delete"].run(key) > 0

    def rename(self, old_key: str, new_key: str) -> bool:
        """Move the entry at old_key to new_key.

        An existing new_key entry is overwritten. The value and expiry move
        unchanged, including an expired-but-unreclaimed row.

        Returns:
            True if the entry was moved, False (and nothing changes) if
            old_key does not exist.
        """
        _check_str("old_key", old_key)
        _check_str("new_key", new_key)

        def _rename() -> bool:
            if not self.exists(old_key):
                return False
            if old_key != new_key:
                self._statements["delete"].run(new_key)
                self._statements["rename"].run(new_key, old_key)
            return True

        return self._backend.transaction(_rename)

    def set_expire(self, key: str, expires_at: ExpiresAt) -> bool:
        """Change only the expiry of key.

        Passing None removes the expiry.

        Returns:
            True if the key exists, False otherwise.
        """
        _check_str("key", key)
        expires_ms = to_epoch_ms(expires_at, self._clock())
        return self._statements["set_expire"].run(expires_ms, key) > 0

    def get_expire(self, key: str) -> datetime | None:
        """Get the expiry of key as a UTC datetime.

        Returns None both for a key without expiry and for a missing key;
        call exists() to tell the two apart.
        """
        _check_str("key", key)
        row = self._statements["get_expire"].get(key)
        if row is None or row["expires_at"] is None:
            return None
        return from_epoch_ms(row["expires_at"])

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    def keys(self, pattern: str = ALL_KEYS) -> list[str]:
        """List keys matching a SQL LIKE pattern, in insertion order.

        Expired rows that have not been reclaimed are included.
        """
        _check_str("pattern", pattern)
        return [row["key"] for row in self._statements["keys"].all(pattern)]

    def pagination(self, limit: int, page: int, pattern: str = ALL_KEYS) -> list[str]:
        """Return one page of matching keys.

        Args:
            limit: Page size, at least 1.
            page: 1-based page number.
            pattern: SQL LIKE pattern.
        """
        _check_positive("limit", limit)
        _check_positive("page", page)
        _check_str("pattern", pattern)
        check_int64("limit", limit)
        offset = check_int64("page", (page - 1) * limit)
        rows = self._statements["pagination"].all(pattern, limit, offset)
        return [row["key"] for row in rows]

    def count(self, pattern: str = ALL_KEYS) -> int:
        """Count rows matching pattern, expired or not."""
        _check_str("pattern", pattern)
        row = self._statements["count"].get(pattern)
        return int(row["count"]) if row else 0

    def count_expired(self, pattern: str = ALL_KEYS) -> int:
        """Count rows matching pattern whose expiry has passed."""
        _check_str("pattern", pattern)
        row = self._statements["count_expired"].get(pattern, self._clock())
        return int(row["count"]) if row else 0

    # ------------------------------------------------------------------
    # Multi-key operations
    # ------------------------------------------------------------------

    def multi_get(self, keys: Iterable[str]) -> dict[str, KVValue]:
        """Get several keys atomically. See BatchCoordinator.multi_get."""
        return self._batch.multi_get(keys)

    def multi_set(self, items: Iterable[Any]) -> None:
        """Set several keys atomically. See BatchCoordinator.multi_set."""
        self._batch.multi_set(items)

    def multi_delete(self, keys: Iterable[str]) -> int:
        """Delete several keys atomically. See BatchCoordinator.multi_delete."""
        return self._batch.multi_delete(keys)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """Delete every expired row. Returns the number removed."""
        removed = self._statements["cleanup"].run(self._clock())
        if removed:
            logger.info("Cleaned up %d expired entries", removed)
        return removed

    def vacuum(self) -> None:
        """Compact the database file."""
        self._statements["vacuum"].run()

    def flush(self) -> int:
        """Delete every row. Returns the number removed."""
        removed = self._statements["flush"].run()
        logger.info("Flushed %d entries", removed)
        return removed

    def execute(self, sql: str, params: Sequence[Any] = ()) -> list[Row]:
        """Run arbitrary SQL against the backend.

        Returns:
            Result rows as dicts (empty for statements without results).
        """
        _check_str("sql", sql)
        return self._backend.prepare(sql).all(*params)

    def backup(self, path: Path | str) -> Path:
        """Write the whole database image to path.

        The image is written to a temporary sibling first and moved into
        place, so an existing backup is never left half-written.

        Returns:
            The backup path.
        """
        target = Path(path)
        with log_context(store=self._backend.label, operation="backup"):
            image = self._backend.serialize()
            tmp = target.with_name(target.name + ".tmp")
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                tmp.write_bytes(image)
                os.replace(tmp, target)
            except OSError as e:
                tmp.unlink(missing_ok=True)
                raise BackendError(
                    f"Cannot write backup: {e}",
                    context={"backend": self._backend.label, "path": str(target)},
                ) from e
            logger.info("Backup written to %s (%d bytes)", target, len(image))
        return target

    def restore(self, path: Path | str) -> None:
        """Replace the whole database with a backup image.

        Raises:
            ValidationError: If path does not exist.
            BackendError: If the store is closed or the file is not a
                database image.
        """
        if self._backend.closed:
            raise BackendError(
                "Backend is closed",
                context={"backend": self._backend.label, "operation": "restore"},
            )
        source = Path(path)
        if not source.is_file():
            raise ValidationError(
                "Backup file not found",
                context={"field": "path", "value": str(source)},
            )
        with log_context(store=self._backend.label, operation="restore"):
            try:
                image = source.read_bytes()
            except OSError as e:
                raise BackendError(
                    f"Cannot read backup: {e}",
                    context={"backend": self._backend.label, "path": str(source)},
                ) from e
            self._backend.restore_image(image)
            # Images from elsewhere may lack the table or index
            self._backend.exec_script(schema_script())
            logger.info("Restored from %s (%d bytes)", source, len(image))

    def close(self) -> None:
        """Run a final cleanup (if enabled) and close the backend.

        Calling close() again is a no-op.
        """
        if self._backend.closed:
            return
        with log_context(store=self._backend.label, operation="close"):
            try:
                if self.cleanup_on_close:
                    self.cleanup()
            finally:
                self._backend.close()
            logger.debug("Closed store %s", self._backend.label)

    def __enter__(self) -> KVStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"KVStore({self._backend!r})"
