"""
Base classes for storage backends.

This module implements:
- StorageBackend: abstract interface the store is written against
- Statement: prepared-statement handle (run/get/all) bound to a backend

The store never touches a database connection directly. It prepares its
fixed statement set once and runs everything through these handles, plus
transaction() for multi-key work and serialize()/restore_image() for
backup/restore.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Sequence, TypeVar

T = TypeVar("T")

Row = dict[str, Any]


class Statement:
    """A parameterised statement bound to one backend.

    Mirrors the classic prepare/bind/run API: ``run`` for mutations,
    ``get`` for a single row, ``all`` for every row.
    """

    def __init__(self, backend: StorageBackend, sql: str) -> None:
        self.backend = backend
        self.sql = sql

    def run(self, *params: Any) -> int:
        """Execute a mutation and return the number of affected rows."""
        return self.backend.run(self.sql, params)

    def get(self, *params: Any) -> Row | None:
        """Execute a query and return the first row, or None."""
        return self.backend.query_one(self.sql, params)

    def all(self, *params: Any) -> list[Row]:
        """Execute a query and return every row."""
        return self.backend.query_all(self.sql, params)

    def __repr__(self) -> str:
        return f"Statement({self.sql!r})"


class StorageBackend(ABC):
    """Abstract interface for storage backends.

    A backend owns exactly one database connection. All methods raise
    BackendError once the backend is closed or if the engine fails.
    """

    @property
    @abstractmethod
    def label(self) -> str:
        """Human-readable identity, e.g. ':memory:' or the file path."""
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        """Whether close() has been called."""
        ...

    def prepare(self, sql: str) -> Statement:
        """Prepare a statement for repeated execution."""
        return Statement(self, sql)

    @abstractmethod
    def run(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a mutation, returning the affected row count."""
        ...

    @abstractmethod
    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Row | None:
        """Execute a query, returning the first row or None."""
        ...

    @abstractmethod
    def query_all(self, sql: str, params: Sequence[Any] = ()) -> list[Row]:
        """Execute a query, returning all rows."""
        ...

    @abstractmethod
    def exec_script(self, script: str) -> None:
        """Execute a multi-statement script (DDL, pragmas)."""
        ...

    @abstractmethod
    def transaction(self, fn: Callable[[], T]) -> T:
        """Run fn atomically: commit if it returns, roll back if it raises.

        Nested calls are allowed and behave as savepoints.
        """
        ...

    @abstractmethod
    def serialize(self) -> bytes:
        """Return the whole database as one opaque image."""
        ...

    @abstractmethod
    def restore_image(self, image: bytes) -> None:
        """Replace the whole database with an image produced by serialize()."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release the connection. Safe to call more than once."""
        ...

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"{self.__class__.__name__}({self.label!r}, {state})"
