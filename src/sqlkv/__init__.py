"""
sqlkv - a key-value store on top of SQLite.

Typed values, per-key expiration, LIKE-pattern enumeration, atomic
multi-key operations, and whole-database backup/restore.
"""

from sqlkv.backends import FileBackend, MemoryBackend, StorageBackend, open_backend
from sqlkv.exceptions import (
    BackendError,
    ConfigurationError,
    DecodeError,
    SqlKVError,
    ValidationError,
)
from sqlkv.store import KVStore
from sqlkv.types import BatchItem

__version__ = "0.1.0"

__all__ = [
    "BackendError",
    "BatchItem",
    "ConfigurationError",
    "DecodeError",
    "FileBackend",
    "KVStore",
    "MemoryBackend",
    "SqlKVError",
    "StorageBackend",
    "ValidationError",
    "__version__",
    "open_backend",
]
