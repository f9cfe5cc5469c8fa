"""
Multi-key operations executed as one backend transaction.

BatchCoordinator loops over the store's single-key methods inside
StorageBackend.transaction(): either every key is applied or the whole
batch is rolled back and the first error propagates unchanged.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable

from sqlkv.logging import get_logger
from sqlkv.types import BatchItem

if TYPE_CHECKING:
    from sqlkv.store import KVStore

logger = get_logger(__name__)


class BatchCoordinator:
    """Runs multi_get / multi_set / multi_delete atomically for a store."""

    def __init__(self, store: KVStore) -> None:
        self._store = store

    def multi_get(self, keys: Iterable[str]) -> dict[str, Any]:
        """Get several keys in one transaction.

        Expired keys map to None and are deleted inside the same
        transaction, exactly as get() would do one at a time.

        Returns:
            Mapping of each requested key (input order) to its value or None.
        """
        keys = list(keys)

        def _get_all() -> dict[str, Any]:
            return {key: self._store.get(key) for key in keys}

        return self._store.backend.transaction(_get_all)

    def multi_set(self, items: Iterable[Any]) -> None:
        """Set several keys in one transaction.

        Args:
            items: BatchItem objects, (key, value[, expires_at]) tuples,
                or mappings with "key", "value" and optional "expires_at".

        Raises:
            ValidationError: If any item or value is invalid. Nothing is
                written in that case.
        """
        batch = [BatchItem.coerce(item) for item in items]

        def _set_all() -> None:
            for item in batch:
                self._store.set(item.key, item.value, item.expires_at)

        self._store.backend.transaction(_set_all)
        logger.debug("Batch set committed", count=len(batch))

    def multi_delete(self, keys: Iterable[str]) -> int:
        """Delete several keys in one transaction.

        Returns:
            Number of rows removed.
        """
        keys = list(keys)

        def _delete_all() -> int:
            return sum(1 for key in keys if self._store.delete(key))

        return self._store.backend.transaction(_delete_all)
