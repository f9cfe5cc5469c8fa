"""
Core types for sqlkv.

This module defines the data structures shared by the store layers:
- KVValue: the closed set of value kinds the codec accepts
- Entry: one stored row (key, encoded value, expiry)
- BatchItem: one element of a multi_set batch
- Helpers for millisecond timestamps and expiry normalisation
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Union

from sqlkv.exceptions import ValidationError

KVValue = Union[
    None,
    bool,
    int,
    float,
    str,
    bytes,
    datetime,
    list[Any],
    dict[str, Any],
]

# datetime -> absolute, timedelta -> relative to now, int -> epoch ms
ExpiresAt = Union[datetime, timedelta, int, None]

Clock = Callable[[], int]

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


def now_ms() -> int:
    """Get the current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def check_int64(field: str, value: int) -> int:
    """Reject integers SQLite cannot bind as INTEGER."""
    if not INT64_MIN <= value <= INT64_MAX:
        raise ValidationError(
            f"{field} is outside the 64-bit integer range",
            context={"field": field, "value": value},
        )
    return value


def from_epoch_ms(value: int) -> datetime:
    """Convert epoch milliseconds to a timezone-aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def to_epoch_ms(expires_at: ExpiresAt, now: int) -> int | None:
    """Normalise an expiry argument to epoch milliseconds.

    Args:
        expires_at: Absolute datetime (naive values are taken as UTC),
            timedelta relative to ``now``, epoch milliseconds, or None.
        now: Current time in epoch milliseconds.

    Returns:
        Epoch milliseconds, or None for "never expires".

    Raises:
        ValidationError: If expires_at has an unsupported type or falls
            outside the 64-bit range SQLite stores.
    """
    if expires_at is None:
        return None
    # bool is an int subclass; True/False as a timestamp is always a mistake
    if isinstance(expires_at, bool):
        raise ValidationError(
            "expires_at must be a datetime, timedelta or epoch milliseconds",
            context={"field": "expires_at", "value": expires_at},
        )
    if isinstance(expires_at, int):
        return check_int64("expires_at", expires_at)
    if isinstance(expires_at, timedelta):
        return check_int64("expires_at", now + int(expires_at.total_seconds() * 1000))
    if isinstance(expires_at, datetime):
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return check_int64("expires_at", int(expires_at.timestamp() * 1000))
    raise ValidationError(
        "expires_at must be a datetime, timedelta or epoch milliseconds",
        context={"field": "expires_at", "type": type(expires_at).__name__},
    )


@dataclass(frozen=True)
class Entry:
    """Immutable view of one stored row.

    The value is kept encoded; decoding happens only when the entry is
    known to be live.
    """

    key: str
    value: bytes
    expires_at: int | None = None  # epoch ms

    def is_expired(self, now: int) -> bool:
        """Check whether the entry is logically absent at ``now``."""
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True)
class BatchItem:
    """One key/value pair of a multi_set batch."""

    key: str
    value: Any
    expires_at: ExpiresAt = None

    @classmethod
    def coerce(cls, item: Any) -> BatchItem:
        """Build a BatchItem from a tuple, mapping or BatchItem.

        Accepted shapes:
            - BatchItem
            - (key, value) or (key, value, expires_at)
            - {"key": ..., "value": ..., "expires_at": ...}

        Raises:
            ValidationError: If the item has none of the accepted shapes.
        """
        if isinstance(item, BatchItem):
            return item
        if isinstance(item, Mapping):
            if "key" not in item or "value" not in item:
                raise ValidationError(
                    "batch mapping needs 'key' and 'value'",
                    context={"field": "items", "keys": sorted(map(str, item))},
                )
            return cls(item["key"], item["value"], item.get("expires_at"))
        if isinstance(item, tuple) and len(item) in (2, 3):
            return cls(*item)
        raise ValidationError(
            "batch item must be a BatchItem, a (key, value[, expires_at]) tuple or a mapping",
            context={"field": "items", "type": type(item).__name__},
        )
