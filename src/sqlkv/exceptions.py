"""
Custom exception hierarchy for sqlkv.

All exceptions inherit from SqlKVError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class SqlKVError(Exception):
    """Base exception for all sqlkv errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ValidationError(SqlKVError):
    """Raised when caller input is rejected.

    Examples:
        - Key or pattern is not a string
        - Non-positive limit/page
        - Value of an unsupported kind
        - expires_at of an unsupported type

    Context should include:
        - field: The argument that failed validation
        - value: The invalid value (or its type name)
    """

    pass


class DecodeError(SqlKVError):
    """Raised when stored bytes cannot be decoded back to a value.

    Context should include:
        - tag: The type tag found in the payload, if any
        - size: Length of the payload in bytes
    """

    pass


class BackendError(SqlKVError):
    """Raised when the storage engine is closed, unavailable, or fails.

    Context should include:
        - backend: The backend label (e.g. ":memory:" or a file path)
        - operation: The operation that failed
    """

    pass


class ConfigurationError(SqlKVError):
    """Raised when configuration or CLI input is invalid.

    Examples:
        - VALUE passed with --json is not valid JSON
        - Negative TTL
    """

    pass
