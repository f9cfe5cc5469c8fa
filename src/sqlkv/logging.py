"""
Logging for sqlkv.

Every record carries the label of the store it came from and the name of
the running operation, taken from context variables that log_context()
scopes. Console output goes through rich; an optional log file receives
one JSON object per line.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

# Context variables for structured logging
_store_var: ContextVar[str | None] = ContextVar("store", default=None)
_operation_var: ContextVar[str | None] = ContextVar("operation", default=None)


def get_store() -> str | None:
    """Get the current store label from context."""
    return _store_var.get()


def get_operation() -> str | None:
    """Get the current operation name from context."""
    return _operation_var.get()


@contextmanager
def log_context(
    store: str | None = None,
    operation: str | None = None,
) -> Generator[None, None, None]:
    """Context manager for scoped logging context.

    Args:
        store: Store label (database path) to set in context.
        operation: Operation name to set in context.

    Yields:
        None. Context variables are set for the duration of the context.
    """
    store_token = _store_var.set(store) if store is not None else None
    operation_token = _operation_var.set(operation) if operation is not None else None
    try:
        yield
    finally:
        if operation_token is not None:
            _operation_var.reset(operation_token)
        if store_token is not None:
            _store_var.reset(store_token)


def _current_context() -> dict[str, str]:
    ctx: dict[str, str] = {}
    store = get_store()
    operation = get_operation()
    if store:
        ctx["store"] = store
    if operation:
        ctx["operation"] = operation
    return ctx


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log files."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_obj.update(_current_context())

        fields = getattr(record, "extra", None)
        if fields:
            log_obj["extra"] = fields

        return json.dumps(log_obj, default=str)


class ContextRichHandler(RichHandler):
    """Rich console handler that prefixes the level with store and operation."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        level_text = super().get_level_text(record)

        parts: list[str] = []
        store = get_store()
        operation = get_operation()
        if store:
            parts.append(f"[dim]{Path(store).name or store}[/dim]")
        if operation:
            parts.append(f"[cyan]{operation}[/cyan]")

        if not parts:
            return level_text
        return Text.from_markup(f"{level_text} {' '.join(parts)}")


class ContextLogger:
    """Logger wrapper that attaches the current store/operation to records.

    Keyword arguments become structured fields: ``logger.info("Removed %d",
    n, pattern="user:%")`` stores ``{"pattern": "user:%", ...}`` in the
    record's ``extra`` attribute.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, *args: Any, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        fields.update(_current_context())
        self._logger.log(level, msg, *args, extra={"extra": fields})

    def debug(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, *args, **fields)

    def info(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.INFO, msg, *args, **fields)

    def warning(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.WARNING, msg, *args, **fields)


_setup_done: bool = False


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Configure the ``sqlkv`` logger.

    Replaces any handlers installed by an earlier call.

    Args:
        log_level: Console level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: JSON-lines file that receives every record, or None.
        console_output: Whether to log to stderr through rich.
    """
    global _setup_done

    level = getattr(logging, log_level.upper())
    root_logger = logging.getLogger("sqlkv")
    root_logger.setLevel(level)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(file_handler)

    if console_output:
        rich_handler = ContextRichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            markup=False,
        )
        rich_handler.setLevel(level)
        root_logger.addHandler(rich_handler)

    root_logger.propagate = False
    _setup_done = True


def get_logger(name: str) -> ContextLogger:
    """Get a context-aware logger under the ``sqlkv`` namespace.

    The first call configures logging from the current settings.
    """
    if not _setup_done:
        from sqlkv.config import get_settings

        try:
            settings = get_settings()
            setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
        except ValueError:
            # pydantic.ValidationError subclasses ValueError
            setup_logging()

    if not name.startswith("sqlkv"):
        name = f"sqlkv.{name}"

    return ContextLogger(logging.getLogger(name))
