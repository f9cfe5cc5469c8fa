"""
CLI for sqlkv.

Commands:
    sqlkv get KEY              - Print a value
    sqlkv set KEY VALUE        - Store a value (--json, --ttl)
    sqlkv delete KEY           - Delete a key
    sqlkv rename OLD NEW       - Rename a key
    sqlkv expire KEY SECONDS   - Set a key's TTL
    sqlkv ttl KEY              - Show a key's expiry
    sqlkv keys [PATTERN]       - List keys (--limit/--page for pagination)
    sqlkv count [PATTERN]      - Count keys (--expired)
    sqlkv cleanup | vacuum | flush
    sqlkv backup PATH | restore PATH
    sqlkv config               - Show current configuration
    sqlkv version              - Print version
"""

from __future__ import annotations

import base64
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Annotated, Any, Generator, Optional

import orjson
import typer
from rich.console import Console
from rich.table import Table

from sqlkv import __version__
from sqlkv.config import Settings, clear_settings_cache, get_settings
from sqlkv.exceptions import ConfigurationError, SqlKVError
from sqlkv.store import KVStore

app = typer.Typer(
    name="sqlkv",
    help="sqlkv - key-value store on SQLite with per-key expiration",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except ValueError:
        return None


@app.callback()
def main_callback(
    ctx: typer.Context,
    db: Annotated[
        Optional[str],
        typer.Option("--db", "-d", help="Database file or :memory: (default: SQLKV_DB_PATH)"),
    ] = None,
) -> None:
    """Key-value store on SQLite."""
    ctx.obj = {"db": db}


@contextmanager
def _open_store(ctx: typer.Context) -> Generator[KVStore, None, None]:
    """Open the store for one command, turning library errors into exit 1."""
    settings = _get_settings_safe()
    if settings is None:
        error_console.print("[red]Error:[/red] Configuration is invalid. Run 'sqlkv config'.")
        raise typer.Exit(1)
    try:
        with KVStore.open(ctx.obj.get("db") if ctx.obj else None, settings) as store:
            yield store
    except SqlKVError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def _parse_value(raw: str, as_json: bool) -> Any:
    if not as_json:
        return raw
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise ConfigurationError("VALUE is not valid JSON", context={"reason": str(e)}) from e


def _parse_ttl(seconds: float | None) -> timedelta | None:
    if seconds is None:
        return None
    if seconds < 0:
        raise ConfigurationError("TTL must not be negative", context={"ttl": seconds})
    return timedelta(seconds=seconds)


def _json_default(obj: Any) -> Any:
    if isinstance(obj, bytes):
        return base64.b64encode(obj).decode("ascii")
    raise TypeError


def _render(value: Any) -> str:
    """Format a stored value for the terminal."""
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return repr(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return orjson.dumps(value, default=_json_default, option=orjson.OPT_INDENT_2).decode()


@app.command()
def get(
    ctx: typer.Context,
    key: Annotated[str, typer.Argument(help="Key to read")],
) -> None:
    """Print the value stored under KEY."""
    with _open_store(ctx) as store:
        value = store.get(key)
        if value is None and not store.exists(key):
            console.print("[dim](nil)[/dim]")
            return
        console.print(_render(value), markup=False, highlight=False)


@app.command("set")
def set_(
    ctx: typer.Context,
    key: Annotated[str, typer.Argument(help="Key to write")],
    value: Annotated[str, typer.Argument(help="Value (a string unless --json)")],
    as_json: Annotated[
        bool,
        typer.Option("--json", "-j", help="Parse VALUE as JSON"),
    ] = False,
    ttl: Annotated[
        Optional[float],
        typer.Option("--ttl", "-t", help="Expire after this many seconds"),
    ] = None,
) -> None:
    """Store VALUE under KEY, overwriting any existing entry."""
    with _open_store(ctx) as store:
        store.set(key, _parse_value(value, as_json), _parse_ttl(ttl))
        console.print(f"[green]OK[/green] {key}", highlight=False)


@app.command()
def delete(
    ctx: typer.Context,
    key: Annotated[str, typer.Argument(help="Key to delete")],
) -> None:
    """Delete KEY."""
    with _open_store(ctx) as store:
        removed = store.delete(key)
        console.print("1" if removed else "0")


@app.command()
def rename(
    ctx: typer.Context,
    old_key: Annotated[str, typer.Argument(help="Existing key")],
    new_key: Annotated[str, typer.Argument(help="New key (overwritten if present)")],
) -> None:
    """Rename OLD_KEY to NEW_KEY."""
    with _open_store(ctx) as store:
        if not store.rename(old_key, new_key):
            error_console.print(f"[red]Error:[/red] no such key: {old_key}", highlight=False)
            raise typer.Exit(1)
        console.print(f"[green]OK[/green] {old_key} -> {new_key}", highlight=False)


@app.command()
def expire(
    ctx: typer.Context,
    key: Annotated[str, typer.Argument(help="Key to expire")],
    seconds: Annotated[float, typer.Argument(help="Seconds from now")],
) -> None:
    """Set KEY to expire SECONDS from now."""
    with _open_store(ctx) as store:
        console.print("1" if store.set_expire(key, _parse_ttl(seconds)) else "0")


@app.command()
def ttl(
    ctx: typer.Context,
    key: Annotated[str, typer.Argument(help="Key to inspect")],
) -> None:
    """Show when KEY expires."""
    with _open_store(ctx) as store:
        expires_at = store.get_expire(key)
        if expires_at is not None:
            console.print(expires_at.isoformat())
        elif store.exists(key):
            console.print("[dim]no expiry[/dim]")
        else:
            console.print("[dim](nil)[/dim]")


@app.command()
def keys(
    ctx: typer.Context,
    pattern: Annotated[str, typer.Argument(help="SQL LIKE pattern")] = "%",
    limit: Annotated[
        Optional[int],
        typer.Option("--limit", "-l", help="Page size"),
    ] = None,
    page: Annotated[int, typer.Option("--page", "-p", help="Page number (1-based)")] = 1,
) -> None:
    """List keys matching PATTERN."""
    with _open_store(ctx) as store:
        found = store.pagination(limit, page, pattern) if limit is not None else store.keys(pattern)
        for key in found:
            console.print(key, markup=False, highlight=False)


@app.command()
def count(
    ctx: typer.Context,
    pattern: Annotated[str, typer.Argument(help="SQL LIKE pattern")] = "%",
    expired: Annotated[
        bool,
        typer.Option("--expired", "-e", help="Count only expired entries"),
    ] = False,
) -> None:
    """Count keys matching PATTERN."""
    with _open_store(ctx) as store:
        console.print(str(store.count_expired(pattern) if expired else store.count(pattern)))


@app.command()
def cleanup(ctx: typer.Context) -> None:
    """Delete all expired entries."""
    with _open_store(ctx) as store:
        console.print(f"Removed {store.cleanup()} expired entries")


@app.command()
def vacuum(ctx: typer.Context) -> None:
    """Compact the database file."""
    with _open_store(ctx) as store:
        store.vacuum()
        console.print("[green]OK[/green]")


@app.command()
def flush(
    ctx: typer.Context,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Delete ALL entries."""
    if not yes:
        typer.confirm("Delete all entries?", abort=True)
    with _open_store(ctx) as store:
        console.print(f"Removed {store.flush()} entries")


@app.command()
def backup(
    ctx: typer.Context,
    path: Annotated[Path, typer.Argument(help="Backup file to write")],
) -> None:
    """Write a full database image to PATH."""
    with _open_store(ctx) as store:
        target = store.backup(path)
        console.print(f"[green]Backup written:[/green] {target}", highlight=False)


@app.command()
def restore(
    ctx: typer.Context,
    path: Annotated[Path, typer.Argument(help="Backup file to load")],
) -> None:
    """Replace the database with the image at PATH."""
    with _open_store(ctx) as store:
        store.restore(path)
        console.print(f"[green]Restored from:[/green] {path}", highlight=False)


@app.command()
def config() -> None:
    """Show current configuration."""
    settings = _get_settings_safe()
    if settings is None:
        error_console.print("[red]Configuration is invalid.[/red]")
        error_console.print("Check the SQLKV_* environment variables and your .env file.")
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.redacted_display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(table)


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"sqlkv version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
