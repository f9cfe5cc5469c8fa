"""
Schema and statement set for the entries table.

The store only ever talks to the database through these statements. Each
entry of STATEMENTS is prepared once per store and reused for every call.
"""

from __future__ import annotations

TABLE = "entries"

CREATE_TABLE = f"""
CREATE TABLE IF NOT EXISTS {TABLE} (
    key        TEXT PRIMARY KEY,
    value      BLOB NOT NULL,
    expires_at INTEGER
)
"""

CREATE_INDEX = f"""
CREATE INDEX IF NOT EXISTS idx_{TABLE}_expires_at ON {TABLE}(expires_at)
"""

# Ordering by rowid keeps insertion order; upsert and rename keep the rowid.
STATEMENTS: dict[str, str] = {
    "get": f"SELECT key, value, expires_at FROM {TABLE} WHERE key = ? LIMIT 1",
    "set": (
        f"INSERT INTO {TABLE} (key, value, expires_at) VALUES (?, ?, ?) "
        "ON CONFLICT(key) DO UPDATE SET "
        "value = excluded.value, expires_at = excluded.expires_at"
    ),
    "exists": f"SELECT EXISTS(SELECT 1 FROM {TABLE} WHERE key = ?) AS present",
    "delete": f"DELETE FROM {TABLE} WHERE key = ?",
    "rename": f"UPDATE {TABLE} SET key = ? WHERE key = ?",
    "get_expire": f"SELECT expires_at FROM {TABLE} WHERE key = ?",
    "set_expire": f"UPDATE {TABLE} SET expires_at = ? WHERE key = ?",
    "keys": f"SELECT key FROM {TABLE} WHERE key LIKE ? ORDER BY rowid",
    "pagination": (
        f"SELECT key FROM {TABLE} WHERE key LIKE ? ORDER BY rowid LIMIT ? OFFSET ?"
    ),
    "count": f"SELECT COUNT(*) AS count FROM {TABLE} WHERE key LIKE ?",
    "count_expired": (
        f"SELECT COUNT(*) AS count FROM {TABLE} "
        "WHERE key LIKE ? AND expires_at IS NOT NULL AND expires_at <= ?"
    ),
    "cleanup": (
        f"DELETE FROM {TABLE} WHERE expires_at IS NOT NULL AND expires_at <= ?"
    ),
    "vacuum": "VACUUM",
    "flush": f"DELETE FROM {TABLE}",
}


def pragma_script(
    journal_mode: str = "WAL",
    synchronous: str = "NORMAL",
    busy_timeout_ms: int = 5000,
) -> str:
    """Build the PRAGMA block run when a connection is opened.

    Values come from validated settings (Literal choices and a
    non-negative int), so they are safe to interpolate.
    """
    return (
        f"PRAGMA journal_mode = {journal_mode};\n"
        f"PRAGMA synchronous = {synchronous};\n"
        f"PRAGMA busy_timeout = {int(busy_timeout_ms)};\n"
    )


def schema_script() -> str:
    """DDL creating the entries table and its expiration index."""
    return f"{CREATE_TABLE.strip()};\n{CREATE_INDEX.strip()};\n"
