"""Key-value persistence backends for the history cache."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


_SCHEMA_VERSION = 1


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimal string key-value store used to persist caches."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...


class MemoryKeyValueStore:
    """Process-local store, used when persistence is not wanted."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self._data if key.startswith(prefix))


class SQLiteKeyValueStore:
    """Store values in a single SQLite table next to a schema version."""

    def __init__(self, path: Path | str) -> None:
        """Initialise store persisting to *path*."""
        self._path = Path(path).expanduser()

    # ------------------------------------------------------------------
    @property
    def path(self) -> Path:
        """Return the SQLite database path."""
        return self._path

    # ------------------------------------------------------------------
    def get(self, key: str) -> str | None:
        try:
            with closing(self._connect()) as conn:
                self._ensure_schema(conn)
                row = conn.execute(
                    "SELECT value FROM kv WHERE key = ?",
                    (key,),
                ).fetchone()
        except sqlite3.Error:  # pragma: no cover - defensive logging
            logger.exception("Failed to read %s from %s", key, self._path)
            return None
        if row is None:
            return None
        value = row["value"]
        return value if isinstance(value, str) else None

    # ------------------------------------------------------------------
    def set(self, key: str, value: str) -> None:
        try:
            with closing(self._connect()) as conn:
                self._ensure_schema(conn)
                with conn:
                    conn.execute(
                        """
                        INSERT INTO kv (key, value)
                        VALUES (?, ?)
                        ON CONFLICT(key) DO UPDATE SET value = excluded.value
                        """,
                        (key, value),
                    )
        except sqlite3.Error:
            logger.exception("Failed to persist %s to %s", key, self._path)
            raise

    # ------------------------------------------------------------------
    def delete(self, key: str) -> None:
        try:
            with closing(self._connect()) as conn:
                self._ensure_schema(conn)
                with conn:
                    conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        except sqlite3.Error:
            logger.exception("Failed to delete %s from %s", key, self._path)
            raise

    # ------------------------------------------------------------------
    def keys(self, prefix: str = "") -> list[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        try:
            with closing(self._connect()) as conn:
                self._ensure_schema(conn)
                rows = conn.execute(
                    "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                    (f"{escaped}%",),
                ).fetchall()
        except sqlite3.Error:  # pragma: no cover - defensive logging
            logger.exception("Failed to list keys in %s", self._path)
            return []
        return [row["key"] for row in rows]

    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        path = self._path
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path))
        conn.row_factory = sqlite3.Row
        return conn

    # ------------------------------------------------------------------
    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        row = conn.execute(
            "SELECT value FROM metadata WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO metadata (key, value) VALUES ('schema_version', ?)",
                (str(_SCHEMA_VERSION),),
            )
            conn.commit()
        elif row["value"] != str(_SCHEMA_VERSION):
            raise sqlite3.DatabaseError(
                f"Unsupported state schema version: {row['value']!r}"
            )


__all__ = ["KeyValueStore", "MemoryKeyValueStore", "SQLiteKeyValueStore"]
