"""
Persistent key/value storage for pool state.

Keys are namespaced strings such as ``pool:mixing:<escrow address>``;
values are JSON strings. The pool and scheduler write through to the
store so in-flight chunks survive a restart.
"""

from __future__ import annotations

import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path

from loguru import logger


class KeyValueStore(ABC):
    """Abstract persistent key/value store."""

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        """Insert or overwrite a value"""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Get a value, or None if the key is absent"""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete a key (no-op if absent)"""

    @abstractmethod
    def items(self, prefix: str = "") -> Iterator[tuple[str, str]]:
        """Iterate over (key, value) pairs whose key starts with prefix"""

    @abstractmethod
    def close(self) -> None:
        """Flush and release the store"""


class MemoryKeyValueStore(KeyValueStore):
    """Volatile store, used in tests and for throwaway regtest runs."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self.closed = False

    def put(self, key: str, value: str) -> None:
        self._check_open()
        self._data[key] = value

    def get(self, key: str) -> str | None:
        self._check_open()
        return self._data.get(key)

    def delete(self, key: str) -> None:
        self._check_open()
        self._data.pop(key, None)

    def items(self, prefix: str = "") -> Iterator[tuple[str, str]]:
        self._check_open()
        # Snapshot so callers may mutate while iterating
        return iter([(k, v) for k, v in sorted(self._data.items()) if k.startswith(prefix)])

    def close(self) -> None:
        self.closed = True

    def _check_open(self) -> None:
        if self.closed:
            raise RuntimeError("store is closed")


class SqliteKeyValueStore(KeyValueStore):
    """Key/value store backed by a single SQLite table."""

    def __init__(self, path: str | Path):
        self.path = str(path)
        self._conn: sqlite3.Connection | None = sqlite3.connect(self.path)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        self._conn.commit()
        logger.debug(f"Opened database at {self.path}")

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("store is closed")
        return self._conn

    def put(self, key: str, value: str) -> None:
        conn = self._get_connection()
        conn.execute(
            "INSERT INTO kv (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
        conn.commit()

    def get(self, key: str) -> str | None:
        row = self._get_connection().execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def delete(self, key: str) -> None:
        conn = self._get_connection()
        conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        conn.commit()

    def items(self, prefix: str = "") -> Iterator[tuple[str, str]]:
        # LIKE is case-insensitive in SQLite, compare the prefix exactly instead
        rows = (
            self._get_connection()
            .execute(
                "SELECT key, value FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            )
            .fetchall()
        )
        return iter([(k, v) for k, v in rows])

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug(f"Closed database at {self.path}")
