"""Persistent key/value backends.

Every piece of shared state (state snapshot, error contexts, locks, cache
entries, event buffers) is stored through a :class:`KeyValueBackend`.
The lock manager depends on two atomic operations,
:meth:`KeyValueBackend.create_if_absent` and
:meth:`KeyValueBackend.delete_if_equals`; event ids come from the atomic
:meth:`KeyValueBackend.increment`.
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any, Protocol

_logger = logging.getLogger(__name__)


class KeyValueBackend(Protocol):
    """Structural interface for shared persistence.

    Values must be JSON-compatible. ``ttl`` is in seconds; ``None`` (or a
    non-positive value) keeps the entry until it is deleted.
    """

    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ...

    def delete(self, key: str) -> bool:
        ...

    def create_if_absent(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """Insert *value* only if *key* holds no live entry.

        Returns ``True`` when this call created the entry.
        """
        ...

    def delete_if_equals(self, key: str, expected: Any) -> bool:
        """Delete *key* only while it still holds *expected*.

        Returns ``True`` when this call removed the entry.
        """
        ...

    def increment(self, key: str, delta: int = 1) -> int:
        """Atomically add *delta* to the integer at *key* (missing counts as 0)."""
        ...

    def keys(self, prefix: str = "") -> list[str]:
        ...


def _expiry(now: float, ttl: float | None) -> float | None:
    if ttl is None or ttl <= 0:
        return None
    return now + ttl


class MemoryBackend:
    """Process-local backend.

    Values are stored JSON-encoded so callers never share mutable objects
    with the backend, matching what a real store would hand back.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> tuple[str, float | None] | None:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at = item[1]
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return item

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            item = self._live(key)
        if item is None:
            return default
        return json.loads(item[0])

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        encoded = json.dumps(value)
        with self._lock:
            self._data[key] = (encoded, _expiry(self._clock(), ttl))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def create_if_absent(self, key: str, value: Any, ttl: float | None = None) -> bool:
        encoded = json.dumps(value)
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (encoded, _expiry(self._clock(), ttl))
            return True

    def delete_if_equals(self, key: str, expected: Any) -> bool:
        with self._lock:
            item = self._live(key)
            if item is None or json.loads(item[0]) != expected:
                return False
            del self._data[key]
            return True

    def increment(self, key: str, delta: int = 1) -> int:
        with self._lock:
            item = self._live(key)
            value = (int(json.loads(item[0])) if item is not None else 0) + delta
            self._data[key] = (json.dumps(value), item[1] if item is not None else None)
            return value

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None)


class SqliteBackend:
    """SQLite backend shared by every process pointing at the same file.

    ``create_if_absent`` relies on the primary-key constraint:
    ``INSERT OR IGNORE`` inserts at most one row per key no matter how
    many connections race for it.
    """

    def __init__(self, path: str | Path, *, clock: Callable[[], float] = time.time, timeout: float = 5.0) -> None:
        self._path = str(path)
        self._clock = clock
        self._timeout = timeout
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL
                )
                """
            )

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=self._timeout, isolation_level=None)
        try:
            yield conn
        finally:
            conn.close()

    def _purge_expired(self, conn: sqlite3.Connection, key: str) -> None:
        conn.execute(
            "DELETE FROM kv WHERE key = ? AND expires_at IS NOT NULL AND expires_at <= ?",
            (key, self._clock()),
        )

    def get(self, key: str, default: Any = None) -> Any:
        with self._connect() as conn:
            row = conn.execute("SELECT value, expires_at FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        value, expires_at = row
        if expires_at is not None and self._clock() >= expires_at:
            return default
        return json.loads(value)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        encoded = json.dumps(value)
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
                (key, encoded, _expiry(self._clock(), ttl)),
            )

    def delete(self, key: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def create_if_absent(self, key: str, value: Any, ttl: float | None = None) -> bool:
        encoded = json.dumps(value)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                self._purge_expired(conn, key)
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, encoded, _expiry(self._clock(), ttl)),
                )
                created = cursor.rowcount == 1
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        _logger.debug("create_if_absent %s -> %s", key, created)
        return created

    def delete_if_equals(self, key: str, expected: Any) -> bool:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT value FROM kv WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
                    (key, self._clock()),
                ).fetchone()
                deleted = row is not None and json.loads(row[0]) == expected
                if deleted:
                    conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        return deleted

    def increment(self, key: str, delta: int = 1) -> int:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                self._purge_expired(conn, key)
                row = conn.execute("SELECT value, expires_at FROM kv WHERE key = ?", (key,)).fetchone()
                value = (int(json.loads(row[0])) if row is not None else 0) + delta
                conn.execute(
                    "INSERT OR REPLACE INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, json.dumps(value), row[1] if row is not None else None),
                )
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        return value

    def keys(self, prefix: str = "") -> list[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' AND (expires_at IS NULL OR expires_at > ?) ORDER BY key",
                (f"{escaped}%", self._clock()),
            ).fetchall()
        return [row[0] for row in rows]
