"""Durable key-value storage shared by the cache and the mutation queue."""

import base64
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any

from .errors import StoreError

logger = logging.getLogger(__name__)

BYTES_TAG = "__bytes__"


def _encode_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {BYTES_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Object of type {type(value).__name__} cannot be stored")


def _decode_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1 and BYTES_TAG in obj:
        return base64.b64decode(obj[BYTES_TAG])
    return obj


def encode_record(data: Any) -> bytes:
    """Serialize a record for the store.

    Values must be JSON types or bytes. Bytes, at any depth, are stored as
    base64 under a tag and come back as bytes from ``decode_record``.

    Raises:
        TypeError: The record holds a value that cannot be stored.
    """
    return json.dumps(data, default=_encode_default).encode("utf-8")


def decode_record(raw: bytes) -> Any:
    """Inverse of ``encode_record``. Raises ValueError on malformed input."""
    return json.loads(raw, object_hook=_decode_hook)


KV_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value BLOB NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class DurableStore(ABC):
    """Minimal persistent key-value interface."""

    @abstractmethod
    def get(self, key: str) -> bytes | None:
        """Return the value stored under key, or None."""
        pass

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        """Store value under key, overwriting any previous value."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key. Missing keys are ignored."""
        pass

    @abstractmethod
    def list_keys_with_prefix(self, prefix: str) -> list[str]:
        """List keys starting with prefix, in key order."""
        pass

    def close(self) -> None:
        """Release underlying resources."""
        pass


class MemoryStore(DurableStore):
    """Process-local store. Nothing survives a restart."""

    def __init__(self):
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list_keys_with_prefix(self, prefix: str) -> list[str]:
        return sorted(k for k in list(self._data) if k.startswith(prefix))


class SQLiteStore(DurableStore):
    """SQLite-backed store. Every write is committed before returning."""

    def __init__(self, db_path: str | Path):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self._in_memory = str(db_path) == ":memory:"
        self.db_path = Path(db_path) if self._in_memory else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Open the database connection and create the schema."""
        if not self._in_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.executescript(KV_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open store at {self.db_path}: {e}") from e

        logger.info(f"SQLiteStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def get(self, key: str) -> bytes | None:
        conn = self._ensure_connected()
        try:
            with self._lock:
                row = conn.execute(
                    "SELECT value FROM kv_store WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read '{key}': {e}") from e
        return bytes(row[0]) if row else None

    def set(self, key: str, value: bytes) -> None:
        conn = self._ensure_connected()
        try:
            with self._lock:
                conn.execute(
                    """
                    INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, sqlite3.Binary(value), datetime.now().isoformat()),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to write '{key}': {e}") from e

    def delete(self, key: str) -> None:
        conn = self._ensure_connected()
        try:
            with self._lock:
                conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete '{key}': {e}") from e

    def list_keys_with_prefix(self, prefix: str) -> list[str]:
        conn = self._ensure_connected()
        # LIKE treats % and _ as wildcards, so filter on substr instead
        try:
            with self._lock:
                rows = conn.execute(
                    "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                    (len(prefix), prefix),
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to list keys for '{prefix}': {e}") from e
        return [row[0] for row in rows]
