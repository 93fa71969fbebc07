"""Durable key-value stores for sync tokens and background-sync stats.

The core persists two kinds of records, each as one JSON document under a
namespaced key (``sync_token::steps``, ``sync_stats::<task_id>``).  Every
``put`` is atomic: the JSON-file store writes a temp file and ``os.replace``s
it over the original, and the SQLite store commits each write in a single
transaction.  A cancelled task therefore leaves either the old value or the
new one, never a partial write.

Blocking file and database I/O runs in a worker thread via
``asyncio.to_thread`` so backoff waits and background tasks never stall the
event loop.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from src.healthsync.errors import StorageError

logger = logging.getLogger("healthsync.storage")

JSONDict = dict[str, Any]


class KeyValueStore(ABC):
    """Schema-agnostic async key → JSON document store."""

    @abstractmethod
    async def get(self, key: str) -> JSONDict | None:
        """Return the stored document, or None if the key is absent.

        Raises:
            StorageError: The backing store could not be read.
        """

    @abstractmethod
    async def put(self, key: str, value: JSONDict) -> None:
        """Atomically replace the document stored at ``key``."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove ``key``; returns True if it existed."""

    @abstractmethod
    async def keys(self, prefix: str = "") -> list[str]:
        """Return all keys starting with ``prefix``, sorted."""

    async def close(self) -> None:
        """Release any held resources."""


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store used in tests and when persistence is disabled.

    Documents are deep-copied on the way in and out so callers cannot mutate
    stored state by accident.
    """

    def __init__(self) -> None:
        self._data: dict[str, JSONDict] = {}

    async def get(self, key: str) -> JSONDict | None:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def put(self, key: str, value: JSONDict) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


# ---------------------------------------------------------------------------
# JSON file
# ---------------------------------------------------------------------------


class JsonFileKeyValueStore(KeyValueStore):
    """All keys in one JSON object on disk, rewritten atomically on each change."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read_all(self) -> dict[str, JSONDict]:
        if not self.path.exists():
            return {}
        try:
            text = self.path.read_text(encoding="utf-8")
            data = json.loads(text) if text.strip() else {}
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Cannot read sync state from {self.path}", cause=exc) from exc
        if not isinstance(data, dict):
            raise StorageError(f"Sync state file {self.path} does not contain a JSON object")
        return data

    def _write_all(self, data: dict[str, JSONDict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True, default=str)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise StorageError(f"Cannot write sync state to {self.path}", cause=exc) from exc

    def _get_sync(self, key: str) -> JSONDict | None:
        with self._lock:
            return self._read_all().get(key)

    def _put_sync(self, key: str, value: JSONDict) -> None:
        with self._lock:
            data = self._read_all()
            data[key] = value
            self._write_all(data)

    def _delete_sync(self, key: str) -> bool:
        with self._lock:
            data = self._read_all()
            if key not in data:
                return False
            del data[key]
            self._write_all(data)
            return True

    def _keys_sync(self, prefix: str) -> list[str]:
        with self._lock:
            return sorted(k for k in self._read_all() if k.startswith(prefix))

    async def get(self, key: str) -> JSONDict | None:
        return await asyncio.to_thread(self._get_sync, key)

    async def put(self, key: str, value: JSONDict) -> None:
        await asyncio.to_thread(self._put_sync, key, value)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, key)

    async def keys(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self._keys_sync, prefix)


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------


class SqliteKeyValueStore(KeyValueStore):
    """Key-value table in a SQLite database (WAL mode, one commit per write)."""

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._lock = threading.Lock()
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            if self.path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS sync_state (
                    key        TEXT PRIMARY KEY,
                    value      TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
                );
            """)
            self._conn.commit()

    def _get_sync(self, key: str) -> JSONDict | None:
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT value FROM sync_state WHERE key = ?", (key,)
                ).fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot read {key}", cause=exc, key=key) from exc
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt JSON stored at {key}", cause=exc, key=key) from exc

    def _put_sync(self, key: str, value: JSONDict) -> None:
        payload = json.dumps(value, sort_keys=True, default=str)
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        """INSERT INTO sync_state (key, value, updated_at)
                           VALUES (?, ?, datetime('now'))
                           ON CONFLICT(key) DO UPDATE SET
                               value = excluded.value,
                               updated_at = excluded.updated_at""",
                        (key, payload),
                    )
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot write {key}", cause=exc, key=key) from exc

    def _delete_sync(self, key: str) -> bool:
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute("DELETE FROM sync_state WHERE key = ?", (key,))
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot delete {key}", cause=exc, key=key) from exc
            return cursor.rowcount > 0

    def _keys_sync(self, prefix: str) -> list[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._lock:
            rows = self._conn.execute(
                "SELECT key FROM sync_state WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (escaped + "%",),
            ).fetchall()
        return [r[0] for r in rows]

    async def get(self, key: str) -> JSONDict | None:
        return await asyncio.to_thread(self._get_sync, key)

    async def put(self, key: str, value: JSONDict) -> None:
        await asyncio.to_thread(self._put_sync, key, value)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, key)

    async def keys(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self._keys_sync, prefix)

    async def close(self) -> None:
        with self._lock:
            self._conn.close()


def create_store(backend: str, path: str | Path | None = None) -> KeyValueStore:
    """Build a store for the configured backend name.

    Args:
        backend: ``memory``, ``json`` or ``sqlite``.
        path:    File path for the durable backends.

    Raises:
        ValueError: Unknown backend, or a durable backend without a path.
    """
    name = backend.strip().lower()
    if name == "memory":
        return InMemoryKeyValueStore()
    if path is None:
        raise ValueError(f"Storage backend {backend!r} requires a path")
    if name == "json":
        return JsonFileKeyValueStore(path)
    if name == "sqlite":
        return SqliteKeyValueStore(path)
    raise ValueError(f"Unknown storage backend {backend!r}; expected memory, json or sqlite")
