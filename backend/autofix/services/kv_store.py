import asyncio
import sqlite3
from pathlib import Path
from threading import Lock
from typing import Dict, Optional

from autofix.errors import PersistenceError

CURRENT_USER_KEY = "currentUser"


class KeyValueStore:
    """Asynchronous string-keyed, string-valued on-device storage."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def remove(self, key: str) -> None:
        raise NotImplementedError

    async def clear(self) -> None:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._values: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value

    async def remove(self, key: str) -> None:
        self._values.pop(key, None)

    async def clear(self) -> None:
        self._values.clear()

    def snapshot(self) -> Dict[str, str]:
        return dict(self._values)


class SqliteKeyValueStore(KeyValueStore):
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                    )
                    """
                )
                conn.commit()

    def _get(self, key: str) -> Optional[str]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def _set(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO kv (key, value, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, value),
                )
                conn.commit()

    def _remove(self, key: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                conn.commit()

    def _clear(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM kv")
                conn.commit()

    async def get(self, key: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._get, key)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to read {key!r}: {exc}") from exc

    async def set(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._set, key, value)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to write {key!r}: {exc}") from exc

    async def remove(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._remove, key)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to remove {key!r}: {exc}") from exc

    async def clear(self) -> None:
        try:
            await asyncio.to_thread(self._clear)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to clear storage: {exc}") from exc
