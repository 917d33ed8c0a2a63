import json
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from autofix.models import utc_now_iso
from autofix.services.filters import Filters, row_matches

ID_PREFIXES = {
    "profiles": "usr",
    "requests": "req",
    "messages": "msg",
    "notifications": "ntf",
}

TIMESTAMP_COLUMNS = {
    "profiles": "created_at",
    "requests": "created_at",
    "messages": "timestamp",
    "notifications": "created_at",
}


class TableStoreError(ValueError):
    """Base class for user-visible table errors."""


class TableStoreValidationError(TableStoreError):
    pass


class TableStoreConflictError(TableStoreError):
    pass


@dataclass
class TableStore:
    """JSON-document tables for the remote collections, kept in sqlite."""

    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS documents (
                        collection TEXT NOT NULL,
                        id TEXT NOT NULL,
                        data_json TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY (collection, id)
                    )
                    """
                )
                conn.commit()

    def _assert_collection(self, collection: str) -> None:
        if collection not in ID_PREFIXES:
            raise TableStoreValidationError(
                f"Unknown collection {collection!r}. Allowed: {', '.join(sorted(ID_PREFIXES))}"
            )

    def _load_rows(self, conn: sqlite3.Connection, collection: str) -> List[Dict[str, Any]]:
        rows = conn.execute(
            "SELECT data_json FROM documents WHERE collection = ? ORDER BY rowid",
            (collection,),
        ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def select(
        self,
        collection: str,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        self._assert_collection(collection)
        if limit is not None and limit < 0:
            raise TableStoreValidationError("limit must be >= 0")
        with self._lock:
            with self._connect() as conn:
                rows = [row for row in self._load_rows(conn, collection) if row_matches(row, filters)]
        if order_by:
            rows.sort(key=lambda row: _sort_key(row.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    def insert(self, collection: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        self._assert_collection(collection)
        row = dict(record)
        if not row.get("id"):
            row["id"] = f"{ID_PREFIXES[collection]}_{uuid4().hex[:10]}"
        row.setdefault(TIMESTAMP_COLUMNS[collection], utc_now_iso())
        with self._lock:
            with self._connect() as conn:
                existing = conn.execute(
                    "SELECT 1 FROM documents WHERE collection = ? AND id = ?",
                    (collection, str(row["id"])),
                ).fetchone()
                if existing:
                    raise TableStoreConflictError(f"{collection} row {row['id']} already exists")
                conn.execute(
                    "INSERT INTO documents (collection, id, data_json, updated_at) VALUES (?, ?, ?, ?)",
                    (collection, str(row["id"]), json.dumps(row), utc_now_iso()),
                )
                conn.commit()
        return row

    def update(
        self,
        collection: str,
        filters: Filters,
        fields: Mapping[str, Any],
    ) -> List[Tuple[Dict[str, Any], Dict[str, Any]]]:
        """Patch every matching row; returns (old, new) pairs."""
        self._assert_collection(collection)
        if not filters:
            raise TableStoreValidationError("Refusing to update without a filter")
        if "id" in fields:
            raise TableStoreValidationError("Row id cannot be changed")
        changed: List[Tuple[Dict[str, Any], Dict[str, Any]]] = []
        with self._lock:
            with self._connect() as conn:
                for old in self._load_rows(conn, collection):
                    if not row_matches(old, filters):
                        continue
                    new = {**old, **fields}
                    conn.execute(
                        "UPDATE documents SET data_json = ?, updated_at = ? WHERE collection = ? AND id = ?",
                        (json.dumps(new), utc_now_iso(), collection, str(old["id"])),
                    )
                    changed.append((old, new))
                conn.commit()
        return changed


def _sort_key(value: Any) -> Tuple[bool, bool, Any]:
    if value is None:
        return (True, False, 0)
    if isinstance(value, (int, float)):
        return (False, False, value)
    return (False, True, str(value))
