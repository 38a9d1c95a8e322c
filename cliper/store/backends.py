"""
Cliper Storage Backends
-----------------------
Byte-level persistence for the record store.

Each logical collection holds ordered, individually addressable records:
one row per ``(collection, record_id)`` with a ``position`` column that
keeps the collection's order. Whole-collection replacement and whole-store
replacement (``replace_all``) each run inside a single transaction so
readers never observe a half-written state.
"""

import sqlite3
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from cliper.core.errors import StorageError

logger = logging.getLogger("Cliper.Backend")

PROBE_COLLECTION = "_boot_check"
PROBE_KEY = "cliper_boot_check"

CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS records (
    collection  TEXT NOT NULL,
    record_id   TEXT NOT NULL,
    position    INTEGER NOT NULL,
    body        TEXT NOT NULL,
    PRIMARY KEY (collection, record_id)
);
"""

CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_records_order ON records(collection, position);",
]


class SQLiteBackend:
    """Durable backend on a single SQLite file (WAL journal)."""

    durable = True

    def __init__(self, db_path):
        self.db_path = Path(db_path) if not isinstance(db_path, Path) else db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._initialize()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
        return self._conn

    def _initialize(self) -> None:
        try:
            conn = self._get_conn()
            conn.execute(CREATE_TABLE)
            for idx in CREATE_INDEXES:
                conn.execute(idx)
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot initialize SQLite store at {self.db_path}: {e}") from e
        logger.info("SQLite record store initialized at %s", self.db_path)

    def load(self, collection: str) -> List[Tuple[str, str]]:
        with self._lock:
            try:
                rows = self._get_conn().execute(
                    "SELECT record_id, body FROM records WHERE collection = ? ORDER BY position ASC",
                    (collection,),
                ).fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to read collection {collection}: {e}") from e
        return [(row[0], row[1]) for row in rows]

    def replace(self, collection: str, items: Iterable[Tuple[str, str]]) -> None:
        rows = [(collection, rid, pos, body) for pos, (rid, body) in enumerate(items)]
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    conn.execute("DELETE FROM records WHERE collection = ?", (collection,))
                    conn.executemany(
                        "INSERT INTO records (collection, record_id, position, body) VALUES (?, ?, ?, ?)",
                        rows,
                    )
            except sqlite3.Error as e:
                raise StorageError(f"Failed to replace collection {collection}: {e}") from e

    def replace_all(self, collections: Dict[str, Iterable[Tuple[str, str]]]) -> None:
        """Swap the whole store for ``collections`` in one transaction."""
        rows = [
            (name, rid, pos, body)
            for name, items in collections.items()
            for pos, (rid, body) in enumerate(items)
        ]
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    conn.execute("DELETE FROM records")
                    conn.executemany(
                        "INSERT INTO records (collection, record_id, position, body) VALUES (?, ?, ?, ?)",
                        rows,
                    )
            except sqlite3.Error as e:
                raise StorageError(f"Failed to replace store contents: {e}") from e

    def upsert(self, collection: str, record_id: str, body: str, *, front: bool = False) -> None:
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    existing = conn.execute(
                        "SELECT 1 FROM records WHERE collection = ? AND record_id = ?",
                        (collection, record_id),
                    ).fetchone()
                    if existing:
                        conn.execute(
                            "UPDATE records SET body = ? WHERE collection = ? AND record_id = ?",
                            (body, collection, record_id),
                        )
                        return
                    if front:
                        row = conn.execute(
                            "SELECT COALESCE(MIN(position), 0) - 1 FROM records WHERE collection = ?",
                            (collection,),
                        ).fetchone()
                    else:
                        row = conn.execute(
                            "SELECT COALESCE(MAX(position), -1) + 1 FROM records WHERE collection = ?",
                            (collection,),
                        ).fetchone()
                    conn.execute(
                        "INSERT INTO records (collection, record_id, position, body) VALUES (?, ?, ?, ?)",
                        (collection, record_id, int(row[0]), body),
                    )
            except sqlite3.Error as e:
                raise StorageError(f"Failed to upsert {collection}/{record_id}: {e}") from e

    def delete(self, collection: str, record_id: str) -> bool:
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    cursor = conn.execute(
                        "DELETE FROM records WHERE collection = ? AND record_id = ?",
                        (collection, record_id),
                    )
            except sqlite3.Error as e:
                raise StorageError(f"Failed to delete {collection}/{record_id}: {e}") from e
        return cursor.rowcount > 0

    def probe(self) -> None:
        """Write then delete a sentinel row; raises StorageError when the medium is unusable."""
        self.upsert(PROBE_COLLECTION, PROBE_KEY, "ok")
        self.delete(PROBE_COLLECTION, PROBE_KEY)

    def clear(self) -> None:
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    conn.execute("DELETE FROM records")
            except sqlite3.Error as e:
                raise StorageError(f"Failed to clear store: {e}") from e

    def usage_bytes(self) -> int:
        with self._lock:
            try:
                row = self._get_conn().execute(
                    "SELECT COALESCE(SUM(LENGTH(record_id) + LENGTH(body)), 0) FROM records"
                ).fetchone()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to measure usage: {e}") from e
        return int(row[0])

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class InMemoryBackend:
    """Non-durable backend; also the fallback when the durable medium is unreachable."""

    durable = False

    def __init__(self):
        self._data: Dict[str, List[Tuple[str, str]]] = {}
        self._lock = threading.Lock()

    def load(self, collection: str) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._data.get(collection, []))

    def replace(self, collection: str, items: Iterable[Tuple[str, str]]) -> None:
        rows = list(items)
        with self._lock:
            self._data[collection] = rows

    def replace_all(self, collections: Dict[str, Iterable[Tuple[str, str]]]) -> None:
        data = {name: list(items) for name, items in collections.items()}
        with self._lock:
            self._data = data

    def upsert(self, collection: str, record_id: str, body: str, *, front: bool = False) -> None:
        with self._lock:
            rows = self._data.setdefault(collection, [])
            for idx, (rid, _) in enumerate(rows):
                if rid == record_id:
                    rows[idx] = (record_id, body)
                    return
            if front:
                rows.insert(0, (record_id, body))
            else:
                rows.append((record_id, body))

    def delete(self, collection: str, record_id: str) -> bool:
        with self._lock:
            rows = self._data.get(collection, [])
            kept = [(rid, body) for rid, body in rows if rid != record_id]
            self._data[collection] = kept
            return len(kept) != len(rows)

    def probe(self) -> None:
        self.upsert(PROBE_COLLECTION, PROBE_KEY, "ok")
        self.delete(PROBE_COLLECTION, PROBE_KEY)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def usage_bytes(self) -> int:
        with self._lock:
            return sum(
                len(rid) + len(body)
                for rows in self._data.values()
                for rid, body in rows
            )

    def close(self) -> None:
        return None
