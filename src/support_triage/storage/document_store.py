"""Key-value document storage: protocol plus the SQLite backend."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from support_triage.core.exceptions import StorageError

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    """Collections of JSON documents addressed by key."""

    def get(self, collection: str, key: str) -> dict[str, Any] | None: ...

    def set(
        self, collection: str, key: str, document: dict[str, Any], *, merge: bool = False
    ) -> None: ...

    def list(self, collection: str) -> list[tuple[str, dict[str, Any]]]: ...

    def close(self) -> None: ...


class SQLiteDocumentStore:
    """Stores documents as JSON rows in a single SQLite table.

    Table:
    - documents: (collection, key) primary key, JSON body, updated_at
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        # One connection is shared by FastAPI's worker threads
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> SQLiteDocumentStore:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                key TEXT NOT NULL,
                body TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (collection, key)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection);
        """)

    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        """Fetch one document, or None if absent.

        Raises:
            StorageError: On SQLite errors or a corrupt JSON body.
        """
        try:
            with self._lock:
                row = self.conn.execute(
                    "SELECT body FROM documents WHERE collection = ? AND key = ?",
                    (collection, key),
                ).fetchone()
            return json.loads(row["body"]) if row else None
        except (sqlite3.Error, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read {collection}/{key}: {e}") from e

    def set(
        self, collection: str, key: str, document: dict[str, Any], *, merge: bool = False
    ) -> None:
        """Upsert a document; with ``merge`` top-level fields are merged into the old one.

        Raises:
            StorageError: On SQLite errors or a non-serializable document.
        """
        now = datetime.now(UTC).isoformat()
        try:
            with self._lock:
                if merge:
                    row = self.conn.execute(
                        "SELECT body FROM documents WHERE collection = ? AND key = ?",
                        (collection, key),
                    ).fetchone()
                    if row:
                        document = {**json.loads(row["body"]), **document}
                self.conn.execute(
                    """INSERT INTO documents (collection, key, body, updated_at)
                       VALUES (?, ?, ?, ?)
                       ON CONFLICT(collection, key) DO UPDATE SET
                           body = excluded.body,
                           updated_at = excluded.updated_at""",
                    (collection, key, json.dumps(document), now),
                )
                self.conn.commit()
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write {collection}/{key}: {e}") from e

    def list(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        """All (key, document) pairs of a collection, ordered by key.

        Raises:
            StorageError: On SQLite errors.
        """
        try:
            with self._lock:
                rows = self.conn.execute(
                    "SELECT key, body FROM documents WHERE collection = ? ORDER BY key",
                    (collection,),
                ).fetchall()
            return [(row["key"], json.loads(row["body"])) for row in rows]
        except (sqlite3.Error, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to list {collection}: {e}") from e

    def count(self, collection: str) -> int:
        """Number of documents in a collection."""
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) AS cnt FROM documents WHERE collection = ?", (collection,)
            ).fetchone()
        return int(row["cnt"])
