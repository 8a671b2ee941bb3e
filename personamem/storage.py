"""SQLite document store with optimistic concurrency.

Each document is a JSON body stored under (collection, id) together with
a monotonically increasing ``version``. ``save`` is a compare-and-swap:
the write only lands when the stored version still equals the version
the caller read, otherwise PersistenceConflict is raised and the caller
reloads and retries.

All sqlite3 calls run in a worker thread via ``asyncio.to_thread``.
"""

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog

from .exceptions import DatabaseError, PersistenceConflict

logger = structlog.get_logger("personamem.storage")

SCHEMA_VERSION = 1

MEMORY_COLLECTION = "user_memory"
CONVERSATION_COLLECTION = "conversations"


class DocumentStore:
    """Versioned JSON documents in a single SQLite table."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        # sqlite3 connections are shared across worker threads
        self._write_lock = threading.Lock()

    async def initialize(self) -> None:
        """Open the database and create the schema."""
        await asyncio.to_thread(self._initialize_sync)

    def _initialize_sync(self) -> None:
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._create_schema()
        logger.info("database_initialized", path=str(self.db_path))

    def _create_schema(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                body TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (collection, id)
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            )
        """)
        cursor.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,)
        )
        self._conn.commit()

    def _require_conn(self, operation: str) -> sqlite3.Connection:
        if self._conn is None:
            raise DatabaseError(
                "document store is not initialized", operation=operation
            )
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await asyncio.to_thread(self._conn.close)
            self._conn = None

    # Reads
    async def get(self, collection: str, doc_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
        """Return ``(body, version)`` or None when the document is missing."""
        return await asyncio.to_thread(self._get_sync, collection, doc_id)

    def _get_sync(self, collection: str, doc_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
        conn = self._require_conn("get")
        row = conn.execute(
            "SELECT body, version FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id)
        ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["body"]), row["version"]
        except json.JSONDecodeError as e:
            raise DatabaseError(
                f"corrupt document body: {e}",
                operation="get",
                collection=collection,
                doc_id=doc_id,
            ) from e

    async def list_ids(self, collection: str) -> List[str]:
        """Ids of every document in ``collection``."""
        return await asyncio.to_thread(self._list_ids_sync, collection)

    def _list_ids_sync(self, collection: str) -> List[str]:
        conn = self._require_conn("list_ids")
        rows = conn.execute(
            "SELECT id FROM documents WHERE collection = ? ORDER BY id",
            (collection,)
        ).fetchall()
        return [row["id"] for row in rows]

    async def find(self, collection: str, **equals: Any) -> List[Tuple[Dict[str, Any], int]]:
        """Documents whose top-level fields equal the given values."""
        return await asyncio.to_thread(self._find_sync, collection, equals)

    def _find_sync(
        self, collection: str, equals: Dict[str, Any],
    ) -> List[Tuple[Dict[str, Any], int]]:
        conn = self._require_conn("find")
        clauses = []
        params: List[Any] = [collection]
        for field, value in equals.items():
            if not field.isidentifier():
                raise DatabaseError(
                    f"invalid field name: {field!r}", operation="find", collection=collection
                )
            clauses.append(f"json_extract(body, '$.{field}') = ?")
            params.append(value)
        where = "".join(f" AND {c}" for c in clauses)
        rows = conn.execute(
            f"SELECT body, version FROM documents WHERE collection = ?{where}",
            params
        ).fetchall()
        return [(json.loads(row["body"]), row["version"]) for row in rows]

    # Writes
    async def save(
        self,
        collection: str,
        doc_id: str,
        body: Dict[str, Any],
        expected_version: int,
    ) -> int:
        """Upsert ``body`` if the stored version equals ``expected_version``.

        ``expected_version`` 0 means the document must not exist yet.

        Returns:
            The new version.

        Raises:
            PersistenceConflict: Another writer got there first.
        """
        return await asyncio.to_thread(
            self._save_sync, collection, doc_id, body, expected_version
        )

    def _save_sync(
        self,
        collection: str,
        doc_id: str,
        body: Dict[str, Any],
        expected_version: int,
    ) -> int:
        conn = self._require_conn("save")
        payload = json.dumps(body, default=_json_default)
        new_version = expected_version + 1
        now = datetime.now().isoformat()

        with self._write_lock:
            try:
                if expected_version == 0:
                    cursor = conn.execute(
                        "INSERT OR IGNORE INTO documents "
                        "(collection, id, version, body, updated_at) VALUES (?, ?, ?, ?, ?)",
                        (collection, doc_id, new_version, payload, now)
                    )
                else:
                    cursor = conn.execute(
                        "UPDATE documents SET version = ?, body = ?, updated_at = ? "
                        "WHERE collection = ? AND id = ? AND version = ?",
                        (new_version, payload, now, collection, doc_id, expected_version)
                    )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise DatabaseError(
                    str(e), operation="save", collection=collection, doc_id=doc_id
                ) from e

        if cursor.rowcount != 1:
            logger.debug("write_conflict", collection=collection, doc_id=doc_id,
                         expected_version=expected_version)
            raise PersistenceConflict(
                collection=collection, doc_id=doc_id, expected_version=expected_version
            )
        return new_version

    async def update_field(
        self,
        collection: str,
        doc_id: str,
        field: str,
        value: Any,
    ) -> bool:
        """Atomically set one top-level field, bumping the version.

        Returns:
            False when the document does not exist.
        """
        return await asyncio.to_thread(self._update_field_sync, collection, doc_id, field, value)

    def _update_field_sync(self, collection: str, doc_id: str, field: str, value: Any) -> bool:
        conn = self._require_conn("update_field")
        if not field.isidentifier():
            raise DatabaseError(
                f"invalid field name: {field!r}",
                operation="update_field",
                collection=collection,
            )
        with self._write_lock:
            try:
                cursor = conn.execute(
                    f"UPDATE documents SET body = json_set(body, '$.{field}', json(?)), "
                    "version = version + 1, updated_at = ? "
                    "WHERE collection = ? AND id = ?",
                    (json.dumps(value, default=_json_default), datetime.now().isoformat(),
                     collection, doc_id)
                )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise DatabaseError(
                    str(e), operation="update_field", collection=collection, doc_id=doc_id
                ) from e
        return cursor.rowcount == 1

    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document. Returns whether one was removed."""
        return await asyncio.to_thread(self._delete_sync, collection, doc_id)

    def _delete_sync(self, collection: str, doc_id: str) -> bool:
        conn = self._require_conn("delete")
        with self._write_lock:
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id)
            )
            conn.commit()
        return cursor.rowcount == 1


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


# Global store instance
_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """Get or create the global document store (not yet initialized)."""
    global _store
    if _store is None:
        from .config import get_config
        _store = DocumentStore(get_config().database_path)
    return _store
