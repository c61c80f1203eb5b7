"""
SQLite-backed document store.

One database file holds every collection. Documents are stored as JSON
with their source timestamp and revision in dedicated columns so that
conditional writes are a single indexed statement inside one transaction.

Invariants:
    - A connection is opened and closed per operation
    - Conditional writes run inside BEGIN IMMEDIATE (single writer)
    - revision increases by one on every write to a document
    - Tombstones keep the greatest delete timestamp seen per id

How to change safely:
    - Schema migrations must be backward compatible
    - Keep every read-then-write inside one IMMEDIATE transaction

Table schema:
    documents:
        - collection TEXT
        - doc_id TEXT
        - source_ts INTEGER (nullable)
        - revision INTEGER
        - body_json TEXT
        - written_at INTEGER (Unix ms)
        - PRIMARY KEY (collection, doc_id)

    tombstones:
        - collection TEXT
        - doc_id TEXT
        - source_ts INTEGER (nullable)
        - deleted_at INTEGER (Unix ms)
        - PRIMARY KEY (collection, doc_id)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .base import (
    ID_KEY,
    REVISION_KEY,
    StoreUnavailableError,
    document_source_timestamp,
    is_newer,
    strip_reserved,
)

logger = logging.getLogger(__name__)


class SqliteDocumentStore:
    """Document store on a single SQLite file.

    Thread safety:
        Each operation uses its own connection. SQLite serializes writers;
        WAL mode lets readers proceed during writes.

    Example:
        >>> store = SqliteDocumentStore("/var/lib/cdc-materializer/documents.db")
        >>> await store.upsert("customers", "c1", {"email": "a@b.co"})
        >>> await store.find_by_id("customers", "c1")
        {'email': 'a@b.co', '_id': 'c1', '_revision': 1}
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.path = Path(path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._initialized = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, mapping operational failures to retryable errors."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except (OSError, sqlite3.OperationalError) as e:
            raise StoreUnavailableError(f"Cannot open document store {self.path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if not self._initialized:
                self._create_schema(conn)
                self._initialized = True
            yield conn
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(f"Document store operation failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                source_ts INTEGER,
                revision INTEGER NOT NULL,
                body_json TEXT NOT NULL,
                written_at INTEGER NOT NULL,
                PRIMARY KEY (collection, doc_id)
            );

            CREATE TABLE IF NOT EXISTS tombstones (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                source_ts INTEGER,
                deleted_at INTEGER NOT NULL,
                PRIMARY KEY (collection, doc_id)
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> dict[str, Any]:
        document = json.loads(row["body_json"])
        document[ID_KEY] = row["doc_id"]
        document[REVISION_KEY] = row["revision"]
        return document

    @staticmethod
    def _select(conn: sqlite3.Connection, collection: str, doc_id: str) -> sqlite3.Row | None:
        return conn.execute(
            "SELECT * FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        ).fetchone()

    @staticmethod
    def _write(
        conn: sqlite3.Connection,
        collection: str,
        doc_id: str,
        document: dict[str, Any],
        revision: int,
    ) -> None:
        body = strip_reserved(document)
        conn.execute(
            """
            INSERT INTO documents (collection, doc_id, source_ts, revision, body_json, written_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (collection, doc_id) DO UPDATE SET
                source_ts = excluded.source_ts,
                revision = excluded.revision,
                body_json = excluded.body_json,
                written_at = excluded.written_at
            """,
            (
                collection,
                doc_id,
                document_source_timestamp(body),
                revision,
                json.dumps(body),
                int(time.time() * 1000),
            ),
        )

    async def find_by_id(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self._get_connection() as conn:
            row = self._select(conn, collection, doc_id)
            return self._row_to_document(row) if row else None

    async def upsert(self, collection: str, doc_id: str, document: dict[str, Any]) -> None:
        with self._transaction() as conn:
            row = self._select(conn, collection, doc_id)
            self._write(conn, collection, doc_id, document, row["revision"] + 1 if row else 1)

    async def conditional_update(
        self,
        collection: str,
        doc_id: str,
        document: dict[str, Any],
        source_ts: int | None,
        preserve: Sequence[str] = (),
        allow_equal: bool = False,
    ) -> bool:
        with self._transaction() as conn:
            row = self._select(conn, collection, doc_id)
            if row is None or not is_newer(source_ts, row["source_ts"], allow_equal):
                return False

            replacement = dict(document)
            if preserve:
                stored = json.loads(row["body_json"])
                for key in preserve:
                    if key in stored:
                        replacement[key] = stored[key]

            self._write(conn, collection, doc_id, replacement, row["revision"] + 1)
            return True

    async def insert_if_absent(self, collection: str, doc_id: str, document: dict[str, Any]) -> bool:
        with self._transaction() as conn:
            if self._select(conn, collection, doc_id) is not None:
                return False

            tombstone = conn.execute(
                "SELECT source_ts FROM tombstones WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            ).fetchone()
            if tombstone is not None and not is_newer(
                document_source_timestamp(document), tombstone["source_ts"]
            ):
                return False

            self._write(conn, collection, doc_id, document, 1)
            return True

    async def replace(
        self,
        collection: str,
        doc_id: str,
        document: dict[str, Any],
        expected_revision: int,
    ) -> bool:
        with self._transaction() as conn:
            row = self._select(conn, collection, doc_id)
            if row is None or row["revision"] != expected_revision:
                return False
            self._write(conn, collection, doc_id, document, expected_revision + 1)
            return True

    async def delete(self, collection: str, doc_id: str, source_ts: int | None) -> bool:
        with self._transaction() as conn:
            row = self._select(conn, collection, doc_id)
            if row is not None and not is_newer(source_ts, row["source_ts"], allow_equal=True):
                return False

            if row is not None:
                conn.execute(
                    "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                )

            conn.execute(
                """
                INSERT INTO tombstones (collection, doc_id, source_ts, deleted_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (collection, doc_id) DO UPDATE SET
                    source_ts = MAX(COALESCE(tombstones.source_ts, excluded.source_ts),
                                    COALESCE(excluded.source_ts, tombstones.source_ts)),
                    deleted_at = excluded.deleted_at
                """,
                (collection, doc_id, source_ts, int(time.time() * 1000)),
            )
            return row is not None

    async def find_tombstone(self, collection: str, doc_id: str) -> int | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT source_ts FROM tombstones WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            ).fetchone()
            return row["source_ts"] if row else None

    async def list_documents(self, collection: str, limit: int = 100) -> list[dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM documents WHERE collection = ? ORDER BY doc_id LIMIT ?",
                (collection, limit),
            ).fetchall()
            return [self._row_to_document(row) for row in rows]

    async def count(self, collection: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM documents WHERE collection = ?",
                (collection,),
            ).fetchone()
            return row["n"]

    async def close(self) -> None:
        """Nothing to release; connections are per operation."""
        logger.debug("SqliteDocumentStore closed", extra={"path": str(self.path)})
