"""
In-memory document store for testing.

Invariants:
    - All data is lost on process exit
    - Returned documents are deep copies; callers never alias stored state
    - Every conditional method is atomic with respect to other coroutines

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep semantics identical to SqliteDocumentStore
"""

from __future__ import annotations

import copy
import logging
from collections import defaultdict
from collections.abc import Sequence
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


class InMemoryDocumentStore:
    """Dict-backed document store with failure injection.

    No awaits occur between a read and the matching write, so each
    method is atomic under a single event loop.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> store.fail_next(2)  # the next two calls raise StoreUnavailableError
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._tombstones: dict[str, dict[str, int | None]] = defaultdict(dict)
        self._available = True
        self._failures_pending = 0
        self.call_count = 0

    # Failure injection

    def set_available(self, available: bool) -> None:
        self._available = available

    def fail_next(self, count: int = 1) -> None:
        self._failures_pending = count

    def _check(self) -> None:
        self.call_count += 1
        if not self._available:
            raise StoreUnavailableError("In-memory store marked unavailable")
        if self._failures_pending > 0:
            self._failures_pending -= 1
            raise StoreUnavailableError("Injected store failure")

    def _write(self, collection: str, doc_id: str, document: dict[str, Any], revision: int) -> None:
        body = copy.deepcopy(strip_reserved(document))
        body[ID_KEY] = doc_id
        body[REVISION_KEY] = revision
        self._collections[collection][doc_id] = body

    async def find_by_id(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        self._check()
        stored = self._collections[collection].get(doc_id)
        return copy.deepcopy(stored) if stored is not None else None

    async def upsert(self, collection: str, doc_id: str, document: dict[str, Any]) -> None:
        self._check()
        stored = self._collections[collection].get(doc_id)
        self._write(collection, doc_id, document, stored[REVISION_KEY] + 1 if stored else 1)

    async def conditional_update(
        self,
        collection: str,
        doc_id: str,
        document: dict[str, Any],
        source_ts: int | None,
        preserve: Sequence[str] = (),
        allow_equal: bool = False,
    ) -> bool:
        self._check()
        stored = self._collections[collection].get(doc_id)
        if stored is None or not is_newer(source_ts, document_source_timestamp(stored), allow_equal):
            return False

        replacement = dict(document)
        for key in preserve:
            if key in stored:
                replacement[key] = stored[key]
        self._write(collection, doc_id, replacement, stored[REVISION_KEY] + 1)
        return True

    async def insert_if_absent(self, collection: str, doc_id: str, document: dict[str, Any]) -> bool:
        self._check()
        if doc_id in self._collections[collection]:
            return False
        tombstones = self._tombstones[collection]
        if doc_id in tombstones and not is_newer(
            document_source_timestamp(document), tombstones[doc_id]
        ):
            return False
        self._write(collection, doc_id, document, 1)
        return True

    async def replace(
        self,
        collection: str,
        doc_id: str,
        document: dict[str, Any],
        expected_revision: int,
    ) -> bool:
        self._check()
        stored = self._collections[collection].get(doc_id)
        if stored is None or stored[REVISION_KEY] != expected_revision:
            return False
        self._write(collection, doc_id, document, expected_revision + 1)
        return True

    async def delete(self, collection: str, doc_id: str, source_ts: int | None) -> bool:
        self._check()
        stored = self._collections[collection].get(doc_id)
        if stored is not None and not is_newer(
            source_ts, document_source_timestamp(stored), allow_equal=True
        ):
            return False

        if stored is not None:
            del self._collections[collection][doc_id]

        tombstones = self._tombstones[collection]
        previous = tombstones.get(doc_id)
        if previous is None or (source_ts is not None and source_ts > previous):
            tombstones[doc_id] = source_ts
        return stored is not None

    async def find_tombstone(self, collection: str, doc_id: str) -> int | None:
        self._check()
        return self._tombstones[collection].get(doc_id)

    async def list_documents(self, collection: str, limit: int = 100) -> list[dict[str, Any]]:
        self._check()
        docs = self._collections[collection]
        return [copy.deepcopy(docs[k]) for k in sorted(docs)[:limit]]

    async def count(self, collection: str) -> int:
        self._check()
        return len(self._collections[collection])

    async def close(self) -> None:
        logger.debug("InMemoryDocumentStore closed")

    def clear(self) -> None:
        """Remove all documents and tombstones (test isolation)."""
        self._collections.clear()
        self._tombstones.clear()
