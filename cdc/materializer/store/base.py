"""
Document store protocol and shared types.

A document is a JSON-compatible dict. The store adds two reserved keys
on every read: "_id" and "_revision". The provenance of a document lives
under METADATA_KEY and its "source_timestamp" is what conditional writes
compare against.

"Not found" is always an absent (None) return value. StoreUnavailableError
is the only retryable failure; anything else is a bug or bad data.
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

ID_KEY = "_id"
REVISION_KEY = "_revision"
METADATA_KEY = "cdc_metadata"
RESERVED_KEYS = frozenset({ID_KEY, REVISION_KEY})


class StoreError(Exception):
    """Base exception for document store operations."""

    pass


class StoreUnavailableError(StoreError):
    """The store could not be reached or the write failed transiently. Retryable."""

    pass


def document_source_timestamp(document: dict[str, Any] | None) -> int | None:
    """Source timestamp recorded in a document's provenance, if any."""
    if not document:
        return None
    metadata = document.get(METADATA_KEY)
    if not isinstance(metadata, dict):
        return None
    value = metadata.get("source_timestamp")
    return value if isinstance(value, int) else None


def strip_reserved(document: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in document.items() if k not in RESERVED_KEYS}


def is_newer(incoming_ts: int | None, stored_ts: int | None, allow_equal: bool = False) -> bool:
    """Timestamp gate shared by every store implementation.

    A missing timestamp on either side fails open.
    """
    if incoming_ts is None or stored_ts is None:
        return True
    return incoming_ts >= stored_ts if allow_equal else incoming_ts > stored_ts


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for the materialized document store."""

    @abstractmethod
    async def find_by_id(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Fetch a document, or None when absent."""
        ...

    @abstractmethod
    async def upsert(self, collection: str, doc_id: str, document: dict[str, Any]) -> None:
        """Insert or replace a document unconditionally."""
        ...

    @abstractmethod
    async def conditional_update(
        self,
        collection: str,
        doc_id: str,
        document: dict[str, Any],
        source_ts: int | None,
        preserve: Sequence[str] = (),
        allow_equal: bool = False,
    ) -> bool:
        """Atomically replace a document only if its stored timestamp is older.

        Args:
            collection: Collection name
            doc_id: Document id
            document: Replacement document
            source_ts: Incoming source timestamp
            preserve: Keys copied from the stored document into the replacement
            allow_equal: Whether an equal stored timestamp also matches

        Returns:
            True if a document matched and was replaced
        """
        ...

    @abstractmethod
    async def insert_if_absent(self, collection: str, doc_id: str, document: dict[str, Any]) -> bool:
        """Insert unless the id exists or a tombstone at least as new exists."""
        ...

    @abstractmethod
    async def replace(
        self,
        collection: str,
        doc_id: str,
        document: dict[str, Any],
        expected_revision: int,
    ) -> bool:
        """Replace a document only if its revision is unchanged."""
        ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str, source_ts: int | None) -> bool:
        """Remove a document unless it is newer than source_ts.

        A tombstone is recorded whenever the document is removed or was
        already absent.

        Returns:
            True if a document was removed
        """
        ...

    @abstractmethod
    async def find_tombstone(self, collection: str, doc_id: str) -> int | None:
        """Source timestamp of the latest delete recorded for an id."""
        ...

    @abstractmethod
    async def list_documents(self, collection: str, limit: int = 100) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def count(self, collection: str) -> int:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
