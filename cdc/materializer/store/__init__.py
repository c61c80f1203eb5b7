"""
Document store for materialized entities.

This module provides a pluggable store interface supporting:
- SQLite (production, single node)
- In-memory (for testing)

Invariants:
    - Conditional writes never regress a document's source timestamp
    - "Not found" is an absent return value, never an exception
    - StoreUnavailableError is the only retryable error

How to change safely:
    - New backends must implement the DocumentStore protocol
    - Run the store test-suite against every backend
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import (
    ID_KEY,
    METADATA_KEY,
    REVISION_KEY,
    DocumentStore,
    StoreError,
    StoreUnavailableError,
    document_source_timestamp,
    is_newer,
    strip_reserved,
)
from .memory import InMemoryDocumentStore
from .sqlite_store import SqliteDocumentStore

if TYPE_CHECKING:
    from ..config import ServerConfig


def create_document_store(config: ServerConfig) -> DocumentStore:
    """Create a document store from configuration.

    Raises:
        ValueError: If the backend is not supported
    """
    from ..config import StoreBackend

    settings = config.store
    if settings.backend == StoreBackend.SQLITE:
        return SqliteDocumentStore(
            settings.path,
            wal_mode=settings.wal_mode,
            busy_timeout_ms=settings.busy_timeout_ms,
        )
    elif settings.backend == StoreBackend.MEMORY:
        return InMemoryDocumentStore()
    else:
        raise ValueError(f"Unsupported store backend: {settings.backend}")


__all__ = [
    "DocumentStore",
    "StoreError",
    "StoreUnavailableError",
    "ID_KEY",
    "REVISION_KEY",
    "METADATA_KEY",
    "document_source_timestamp",
    "is_newer",
    "strip_reserved",
    "create_document_store",
    "SqliteDocumentStore",
    "InMemoryDocumentStore",
]
