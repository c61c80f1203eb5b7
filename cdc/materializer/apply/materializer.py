"""
Idempotent materializer: last-writer-wins by source timestamp.

Upsert applies an envelope only if its source timestamp is strictly
greater than the stored one (or either side has none). Delete applies
if the incoming timestamp is not older than the stored one. Arrival
order never matters; only source timestamps do.

Strategies:
    CONDITIONAL (default):
        1. conditional_update where stored ts < incoming ts
        2. no match -> insert_if_absent
        3. insert refused (id appeared concurrently) -> conditional_update once more
        4. still no match -> stale, no-op
    READ_MODIFY_WRITE:
        find_by_id, compare, write. Only safe with a single writer per id.

Invariants:
    - A document's source timestamp never decreases
    - Replaying an envelope leaves the store unchanged
    - A delete leaves a tombstone; an older create/update after it is a no-op
    - Ids are validated before any store call

How to change safely:
    - Keep both strategies behaviourally identical for a single writer
    - Test order-independence with every permutation of two envelopes
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ..config import MaterializeStrategy
from ..events import Envelope
from ..observability import ProcessingOutcome
from ..store import (
    METADATA_KEY,
    REVISION_KEY,
    DocumentStore,
    document_source_timestamp,
    is_newer,
    StoreUnavailableError,
    strip_reserved,
)
from ..validation.rules import ID_PATTERN
from .documents import CdcOperation, ProvenanceMetadata, business_fields

logger = logging.getLogger(__name__)

# Bound on optimistic-concurrency retries for soft deletes
MAX_REVISION_CONFLICTS = 10


class MaterializerError(Exception):
    """Base exception for materialization."""

    pass


class MalformedIdError(MaterializerError):
    """Entity id is empty or has characters outside the allowed set. Not retryable."""

    pass


def check_id(entity_id: Any) -> str:
    """Validate an entity id.

    Raises:
        MalformedIdError: If the id is not an acceptable string
    """
    if not isinstance(entity_id, str) or not ID_PATTERN.match(entity_id):
        raise MalformedIdError(f"Malformed entity id: {entity_id!r}")
    return entity_id


@dataclass
class MaterializeResult:
    """Result of applying one envelope.

    Attributes:
        outcome: APPLIED, SKIPPED_STALE, NOT_FOUND, PARENT_MISSING or PARKED
        collection: Target collection
        entity_id: Document (or child) id
        operation: Operation written, if anything was written
        document: Stored document after the call, when known
    """

    outcome: ProcessingOutcome
    collection: str
    entity_id: str
    operation: CdcOperation | None = None
    document: dict[str, Any] | None = None

    @property
    def applied(self) -> bool:
        return self.outcome == ProcessingOutcome.APPLIED


class IdempotentMaterializer:
    """Applies envelopes to a document store with last-writer-wins semantics.

    Thread safety:
        Stateless apart from the store; safe to share between workers.

    Example:
        >>> materializer = IdempotentMaterializer(store)
        >>> result = await materializer.upsert("customers", envelope)
        >>> result.outcome
        <ProcessingOutcome.APPLIED: 'applied'>
    """

    def __init__(
        self,
        store: DocumentStore,
        strategy: MaterializeStrategy = MaterializeStrategy.CONDITIONAL,
    ) -> None:
        self.store = store
        self.strategy = strategy

    async def upsert(
        self,
        collection: str,
        envelope: Envelope,
        preserve: Sequence[str] = (),
    ) -> MaterializeResult:
        """Insert or update the document for an envelope.

        Args:
            collection: Target collection
            envelope: Create or update envelope
            preserve: Stored fields kept on update (e.g. embedded children)

        Raises:
            MalformedIdError: If the envelope id is malformed
            StoreUnavailableError: If the store fails (retryable)
        """
        doc_id = check_id(envelope.entity_id)
        provenance = ProvenanceMetadata.for_envelope(envelope, CdcOperation.UPDATE)

        if self.strategy == MaterializeStrategy.READ_MODIFY_WRITE:
            result = await self._upsert_read_modify_write(
                collection, doc_id, envelope, provenance, preserve
            )
        else:
            result = await self._upsert_conditional(
                collection, doc_id, envelope, provenance, preserve
            )

        if result.applied:
            logger.debug(
                f"Materialized {collection}/{doc_id}",
                extra={
                    "collection": collection,
                    "entity_id": doc_id,
                    "operation": result.operation.value if result.operation else None,
                    "source_timestamp": provenance.source_timestamp,
                },
            )
        else:
            logger.debug(
                f"Skipped stale event for {collection}/{doc_id}",
                extra={
                    "collection": collection,
                    "entity_id": doc_id,
                    "source_timestamp": provenance.source_timestamp,
                },
            )
        return result

    @staticmethod
    def _document(
        envelope: Envelope, provenance: ProvenanceMetadata, operation: CdcOperation
    ) -> dict[str, Any]:
        document = business_fields(envelope)
        document[METADATA_KEY] = dataclasses.replace(provenance, operation=operation).to_dict()
        return document

    async def _upsert_conditional(
        self,
        collection: str,
        doc_id: str,
        envelope: Envelope,
        provenance: ProvenanceMetadata,
        preserve: Sequence[str],
    ) -> MaterializeResult:
        source_ts = provenance.source_timestamp
        update = self._document(envelope, provenance, CdcOperation.UPDATE)

        if await self.store.conditional_update(collection, doc_id, update, source_ts, preserve):
            return MaterializeResult(
                ProcessingOutcome.APPLIED, collection, doc_id, CdcOperation.UPDATE, update
            )

        insert = self._document(envelope, provenance, CdcOperation.INSERT)
        if await self.store.insert_if_absent(collection, doc_id, insert):
            return MaterializeResult(
                ProcessingOutcome.APPLIED, collection, doc_id, CdcOperation.INSERT, insert
            )

        # Another writer may have inserted between the two calls
        if await self.store.conditional_update(collection, doc_id, update, source_ts, preserve):
            return MaterializeResult(
                ProcessingOutcome.APPLIED, collection, doc_id, CdcOperation.UPDATE, update
            )

        return MaterializeResult(ProcessingOutcome.SKIPPED_STALE, collection, doc_id)

    async def _upsert_read_modify_write(
        self,
        collection: str,
        doc_id: str,
        envelope: Envelope,
        provenance: ProvenanceMetadata,
        preserve: Sequence[str],
    ) -> MaterializeResult:
        existing = await self.store.find_by_id(collection, doc_id)

        if existing is None:
            insert = self._document(envelope, provenance, CdcOperation.INSERT)
            if await self.store.insert_if_absent(collection, doc_id, insert):
                return MaterializeResult(
                    ProcessingOutcome.APPLIED, collection, doc_id, CdcOperation.INSERT, insert
                )
            return MaterializeResult(ProcessingOutcome.SKIPPED_STALE, collection, doc_id)

        if not is_newer(provenance.source_timestamp, document_source_timestamp(existing)):
            return MaterializeResult(
                ProcessingOutcome.SKIPPED_STALE, collection, doc_id, document=existing
            )

        update = self._document(envelope, provenance, CdcOperation.UPDATE)
        for key in preserve:
            if key in existing:
                update[key] = existing[key]
        await self.store.upsert(collection, doc_id, update)
        return MaterializeResult(
            ProcessingOutcome.APPLIED, collection, doc_id, CdcOperation.UPDATE, update
        )

    async def delete(
        self,
        collection: str,
        envelope: Envelope,
        soft_delete_fields: dict[str, Any] | None = None,
    ) -> MaterializeResult:
        """Delete the document for an envelope.

        Args:
            collection: Target collection
            envelope: Delete envelope
            soft_delete_fields: When given, the document is kept and these
                fields are set instead of removing it

        Raises:
            MalformedIdError: If the envelope id is malformed
            StoreUnavailableError: If the store fails (retryable)
        """
        doc_id = check_id(envelope.entity_id)
        provenance = ProvenanceMetadata.for_envelope(envelope, CdcOperation.DELETE)

        if soft_delete_fields is not None:
            result = await self._soft_delete(collection, doc_id, provenance, soft_delete_fields)
        else:
            result = await self._hard_delete(collection, doc_id, provenance.source_timestamp)

        logger.debug(
            f"Delete {collection}/{doc_id}: {result.outcome.value}",
            extra={
                "collection": collection,
                "entity_id": doc_id,
                "outcome": result.outcome.value,
                "source_timestamp": provenance.source_timestamp,
            },
        )
        return result

    async def _hard_delete(
        self, collection: str, doc_id: str, source_ts: int
    ) -> MaterializeResult:
        if await self.store.delete(collection, doc_id, source_ts):
            return MaterializeResult(
                ProcessingOutcome.APPLIED, collection, doc_id, CdcOperation.DELETE
            )

        existing = await self.store.find_by_id(collection, doc_id)
        if existing is None:
            return MaterializeResult(ProcessingOutcome.NOT_FOUND, collection, doc_id)
        return MaterializeResult(
            ProcessingOutcome.SKIPPED_STALE, collection, doc_id, document=existing
        )

    async def _soft_delete(
        self,
        collection: str,
        doc_id: str,
        provenance: ProvenanceMetadata,
        soft_delete_fields: dict[str, Any],
    ) -> MaterializeResult:
        for _ in range(MAX_REVISION_CONFLICTS):
            existing = await self.store.find_by_id(collection, doc_id)
            if existing is None:
                # Record the delete so an older create arriving later stays a no-op
                await self.store.delete(collection, doc_id, provenance.source_timestamp)
                return MaterializeResult(ProcessingOutcome.NOT_FOUND, collection, doc_id)

            if not is_newer(
                provenance.source_timestamp, document_source_timestamp(existing), allow_equal=True
            ):
                return MaterializeResult(
                    ProcessingOutcome.SKIPPED_STALE, collection, doc_id, document=existing
                )

            document = strip_reserved(existing)
            document.update(soft_delete_fields)
            document[METADATA_KEY] = provenance.to_dict()
            if await self.store.replace(collection, doc_id, document, existing[REVISION_KEY]):
                return MaterializeResult(
                    ProcessingOutcome.APPLIED, collection, doc_id, CdcOperation.DELETE, document
                )

        raise StoreUnavailableError(
            f"Soft delete of {collection}/{doc_id} kept conflicting with concurrent writes"
        )
