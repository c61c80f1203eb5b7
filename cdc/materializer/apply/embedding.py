"""
Parent/child embedding coordinator.

Child entities (e.g. order items) live as an embedded list inside their
parent document. Each embedded child carries its own provenance and is
resolved against its own source timestamp, independently of the parent.

Child upsert:
    - parent absent -> drop with a warning, or park when parking is enabled
    - child absent from the list -> append
    - child present -> replace only if the incoming timestamp is strictly newer
Child delete:
    - child present and incoming timestamp not older -> remove
    - otherwise no-op

Writes to the parent use optimistic concurrency on the parent's revision
and retry from a fresh read on conflict. Parent-level aggregates (e.g.
total_amount) are never recomputed here; the source sends those as
parent updates.

Parked children are held in memory only; they are lost on restart.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any

from ..events import Envelope
from ..observability import ProcessingOutcome
from ..store import (
    METADATA_KEY,
    REVISION_KEY,
    DocumentStore,
    StoreUnavailableError,
    document_source_timestamp,
    is_newer,
)
from .documents import CdcOperation, ProvenanceMetadata
from .materializer import MaterializeResult, check_id

logger = logging.getLogger(__name__)

MAX_REVISION_CONFLICTS = 10


class EmbeddingCoordinator:
    """Maintains embedded child lists inside parent documents.

    Attributes:
        parent_collection: Collection holding the parent documents
        list_field: Name of the embedded list, e.g. "items"
        park_orphans: Park children whose parent does not exist yet
        max_parked: Bound on parked child envelopes across all parents; the
            oldest parked child is evicted when it is reached

    Example:
        >>> coordinator = EmbeddingCoordinator(store, "orders", "items")
        >>> await coordinator.upsert_child("O1", item_envelope)
    """

    def __init__(
        self,
        store: DocumentStore,
        parent_collection: str,
        list_field: str,
        park_orphans: bool = False,
        max_parked: int = 10000,
    ) -> None:
        self.store = store
        self.parent_collection = parent_collection
        self.list_field = list_field
        self.park_orphans = park_orphans
        self.max_parked = max_parked
        self._parked: OrderedDict[str, list[Envelope]] = OrderedDict()
        self._parked_count = 0

    @property
    def parked_count(self) -> int:
        return self._parked_count

    def parked_for(self, parent_id: str) -> list[Envelope]:
        return list(self._parked.get(parent_id, ()))

    def _child(self, envelope: Envelope, operation: CdcOperation) -> dict[str, Any]:
        child = dict(envelope.fields)
        child["id"] = envelope.entity_id
        child[METADATA_KEY] = ProvenanceMetadata.for_envelope(envelope, operation).to_dict()
        return child

    def _index_of(self, children: list[dict[str, Any]], child_id: str) -> int | None:
        for index, child in enumerate(children):
            if str(child.get("id")) == child_id:
                return index
        return None

    async def upsert_child(self, parent_id: str, envelope: Envelope) -> MaterializeResult:
        """Insert or replace one embedded child.

        Raises:
            MalformedIdError: If the child or parent id is malformed
            StoreUnavailableError: If the store fails or conflicts persist (retryable)
        """
        child_id = check_id(envelope.entity_id)
        check_id(parent_id)

        for _ in range(MAX_REVISION_CONFLICTS):
            parent = await self.store.find_by_id(self.parent_collection, parent_id)
            if parent is None:
                return self._orphan(parent_id, envelope)

            children = list(parent.get(self.list_field) or [])
            index = self._index_of(children, child_id)

            if index is None:
                child = self._child(envelope, CdcOperation.INSERT)
                children.append(child)
            else:
                child = self._child(envelope, CdcOperation.UPDATE)
                stored_ts = document_source_timestamp(children[index])
                if not is_newer(document_source_timestamp(child), stored_ts):
                    logger.debug(
                        f"Skipped stale child {child_id} of {parent_id}",
                        extra={
                            "parent_id": parent_id,
                            "child_id": child_id,
                            "stored_timestamp": stored_ts,
                        },
                    )
                    return MaterializeResult(
                        ProcessingOutcome.SKIPPED_STALE, self.parent_collection, child_id
                    )
                children[index] = child

            parent[self.list_field] = children
            if await self.store.replace(
                self.parent_collection, parent_id, parent, parent[REVISION_KEY]
            ):
                return MaterializeResult(
                    ProcessingOutcome.APPLIED,
                    self.parent_collection,
                    child_id,
                    CdcOperation(child[METADATA_KEY]["operation"]),
                    child,
                )

            logger.debug(
                "Parent revision changed, retrying child upsert",
                extra={"parent_id": parent_id, "child_id": child_id},
            )

        raise StoreUnavailableError(
            f"Child upsert {child_id} kept conflicting on parent {parent_id}"
        )

    async def delete_child(self, parent_id: str, envelope: Envelope) -> MaterializeResult:
        """Remove one embedded child unless the stored child is newer.

        Raises:
            MalformedIdError: If the child or parent id is malformed
            StoreUnavailableError: If the store fails or conflicts persist (retryable)
        """
        child_id = check_id(envelope.entity_id)
        check_id(parent_id)
        source_ts = envelope.source_timestamp

        for _ in range(MAX_REVISION_CONFLICTS):
            parent = await self.store.find_by_id(self.parent_collection, parent_id)
            if parent is None:
                if self.park_orphans:
                    return self._orphan(parent_id, envelope)
                return MaterializeResult(
                    ProcessingOutcome.NOT_FOUND, self.parent_collection, child_id
                )

            children = list(parent.get(self.list_field) or [])
            index = self._index_of(children, child_id)
            if index is None:
                return MaterializeResult(
                    ProcessingOutcome.NOT_FOUND, self.parent_collection, child_id
                )

            if not is_newer(source_ts, document_source_timestamp(children[index]), allow_equal=True):
                return MaterializeResult(
                    ProcessingOutcome.SKIPPED_STALE, self.parent_collection, child_id
                )

            del children[index]
            parent[self.list_field] = children
            if await self.store.replace(
                self.parent_collection, parent_id, parent, parent[REVISION_KEY]
            ):
                return MaterializeResult(
                    ProcessingOutcome.APPLIED,
                    self.parent_collection,
                    child_id,
                    CdcOperation.DELETE,
                )

        raise StoreUnavailableError(
            f"Child delete {child_id} kept conflicting on parent {parent_id}"
        )

    def _evict_oldest(self) -> None:
        parent_id, children = next(iter(self._parked.items()))
        evicted = children.pop(0)
        if not children:
            del self._parked[parent_id]
        self._parked_count -= 1
        logger.warning(
            f"Parking buffer full ({self.max_parked}), evicted child {evicted.entity_id}",
            extra={
                "parent_collection": self.parent_collection,
                "parent_id": parent_id,
                "child_id": evicted.entity_id,
                "source_timestamp": evicted.source_timestamp,
            },
        )

    def _orphan(self, parent_id: str, envelope: Envelope) -> MaterializeResult:
        context = {
            "parent_collection": self.parent_collection,
            "parent_id": parent_id,
            "child_id": envelope.entity_id,
            "source_timestamp": envelope.source_timestamp,
        }

        if not self.park_orphans:
            logger.warning(
                f"Parent {parent_id} not found, dropping child {envelope.entity_id}",
                extra=context,
            )
            return MaterializeResult(
                ProcessingOutcome.PARENT_MISSING, self.parent_collection, envelope.entity_id
            )

        while self._parked_count >= self.max_parked and self._parked:
            self._evict_oldest()

        self._parked.setdefault(parent_id, []).append(envelope)
        self._parked_count += 1
        logger.info(f"Parked child {envelope.entity_id} until parent {parent_id} exists", extra=context)
        return MaterializeResult(
            ProcessingOutcome.PARKED, self.parent_collection, envelope.entity_id
        )

    async def replay_parked(self, parent_id: str) -> list[MaterializeResult]:
        """Apply children parked for a parent, in source-timestamp order.

        Children whose parent is still missing are parked again.
        """
        parked = self._parked.pop(parent_id, None)
        if not parked:
            return []
        self._parked_count -= len(parked)

        parked.sort(key=lambda e: e.source_timestamp if e.source_timestamp is not None else 0)
        results = []
        applied = 0
        try:
            for envelope in parked:
                if envelope.is_delete:
                    results.append(await self.delete_child(parent_id, envelope))
                else:
                    results.append(await self.upsert_child(parent_id, envelope))
                applied += 1
        finally:
            # Store failures and cancelled deadlines keep the unreplayed children
            remaining = parked[applied:]
            if remaining:
                self._parked.setdefault(parent_id, [])[:0] = remaining
                self._parked_count += len(remaining)

        logger.info(
            f"Replayed {len(parked)} parked children for {parent_id}",
            extra={"parent_id": parent_id, "count": len(parked)},
        )
        return results
