"""
Materialization of change events into the document store.

This module contains:
- IdempotentMaterializer: last-writer-wins upsert/delete per document
- EmbeddingCoordinator: child entities embedded in parent documents
- Entity handlers and the EventRouter that dispatches to them
- CdcConsumer: worker loop with retries, deadlines and dead-lettering

Invariants:
    - Final state depends on source timestamps, never on arrival order
    - A record is committed only after its outcome is durable

How to change safely:
    - Add entity types as new handlers; do not special-case the router
    - Test idempotency by replaying every record twice
"""

from .consumer import CdcConsumer
from .dead_letter import DeadLetter, DeadLetterSink, LoggingDeadLetterSink, StreamDeadLetterSink
from .documents import CdcOperation, ProvenanceMetadata, provenance_of, to_public
from .embedding import EmbeddingCoordinator
from .handlers import (
    AddressHandler,
    CustomerHandler,
    DocumentHandler,
    EntityHandler,
    OrderHandler,
    OrderItemHandler,
    default_handlers,
)
from .materializer import (
    IdempotentMaterializer,
    MalformedIdError,
    MaterializeResult,
    MaterializerError,
    check_id,
)
from .router import EventRouter, RouteResult, entity_type_for_topic

__all__ = [
    "CdcConsumer",
    "DeadLetter",
    "DeadLetterSink",
    "LoggingDeadLetterSink",
    "StreamDeadLetterSink",
    "CdcOperation",
    "ProvenanceMetadata",
    "provenance_of",
    "to_public",
    "EmbeddingCoordinator",
    "EntityHandler",
    "DocumentHandler",
    "CustomerHandler",
    "AddressHandler",
    "OrderHandler",
    "OrderItemHandler",
    "default_handlers",
    "IdempotentMaterializer",
    "MaterializeResult",
    "MaterializerError",
    "MalformedIdError",
    "check_id",
    "EventRouter",
    "RouteResult",
    "entity_type_for_topic",
]
