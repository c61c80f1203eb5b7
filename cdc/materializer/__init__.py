"""
CDC Materializer - change-event materialization into a document store.

This package consumes row-level change events captured from a relational
source of record and maintains a denormalized, queryable replica of them:
- Typed envelopes decoded from the change stream
- Last-writer-wins upserts and deletes keyed by source timestamp
- Child rows embedded as lists inside their parent documents
- An ordered validation pipeline in front of every write
- Runtime detection of fields the expected schema does not know about

Architecture:
    ┌──────────────┐     ┌─────────────┐     ┌─────────────┐
    │ Change stream│────▶│   Decoder   │────▶│ EventRouter │
    │ (Kafka)      │     │ (Envelope)  │     │ (by topic)  │
    └──────┬───────┘     └─────────────┘     └──────┬──────┘
           │                                        │
           ▼                                        ▼
    ┌──────────────┐                         ┌─────────────┐
    │ Schema drift │                         │   Handler   │
    │   detector   │                         │ validate →  │
    └──────────────┘                         │ materialize │
                                             └──────┬──────┘
                                                    │
                                ┌───────────────────┼───────────────────┐
                                ▼                                       ▼
                         ┌─────────────┐                         ┌─────────────┐
                         │ Materializer│                         │  Embedding  │
                         │   (LWW)     │                         │ Coordinator │
                         └──────┬──────┘                         └──────┬──────┘
                                └───────────────────┬───────────────────┘
                                                    ▼
                                             ┌─────────────┐
                                             │  Document   │
                                             │    store    │
                                             └─────────────┘

Invariants:
    - A document's source timestamp never decreases over its lifetime
    - A record is committed only after its side effect is applied
    - No failure in one record affects the processing of another
    - Entity types are added by registering a handler, never by editing dispatch

How to change safely:
    - Verify new handlers with duplicate and out-of-order delivery tests
    - Keep the expected-schema baseline in sync with the source tables
    - Never let a retryable store error commit its record silently
"""

from ._version import __version__

__all__ = ["__version__"]
