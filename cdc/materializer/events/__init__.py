"""
Change-event model for the CDC materializer.

Invariants:
    - Every Envelope has an entity_id and entity_type
    - decode() returns a value for every input and never raises
    - A null message body always decodes to a Tombstone
"""

from .envelope import (
    DELETED_FIELD,
    META_FIELDS,
    OP_FIELD,
    SOURCE_TS_FIELD,
    DecodeFailure,
    DecodeOutcome,
    DeliveryPosition,
    Envelope,
    Operation,
    Tombstone,
    decode,
    is_deleted,
    parse_body,
)
from .rows import AddressRow, CustomerRow, OrderItemRow, OrderRow, SourceRow

__all__ = [
    "Envelope",
    "Operation",
    "DeliveryPosition",
    "Tombstone",
    "DecodeFailure",
    "DecodeOutcome",
    "decode",
    "is_deleted",
    "parse_body",
    "DELETED_FIELD",
    "OP_FIELD",
    "SOURCE_TS_FIELD",
    "META_FIELDS",
    "SourceRow",
    "CustomerRow",
    "AddressRow",
    "OrderRow",
    "OrderItemRow",
]
