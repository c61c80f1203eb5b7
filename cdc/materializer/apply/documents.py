"""
Materialized document shape and provenance metadata.

Persisted document (logical):
    {
        "<business fields>": ...,
        "cdc_metadata": {
            "source_timestamp": 1730000000000,
            "operation": "INSERT" | "UPDATE" | "DELETE",
            "delivery_position": {"partition": 0, "offset": 42},
            "processed_at": "2026-01-01T00:00:00.000000+00:00"
        }
    }

Business fields are the envelope fields minus the primary key, which
becomes the document id.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..events import DeliveryPosition, Envelope
from ..store import ID_KEY, METADATA_KEY, strip_reserved


class CdcOperation(Enum):
    """Operation recorded in a document's provenance."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ProvenanceMetadata:
    """Audit fields embedded in every materialized document and child."""

    source_timestamp: int
    operation: CdcOperation
    delivery_position: DeliveryPosition | None
    processed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_timestamp": self.source_timestamp,
            "operation": self.operation.value,
            "delivery_position": self.delivery_position.to_dict()
            if self.delivery_position
            else None,
            "processed_at": self.processed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProvenanceMetadata:
        position = data.get("delivery_position")
        return cls(
            source_timestamp=data["source_timestamp"],
            operation=CdcOperation(data["operation"]),
            delivery_position=DeliveryPosition(**position) if position else None,
            processed_at=datetime.fromisoformat(data["processed_at"]),
        )

    @classmethod
    def for_envelope(cls, envelope: Envelope, operation: CdcOperation) -> ProvenanceMetadata:
        """Provenance for an envelope; a missing source timestamp is stamped now."""
        source_ts = envelope.source_timestamp
        return cls(
            source_timestamp=source_ts if source_ts is not None else now_ms(),
            operation=operation,
            delivery_position=envelope.position,
            processed_at=datetime.now(timezone.utc),
        )


def business_fields(envelope: Envelope, primary_key: str = "id") -> dict[str, Any]:
    return {k: v for k, v in envelope.fields.items() if k != primary_key}


def provenance_of(document: dict[str, Any]) -> ProvenanceMetadata | None:
    metadata = document.get(METADATA_KEY)
    return ProvenanceMetadata.from_dict(metadata) if isinstance(metadata, dict) else None


def to_public(document: dict[str, Any]) -> dict[str, Any]:
    """Document without store bookkeeping, with its id exposed as "id"."""
    public = strip_reserved(document)
    if ID_KEY in document:
        public = {"id": document[ID_KEY], **public}
    return public
