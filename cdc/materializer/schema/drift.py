"""
Runtime schema drift detection.

The detector keeps, per entity type, the set of top-level field names it
has seen. Each set is seeded from the expected baseline and only grows.
A field outside the set is reported exactly once, on first observation,
and then added to the set.

A baseline field missing from one event is logged at debug level and is
never reported as a removal: the event stream cannot tell a dropped
column from an omitted null.

Invariants:
    - Known-field sets never shrink except through reset()
    - observe() reports a given (entity_type, field) at most once
    - All state access goes through one lock

How to change safely:
    - Keep observe() free of I/O; persistence belongs to SchemaHistory
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..events import META_FIELDS, DeliveryPosition
from .baseline import expected_fields

logger = logging.getLogger(__name__)


class ChangeKind(Enum):
    NEW_FIELD = "NEW_FIELD"


@dataclass(frozen=True)
class SchemaChange:
    """One detected schema change."""

    entity_type: str
    field_name: str
    kind: ChangeKind = ChangeKind.NEW_FIELD
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    position: DeliveryPosition | None = None

    @property
    def key(self) -> str:
        return f"{self.entity_type}:{self.field_name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "field_name": self.field_name,
            "change_type": self.kind.value,
            "detected_at": self.detected_at.isoformat(),
            "partition": self.position.partition if self.position else None,
            "offset": self.position.offset if self.position else None,
        }


@dataclass(frozen=True)
class SchemaVersion:
    """Known fields of an entity type; version is the number of fields."""

    entity_type: str
    fields: frozenset[str]

    @property
    def version(self) -> int:
        return len(self.fields)


class SchemaDriftDetector:
    """Thread-safe registry of known fields per entity type.

    Example:
        >>> detector = SchemaDriftDetector()
        >>> [c.field_name for c in detector.observe("customer", {"id", "phone"})]
        ['phone']
        >>> detector.observe("customer", {"id", "phone"})
        []
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._known: dict[str, set[str]] = {}

    def observe(
        self,
        entity_type: str,
        fields: Iterable[str],
        position: DeliveryPosition | None = None,
    ) -> list[SchemaChange]:
        """Record the fields of one event and return the changes it reveals."""
        observed = set(fields)

        with self._lock:
            known = self._known.setdefault(entity_type, set(expected_fields(entity_type)))
            new_fields = sorted(observed - known)
            known.update(new_fields)

        changes = [SchemaChange(entity_type, name, position=position) for name in new_fields]
        for change in changes:
            logger.info(
                f"Schema change detected: new field '{change.field_name}' in entity '{entity_type}'",
                extra={
                    "entity_type": entity_type,
                    "field_name": change.field_name,
                    "partition": position.partition if position else None,
                    "offset": position.offset if position else None,
                },
            )

        missing = expected_fields(entity_type) - observed - META_FIELDS
        if missing:
            logger.debug(
                f"Expected fields not present in {entity_type} event",
                extra={"entity_type": entity_type, "missing_fields": sorted(missing)},
            )

        return changes

    def known_fields(self, entity_type: str) -> frozenset[str]:
        with self._lock:
            known = self._known.get(entity_type)
            return frozenset(known) if known is not None else expected_fields(entity_type)

    def snapshot(self, entity_type: str) -> SchemaVersion:
        return SchemaVersion(entity_type, self.known_fields(entity_type))

    def entity_types(self) -> list[str]:
        with self._lock:
            return sorted(self._known)

    def reset(self) -> None:
        """Forget everything learned since startup."""
        with self._lock:
            self._known.clear()
