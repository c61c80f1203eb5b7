"""
Observability sink for processing outcomes.

The materializer reports one outcome per processed record and one
record per detected schema change. Export pipelines (metrics, traces)
live outside this package; they plug in by implementing ObservabilitySink.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from enum import Enum
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class ProcessingOutcome(Enum):
    """Terminal outcome of processing one record."""

    APPLIED = "applied"
    SKIPPED_STALE = "skipped_stale"
    NOT_FOUND = "not_found"
    TOMBSTONE = "tombstone"
    UNROUTED = "unrouted"
    PARENT_MISSING = "parent_missing"
    PARKED = "parked"
    DECODE_FAILED = "decode_failed"
    VALIDATION_FAILED = "validation_failed"
    STORE_FAILED = "store_failed"
    ERROR = "error"

    @property
    def success(self) -> bool:
        """Whether the outcome counts as success for the sink."""
        return self not in (
            ProcessingOutcome.DECODE_FAILED,
            ProcessingOutcome.VALIDATION_FAILED,
            ProcessingOutcome.STORE_FAILED,
            ProcessingOutcome.PARENT_MISSING,
            ProcessingOutcome.ERROR,
        )

    @property
    def dead_letter(self) -> bool:
        """Whether a record with this outcome goes to the dead-letter sink."""
        return self in (
            ProcessingOutcome.DECODE_FAILED,
            ProcessingOutcome.VALIDATION_FAILED,
            ProcessingOutcome.STORE_FAILED,
            ProcessingOutcome.ERROR,
        )


@runtime_checkable
class ObservabilitySink(Protocol):
    def record_outcome(
        self, entity_type: str, outcome: ProcessingOutcome, duration_ms: float
    ) -> None: ...

    def record_schema_change(self, entity_type: str, field_name: str) -> None: ...


class LoggingObservabilitySink:
    """Default sink: emits outcomes as debug log lines with structured context."""

    def record_outcome(
        self, entity_type: str, outcome: ProcessingOutcome, duration_ms: float
    ) -> None:
        logger.debug(
            "Record processed",
            extra={
                "entity_type": entity_type,
                "outcome": outcome.value,
                "success": outcome.success,
                "duration_ms": round(duration_ms, 3),
            },
        )

    def record_schema_change(self, entity_type: str, field_name: str) -> None:
        logger.info(
            "Schema change recorded",
            extra={"entity_type": entity_type, "field_name": field_name},
        )


class InMemoryObservabilitySink:
    """Counting sink for tests and the inspect tool."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.outcomes: Counter[tuple[str, ProcessingOutcome]] = Counter()
        self.schema_changes: list[tuple[str, str]] = []
        self.durations_ms: list[float] = []

    def record_outcome(
        self, entity_type: str, outcome: ProcessingOutcome, duration_ms: float
    ) -> None:
        with self._lock:
            self.outcomes[(entity_type, outcome)] += 1
            self.durations_ms.append(duration_ms)

    def record_schema_change(self, entity_type: str, field_name: str) -> None:
        with self._lock:
            self.schema_changes.append((entity_type, field_name))

    def count(self, outcome: ProcessingOutcome, entity_type: str | None = None) -> int:
        with self._lock:
            return sum(
                n
                for (etype, out), n in self.outcomes.items()
                if out == outcome and (entity_type is None or etype == entity_type)
            )

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self.outcomes.values())
