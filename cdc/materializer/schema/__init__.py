"""
Schema drift tracking for incoming change events.

Invariants:
    - Each new (entity_type, field) pair is reported exactly once per process
    - Detection is advisory; it never rejects an event
"""

from .baseline import EXPECTED_FIELDS, expected_fields
from .drift import ChangeKind, SchemaChange, SchemaDriftDetector, SchemaVersion
from .history import SCHEMA_HISTORY_COLLECTION, SchemaHistory

__all__ = [
    "EXPECTED_FIELDS",
    "expected_fields",
    "ChangeKind",
    "SchemaChange",
    "SchemaVersion",
    "SchemaDriftDetector",
    "SchemaHistory",
    "SCHEMA_HISTORY_COLLECTION",
]
