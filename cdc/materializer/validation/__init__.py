"""
Validation of change events before materialization.

Invariants:
    - Rules run in a fixed order
    - A rule error or timeout is a failed result, never an exception
    - Invalid envelopes are never materialized
"""

from .pipeline import (
    DEFAULT_RULE_TIMEOUT_SECONDS,
    AggregatedValidationResult,
    ValidationPipeline,
    ValidationResult,
    ValidationRule,
)
from .rules import (
    ID_PATTERN,
    BusinessRule,
    StructuralRule,
    TemporalConsistencyRule,
    default_rules,
)

__all__ = [
    "ValidationResult",
    "AggregatedValidationResult",
    "ValidationRule",
    "ValidationPipeline",
    "DEFAULT_RULE_TIMEOUT_SECONDS",
    "StructuralRule",
    "BusinessRule",
    "TemporalConsistencyRule",
    "default_rules",
    "ID_PATTERN",
]
