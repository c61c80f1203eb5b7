"""
Ordered validation pipeline.

Rules run strictly in order against one envelope. Each rule is bounded
by a per-rule timeout; a rule that times out or raises becomes a failed
result with an "execution failed" detail instead of crashing the
pipeline.

Invariants:
    - Results are recorded in rule order
    - A failing rule with continue_on_failure=False ends evaluation
    - The aggregate is valid only if every evaluated rule passed

How to change safely:
    - New rules must be async and must not block the event loop
    - Keep rule ids stable; they appear in logs and dead-letter headers
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..events import Envelope

logger = logging.getLogger(__name__)

DEFAULT_RULE_TIMEOUT_SECONDS = 1.0


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of one rule.

    Attributes:
        rule_id: Identifier of the rule, e.g. "SCHEMA_001"
        valid: Whether the rule passed
        message: Human-readable summary
        details: Structured detail ("errors", "warnings", ...)
    """

    rule_id: str
    valid: bool
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(
        cls,
        rule_id: str,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ValidationResult:
        return cls(rule_id=rule_id, valid=True, message=message, details=details or {})

    @classmethod
    def failure(
        cls,
        rule_id: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> ValidationResult:
        return cls(rule_id=rule_id, valid=False, message=message, details=details or {})

    @property
    def warnings(self) -> list[str]:
        return list(self.details.get("warnings", []))

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "valid": self.valid,
            "message": self.message,
            "details": self.details,
        }


@dataclass(frozen=True)
class AggregatedValidationResult:
    """Ordered per-rule results for one envelope."""

    entity_type: str
    entity_id: str
    results: tuple[ValidationResult, ...] = ()

    @classmethod
    def from_results(
        cls, results: Sequence[ValidationResult], entity_type: str, entity_id: str
    ) -> AggregatedValidationResult:
        return cls(entity_type=entity_type, entity_id=entity_id, results=tuple(results))

    @property
    def valid(self) -> bool:
        return all(r.valid for r in self.results)

    @property
    def failures(self) -> list[ValidationResult]:
        return [r for r in self.results if not r.valid]

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def warnings(self) -> list[str]:
        return [w for r in self.results for w in r.warnings]

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "valid": self.valid,
            "results": [r.to_dict() for r in self.results],
        }


@runtime_checkable
class ValidationRule(Protocol):
    """A named check run before materialization.

    Attributes:
        rule_id: Stable identifier
        description: What the rule checks
        continue_on_failure: Whether later rules still run after this one fails
    """

    rule_id: str
    description: str
    continue_on_failure: bool

    @abstractmethod
    async def validate(self, envelope: Envelope) -> ValidationResult: ...


class ValidationPipeline:
    """Runs rules in order with a per-rule timeout.

    Example:
        >>> pipeline = ValidationPipeline([StructuralRule(), BusinessRule()])
        >>> result = await pipeline.validate(envelope)
        >>> result.valid
        True
    """

    def __init__(
        self,
        rules: Sequence[ValidationRule],
        rule_timeout: float = DEFAULT_RULE_TIMEOUT_SECONDS,
    ) -> None:
        self.rules = list(rules)
        self.rule_timeout = rule_timeout

    async def _run_rule(self, rule: ValidationRule, envelope: Envelope) -> ValidationResult:
        try:
            return await asyncio.wait_for(rule.validate(envelope), timeout=self.rule_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Validation rule timed out",
                extra={"rule_id": rule.rule_id, "timeout_seconds": self.rule_timeout},
            )
            return ValidationResult.failure(
                rule.rule_id,
                f"Rule execution failed: timed out after {self.rule_timeout}s",
                {"exception": "TimeoutError", "execution_failed": True},
            )
        except Exception as e:
            logger.error(
                f"Validation rule {rule.rule_id} raised: {e}",
                exc_info=True,
                extra={"rule_id": rule.rule_id},
            )
            return ValidationResult.failure(
                rule.rule_id,
                f"Rule execution failed: {e}",
                {"exception": type(e).__name__, "execution_failed": True},
            )

    async def validate(self, envelope: Envelope) -> AggregatedValidationResult:
        start = time.perf_counter()
        results: list[ValidationResult] = []

        for rule in self.rules:
            result = await self._run_rule(rule, envelope)
            results.append(result)
            if not result.valid and not rule.continue_on_failure:
                break

        aggregated = AggregatedValidationResult.from_results(
            results, envelope.entity_type, envelope.entity_id
        )

        if not aggregated.valid:
            logger.warning(
                f"Validation failed for {envelope.entity_type} {envelope.entity_id}: "
                f"{aggregated.failure_count} failures - {[r.rule_id for r in aggregated.failures]}",
                extra={
                    "entity_type": envelope.entity_type,
                    "entity_id": envelope.entity_id,
                    "results": [r.to_dict() for r in aggregated.results],
                    "duration_ms": round((time.perf_counter() - start) * 1000, 3),
                },
            )
        elif aggregated.warnings:
            logger.info(
                "Validation passed with warnings",
                extra={
                    "entity_type": envelope.entity_type,
                    "entity_id": envelope.entity_id,
                    "warnings": aggregated.warnings,
                },
            )

        return aggregated
