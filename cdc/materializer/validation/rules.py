"""
Canonical validation rules.

Order and short-circuit behaviour:
    1. StructuralRule (SCHEMA_001): required fields, id format, format checks.
       Stops the pipeline on failure.
    2. BusinessRule (BUSINESS_001): enumerations and domain constraints.
       Failure is recorded; evaluation continues.
    3. TemporalConsistencyRule (TEMPORAL_001): clock drift and event age.
       Failure is recorded; evaluation continues.

Warnings never fail a rule; they are carried in details["warnings"].
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from ..events import Envelope
from .pipeline import ValidationResult

ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-:.]{0,127}$")
EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}$")
US_POSTAL_CODE = re.compile(r"^\d{5}(-\d{4})?$")
CANADA_POSTAL_CODE = re.compile(r"^[A-Za-z]\d[A-Za-z][ -]?\d[A-Za-z]\d$")

REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "customer": ("email", "status"),
    "address": ("street", "city", "postal_code", "type"),
    "orders": ("customer_id",),
    "order_item": ("order_id", "product_sku"),
}

CUSTOMER_STATUSES = frozenset({"active", "inactive", "pending", "suspended", "DELETED"})
ADDRESS_TYPES = frozenset({"billing", "shipping", "home", "work"})
ORDER_STATUSES = frozenset(
    {"pending", "confirmed", "processing", "shipped", "delivered", "cancelled"}
)
TEST_EMAIL_DOMAINS = ("@test.com", "@example.com")

MAX_CLOCK_DRIFT = timedelta(minutes=5)
MAX_EVENT_AGE = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _result(
    rule_id: str, label: str, errors: list[str], warnings: list[str]
) -> ValidationResult:
    if errors:
        return ValidationResult.failure(
            rule_id, f"{label} validation failed", {"errors": errors, "warnings": warnings}
        )
    if warnings:
        return ValidationResult.success(
            rule_id,
            f"{label} validation passed with warnings: {', '.join(warnings)}",
            {"warnings": warnings},
        )
    return ValidationResult.success(rule_id, f"{label} validation passed")


class StructuralRule:
    """Primary-key format, required fields and field formats."""

    rule_id = "SCHEMA_001"
    description = "Validates required fields, primary key format and field formats"
    continue_on_failure = False

    def __init__(self, required_fields: dict[str, tuple[str, ...]] | None = None) -> None:
        self.required_fields = REQUIRED_FIELDS if required_fields is None else required_fields

    async def validate(self, envelope: Envelope) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        if not ID_PATTERN.match(envelope.entity_id):
            errors.append(f"id '{envelope.entity_id}' has an invalid format")

        if envelope.is_delete:
            if errors:
                return _result(self.rule_id, "Schema", errors, warnings)
            return ValidationResult.success(self.rule_id, "Delete events bypass field checks")

        for name in self.required_fields.get(envelope.entity_type, ()):
            if _blank(envelope.fields.get(name)):
                errors.append(f"{name} is required for non-delete events")

        if envelope.entity_type == "customer":
            email = envelope.fields.get("email")
            if not _blank(email) and not EMAIL_PATTERN.match(email):
                errors.append(f"email format is invalid: {email}")

        if envelope.entity_type == "address":
            self._check_postal_code(envelope, warnings)

        return _result(self.rule_id, "Schema", errors, warnings)

    @staticmethod
    def _check_postal_code(envelope: Envelope, warnings: list[str]) -> None:
        postal_code = envelope.fields.get("postal_code")
        if _blank(postal_code):
            return
        country = (envelope.fields.get("country") or "USA").upper()
        if country in ("USA", "US") and not US_POSTAL_CODE.match(postal_code):
            warnings.append(
                f"Postal code '{postal_code}' may not be a valid US format "
                "(expected: 12345 or 12345-6789)"
            )
        elif country in ("CANADA", "CA") and not CANADA_POSTAL_CODE.match(postal_code):
            warnings.append(
                f"Postal code '{postal_code}' may not be a valid Canadian format "
                "(expected: A1A 1A1)"
            )


class BusinessRule:
    """Enumerated values and domain constraints per entity type."""

    rule_id = "BUSINESS_001"
    description = "Validates business constraints"
    continue_on_failure = True

    async def validate(self, envelope: Envelope) -> ValidationResult:
        if envelope.is_delete:
            return ValidationResult.success(self.rule_id, "Delete events bypass business rules")

        errors: list[str] = []
        warnings: list[str] = []
        fields = envelope.fields
        entity_type = envelope.entity_type

        if entity_type == "customer":
            self._check_member(fields.get("status"), CUSTOMER_STATUSES, "status", errors)
            email = fields.get("email")
            if isinstance(email, str) and email.endswith(TEST_EMAIL_DOMAINS):
                warnings.append(f"Email appears to be a test address: {email}")

        elif entity_type == "address":
            self._check_member(fields.get("type"), ADDRESS_TYPES, "address type", errors)

        elif entity_type == "orders":
            self._check_member(fields.get("status"), ORDER_STATUSES, "order status", errors)
            total = _decimal(fields.get("total_amount"))
            if total is not None and total < 0:
                errors.append(f"total_amount must not be negative: {total}")

        elif entity_type == "order_item":
            quantity = fields.get("quantity")
            if quantity is not None and quantity <= 0:
                errors.append(f"quantity must be positive: {quantity}")
            unit_price = _decimal(fields.get("unit_price"))
            if unit_price is not None and unit_price < 0:
                errors.append(f"unit_price must not be negative: {unit_price}")

        return _result(self.rule_id, "Business", errors, warnings)

    @staticmethod
    def _check_member(value: Any, allowed: frozenset[str], label: str, errors: list[str]) -> None:
        if value is not None and value not in allowed:
            errors.append(f"Invalid {label}: {value}. Must be one of: {sorted(allowed)}")


class TemporalConsistencyRule:
    """Rejects timestamps from the future; flags very old events."""

    rule_id = "TEMPORAL_001"
    description = "Validates timestamp consistency"
    continue_on_failure = True

    def __init__(
        self,
        max_clock_drift: timedelta = MAX_CLOCK_DRIFT,
        max_event_age: timedelta = MAX_EVENT_AGE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.max_clock_drift = max_clock_drift
        self.max_event_age = max_event_age
        self.clock = clock

    async def validate(self, envelope: Envelope) -> ValidationResult:
        now = self.clock()
        errors: list[str] = []
        warnings: list[str] = []

        if envelope.source_timestamp is None:
            warnings.append("Source timestamp is missing, using current time")
        else:
            event_time = datetime.fromtimestamp(envelope.source_timestamp / 1000, tz=timezone.utc)
            if event_time > now + self.max_clock_drift:
                errors.append(f"Source timestamp is in the future: {event_time.isoformat()}")
            if event_time < now - self.max_event_age:
                hours = int(self.max_event_age.total_seconds() // 3600)
                warnings.append(f"Event is older than {hours} hours: {event_time.isoformat()}")

        updated_at = self._parse_datetime(envelope.fields.get("updated_at"))
        if updated_at is not None and updated_at > now + self.max_clock_drift:
            errors.append(f"updated_at timestamp is in the future: {updated_at.isoformat()}")

        return _result(self.rule_id, "Temporal", errors, warnings)

    @staticmethod
    def _parse_datetime(value: Any) -> datetime | None:
        if not isinstance(value, str):
            return None
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def default_rules() -> list:
    """The canonical rule chain in evaluation order."""
    return [StructuralRule(), BusinessRule(), TemporalConsistencyRule()]
