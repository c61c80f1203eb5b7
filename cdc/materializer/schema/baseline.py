"""
Expected source schema per entity type.

The drift detector seeds its known-field sets from these baselines.
Meta fields are part of every baseline since the connector adds them
to each flattened event.
"""

from __future__ import annotations

from ..events import META_FIELDS

EXPECTED_FIELDS: dict[str, frozenset[str]] = {
    "customer": frozenset({"id", "email", "status", "updated_at"}) | META_FIELDS,
    "address": frozenset(
        {
            "id",
            "customer_id",
            "type",
            "street",
            "city",
            "state",
            "postal_code",
            "country",
            "is_default",
            "updated_at",
        }
    )
    | META_FIELDS,
    "orders": frozenset(
        {"id", "customer_id", "status", "total_amount", "created_at", "updated_at"}
    )
    | META_FIELDS,
    "order_item": frozenset(
        {
            "id",
            "order_id",
            "product_sku",
            "product_name",
            "quantity",
            "unit_price",
            "line_total",
        }
    )
    | META_FIELDS,
}


def expected_fields(entity_type: str) -> frozenset[str]:
    """Baseline for an entity type; empty for types without one."""
    return EXPECTED_FIELDS.get(entity_type, frozenset())
