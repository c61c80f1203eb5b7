"""
Row models for the source tables.

Each model coerces the weakly typed columns of one change event. Every
column except the primary key is optional so that partial rows and
schema evolution never fail decoding; unknown columns are ignored.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict

# Epoch values above this are microseconds (time.precision.mode=adaptive_time_microseconds)
_MICROS_THRESHOLD = 10**14


def _coerce_key(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


def _coerce_timestamp(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool) and abs(value) >= _MICROS_THRESHOLD:
        return datetime.fromtimestamp(value / 1_000_000, tz=timezone.utc)
    return value


SourceKey = Annotated[str, BeforeValidator(_coerce_key)]
SourceTimestamp = Annotated[datetime, BeforeValidator(_coerce_timestamp)]


class SourceRow(BaseModel):
    """Base for all row models."""

    model_config = ConfigDict(extra="ignore")

    id: SourceKey


class CustomerRow(SourceRow):
    email: Optional[str] = None
    status: Optional[str] = None
    updated_at: Optional[SourceTimestamp] = None


class AddressRow(SourceRow):
    customer_id: Optional[SourceKey] = None
    type: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = "USA"
    is_default: Optional[bool] = None
    updated_at: Optional[SourceTimestamp] = None


class OrderRow(SourceRow):
    customer_id: Optional[SourceKey] = None
    status: Optional[str] = None
    total_amount: Optional[Decimal] = None
    created_at: Optional[SourceTimestamp] = None
    updated_at: Optional[SourceTimestamp] = None


class OrderItemRow(SourceRow):
    order_id: Optional[SourceKey] = None
    product_sku: Optional[str] = None
    product_name: Optional[str] = None
    quantity: Optional[int] = None
    unit_price: Optional[Decimal] = None
    line_total: Optional[Decimal] = None
