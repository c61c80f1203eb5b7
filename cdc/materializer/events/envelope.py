"""
Change-event envelope model and decoder.

The decoder turns one raw stream message into exactly one of:
- Envelope: a typed change event ready for validation and materialization
- Tombstone: a null-body message; acknowledged and never materialized
- DecodeFailure: a structurally invalid message, with the reason

decode() never raises. Unknown fields are ignored by the row models and
missing optional fields are treated as absent.

Wire shape (flattened change event):
    {
        "id": "<primary key>",
        "<business fields>": ...,
        "__deleted": "true" | false | absent,
        "__op": "c" | "u" | "d" | "r" | absent,
        "__source_ts_ms": 1730000000000
    }
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ValidationError

DELETED_FIELD = "__deleted"
OP_FIELD = "__op"
SOURCE_TS_FIELD = "__source_ts_ms"
META_FIELDS = frozenset({DELETED_FIELD, OP_FIELD, SOURCE_TS_FIELD})


class Operation(Enum):
    """Source operation carried by a change event."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class DeliveryPosition:
    """Where a record sat in the stream. For audit only, never for ordering."""

    partition: int
    offset: int

    def to_dict(self) -> dict[str, int]:
        return {"partition": self.partition, "offset": self.offset}


@dataclass(frozen=True)
class Envelope:
    """Decoded representation of one change event.

    Attributes:
        entity_id: Source primary key (always present)
        entity_type: Entity tag, e.g. "customer" (always present)
        operation: CREATE / UPDATE / DELETE
        fields: Source columns coerced by the entity row model, meta fields removed
        source_timestamp: Origin clock in epoch millis, if the event carried one
        position: Delivery position of the record, if known
        raw_fields: Top-level field names present in the raw payload
    """

    entity_id: str
    entity_type: str
    operation: Operation
    fields: dict[str, Any] = field(default_factory=dict)
    source_timestamp: int | None = None
    position: DeliveryPosition | None = None
    raw_fields: frozenset[str] = frozenset()

    @property
    def is_delete(self) -> bool:
        return self.operation == Operation.DELETE

    def get(self, name: str, default: Any = None) -> Any:
        value = self.fields.get(name)
        return default if value is None else value


@dataclass(frozen=True)
class Tombstone:
    """A null-body message; carries no entity data."""

    entity_type: str
    key: str | None = None
    position: DeliveryPosition | None = None


@dataclass(frozen=True)
class DecodeFailure:
    """A message that could not be decoded. Not retryable.

    raw_fields holds the payload's top-level field names; it is empty when
    the body was not a JSON object.
    """

    entity_type: str
    reason: str
    position: DeliveryPosition | None = None
    details: dict[str, Any] = field(default_factory=dict)
    raw_fields: frozenset[str] = frozenset()


DecodeOutcome = Union[Envelope, Tombstone, DecodeFailure]


def parse_body(raw_body: bytes | str) -> dict[str, Any]:
    """Parse a raw body into a JSON object.

    Raises:
        ValueError: If the body is not UTF-8 JSON or not a JSON object
    """
    text = raw_body.decode("utf-8") if isinstance(raw_body, (bytes, bytearray)) else raw_body
    payload = json.loads(text)
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
    return payload


def is_deleted(payload: dict[str, Any]) -> bool:
    """Either deletion convention marks the event as a delete."""
    flag = payload.get(DELETED_FIELD)
    if flag is True or (isinstance(flag, str) and flag.lower() == "true"):
        return True
    return payload.get(OP_FIELD) == "d"


def _operation(payload: dict[str, Any]) -> Operation:
    if is_deleted(payload):
        return Operation.DELETE
    if payload.get(OP_FIELD) == "c":
        return Operation.CREATE
    return Operation.UPDATE


def _source_timestamp(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.lstrip("-").isdigit():
        return int(value)
    raise ValueError(f"{SOURCE_TS_FIELD} must be an integer, got {value!r}")


def _entity_id(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def decode(
    entity_type: str,
    raw_body: bytes | str | None,
    row_model: type[BaseModel] | None = None,
    position: DeliveryPosition | None = None,
    primary_key: str = "id",
) -> DecodeOutcome:
    """Decode one raw message body.

    Args:
        entity_type: Entity tag the message belongs to
        raw_body: Message body; None is a tombstone
        row_model: Optional pydantic model coercing the business fields
        position: Delivery position of the message
        primary_key: Name of the primary-key field in the payload

    Returns:
        Envelope, Tombstone or DecodeFailure. Never raises.
    """
    if raw_body is None:
        return Tombstone(entity_type=entity_type, position=position)

    try:
        payload = parse_body(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        return DecodeFailure(entity_type, f"Malformed payload: {e}", position)

    entity_id = _entity_id(payload.get(primary_key))
    if entity_id is None:
        return DecodeFailure(
            entity_type,
            f"Missing or invalid primary key '{primary_key}'",
            position,
            {"value": repr(payload.get(primary_key))},
            raw_fields=frozenset(payload.keys()),
        )

    try:
        source_ts = _source_timestamp(payload.get(SOURCE_TS_FIELD))
    except ValueError as e:
        return DecodeFailure(entity_type, str(e), position, raw_fields=frozenset(payload.keys()))

    row = {k: v for k, v in payload.items() if k not in META_FIELDS}
    row[primary_key] = entity_id

    if row_model is not None:
        try:
            fields = row_model.model_validate(row).model_dump(mode="json")
        except ValidationError as e:
            return DecodeFailure(
                entity_type,
                f"Row does not match {row_model.__name__}",
                position,
                {"errors": [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]},
                raw_fields=frozenset(payload.keys()),
            )
    else:
        fields = row

    return Envelope(
        entity_id=entity_id,
        entity_type=entity_type,
        operation=_operation(payload),
        fields=fields,
        source_timestamp=source_ts,
        position=position,
        raw_fields=frozenset(payload.keys()),
    )
