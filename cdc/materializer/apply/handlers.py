"""
Entity handlers.

A handler owns everything specific to one entity type: its topic, its
row model, its target collection and how an accepted envelope is
written. Every handler offers the same three capabilities:

    decode(raw_body, position) -> Envelope | Tombstone | DecodeFailure
    validate(envelope)         -> AggregatedValidationResult
    materialize(envelope)      -> MaterializeResult

Adding an entity type means writing one handler and registering it with
the EventRouter; dispatch code does not change.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar, Protocol, runtime_checkable

from pydantic import BaseModel

from ..events import (
    AddressRow,
    CustomerRow,
    DecodeOutcome,
    DeliveryPosition,
    Envelope,
    OrderItemRow,
    OrderRow,
    decode,
)
from ..observability import ProcessingOutcome
from ..validation import AggregatedValidationResult, ValidationPipeline
from .embedding import EmbeddingCoordinator
from .materializer import IdempotentMaterializer, MaterializeResult

logger = logging.getLogger(__name__)

DEFAULT_TOPIC_PREFIX = "cdc.public."


@runtime_checkable
class EntityHandler(Protocol):
    entity_type: str

    @property
    def topic(self) -> str: ...

    def decode(
        self, raw_body: bytes | str | None, position: DeliveryPosition | None = None
    ) -> DecodeOutcome: ...

    async def validate(self, envelope: Envelope) -> AggregatedValidationResult: ...

    async def materialize(self, envelope: Envelope) -> MaterializeResult: ...


class DocumentHandler:
    """Handler for an entity stored as a top-level document."""

    entity_type: ClassVar[str]
    collection: ClassVar[str]
    row_model: ClassVar[type[BaseModel]]
    preserve: ClassVar[tuple[str, ...]] = ()
    soft_delete_fields: ClassVar[dict[str, Any] | None] = None

    def __init__(
        self,
        materializer: IdempotentMaterializer,
        pipeline: ValidationPipeline,
        topic_prefix: str = DEFAULT_TOPIC_PREFIX,
        soft_delete: bool = False,
    ) -> None:
        self.materializer = materializer
        self.pipeline = pipeline
        self.topic_prefix = topic_prefix
        self.soft_delete = soft_delete and self.soft_delete_fields is not None

    @property
    def topic(self) -> str:
        return f"{self.topic_prefix}{self.entity_type}"

    def decode(
        self, raw_body: bytes | str | None, position: DeliveryPosition | None = None
    ) -> DecodeOutcome:
        return decode(self.entity_type, raw_body, self.row_model, position)

    async def validate(self, envelope: Envelope) -> AggregatedValidationResult:
        return await self.pipeline.validate(envelope)

    async def materialize(self, envelope: Envelope) -> MaterializeResult:
        if envelope.is_delete:
            return await self.materializer.delete(
                self.collection,
                envelope,
                soft_delete_fields=self.soft_delete_fields if self.soft_delete else None,
            )
        return await self.materializer.upsert(self.collection, envelope, self.preserve)


class CustomerHandler(DocumentHandler):
    entity_type = "customer"
    collection = "customers"
    row_model = CustomerRow
    soft_delete_fields = {"status": "DELETED"}


class AddressHandler(DocumentHandler):
    entity_type = "address"
    collection = "addresses"
    row_model = AddressRow


class OrderHandler(DocumentHandler):
    """Orders are parents of embedded items; an update keeps the stored items."""

    entity_type = "orders"
    collection = "orders"
    row_model = OrderRow
    preserve = ("items",)

    def __init__(
        self,
        materializer: IdempotentMaterializer,
        pipeline: ValidationPipeline,
        coordinator: EmbeddingCoordinator,
        topic_prefix: str = DEFAULT_TOPIC_PREFIX,
    ) -> None:
        super().__init__(materializer, pipeline, topic_prefix)
        self.coordinator = coordinator

    async def materialize(self, envelope: Envelope) -> MaterializeResult:
        result = await super().materialize(envelope)
        if not envelope.is_delete and self.coordinator.parked_for(envelope.entity_id):
            await self.coordinator.replay_parked(envelope.entity_id)
        return result


class OrderItemHandler:
    """Order items are embedded in their order's "items" list."""

    entity_type = "order_item"
    row_model = OrderItemRow
    parent_key = "order_id"

    def __init__(
        self,
        coordinator: EmbeddingCoordinator,
        pipeline: ValidationPipeline,
        topic_prefix: str = DEFAULT_TOPIC_PREFIX,
    ) -> None:
        self.coordinator = coordinator
        self.pipeline = pipeline
        self.topic_prefix = topic_prefix

    @property
    def topic(self) -> str:
        return f"{self.topic_prefix}{self.entity_type}"

    def decode(
        self, raw_body: bytes | str | None, position: DeliveryPosition | None = None
    ) -> DecodeOutcome:
        return decode(self.entity_type, raw_body, self.row_model, position)

    async def validate(self, envelope: Envelope) -> AggregatedValidationResult:
        return await self.pipeline.validate(envelope)

    async def materialize(self, envelope: Envelope) -> MaterializeResult:
        parent_id = envelope.get(self.parent_key)
        if parent_id is None:
            # Only deletes get here; upserts without order_id fail validation
            logger.warning(
                f"order_item {envelope.entity_id} has no {self.parent_key}, nothing to delete",
                extra={"entity_id": envelope.entity_id},
            )
            return MaterializeResult(
                ProcessingOutcome.NOT_FOUND,
                self.coordinator.parent_collection,
                envelope.entity_id,
            )

        if envelope.is_delete:
            return await self.coordinator.delete_child(str(parent_id), envelope)
        return await self.coordinator.upsert_child(str(parent_id), envelope)


def default_handlers(
    materializer: IdempotentMaterializer,
    pipeline: ValidationPipeline,
    coordinator: EmbeddingCoordinator,
    customer_soft_delete: bool = False,
    topic_prefix: str = DEFAULT_TOPIC_PREFIX,
) -> list[EntityHandler]:
    """Handlers for every entity type of the source database."""
    return [
        CustomerHandler(materializer, pipeline, topic_prefix, soft_delete=customer_soft_delete),
        AddressHandler(materializer, pipeline, topic_prefix),
        OrderHandler(materializer, pipeline, coordinator, topic_prefix),
        OrderItemHandler(coordinator, pipeline, topic_prefix),
    ]
