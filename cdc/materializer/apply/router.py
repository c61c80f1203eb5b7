"""
Event router: topic -> entity handler dispatch.

The router owns the per-record pipeline that is independent of the
transport: decode, schema drift tracking, validation and materialization.
Retries, deadlines, dead-lettering and commits belong to the consumer.

Invariants:
    - The handler map is immutable after freeze()
    - An unknown topic is logged and treated as a successful no-op
    - Drift is observed on the raw field set, including rows the typed decode rejects
    - route() raises only for retryable store failures and malformed ids

How to change safely:
    - Register new handlers before freeze(); never mutate the map afterwards
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from ..events import DecodeFailure, DeliveryPosition, Envelope, Tombstone
from ..observability import ObservabilitySink, ProcessingOutcome
from ..schema import SchemaDriftDetector, SchemaHistory
from .handlers import EntityHandler

logger = logging.getLogger(__name__)


def entity_type_for_topic(topic: str) -> str:
    """Entity type carried by a topic: the segment after the last '.'."""
    return topic.rsplit(".", 1)[-1]


@dataclass
class RouteResult:
    """Outcome of routing one record.

    Attributes:
        outcome: Terminal processing outcome
        topic: Topic the record came from
        entity_type: Entity type of the record
        entity_id: Entity id, once decoded
        reason: Short failure reason, for rejected records
        details: Structured failure detail (decode errors, rule results)
    """

    outcome: ProcessingOutcome
    topic: str
    entity_type: str
    entity_id: str | None = None
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class EventRouter:
    """Dispatches records to the handler registered for their topic.

    Example:
        >>> router = EventRouter(drift_detector=SchemaDriftDetector())
        >>> router.register("customer", customer_handler)
        >>> router.freeze()
        >>> result = await router.route("cdc.public.customer", b'{"id": "c1", ...}')
    """

    def __init__(
        self,
        drift_detector: SchemaDriftDetector | None = None,
        schema_history: SchemaHistory | None = None,
        sink: ObservabilitySink | None = None,
    ) -> None:
        self.drift_detector = drift_detector
        self.schema_history = schema_history
        self.sink = sink
        self._handlers: dict[str, EntityHandler] = {}
        self._frozen = False

    def register(self, entity_type: str, handler: EntityHandler, topic: str | None = None) -> None:
        """Register a handler for an entity type.

        Args:
            entity_type: Entity type tag
            handler: Handler implementing decode/validate/materialize
            topic: Topic to route from; defaults to handler.topic

        Raises:
            RuntimeError: If the router is frozen
            ValueError: If the topic already has a handler
        """
        if self._frozen:
            raise RuntimeError("EventRouter is frozen; register handlers before startup")
        topic = topic or handler.topic
        if topic in self._handlers:
            raise ValueError(f"Topic {topic} already has a handler")
        if handler.entity_type != entity_type:
            raise ValueError(
                f"Handler for {handler.entity_type} registered as {entity_type}"
            )
        self._handlers[topic] = handler

    def freeze(self) -> None:
        self._frozen = True
        logger.info(
            f"Initialized EventRouter with handlers for topics: {sorted(self._handlers)}",
            extra={"topics": sorted(self._handlers)},
        )

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def handlers(self) -> Mapping[str, EntityHandler]:
        return MappingProxyType(self._handlers)

    @property
    def registered_topics(self) -> list[str]:
        return sorted(self._handlers)

    def handler_for(self, topic: str) -> EntityHandler | None:
        return self._handlers.get(topic)

    def entity_type_for(self, topic: str) -> str:
        handler = self._handlers.get(topic)
        return handler.entity_type if handler else entity_type_for_topic(topic)

    async def route(
        self,
        topic: str,
        payload: bytes | str | Envelope | None,
        position: DeliveryPosition | None = None,
    ) -> RouteResult:
        """Decode, validate and materialize one record.

        Args:
            topic: Topic the record came from
            payload: Raw body (None for a tombstone) or an already decoded Envelope
            position: Delivery position of the record

        Raises:
            StoreUnavailableError: Retryable store failure
            MalformedIdError: Id rejected by the materializer
        """
        handler = self.handler_for(topic)
        if handler is None:
            logger.warning(f"No handler found for topic: {topic}", extra={"topic": topic})
            return RouteResult(ProcessingOutcome.UNROUTED, topic, entity_type_for_topic(topic))

        entity_type = handler.entity_type

        if isinstance(payload, Envelope):
            envelope = payload
        else:
            decoded = handler.decode(payload, position)
            if isinstance(decoded, Tombstone):
                logger.debug("Ignoring tombstone", extra={"topic": topic})
                return RouteResult(ProcessingOutcome.TOMBSTONE, topic, entity_type)
            if isinstance(decoded, DecodeFailure):
                self._track_schema(entity_type, decoded.raw_fields, position)
                logger.error(
                    f"Failed to decode {entity_type} event: {decoded.reason}",
                    extra={"topic": topic, "reason": decoded.reason, **decoded.details},
                )
                return RouteResult(
                    ProcessingOutcome.DECODE_FAILED,
                    topic,
                    entity_type,
                    reason=decoded.reason,
                    details=decoded.details,
                )
            envelope = decoded

        self._track_schema(envelope.entity_type, envelope.raw_fields, envelope.position)

        logger.debug(
            f"Routing event to {entity_type}",
            extra={"topic": topic, "entity_id": envelope.entity_id, "operation": envelope.operation.value},
        )

        validation = await handler.validate(envelope)
        if not validation.valid:
            return RouteResult(
                ProcessingOutcome.VALIDATION_FAILED,
                topic,
                entity_type,
                envelope.entity_id,
                reason=", ".join(f"{r.rule_id}: {r.message}" for r in validation.failures),
                details=validation.to_dict(),
            )

        result = await handler.materialize(envelope)
        return RouteResult(result.outcome, topic, entity_type, envelope.entity_id)

    def _track_schema(
        self,
        entity_type: str,
        raw_fields: frozenset[str],
        position: DeliveryPosition | None,
    ) -> None:
        if self.drift_detector is None or not raw_fields:
            return
        changes = self.drift_detector.observe(entity_type, raw_fields, position)
        if not changes:
            return
        if self.schema_history is not None:
            self.schema_history.record(changes)
        if self.sink is not None:
            for change in changes:
                self.sink.record_schema_change(change.entity_type, change.field_name)
