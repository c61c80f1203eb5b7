"""
Unit tests for the event router and entity handlers.

Tests cover:
- Registration and freezing
- Dispatch of each outcome (unrouted, tombstone, decode/validation failure)
- Schema drift tracking on routed events
- Handler behaviour for customers, orders and order items
"""

import json
import time

import pytest

from cdc.materializer.apply import (
    CustomerHandler,
    EmbeddingCoordinator,
    EventRouter,
    IdempotentMaterializer,
    default_handlers,
    entity_type_for_topic,
)
from cdc.materializer.events import DeliveryPosition
from cdc.materializer.observability import InMemoryObservabilitySink, ProcessingOutcome
from cdc.materializer.schema import SchemaDriftDetector, SchemaHistory
from cdc.materializer.store import InMemoryDocumentStore
from cdc.materializer.validation import ValidationPipeline, default_rules

CUSTOMER_TOPIC = "cdc.public.customer"
ORDERS_TOPIC = "cdc.public.orders"
ITEM_TOPIC = "cdc.public.order_item"


def now_ms():
    return int(time.time() * 1000)


def body(fields: dict) -> bytes:
    return json.dumps(fields).encode()


def customer(entity_id="C1", ts=None, **fields):
    row = {"id": entity_id, "email": "jane@shop.io", "status": "active", **fields}
    row["__source_ts_ms"] = ts or now_ms()
    return body(row)


class TestEntityTypeForTopic:
    """Tests for entity_type_for_topic()."""

    @pytest.mark.parametrize(
        "topic,expected",
        [
            ("cdc.public.customer", "customer"),
            ("cdc.public.order_item", "order_item"),
            ("orders", "orders"),
        ],
    )
    def test_suffix(self, topic, expected):
        """The entity type is the last dotted segment."""
        assert entity_type_for_topic(topic) == expected


class TestEventRouter:
    """Tests for EventRouter."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.fixture
    def detector(self):
        return SchemaDriftDetector()

    @pytest.fixture
    def sink(self):
        return InMemoryObservabilitySink()

    @pytest.fixture
    def history(self, store):
        return SchemaHistory(store)

    @pytest.fixture
    def coordinator(self, store):
        return EmbeddingCoordinator(store, "orders", "items")

    @pytest.fixture
    def router(self, store, detector, history, sink, coordinator):
        router = EventRouter(detector, history, sink)
        materializer = IdempotentMaterializer(store)
        pipeline = ValidationPipeline(default_rules())
        for handler in default_handlers(materializer, pipeline, coordinator):
            router.register(handler.entity_type, handler)
        router.freeze()
        return router

    def test_registered_topics(self, router):
        """Every default handler is registered under its topic."""
        assert router.registered_topics == [
            "cdc.public.address",
            "cdc.public.customer",
            "cdc.public.order_item",
            "cdc.public.orders",
        ]
        assert router.entity_type_for(ITEM_TOPIC) == "order_item"

    def test_register_after_freeze(self, router, store):
        """The handler map is immutable after freeze()."""
        handler = CustomerHandler(IdempotentMaterializer(store), ValidationPipeline([]))

        with pytest.raises(RuntimeError):
            router.register("customer", handler, topic="other.customer")
        with pytest.raises(TypeError):
            router.handlers["x"] = handler

    def test_duplicate_topic(self, store):
        """A topic has at most one handler."""
        router = EventRouter()
        handler = CustomerHandler(IdempotentMaterializer(store), ValidationPipeline([]))
        router.register("customer", handler)

        with pytest.raises(ValueError):
            router.register("customer", handler)

    def test_entity_type_mismatch(self, store):
        """Handlers are registered under their own entity type."""
        router = EventRouter()
        handler = CustomerHandler(IdempotentMaterializer(store), ValidationPipeline([]))

        with pytest.raises(ValueError):
            router.register("address", handler)

    @pytest.mark.asyncio
    async def test_route_customer(self, router, store):
        """A valid customer event is materialized."""
        result = await router.route(CUSTOMER_TOPIC, customer(), DeliveryPosition(0, 1))

        assert result.outcome == ProcessingOutcome.APPLIED
        assert result.entity_type == "customer"
        assert result.entity_id == "C1"
        assert (await store.find_by_id("customers", "C1"))["email"] == "jane@shop.io"

    @pytest.mark.asyncio
    async def test_unknown_topic(self, router, store):
        """An unrouted topic is a successful no-op."""
        result = await router.route("cdc.public.invoice", body({"id": "X1"}))

        assert result.outcome == ProcessingOutcome.UNROUTED
        assert result.outcome.success
        assert store.call_count == 0

    @pytest.mark.asyncio
    async def test_tombstone(self, router, store):
        """A null body is acknowledged without writing."""
        result = await router.route(CUSTOMER_TOPIC, None)

        assert result.outcome == ProcessingOutcome.TOMBSTONE
        assert store.call_count == 0

    @pytest.mark.asyncio
    async def test_decode_failure(self, router):
        """Undecodable bodies are rejected with a reason."""
        result = await router.route(CUSTOMER_TOPIC, b"{oops")

        assert result.outcome == ProcessingOutcome.DECODE_FAILED
        assert result.reason.startswith("Malformed payload")
        assert result.outcome.dead_letter

    @pytest.mark.asyncio
    async def test_validation_failure_is_not_written(self, router, store):
        """Invalid events never reach the store."""
        result = await router.route(CUSTOMER_TOPIC, customer(email="broken"))

        assert result.outcome == ProcessingOutcome.VALIDATION_FAILED
        assert "SCHEMA_001" in result.reason
        assert result.details["results"][0]["rule_id"] == "SCHEMA_001"
        assert await store.find_by_id("customers", "C1") is None

    @pytest.mark.asyncio
    async def test_stale_event(self, router, store):
        """An older event after a newer one is skipped."""
        await router.route(CUSTOMER_TOPIC, customer(ts=now_ms(), status="active"))
        result = await router.route(CUSTOMER_TOPIC, customer(ts=now_ms() - 60_000, status="inactive"))

        assert result.outcome == ProcessingOutcome.SKIPPED_STALE
        assert (await store.find_by_id("customers", "C1"))["status"] == "active"

    @pytest.mark.asyncio
    async def test_delete(self, router, store):
        """Delete events remove the customer."""
        ts = now_ms()
        await router.route(CUSTOMER_TOPIC, customer(ts=ts))
        result = await router.route(
            CUSTOMER_TOPIC, body({"id": "C1", "__deleted": "true", "__source_ts_ms": ts + 1})
        )

        assert result.outcome == ProcessingOutcome.APPLIED
        assert await store.find_by_id("customers", "C1") is None

    @pytest.mark.asyncio
    async def test_schema_drift_recorded(self, router, detector, history, sink):
        """A new field is recorded once in history and the sink."""
        await router.route(CUSTOMER_TOPIC, customer(phone="555-0100"))
        await router.route(CUSTOMER_TOPIC, customer(entity_id="C2", phone="555-0101"))

        assert sink.schema_changes == [("customer", "phone")]
        assert history.pending == 1
        assert "phone" in detector.known_fields("customer")

    @pytest.mark.asyncio
    async def test_drift_tracked_for_invalid_events(self, router, sink):
        """Drift detection runs before validation."""
        await router.route(CUSTOMER_TOPIC, customer(email="broken", loyalty_tier="gold"))
        assert sink.schema_changes == [("customer", "loyalty_tier")]

    @pytest.mark.asyncio
    async def test_drift_tracked_for_undecodable_rows(self, router, detector, history, sink):
        """A row rejected by its row model still reports its new fields."""
        result = await router.route(
            ITEM_TOPIC,
            body(
                {
                    "id": "I1",
                    "order_id": "O1",
                    "product_sku": "SKU-1",
                    "quantity": "two",
                    "gift_wrap": True,
                    "__source_ts_ms": now_ms(),
                }
            ),
            DeliveryPosition(2, 7),
        )

        assert result.outcome == ProcessingOutcome.DECODE_FAILED
        assert sink.schema_changes == [("order_item", "gift_wrap")]
        assert "gift_wrap" in detector.known_fields("order_item")
        assert history.pending == 1

    @pytest.mark.asyncio
    async def test_drift_tracked_without_primary_key(self, router, sink):
        """A row missing its key still reports its new fields."""
        result = await router.route(CUSTOMER_TOPIC, body({"email": "a@shop.io", "tier": "gold"}))

        assert result.outcome == ProcessingOutcome.DECODE_FAILED
        assert sink.schema_changes == [("customer", "tier")]

    @pytest.mark.asyncio
    async def test_order_item_embedded(self, router, store):
        """Order items are embedded in their order."""
        ts = now_ms()
        await router.route(ORDERS_TOPIC, body({"id": "O1", "customer_id": "C1", "__source_ts_ms": ts}))
        result = await router.route(
            ITEM_TOPIC,
            body(
                {
                    "id": "I1",
                    "order_id": "O1",
                    "product_sku": "SKU-1",
                    "quantity": 2,
                    "__source_ts_ms": ts,
                }
            ),
        )

        assert result.outcome == ProcessingOutcome.APPLIED
        order = await store.find_by_id("orders", "O1")
        assert [i["id"] for i in order["items"]] == ["I1"]

    @pytest.mark.asyncio
    async def test_order_item_without_parent(self, router, store):
        """An item for a missing order is dropped."""
        result = await router.route(
            ITEM_TOPIC,
            body({"id": "I1", "order_id": "O1", "product_sku": "SKU-1", "__source_ts_ms": now_ms()}),
        )

        assert result.outcome == ProcessingOutcome.PARENT_MISSING
        assert not result.outcome.success
        assert not result.outcome.dead_letter
        assert await store.find_by_id("orders", "O1") is None

    @pytest.mark.asyncio
    async def test_order_item_delete_without_order_id(self, router):
        """A delete without order_id has nothing to remove."""
        result = await router.route(
            ITEM_TOPIC, body({"id": "I1", "__op": "d", "__source_ts_ms": now_ms()})
        )
        assert result.outcome == ProcessingOutcome.NOT_FOUND


class TestHandlers:
    """Handler-specific behaviour."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    def build_router(self, store, park_orphans=False, customer_soft_delete=False):
        coordinator = EmbeddingCoordinator(store, "orders", "items", park_orphans=park_orphans)
        router = EventRouter()
        handlers = default_handlers(
            IdempotentMaterializer(store),
            ValidationPipeline(default_rules()),
            coordinator,
            customer_soft_delete=customer_soft_delete,
        )
        for handler in handlers:
            router.register(handler.entity_type, handler)
        router.freeze()
        return router, coordinator

    @pytest.mark.asyncio
    async def test_customer_soft_delete(self, store):
        """With soft delete the customer is marked, not removed."""
        router, _ = self.build_router(store, customer_soft_delete=True)
        ts = now_ms()
        await router.route(CUSTOMER_TOPIC, customer(ts=ts))

        await router.route(
            CUSTOMER_TOPIC, body({"id": "C1", "__deleted": "true", "__source_ts_ms": ts + 1})
        )

        assert (await store.find_by_id("customers", "C1"))["status"] == "DELETED"

    @pytest.mark.asyncio
    async def test_order_arrival_replays_parked_items(self, store):
        """Parked items are applied when their order arrives."""
        router, coordinator = self.build_router(store, park_orphans=True)
        ts = now_ms()

        parked = await router.route(
            ITEM_TOPIC,
            body({"id": "I1", "order_id": "O1", "product_sku": "SKU-1", "__source_ts_ms": ts}),
        )
        assert parked.outcome == ProcessingOutcome.PARKED

        await router.route(ORDERS_TOPIC, body({"id": "O1", "customer_id": "C1", "__source_ts_ms": ts}))

        assert coordinator.parked_count == 0
        order = await store.find_by_id("orders", "O1")
        assert [i["id"] for i in order["items"]] == ["I1"]

    @pytest.mark.asyncio
    async def test_order_update_keeps_items(self, store):
        """An order update does not wipe embedded items."""
        router, _ = self.build_router(store)
        ts = now_ms()
        await router.route(ORDERS_TOPIC, body({"id": "O1", "customer_id": "C1", "__source_ts_ms": ts}))
        await router.route(
            ITEM_TOPIC,
            body({"id": "I1", "order_id": "O1", "product_sku": "SKU-1", "__source_ts_ms": ts}),
        )

        await router.route(
            ORDERS_TOPIC,
            body({"id": "O1", "customer_id": "C1", "status": "shipped", "__source_ts_ms": ts + 1}),
        )

        order = await store.find_by_id("orders", "O1")
        assert order["status"] == "shipped"
        assert [i["id"] for i in order["items"]] == ["I1"]
