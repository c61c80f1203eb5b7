"""
Unit tests for schema drift detection and schema history.

Tests cover:
- New fields reported exactly once
- Baseline seeding and unknown entity types
- Thread-safe observation
- Buffered history flush, retry on failure and listing
"""

import asyncio
import threading

import pytest

from cdc.materializer.events import DeliveryPosition
from cdc.materializer.schema import (
    EXPECTED_FIELDS,
    SCHEMA_HISTORY_COLLECTION,
    ChangeKind,
    SchemaChange,
    SchemaDriftDetector,
    SchemaHistory,
)
from cdc.materializer.store import InMemoryDocumentStore

CUSTOMER_FIELDS = {"id", "email", "status", "updated_at", "__deleted", "__source_ts_ms"}


class TestSchemaDriftDetector:
    """Tests for SchemaDriftDetector."""

    @pytest.fixture
    def detector(self):
        return SchemaDriftDetector()

    def test_known_fields_are_not_reported(self, detector):
        """An event matching the baseline reveals nothing."""
        assert detector.observe("customer", CUSTOMER_FIELDS) == []

    def test_new_field_reported_once(self, detector):
        """A new field is reported on first sight only."""
        position = DeliveryPosition(partition=0, offset=12)

        changes = detector.observe("customer", CUSTOMER_FIELDS | {"phone"}, position)

        assert len(changes) == 1
        change = changes[0]
        assert (change.entity_type, change.field_name) == ("customer", "phone")
        assert change.kind == ChangeKind.NEW_FIELD
        assert change.position == position

        assert detector.observe("customer", CUSTOMER_FIELDS | {"phone"}) == []

    def test_same_field_on_other_entity_is_reported(self, detector):
        """Fields are tracked per entity type."""
        detector.observe("customer", {"id", "phone"})
        changes = detector.observe("address", {"id", "phone"})

        assert [c.field_name for c in changes] == ["phone"]

    def test_several_new_fields_sorted(self, detector):
        """Multiple new fields in one event are each reported."""
        changes = detector.observe("customer", {"id", "tier", "phone", "locale"})
        assert [c.field_name for c in changes] == ["locale", "phone", "tier"]

    def test_missing_baseline_field_is_not_a_change(self, detector):
        """Absent expected fields are never reported."""
        assert detector.observe("customer", {"id"}) == []
        assert "email" in detector.known_fields("customer")

    def test_unknown_entity_reports_all_fields(self, detector):
        """Without a baseline every field is new the first time."""
        changes = detector.observe("invoice", {"id", "amount"})
        assert sorted(c.field_name for c in changes) == ["amount", "id"]

    def test_known_fields_grow(self, detector):
        """Learned fields join the baseline."""
        detector.observe("customer", {"id", "phone"})

        known = detector.known_fields("customer")
        assert "phone" in known
        assert EXPECTED_FIELDS["customer"] <= known

    def test_snapshot_version(self, detector):
        """The version counts known fields."""
        before = detector.snapshot("customer").version
        detector.observe("customer", {"id", "phone"})

        assert detector.snapshot("customer").version == before + 1

    def test_reset(self, detector):
        """reset() forgets learned fields."""
        detector.observe("customer", {"id", "phone"})
        detector.reset()

        assert detector.entity_types() == []
        assert len(detector.observe("customer", {"id", "phone"})) == 1

    def test_concurrent_observers_report_once(self, detector):
        """Concurrent threads never report the same field twice."""
        reported = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            reported.extend(detector.observe("customer", {"id", "phone"}))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(reported) == 1

    def test_change_to_dict(self):
        """Serialized changes carry the position."""
        change = SchemaChange("customer", "phone", position=DeliveryPosition(3, 9))

        data = change.to_dict()
        assert change.key == "customer:phone"
        assert data["change_type"] == "NEW_FIELD"
        assert (data["partition"], data["offset"]) == (3, 9)


class TestSchemaHistory:
    """Tests for SchemaHistory."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.mark.asyncio
    async def test_record_buffers_without_io(self, store):
        """record() never touches the store."""
        history = SchemaHistory(store)
        history.record([SchemaChange("customer", "phone")])

        assert history.pending == 1
        assert store.call_count == 0

    @pytest.mark.asyncio
    async def test_flush_writes_keyed_documents(self, store):
        """Each change becomes one document keyed entity:field."""
        history = SchemaHistory(store)
        history.record([SchemaChange("customer", "phone"), SchemaChange("address", "geo")])

        assert await history.flush() == 2

        stored = await store.find_by_id(SCHEMA_HISTORY_COLLECTION, "customer:phone")
        assert stored["field_name"] == "phone"
        assert history.pending == 0

    @pytest.mark.asyncio
    async def test_duplicate_change_is_one_document(self, store):
        """Redelivered changes rewrite the same document."""
        history = SchemaHistory(store)
        history.record([SchemaChange("customer", "phone")])
        await history.flush()
        history.record([SchemaChange("customer", "phone")])
        await history.flush()

        assert await store.count(SCHEMA_HISTORY_COLLECTION) == 1

    @pytest.mark.asyncio
    async def test_failed_flush_rebuffers(self, store):
        """Changes that fail to write stay buffered."""
        history = SchemaHistory(store)
        history.record([SchemaChange("customer", "phone"), SchemaChange("customer", "tier")])
        store.fail_next(1)

        assert await history.flush() == 0
        assert history.pending == 2

        assert await history.flush() == 2
        assert history.pending == 0

    @pytest.mark.asyncio
    async def test_list_changes(self, store):
        """Listing filters by entity type."""
        history = SchemaHistory(store)
        history.record([SchemaChange("customer", "phone"), SchemaChange("address", "geo")])
        await history.flush()

        customer = await history.list_changes("customer")
        assert [c["field_name"] for c in customer] == ["phone"]
        assert len(await history.list_changes()) == 2

    @pytest.mark.asyncio
    async def test_flush_loop_on_buffer_size(self, store):
        """A full buffer triggers a background flush."""
        history = SchemaHistory(store, flush_interval_seconds=60, max_buffer_size=2)
        await history.start()
        try:
            history.record([SchemaChange("customer", "a"), SchemaChange("customer", "b")])
            for _ in range(100):
                if await store.count(SCHEMA_HISTORY_COLLECTION) == 2:
                    break
                await asyncio.sleep(0.01)
            assert await store.count(SCHEMA_HISTORY_COLLECTION) == 2
        finally:
            await history.stop()

    @pytest.mark.asyncio
    async def test_stop_flushes_remaining(self, store):
        """Stopping writes whatever is still buffered."""
        history = SchemaHistory(store, flush_interval_seconds=60)
        await history.start()
        history.record([SchemaChange("customer", "phone")])

        await history.stop()

        assert await store.count(SCHEMA_HISTORY_COLLECTION) == 1
