"""
Unit tests for the document stores.

Every test runs against both SqliteDocumentStore and InMemoryDocumentStore.

Tests cover:
- Basic upsert/find/list/count
- Conditional updates by source timestamp
- Insert-if-absent and tombstones
- Optimistic concurrency on revisions
"""

import os
import tempfile

import pytest

from cdc.materializer.store import (
    METADATA_KEY,
    REVISION_KEY,
    InMemoryDocumentStore,
    SqliteDocumentStore,
    StoreUnavailableError,
    document_source_timestamp,
    is_newer,
)


def doc(source_ts, **fields):
    return {**fields, METADATA_KEY: {"source_timestamp": source_ts}}


@pytest.fixture(params=["sqlite", "memory"])
def store(request):
    """Create a store for each backend."""
    if request.param == "memory":
        yield InMemoryDocumentStore()
        return
    with tempfile.TemporaryDirectory() as tmpdir:
        yield SqliteDocumentStore(os.path.join(tmpdir, "documents.db"), wal_mode=False)


class TestDocumentStore:
    """Behaviour shared by every DocumentStore backend."""

    @pytest.mark.asyncio
    async def test_find_missing(self, store):
        """A missing document is None, not an error."""
        assert await store.find_by_id("customers", "C1") is None

    @pytest.mark.asyncio
    async def test_upsert_and_find(self, store):
        """Upserted documents come back with id and revision."""
        await store.upsert("customers", "C1", doc(100, email="a@b.co"))

        found = await store.find_by_id("customers", "C1")
        assert found["email"] == "a@b.co"
        assert found["_id"] == "C1"
        assert found[REVISION_KEY] == 1
        assert document_source_timestamp(found) == 100

    @pytest.mark.asyncio
    async def test_upsert_bumps_revision(self, store):
        """Each write increases the revision by one."""
        await store.upsert("customers", "C1", doc(100))
        await store.upsert("customers", "C1", doc(200))

        found = await store.find_by_id("customers", "C1")
        assert found[REVISION_KEY] == 2

    @pytest.mark.asyncio
    async def test_collections_are_isolated(self, store):
        """The same id in two collections is two documents."""
        await store.upsert("customers", "X1", doc(1, kind="customer"))
        await store.upsert("orders", "X1", doc(1, kind="order"))

        assert (await store.find_by_id("customers", "X1"))["kind"] == "customer"
        assert (await store.find_by_id("orders", "X1"))["kind"] == "order"

    @pytest.mark.asyncio
    async def test_list_and_count(self, store):
        """Listing is ordered by id and limited."""
        for doc_id in ("C3", "C1", "C2"):
            await store.upsert("customers", doc_id, doc(1))

        assert await store.count("customers") == 3
        listed = await store.list_documents("customers", limit=2)
        assert [d["_id"] for d in listed] == ["C1", "C2"]

    @pytest.mark.asyncio
    async def test_reserved_keys_are_not_stored(self, store):
        """_id and _revision passed in a document are ignored."""
        await store.upsert("customers", "C1", {**doc(1), "_id": "other", "_revision": 99})

        found = await store.find_by_id("customers", "C1")
        assert found["_id"] == "C1"
        assert found[REVISION_KEY] == 1


class TestConditionalUpdate:
    """Tests for conditional_update()."""

    @pytest.mark.asyncio
    async def test_missing_document_does_not_match(self, store):
        """No document, no match."""
        assert await store.conditional_update("customers", "C1", doc(100), 100) is False
        assert await store.find_by_id("customers", "C1") is None

    @pytest.mark.asyncio
    async def test_newer_replaces(self, store):
        """A strictly newer timestamp replaces the document."""
        await store.upsert("customers", "C1", doc(100, email="old@b.co"))

        assert await store.conditional_update("customers", "C1", doc(200, email="new@b.co"), 200)
        found = await store.find_by_id("customers", "C1")
        assert found["email"] == "new@b.co"
        assert found[REVISION_KEY] == 2

    @pytest.mark.asyncio
    async def test_equal_does_not_replace(self, store):
        """An equal timestamp is not newer."""
        await store.upsert("customers", "C1", doc(100, email="old@b.co"))

        assert not await store.conditional_update("customers", "C1", doc(100, email="x@b.co"), 100)
        assert (await store.find_by_id("customers", "C1"))["email"] == "old@b.co"

    @pytest.mark.asyncio
    async def test_equal_with_allow_equal(self, store):
        """allow_equal matches on ties."""
        await store.upsert("customers", "C1", doc(100))
        assert await store.conditional_update(
            "customers", "C1", doc(100, status="x"), 100, allow_equal=True
        )

    @pytest.mark.asyncio
    async def test_older_does_not_replace(self, store):
        """An older timestamp never regresses the document."""
        await store.upsert("customers", "C1", doc(200, email="new@b.co"))

        stale = doc(100, email="old@b.co")
        assert not await store.conditional_update("customers", "C1", stale, 100)
        assert document_source_timestamp(await store.find_by_id("customers", "C1")) == 200

    @pytest.mark.asyncio
    async def test_preserve_keeps_stored_fields(self, store):
        """Preserved keys are copied from the stored document."""
        await store.upsert("orders", "O1", doc(100, status="pending", items=[{"id": "I1"}]))

        await store.conditional_update(
            "orders", "O1", doc(200, status="shipped"), 200, preserve=("items",)
        )

        found = await store.find_by_id("orders", "O1")
        assert found["status"] == "shipped"
        assert found["items"] == [{"id": "I1"}]


class TestInsertIfAbsent:
    """Tests for insert_if_absent() and tombstones."""

    @pytest.mark.asyncio
    async def test_insert(self, store):
        """Inserts when nothing is stored."""
        assert await store.insert_if_absent("customers", "C1", doc(100))
        assert (await store.find_by_id("customers", "C1"))[REVISION_KEY] == 1

    @pytest.mark.asyncio
    async def test_existing_document_refuses(self, store):
        """Never overwrites an existing document."""
        await store.upsert("customers", "C1", doc(50, email="keep@b.co"))

        assert not await store.insert_if_absent("customers", "C1", doc(100, email="x@b.co"))
        assert (await store.find_by_id("customers", "C1"))["email"] == "keep@b.co"

    @pytest.mark.asyncio
    async def test_newer_tombstone_refuses(self, store):
        """A delete at least as new blocks a late create."""
        await store.delete("customers", "C1", 200)

        assert not await store.insert_if_absent("customers", "C1", doc(100))
        assert not await store.insert_if_absent("customers", "C1", doc(200))
        assert await store.find_by_id("customers", "C1") is None

    @pytest.mark.asyncio
    async def test_older_tombstone_allows(self, store):
        """A re-create after the delete is applied."""
        await store.delete("customers", "C1", 200)
        assert await store.insert_if_absent("customers", "C1", doc(300))


class TestDelete:
    """Tests for delete()."""

    @pytest.mark.asyncio
    async def test_delete_existing(self, store):
        """Removes the document and records a tombstone."""
        await store.upsert("customers", "C1", doc(100))

        assert await store.delete("customers", "C1", 200) is True
        assert await store.find_by_id("customers", "C1") is None
        assert await store.find_tombstone("customers", "C1") == 200

    @pytest.mark.asyncio
    async def test_delete_on_tie(self, store):
        """A delete with an equal timestamp applies."""
        await store.upsert("customers", "C1", doc(100))
        assert await store.delete("customers", "C1", 100) is True

    @pytest.mark.asyncio
    async def test_delete_older_is_refused(self, store):
        """A stale delete leaves the newer document in place."""
        await store.upsert("customers", "C1", doc(300))

        assert await store.delete("customers", "C1", 200) is False
        assert await store.find_by_id("customers", "C1") is not None
        assert await store.find_tombstone("customers", "C1") is None

    @pytest.mark.asyncio
    async def test_delete_missing_records_tombstone(self, store):
        """Deleting an absent id still records the delete."""
        assert await store.delete("customers", "C1", 200) is False
        assert await store.find_tombstone("customers", "C1") == 200

    @pytest.mark.asyncio
    async def test_tombstone_keeps_greatest_timestamp(self, store):
        """An older delete never lowers the tombstone."""
        await store.delete("customers", "C1", 300)
        await store.delete("customers", "C1", 200)
        assert await store.find_tombstone("customers", "C1") == 300


class TestReplace:
    """Tests for replace() (optimistic concurrency)."""

    @pytest.mark.asyncio
    async def test_matching_revision(self, store):
        """Replaces when the revision is unchanged."""
        await store.upsert("orders", "O1", doc(1, items=[]))
        current = await store.find_by_id("orders", "O1")

        updated = doc(1, items=[{"id": "I1"}])
        assert await store.replace("orders", "O1", updated, current[REVISION_KEY])
        assert (await store.find_by_id("orders", "O1"))[REVISION_KEY] == 2

    @pytest.mark.asyncio
    async def test_stale_revision(self, store):
        """A concurrent write makes the replace fail."""
        await store.upsert("orders", "O1", doc(1, items=[]))
        current = await store.find_by_id("orders", "O1")
        await store.upsert("orders", "O1", doc(2, items=[{"id": "I9"}]))

        assert not await store.replace("orders", "O1", doc(1, items=[]), current[REVISION_KEY])
        assert (await store.find_by_id("orders", "O1"))["items"] == [{"id": "I9"}]

    @pytest.mark.asyncio
    async def test_missing_document(self, store):
        """Nothing to replace."""
        assert not await store.replace("orders", "O1", doc(1), 1)


class TestIsNewer:
    """Tests for the timestamp gate."""

    def test_strict(self):
        """Strictly greater by default."""
        assert is_newer(2, 1)
        assert not is_newer(1, 1)
        assert not is_newer(1, 2)

    def test_allow_equal(self):
        """Ties pass with allow_equal."""
        assert is_newer(1, 1, allow_equal=True)
        assert not is_newer(1, 2, allow_equal=True)

    def test_missing_fails_open(self):
        """A missing timestamp on either side passes."""
        assert is_newer(None, 5)
        assert is_newer(5, None)
        assert is_newer(None, None)


class TestInMemoryFailureInjection:
    """Tests for InMemoryDocumentStore failure injection."""

    @pytest.mark.asyncio
    async def test_fail_next(self):
        """fail_next raises a retryable error for the given number of calls."""
        store = InMemoryDocumentStore()
        store.fail_next(2)

        for _ in range(2):
            with pytest.raises(StoreUnavailableError):
                await store.find_by_id("customers", "C1")
        assert await store.find_by_id("customers", "C1") is None

    @pytest.mark.asyncio
    async def test_unavailable(self):
        """An unavailable store fails every call until restored."""
        store = InMemoryDocumentStore()
        store.set_available(False)

        with pytest.raises(StoreUnavailableError):
            await store.upsert("customers", "C1", doc(1))

        store.set_available(True)
        await store.upsert("customers", "C1", doc(1))
        assert await store.count("customers") == 1

    @pytest.mark.asyncio
    async def test_returns_copies(self):
        """Mutating a returned document does not change the store."""
        store = InMemoryDocumentStore()
        await store.upsert("orders", "O1", doc(1, items=[]))

        found = await store.find_by_id("orders", "O1")
        found["items"].append({"id": "I1"})
        assert (await store.find_by_id("orders", "O1"))["items"] == []


class TestSqliteDocumentStore:
    """SQLite-specific behaviour."""

    @pytest.mark.asyncio
    async def test_persists_across_instances(self):
        """Data survives reopening the file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "documents.db")
            await SqliteDocumentStore(path).upsert("customers", "C1", doc(1, email="a@b.co"))

            reopened = SqliteDocumentStore(path)
            assert (await reopened.find_by_id("customers", "C1"))["email"] == "a@b.co"

    @pytest.mark.asyncio
    async def test_unopenable_path_is_retryable(self):
        """An unusable path raises StoreUnavailableError."""
        with tempfile.TemporaryDirectory() as tmpdir:
            blocker = os.path.join(tmpdir, "file")
            with open(blocker, "w") as f:
                f.write("x")
            store = SqliteDocumentStore(os.path.join(blocker, "documents.db"))

            with pytest.raises(StoreUnavailableError):
                await store.find_by_id("customers", "C1")
