"""
In-memory change-stream implementation for testing.

This module provides a simple in-memory backend for:
- Unit and integration tests
- Local runs without a broker

Invariants:
    - All data is lost on process exit
    - Same key always maps to the same partition
    - Records are delivered in offset order within a partition
    - Uncommitted records are redelivered to a new subscription of the same group

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the ChangeStream protocol
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field

from .base import (
    StreamConnectionError,
    StreamError,
    StreamPos,
    StreamRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class InMemoryPartition:
    """In-memory partition storage."""

    records: list[StreamRecord] = field(default_factory=list)


class InMemoryChangeStream:
    """In-memory implementation of ChangeStream for testing.

    Thread safety:
        Uses an asyncio lock. Safe to use from multiple coroutines.

    Example:
        >>> stream = InMemoryChangeStream()
        >>> await stream.connect()
        >>> await stream.append("cdc.public.customer", "c1", b'{"id": "c1"}')
        >>> async for record in stream.subscribe(["cdc.public.customer"], "group1"):
        ...     await stream.commit(record)
    """

    def __init__(self, num_partitions: int = 4, poll_interval: float = 0.05) -> None:
        """Initialize in-memory change stream.

        Args:
            num_partitions: Number of partitions per topic
            poll_interval: Seconds to wait for new records when idle
        """
        self.num_partitions = num_partitions
        self.poll_interval = poll_interval
        self._topics: dict[str, dict[int, InMemoryPartition]] = defaultdict(
            lambda: {i: InMemoryPartition() for i in range(self.num_partitions)}
        )
        # group_id -> (topic, partition) -> next offset to consume
        self._committed: dict[str, dict[tuple[str, int], int]] = defaultdict(dict)
        self._active_group: str | None = None
        self._connected = False
        self._lock = asyncio.Lock()
        self._new_records = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryChangeStream connected")

    async def close(self) -> None:
        """Close the stream. Stored records and offsets are kept."""
        self._connected = False
        self._new_records.set()
        logger.debug("InMemoryChangeStream closed")

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes | None,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Append a record; a None value appends a tombstone."""
        if not self._connected:
            raise StreamConnectionError("Not connected")

        partition = self._partition_for_key(key)

        async with self._lock:
            part = self._topics[topic][partition]
            pos = StreamPos(
                topic=topic,
                partition=partition,
                offset=len(part.records),
                timestamp_ms=int(time.time() * 1000),
            )
            part.records.append(
                StreamRecord(key=key, value=value, position=pos, headers=headers or {})
            )
            self._new_records.set()

        return pos

    async def subscribe(
        self,
        topics: Sequence[str],
        group_id: str,
    ) -> AsyncIterator[StreamRecord]:
        """Yield records from the committed position of the group onwards."""
        if not self._connected:
            raise StreamConnectionError("Not connected")

        self._active_group = group_id
        committed = self._committed[group_id]
        positions = {
            (topic, partition): committed.get((topic, partition), 0)
            for topic in topics
            for partition in range(self.num_partitions)
        }

        while self._connected:
            batch: list[StreamRecord] = []
            async with self._lock:
                self._new_records.clear()
                for (topic, partition), offset in positions.items():
                    records = self._topics[topic][partition].records
                    if offset < len(records):
                        batch.extend(records[offset:])
                        positions[(topic, partition)] = len(records)

            for record in batch:
                yield record

            if not batch:
                try:
                    await asyncio.wait_for(self._new_records.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def commit(self, record: StreamRecord) -> None:
        """Record the offset following the record for the active group."""
        if self._active_group is None:
            raise StreamError("No active subscription to commit")
        key = (record.position.topic, record.position.partition)
        committed = self._committed[self._active_group]
        committed[key] = max(committed.get(key, 0), record.position.offset + 1)

    def _partition_for_key(self, key: str) -> int:
        """Get partition number for a key using consistent hashing."""
        hash_bytes = hashlib.md5(key.encode("utf-8")).digest()
        return int.from_bytes(hash_bytes[:4], "big") % self.num_partitions

    # Testing helpers

    def get_all_records(self, topic: str) -> list[StreamRecord]:
        """Get all records for a topic across partitions."""
        records: list[StreamRecord] = []
        if topic in self._topics:
            for partition in sorted(self._topics[topic]):
                records.extend(self._topics[topic][partition].records)
        return records

    def get_record_count(self, topic: str) -> int:
        return len(self.get_all_records(topic))

    def committed_count(self, group_id: str, topics: Sequence[str] | None = None) -> int:
        """Total number of committed records for a group, optionally per topic."""
        return sum(
            offset
            for (topic, _), offset in self._committed.get(group_id, {}).items()
            if topics is None or topic in topics
        )

    async def wait_for_commits(
        self,
        group_id: str,
        count: int,
        topics: Sequence[str] | None = None,
        timeout: float = 5.0,
    ) -> bool:
        """Wait until the group has committed at least `count` records."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.committed_count(group_id, topics) >= count:
                return True
            await asyncio.sleep(0.01)
        return False
