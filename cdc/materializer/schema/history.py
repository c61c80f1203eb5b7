"""
Persistent history of detected schema changes.

record() is a synchronous buffer append with no I/O. A background flush
loop writes buffered changes to the "schema_history" collection, keyed
"<entity_type>:<field_name>", so a redelivered change rewrites the same
document instead of adding a duplicate.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from .drift import SchemaChange

if TYPE_CHECKING:
    from ..store import DocumentStore

logger = logging.getLogger(__name__)

SCHEMA_HISTORY_COLLECTION = "schema_history"


class SchemaHistory:
    """Buffers schema changes and flushes them to the document store."""

    def __init__(
        self,
        store: DocumentStore,
        flush_interval_seconds: float = 5.0,
        max_buffer_size: int = 100,
    ) -> None:
        self._store = store
        self._flush_interval = flush_interval_seconds
        self._max_buffer_size = max_buffer_size

        self._buffer: list[SchemaChange] = []
        self._running = False
        self._task: asyncio.Task | None = None
        self._flush_event = asyncio.Event()

    def record(self, changes: Iterable[SchemaChange]) -> None:
        self._buffer.extend(changes)
        if len(self._buffer) >= self._max_buffer_size:
            self._flush_event.set()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._flush_loop())
        logger.info("SchemaHistory started")

    async def stop(self) -> None:
        """Stop the flush loop and write whatever is still buffered."""
        if not self._running:
            return
        self._running = False
        self._flush_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self.flush()
        logger.info("SchemaHistory stopped")

    async def _flush_loop(self) -> None:
        try:
            while self._running:
                try:
                    await asyncio.wait_for(self._flush_event.wait(), timeout=self._flush_interval)
                except asyncio.TimeoutError:
                    pass

                self._flush_event.clear()
                if self._buffer:
                    await self.flush()
        except asyncio.CancelledError:
            pass

    async def flush(self) -> int:
        """Write buffered changes. Failed writes are re-buffered.

        Returns:
            Number of changes written
        """
        buffer = self._buffer
        self._buffer = []

        written = 0
        for index, change in enumerate(buffer):
            try:
                await self._store.upsert(SCHEMA_HISTORY_COLLECTION, change.key, change.to_dict())
                written += 1
            except Exception as e:
                logger.warning(
                    f"Failed to flush schema change {change.key}: {e}",
                    extra={"entity_type": change.entity_type, "field_name": change.field_name},
                )
                self._buffer = buffer[index:] + self._buffer
                break

        if written:
            logger.debug(f"Flushed {written} schema changes")
        return written

    async def list_changes(self, entity_type: str | None = None) -> list[dict[str, Any]]:
        """Persisted changes, newest first, optionally for one entity type."""
        docs = await self._store.list_documents(SCHEMA_HISTORY_COLLECTION, limit=10_000)
        if entity_type is not None:
            docs = [d for d in docs if d.get("entity_type") == entity_type]
        return sorted(docs, key=lambda d: d.get("detected_at", ""), reverse=True)
