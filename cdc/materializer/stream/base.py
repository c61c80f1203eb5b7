"""
Base protocol and types for the change-stream transport.

This module defines the ChangeStream protocol that transport backends
implement, along with common types for stream positions, records, and
errors. The materializer only consumes from the stream; append() exists
so that rejected records can be forwarded to a dead-letter topic.

Invariants:
    - StreamPos uniquely identifies a record within a topic
    - A record whose value is None is a tombstone and carries no row data
    - Records are delivered in order within a partition

How to change safely:
    - Protocol changes require updating every backend
    - Keep commit() semantics "everything up to and including this record"
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


class StreamError(Exception):
    """Base exception for change-stream operations."""

    pass


class StreamConnectionError(StreamError):
    """Connection to the stream backend failed."""

    pass


class StreamSerializationError(StreamError):
    """Failed to deserialize a stream record."""

    pass


@dataclass(frozen=True)
class StreamPos:
    """Position of a record in the change stream.

    Attributes:
        topic: Topic name
        partition: Partition number
        offset: Offset within the partition
        timestamp_ms: Broker timestamp of the record (milliseconds)
    """

    topic: str
    partition: int
    offset: int
    timestamp_ms: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "topic": self.topic,
            "partition": self.partition,
            "offset": self.offset,
            "timestamp_ms": self.timestamp_ms,
        }

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass
class StreamRecord:
    """A record from the change stream.

    Attributes:
        key: Message key (the source primary key for row events)
        value: Raw message body, or None for a tombstone
        position: Position in the stream
        headers: Optional message headers
    """

    key: str
    value: bytes | None
    position: StreamPos
    headers: dict[str, bytes] = field(default_factory=dict)

    @property
    def topic(self) -> str:
        return self.position.topic

    @property
    def is_tombstone(self) -> bool:
        return self.value is None

    def value_json(self) -> Any:
        """Parse value as JSON.

        Raises:
            StreamSerializationError: If the value is a tombstone or not valid JSON
        """
        if self.value is None:
            raise StreamSerializationError("Tombstone record has no value")
        try:
            return json.loads(self.value.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StreamSerializationError(f"Failed to parse record value as JSON: {e}")

    def __str__(self) -> str:
        return f"StreamRecord(key={self.key}, pos={self.position})"


@runtime_checkable
class ChangeStream(Protocol):
    """Protocol for change-stream backends.

    Ordering contract:
        - Records with the same key land in the same partition
        - A consumer receives records in order within a partition

    Acknowledgement contract:
        - commit(record) acknowledges the record and all earlier records
          of the same partition for the subscribed consumer group
        - Uncommitted records are redelivered after a restart
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            StreamConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close connections and release resources."""
        ...

    @abstractmethod
    async def append(
        self,
        topic: str,
        key: str,
        value: bytes | None,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Append a record to a topic and wait for the broker acknowledgement."""
        ...

    @abstractmethod
    def subscribe(
        self,
        topics: Sequence[str],
        group_id: str,
    ) -> AsyncIterator[StreamRecord]:
        """Subscribe to topics as part of a consumer group.

        Yields:
            StreamRecord objects in order within partitions

        Note:
            The caller must call commit() to acknowledge processed records.
        """
        ...

    @abstractmethod
    async def commit(self, record: StreamRecord) -> None:
        """Acknowledge a processed record.

        Raises:
            StreamError: If the commit fails
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_change_stream(config: ServerConfig) -> ChangeStream:
    """Create a change stream from configuration.

    Raises:
        ValueError: If the backend is not supported
    """
    from ..config import StreamBackend
    from .kafka import KafkaChangeStream
    from .memory import InMemoryChangeStream

    if config.stream_backend == StreamBackend.KAFKA:
        return KafkaChangeStream(config.kafka)
    elif config.stream_backend == StreamBackend.MEMORY:
        return InMemoryChangeStream()
    else:
        raise ValueError(f"Unsupported stream backend: {config.stream_backend}")
