"""
Change-stream transport abstraction.

This module provides a pluggable transport interface supporting:
- Kafka/Redpanda (production)
- In-memory (for testing)

Invariants:
    - Records are ordered per partition; the source key selects the partition
    - A record is acknowledged only through an explicit commit()
    - A None record value is a tombstone

How to change safely:
    - New backends must implement the ChangeStream protocol
    - Verify redelivery of uncommitted records after restart
"""

from .base import (
    ChangeStream,
    StreamConnectionError,
    StreamError,
    StreamPos,
    StreamRecord,
    StreamSerializationError,
    create_change_stream,
)
from .kafka import KafkaChangeStream
from .memory import InMemoryChangeStream

__all__ = [
    # Protocol and types
    "ChangeStream",
    "StreamRecord",
    "StreamPos",
    "StreamError",
    "StreamConnectionError",
    "StreamSerializationError",
    # Factory
    "create_change_stream",
    # Implementations
    "KafkaChangeStream",
    "InMemoryChangeStream",
]
