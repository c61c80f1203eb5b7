"""
Kafka change-stream implementation.

Consumes change events published by the capture connector and, for
dead-lettering only, produces records back to Kafka. Works with Apache
Kafka, Amazon MSK, Redpanda, or any Kafka API-compatible system.

Invariants:
    - Auto-commit is disabled; offsets move only through commit()
    - commit() stores offset + 1 (the next record to consume)
    - The producer is created lazily, on the first append()

How to change safely:
    - Test against a real broker before deploying
    - Keep enable_auto_commit off, or acknowledged-before-applied data loss returns
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from aiokafka.structs import TopicPartition

from .base import (
    StreamConnectionError,
    StreamError,
    StreamPos,
    StreamRecord,
)

logger = logging.getLogger(__name__)


class KafkaChangeStream:
    """Kafka implementation of the ChangeStream protocol.

    Uses aiokafka for async consumer/producer operations.

    Example:
        >>> stream = KafkaChangeStream(KafkaSettings(brokers="localhost:9092"))
        >>> await stream.connect()
        >>> async for record in stream.subscribe(["cdc.public.customer"], "materializer"):
        ...     await stream.commit(record)
    """

    def __init__(self, config: Any) -> None:
        """Initialize Kafka change stream.

        Args:
            config: KafkaSettings instance with connection settings
        """
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._consumer: AIOKafkaConsumer | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Whether connect() has succeeded and close() has not been called."""
        return self._connected

    def _security_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.config.security_protocol != "PLAINTEXT":
            options["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            options["sasl_mechanism"] = self.config.sasl_mechanism
            options["sasl_plain_username"] = self.config.sasl_username
            options["sasl_plain_password"] = self.config.sasl_password
        if self.config.ssl_cafile:
            options["ssl_cafile"] = self.config.ssl_cafile
        return options

    async def connect(self) -> None:
        """Mark the stream usable.

        The consumer is created by subscribe() because it needs the topic
        list and group id.
        """
        self._connected = True
        logger.info("Kafka change stream ready", extra={"brokers": self.config.brokers})

    async def close(self) -> None:
        """Stop consumer and producer, flushing pending writes."""
        if self._consumer:
            try:
                await self._consumer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing consumer: {e}")
            self._consumer = None

        if self._producer:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka connections closed")

    async def _ensure_producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            producer = AIOKafkaProducer(
                bootstrap_servers=self.config.brokers,
                acks=self.config.acks,
                enable_idempotence=self.config.enable_idempotence,
                request_timeout_ms=30000,
                retry_backoff_ms=100,
                **self._security_options(),
            )
            try:
                await producer.start()
            except KafkaError as e:
                raise StreamConnectionError(f"Failed to start Kafka producer: {e}") from e
            self._producer = producer
        return self._producer

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes | None,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Send a record and wait for the broker acknowledgement.

        Raises:
            StreamConnectionError: If not connected or the connection is lost
            StreamError: For other Kafka errors
        """
        if not self._connected:
            raise StreamConnectionError("Not connected to Kafka")

        producer = await self._ensure_producer()
        kafka_headers = list(headers.items()) if headers else None

        try:
            metadata = await producer.send_and_wait(
                topic,
                value=value,
                key=key.encode("utf-8"),
                headers=kafka_headers,
            )
        except KafkaTimeoutError as e:
            raise StreamError(f"Kafka send timed out: {e}") from e
        except KafkaConnectionError as e:
            raise StreamConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise StreamError(f"Kafka send failed: {e}") from e

        return StreamPos(
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            timestamp_ms=metadata.timestamp or int(time.time() * 1000),
        )

    async def subscribe(
        self,
        topics: Sequence[str],
        group_id: str,
    ) -> AsyncIterator[StreamRecord]:
        """Subscribe to topics and yield records as they arrive.

        Raises:
            StreamConnectionError: If the consumer cannot reach the brokers
            StreamError: For other consumer errors
        """
        if not self._connected:
            raise StreamConnectionError("Not connected to Kafka")

        try:
            if self._consumer:
                await self._consumer.stop()

            self._consumer = AIOKafkaConsumer(
                *topics,
                bootstrap_servers=self.config.brokers,
                group_id=group_id,
                auto_offset_reset=self.config.auto_offset_reset,
                enable_auto_commit=False,
                max_poll_records=self.config.max_poll_records,
                session_timeout_ms=30000,
                heartbeat_interval_ms=10000,
                **self._security_options(),
            )
            await self._consumer.start()

            logger.info(
                "Subscribed to Kafka topics",
                extra={"topics": list(topics), "group_id": group_id},
            )

            async for msg in self._consumer:
                yield StreamRecord(
                    key=msg.key.decode("utf-8") if msg.key else "",
                    value=msg.value,
                    position=StreamPos(
                        topic=msg.topic,
                        partition=msg.partition,
                        offset=msg.offset,
                        timestamp_ms=msg.timestamp or int(time.time() * 1000),
                    ),
                    headers=dict(msg.headers) if msg.headers else {},
                )

        except KafkaConnectionError as e:
            raise StreamConnectionError(f"Failed to subscribe: {e}") from e
        except KafkaError as e:
            raise StreamError(f"Consumer error: {e}") from e

    async def commit(self, record: StreamRecord) -> None:
        """Commit the offset following the record.

        Raises:
            StreamError: If there is no active consumer or the commit fails
        """
        if not self._consumer:
            raise StreamError("No active consumer to commit")

        tp = TopicPartition(record.position.topic, record.position.partition)
        try:
            await self._consumer.commit({tp: record.position.offset + 1})
        except KafkaError as e:
            raise StreamError(f"Failed to commit: {e}") from e

        logger.debug(
            "Committed offset",
            extra={
                "topic": record.position.topic,
                "partition": record.position.partition,
                "offset": record.position.offset,
            },
        )
