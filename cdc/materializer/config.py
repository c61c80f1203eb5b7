"""
Configuration management for the CDC materializer.

All configuration is done via environment variables - no config files inside
containers. Each section is a pydantic-settings class with its own prefix;
ServerConfig aggregates them and validates cross-section consistency.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Document new variables in the section docstring
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class StreamBackend(Enum):
    """Supported change-stream backends."""

    KAFKA = "kafka"
    MEMORY = "memory"


class StoreBackend(Enum):
    """Supported document store backends."""

    SQLITE = "sqlite"
    MEMORY = "memory"


class MaterializeStrategy(Enum):
    """How the materializer resolves concurrent writes to one document."""

    CONDITIONAL = "conditional"
    READ_MODIFY_WRITE = "read_modify_write"


class DeadLetterMode(Enum):
    """Where rejected records go."""

    LOG = "log"
    TOPIC = "topic"


DEFAULT_TOPICS = [
    "cdc.public.customer",
    "cdc.public.address",
    "cdc.public.orders",
    "cdc.public.order_item",
]


class KafkaSettings(BaseSettings):
    """Kafka change-stream configuration (prefix KAFKA_).

    KAFKA_TOPICS accepts a JSON list, e.g. '["cdc.public.customer"]'.
    """

    brokers: str = Field(default="localhost:9092", description="Comma-separated broker list")
    topics: list[str] = Field(default_factory=lambda: list(DEFAULT_TOPICS))
    consumer_group: str = Field(default="cdc-materializer")
    dead_letter_topic: str = Field(default="cdc.dead-letter")
    auto_offset_reset: str = Field(default="earliest")
    max_poll_records: int = Field(default=100)
    security_protocol: str = Field(default="PLAINTEXT")
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    ssl_cafile: str | None = None
    # Dead-letter producer durability
    acks: str = Field(default="all")
    enable_idempotence: bool = Field(default=True)

    model_config = {"env_prefix": "KAFKA_"}


class StoreSettings(BaseSettings):
    """Document store configuration (prefix STORE_)."""

    backend: StoreBackend = Field(default=StoreBackend.SQLITE)
    path: str = Field(default="/var/lib/cdc-materializer/documents.db")
    wal_mode: bool = Field(default=True)
    busy_timeout_ms: int = Field(default=5000)

    model_config = {"env_prefix": "STORE_"}


class MaterializerSettings(BaseSettings):
    """Processing configuration (prefix MATERIALIZER_).

    Attributes:
        strategy: Write strategy for top-level documents
        worker_count: Number of concurrent workers (records are sharded by partition)
        max_retries: Retries for retryable failures before dead-lettering
        retry_delay_ms: Initial delay between retries
        retry_backoff_multiplier: Delay multiplier per retry
        message_timeout_seconds: Deadline for processing one record
        rule_timeout_seconds: Deadline for a single validation rule
        park_orphan_children: Park child events whose parent is missing
        max_parked_children: Bound on parked child events
        customer_soft_delete: Mark customers DELETED instead of removing them
        dead_letter: Where rejected records go
    """

    strategy: MaterializeStrategy = Field(default=MaterializeStrategy.CONDITIONAL)
    worker_count: int = Field(default=1, ge=1)
    max_retries: int = Field(default=5, ge=0)
    retry_delay_ms: int = Field(default=100, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0)
    message_timeout_seconds: float = Field(default=30.0, gt=0)
    rule_timeout_seconds: float = Field(default=1.0, gt=0)
    park_orphan_children: bool = Field(default=False)
    max_parked_children: int = Field(default=10000, ge=1)
    customer_soft_delete: bool = Field(default=False)
    dead_letter: DeadLetterMode = Field(default=DeadLetterMode.LOG)

    model_config = {"env_prefix": "MATERIALIZER_"}


class ObservabilitySettings(BaseSettings):
    """Logging configuration (prefix LOG_)."""

    level: str = Field(default="INFO")
    format: str = Field(default="json", description="json or text")

    model_config = {"env_prefix": "LOG_"}


@dataclass
class ServerConfig:
    """Complete materializer configuration.

    Attributes:
        stream_backend: Which change-stream backend to use
        kafka: Kafka configuration
        store: Document store configuration
        materializer: Processing configuration
        observability: Logging configuration
    """

    stream_backend: StreamBackend = StreamBackend.KAFKA
    kafka: KafkaSettings = field(default_factory=KafkaSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    materializer: MaterializerSettings = field(default_factory=MaterializerSettings)
    observability: ObservabilitySettings = field(default_factory=ObservabilitySettings)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        backend_str = os.getenv("STREAM_BACKEND", "kafka").lower()
        try:
            stream_backend = StreamBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid STREAM_BACKEND '{backend_str}'. Must be one of: kafka, memory"
            )

        config = cls(
            stream_backend=stream_backend,
            kafka=KafkaSettings(),
            store=StoreSettings(),
            materializer=MaterializerSettings(),
            observability=ObservabilitySettings(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.stream_backend == StreamBackend.KAFKA:
            if not self.kafka.brokers:
                raise ValueError("KAFKA_BROKERS is required when STREAM_BACKEND=kafka")
            if not self.kafka.topics:
                raise ValueError("KAFKA_TOPICS must name at least one topic")

        if self.materializer.dead_letter == DeadLetterMode.TOPIC:
            if not self.kafka.dead_letter_topic:
                raise ValueError(
                    "KAFKA_DEAD_LETTER_TOPIC is required when MATERIALIZER_DEAD_LETTER=topic"
                )
            if self.kafka.dead_letter_topic in self.kafka.topics:
                raise ValueError("The dead-letter topic must not be a consumed topic")

        if self.store.backend == StoreBackend.SQLITE and not self.store.path:
            raise ValueError("STORE_PATH is required when STORE_BACKEND=sqlite")

        if self.observability.format not in ("json", "text"):
            raise ValueError(f"Invalid LOG_FORMAT '{self.observability.format}'")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Materializer configuration loaded",
            extra={
                "stream_backend": self.stream_backend.value,
                "kafka_brokers": self.kafka.brokers
                if self.stream_backend == StreamBackend.KAFKA
                else None,
                "kafka_topics": self.kafka.topics,
                "consumer_group": self.kafka.consumer_group,
                "store_backend": self.store.backend.value,
                "store_path": self.store.path,
                "strategy": self.materializer.strategy.value,
                "worker_count": self.materializer.worker_count,
                "dead_letter": self.materializer.dead_letter.value,
                "park_orphan_children": self.materializer.park_orphan_children,
                "log_level": self.observability.level,
            },
        )
