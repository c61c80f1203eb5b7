"""
CDC materializer - Main entry point.

This module starts the materializer with all components:
- Change stream connection (Kafka or in-memory)
- Document store (SQLite or in-memory)
- Event router with one handler per entity type
- Consumer worker loop (stream -> documents)
- Schema history flush loop

Usage:
    python -m cdc.materializer.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The router is frozen before the first record is consumed
    - Shutdown flushes schema history before closing the store
    - Uncommitted records are redelivered after a restart

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .apply import (
    CdcConsumer,
    EmbeddingCoordinator,
    EventRouter,
    IdempotentMaterializer,
    LoggingDeadLetterSink,
    StreamDeadLetterSink,
    default_handlers,
)
from .apply.dead_letter import DeadLetterSink
from .config import DeadLetterMode, ServerConfig
from .observability import LoggingObservabilitySink, ObservabilitySink
from .schema import SchemaDriftDetector, SchemaHistory
from .store import DocumentStore, create_document_store
from .stream import ChangeStream, create_change_stream
from .validation import ValidationPipeline, default_rules

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration."""
    level = getattr(logging, config.observability.level.upper(), logging.INFO)

    if config.observability.format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)


def build_router(
    config: ServerConfig,
    store: DocumentStore,
    drift_detector: SchemaDriftDetector | None = None,
    schema_history: SchemaHistory | None = None,
    sink: ObservabilitySink | None = None,
) -> EventRouter:
    """Wire handlers for every entity type into a frozen router."""
    settings = config.materializer
    materializer = IdempotentMaterializer(store, settings.strategy)
    pipeline = ValidationPipeline(default_rules(), rule_timeout=settings.rule_timeout_seconds)
    coordinator = EmbeddingCoordinator(
        store,
        parent_collection="orders",
        list_field="items",
        park_orphans=settings.park_orphan_children,
        max_parked=settings.max_parked_children,
    )

    router = EventRouter(drift_detector, schema_history, sink)
    for handler in default_handlers(
        materializer,
        pipeline,
        coordinator,
        customer_soft_delete=settings.customer_soft_delete,
    ):
        router.register(handler.entity_type, handler)
    router.freeze()
    return router


def build_dead_letter_sink(config: ServerConfig, stream: ChangeStream) -> DeadLetterSink:
    if config.materializer.dead_letter == DeadLetterMode.TOPIC:
        return StreamDeadLetterSink(stream, config.kafka.dead_letter_topic)
    return LoggingDeadLetterSink()


class Server:
    """Materializer orchestrator.

    Manages the lifecycle of all components:
    - Change stream connection
    - Document store
    - Background loops (consumer, schema history)

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        stream: ChangeStream | None = None,
        store: DocumentStore | None = None,
    ) -> None:
        """Initialize the server.

        Args:
            config: Optional configuration (loaded from env if not provided)
            stream: Optional change stream (created from config if not provided)
            store: Optional document store (created from config if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.stream: ChangeStream | None = stream
        self.store: DocumentStore | None = store
        self.drift_detector = SchemaDriftDetector()
        self.schema_history: SchemaHistory | None = None
        self.router: EventRouter | None = None
        self.consumer: CdcConsumer | None = None

        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start all components and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting CDC materializer")
        self.config.log_config()
        self._running = True

        try:
            if self.stream is None:
                self.stream = create_change_stream(self.config)
            await self.stream.connect()
            logger.info("Change stream connected")

            if self.store is None:
                self.store = create_document_store(self.config)

            sink = LoggingObservabilitySink()
            self.schema_history = SchemaHistory(self.store)
            await self.schema_history.start()

            self.router = build_router(
                self.config, self.store, self.drift_detector, self.schema_history, sink
            )

            topics = [t for t in self.config.kafka.topics if t in self.router.registered_topics]
            unrouted = sorted(set(self.config.kafka.topics) - set(topics))
            if unrouted:
                logger.warning(f"Configured topics without a handler: {unrouted}")

            self.consumer = CdcConsumer(
                stream=self.stream,
                router=self.router,
                topics=topics,
                group_id=self.config.kafka.consumer_group,
                settings=self.config.materializer,
                dead_letter_sink=build_dead_letter_sink(self.config, self.stream),
                sink=sink,
            )
            consumer_task = asyncio.create_task(self.consumer.start())
            consumer_task.add_done_callback(self._on_consumer_done)
            self._tasks.append(consumer_task)

            logger.info("CDC materializer started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping CDC materializer")

        if self.consumer:
            await self.consumer.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.schema_history:
            await self.schema_history.stop()

        if self.stream:
            await self.stream.close()

        if self.store:
            await self.store.close()

        self._running = False
        logger.info("CDC materializer stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    def _on_consumer_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Consumer stopped with an error, shutting down: {error}",
                exc_info=error,
            )
            self.request_shutdown()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
