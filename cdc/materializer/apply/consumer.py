"""
Change-stream consumer for the CDC materializer.

The consumer subscribes to every routed topic and feeds records to a
small pool of asyncio workers. Each worker processes one record fully
(decode, drift tracking, validation, materialization) and only then
commits it.

Records are sharded to workers by partition, so records of one partition
are processed and committed in order by a single worker. Keys map to
partitions upstream, which gives per-key ordering; correctness does not
depend on it because writes are resolved by source timestamp.

Acknowledgement policy:
    - Success outcomes (applied, stale, not found, tombstone, unrouted,
      parked, parent missing): commit
    - Decode or validation failure: dead-letter, then commit
    - StoreUnavailableError or per-record deadline: withhold the commit
      and retry with exponential backoff; after max_retries dead-letter
      and commit
    - Any other exception: log with traceback, dead-letter, commit

Invariants:
    - No record is committed before its side effect is durable
    - A failing record never stops the worker or affects other records
    - Records of one partition are committed in order

How to change safely:
    - Keep the partition -> worker mapping stable while running
    - Test redelivery by stopping before a commit and resubscribing
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from typing import Any

from ..config import MaterializerSettings
from ..events import DeliveryPosition
from ..observability import LoggingObservabilitySink, ObservabilitySink, ProcessingOutcome
from ..store import StoreUnavailableError
from ..stream import ChangeStream, StreamError, StreamPos, StreamRecord
from .dead_letter import DeadLetter, DeadLetterSink, LoggingDeadLetterSink
from .materializer import MaterializerError
from .router import EventRouter, RouteResult

logger = logging.getLogger(__name__)

# Records buffered per worker before the subscription loop waits
WORKER_QUEUE_SIZE = 100


class CdcConsumer:
    """Consumes change records and materializes them.

    Thread safety:
        Runs on one event loop. Workers share the router and store; the
        drift detector is the only shared mutable state and is locked.

    Example:
        >>> consumer = CdcConsumer(stream, router, topics, "cdc-materializer")
        >>> task = asyncio.create_task(consumer.start())
        >>> ...
        >>> await consumer.stop()
    """

    def __init__(
        self,
        stream: ChangeStream,
        router: EventRouter,
        topics: Sequence[str],
        group_id: str,
        settings: MaterializerSettings | None = None,
        dead_letter_sink: DeadLetterSink | None = None,
        sink: ObservabilitySink | None = None,
    ) -> None:
        """Initialize the consumer.

        Args:
            stream: Change stream to consume from
            router: Frozen event router
            topics: Topics to subscribe to
            group_id: Consumer group id
            settings: Processing settings (workers, retries, deadlines)
            dead_letter_sink: Where rejected records go
            sink: Observability sink for per-record outcomes
        """
        self.stream = stream
        self.router = router
        self.topics = list(topics)
        self.group_id = group_id
        self.settings = settings or MaterializerSettings()
        self.dead_letter_sink = dead_letter_sink or LoggingDeadLetterSink()
        self.sink = sink or LoggingObservabilitySink()

        self._running = False
        self._task: asyncio.Task | None = None
        self._processed_count = 0
        self._error_count = 0
        self._retry_count = 0
        self._dead_letter_count = 0
        self._last_position: StreamPos | None = None

    async def start(self) -> None:
        """Run the subscription loop and workers until stop() is called."""
        if self._running:
            logger.warning("Consumer already running")
            return

        self._running = True
        self._task = asyncio.current_task()
        worker_count = self.settings.worker_count
        queues: list[asyncio.Queue[StreamRecord]] = [
            asyncio.Queue(maxsize=WORKER_QUEUE_SIZE) for _ in range(worker_count)
        ]
        workers = [
            asyncio.create_task(self._worker(i, queue), name=f"cdc-worker-{i}")
            for i, queue in enumerate(queues)
        ]

        logger.info(
            "Starting consumer",
            extra={"topics": self.topics, "group_id": self.group_id, "workers": worker_count},
        )

        try:
            async for record in self.stream.subscribe(self.topics, self.group_id):
                if not self._running:
                    break
                await queues[record.position.partition % worker_count].put(record)

        except asyncio.CancelledError:
            logger.info("Consumer cancelled")
        except Exception as e:
            logger.error(f"Consumer error: {e}", exc_info=True)
            raise

        finally:
            self._running = False
            self._task = None
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

    async def stop(self) -> None:
        """Stop consuming. Records not yet committed are redelivered later."""
        logger.info("Stopping consumer")
        self._running = False
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()

    @property
    def running(self) -> bool:
        return self._running

    async def _worker(self, worker_id: int, queue: asyncio.Queue[StreamRecord]) -> None:
        while True:
            record = await queue.get()
            try:
                await self.process_record(record)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # process_record handles its own failures; this guards the commit path
                logger.error(
                    f"Worker {worker_id} failed on {record.position}: {e}",
                    exc_info=True,
                )
            finally:
                queue.task_done()

    async def process_record(self, record: StreamRecord) -> RouteResult:
        """Process one record to a terminal outcome, then commit it.

        This is the per-record logic, separate from the subscription loop
        for testability.
        """
        start = time.perf_counter()
        result, attempts = await self._route_with_retries(record)
        duration_ms = (time.perf_counter() - start) * 1000

        if result.outcome.dead_letter:
            self._error_count += 1
            await self._dead_letter(record, result, attempts)
        else:
            self._processed_count += 1

        self.sink.record_outcome(result.entity_type, result.outcome, duration_ms)

        try:
            await self.stream.commit(record)
            self._last_position = record.position
        except StreamError as e:
            logger.error(
                f"Failed to commit {record.position}: {e}",
                extra={"position": record.position.to_dict()},
            )

        return result

    async def _route_with_retries(self, record: StreamRecord) -> tuple[RouteResult, int]:
        topic = record.topic
        position = DeliveryPosition(record.position.partition, record.position.offset)
        delay = self.settings.retry_delay_ms / 1000
        attempts = 0

        while True:
            attempts += 1
            try:
                result = await asyncio.wait_for(
                    self.router.route(topic, record.value, position),
                    timeout=self.settings.message_timeout_seconds,
                )
                return result, attempts

            except (StoreUnavailableError, asyncio.TimeoutError) as e:
                reason = str(e) or type(e).__name__
                if attempts > self.settings.max_retries:
                    logger.error(
                        f"Giving up on {record.position} after {attempts} attempts: {reason}",
                        extra={"position": record.position.to_dict(), "attempts": attempts},
                    )
                    return self._failed(
                        record, ProcessingOutcome.STORE_FAILED, f"Retries exhausted: {reason}"
                    ), attempts

                self._retry_count += 1
                logger.warning(
                    f"Retryable failure on {record.position}, retrying in {delay:.3f}s: {reason}",
                    extra={"position": record.position.to_dict(), "attempt": attempts},
                )
                await asyncio.sleep(delay)
                delay *= self.settings.retry_backoff_multiplier

            except MaterializerError as e:
                logger.error(
                    f"Rejected record {record.position}: {e}",
                    extra={"position": record.position.to_dict()},
                )
                return self._failed(record, ProcessingOutcome.VALIDATION_FAILED, str(e)), attempts

            except Exception as e:
                logger.error(f"Error processing record {record.position}: {e}", exc_info=True)
                return self._failed(
                    record, ProcessingOutcome.ERROR, f"{type(e).__name__}: {e}"
                ), attempts

    def _failed(self, record: StreamRecord, outcome: ProcessingOutcome, reason: str) -> RouteResult:
        return RouteResult(
            outcome,
            record.topic,
            self.router.entity_type_for(record.topic),
            reason=reason,
        )

    async def _dead_letter(self, record: StreamRecord, result: RouteResult, attempts: int) -> None:
        letter = DeadLetter(
            record=record,
            outcome=result.outcome,
            reason=result.reason or result.outcome.value,
            details={"entity_id": result.entity_id, **result.details},
            attempts=attempts,
        )
        try:
            await self.dead_letter_sink.send(letter)
            self._dead_letter_count += 1
        except Exception as e:
            logger.error(
                f"Dead-letter delivery failed for {record.position}: {e}",
                exc_info=True,
                extra={"position": record.position.to_dict(), "reason": letter.reason},
            )

    @property
    def stats(self) -> dict[str, Any]:
        """Get consumer statistics."""
        return {
            "running": self._running,
            "processed_count": self._processed_count,
            "error_count": self._error_count,
            "retry_count": self._retry_count,
            "dead_letter_count": self._dead_letter_count,
            "last_position": str(self._last_position) if self._last_position else None,
        }
