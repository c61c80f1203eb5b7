"""
Dead-letter sinks for records that cannot be materialized.

A record is dead-lettered when it fails decoding or validation, when
retries of a transient failure are exhausted, or when processing raised
unexpectedly. The record is committed afterwards; the dead-letter sink is
the only place it survives.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..observability import ProcessingOutcome
from ..stream import ChangeStream, StreamRecord

logger = logging.getLogger(__name__)


@dataclass
class DeadLetter:
    """A rejected record with the reason it was rejected."""

    record: StreamRecord
    outcome: ProcessingOutcome
    reason: str
    details: dict[str, Any] = field(default_factory=dict)
    attempts: int = 1

    def headers(self) -> dict[str, bytes]:
        position = self.record.position
        return {
            "dlq.original_topic": position.topic.encode(),
            "dlq.original_partition": str(position.partition).encode(),
            "dlq.original_offset": str(position.offset).encode(),
            "dlq.outcome": self.outcome.value.encode(),
            "dlq.reason": self.reason.encode(),
            "dlq.attempts": str(self.attempts).encode(),
            "dlq.details": json.dumps(self.details, default=str).encode(),
        }


@runtime_checkable
class DeadLetterSink(Protocol):
    async def send(self, letter: DeadLetter) -> None: ...


class LoggingDeadLetterSink:
    """Logs rejected records at error level. Default sink."""

    def __init__(self) -> None:
        self.count = 0

    async def send(self, letter: DeadLetter) -> None:
        self.count += 1
        value = letter.record.value
        logger.error(
            f"Dead-lettered record {letter.record.position}: {letter.reason}",
            extra={
                "position": letter.record.position.to_dict(),
                "key": letter.record.key,
                "outcome": letter.outcome.value,
                "reason": letter.reason,
                "details": letter.details,
                "attempts": letter.attempts,
                "value": value.decode("utf-8", errors="replace") if value is not None else None,
            },
        )


class StreamDeadLetterSink:
    """Appends rejected records to a dead-letter topic.

    The original body and key are kept unchanged; the failure context
    travels in "dlq.*" headers.
    """

    def __init__(self, stream: ChangeStream, topic: str) -> None:
        self.stream = stream
        self.topic = topic
        self.count = 0

    async def send(self, letter: DeadLetter) -> None:
        """Raises StreamError if the append fails."""
        pos = await self.stream.append(
            self.topic,
            letter.record.key,
            letter.record.value,
            headers=letter.headers(),
        )
        self.count += 1
        logger.warning(
            f"Dead-lettered record {letter.record.position} to {pos}",
            extra={
                "position": letter.record.position.to_dict(),
                "dead_letter_position": pos.to_dict(),
                "outcome": letter.outcome.value,
                "reason": letter.reason,
            },
        )
