"""Dead-letter routing and publishing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, List, Mapping, Protocol, Sequence, Tuple

from aiokafka import AIOKafkaProducer

from docsync.config import AppConfig
from docsync.errors import FailureKind, ProcessingError

LOGGER = logging.getLogger(__name__)

Headers = Sequence[Tuple[str, bytes]]

ORIGINAL_TOPIC = "dlt-original-topic"
ORIGINAL_PARTITION = "dlt-original-partition"
ORIGINAL_OFFSET = "dlt-original-offset"
EXCEPTION_KIND = "dlt-exception-kind"
EXCEPTION_MESSAGE = "dlt-exception-message"
ATTEMPTS = "dlt-attempts"


@dataclass(slots=True, frozen=True)
class InboundMessage:
    """A consumed record, independent of the Kafka client types."""

    topic: str
    partition: int
    offset: int
    value: bytes | None
    key: bytes | None = None
    headers: Headers = ()
    timestamp: int | None = None

    @classmethod
    def from_record(cls, record: Any) -> "InboundMessage":
        return cls(
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
            value=record.value,
            key=record.key,
            headers=tuple(record.headers or ()),
            timestamp=record.timestamp,
        )


@dataclass(slots=True, frozen=True)
class DeadLetterRecord:
    topic: str
    partition: int
    value: bytes | None
    key: bytes | None = None
    headers: List[Tuple[str, bytes]] = field(default_factory=list)


class DeadLetterRouter:
    """Read-only table mapping a source topic to its dead-letter topic."""

    def __init__(self, routes: Mapping[str, str]) -> None:
        self._routes = MappingProxyType(dict(routes))

    @classmethod
    def from_config(cls, config: AppConfig) -> "DeadLetterRouter":
        return cls(
            {
                config.upsert_topic: str(config.upsert_dlq_topic),
                config.delete_topic: str(config.delete_dlq_topic),
            }
        )

    @property
    def routes(self) -> Mapping[str, str]:
        return self._routes

    def destination_for(self, topic: str) -> str:
        try:
            return self._routes[topic]
        except KeyError:
            raise ProcessingError(
                FailureKind.FATAL_CONFIG, f"No dead-letter topic configured for source topic {topic!r}"
            ) from None


def build_dead_letter(
    message: InboundMessage, destination: str, kind: str, reason: str, attempts: int
) -> DeadLetterRecord:
    """Original key/value/headers plus failure metadata."""
    headers = list(message.headers)
    headers.extend(
        [
            (ORIGINAL_TOPIC, message.topic.encode("utf-8")),
            (ORIGINAL_PARTITION, str(message.partition).encode("utf-8")),
            (ORIGINAL_OFFSET, str(message.offset).encode("utf-8")),
            (EXCEPTION_KIND, kind.encode("utf-8")),
            (EXCEPTION_MESSAGE, reason.encode("utf-8")),
            (ATTEMPTS, str(attempts).encode("utf-8")),
        ]
    )
    return DeadLetterRecord(
        topic=destination,
        partition=message.partition,
        value=message.value,
        key=message.key,
        headers=headers,
    )


class DeadLetterSink(Protocol):
    async def publish(self, record: DeadLetterRecord) -> None: ...


class KafkaDeadLetterSink:
    """Publishes dead letters with an aiokafka producer created inside the event loop."""

    def __init__(
        self,
        bootstrap_servers: str,
        producer_factory: Callable[..., AIOKafkaProducer] = AIOKafkaProducer,
    ) -> None:
        self.bootstrap_servers = bootstrap_servers
        self._producer_factory = producer_factory
        self._producer: AIOKafkaProducer | None = None

    async def start(self) -> None:
        if self._producer is None:
            self._producer = self._producer_factory(bootstrap_servers=self.bootstrap_servers)
            await self._producer.start()

    async def stop(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def publish(self, record: DeadLetterRecord) -> None:
        if self._producer is None:
            raise RuntimeError("Dead-letter producer is not started")
        partitions = await self._producer.partitions_for(record.topic)
        partition = record.partition if partitions and record.partition in partitions else None
        await self._producer.send_and_wait(
            record.topic,
            value=record.value,
            key=record.key,
            partition=partition,
            headers=record.headers,
        )
        LOGGER.info("Published dead letter to %s (partition %s)", record.topic, partition)
