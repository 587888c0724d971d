"""Kafka consumption for the upsert and delete streams.

Streams are wired through an explicit registration table built from the
configuration. Each registration gets ``consumer_concurrency`` workers that
join the same consumer group, so the broker hands each worker a disjoint set
of partitions. Offsets are committed manually, one message at a time, after
the processor has either applied or dead-lettered it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Sequence

from aiokafka import AIOKafkaConsumer, TopicPartition
from aiokafka.errors import CommitFailedError, IllegalStateError

from docsync.config import AppConfig
from docsync.errors import FailureKind, ProcessingError
from docsync.index.gateway import ElasticsearchGateway
from docsync.ingestion.extractor import ContentExtractor
from docsync.streaming.deadletter import DeadLetterRouter, InboundMessage, KafkaDeadLetterSink
from docsync.streaming.events import EventType
from docsync.streaming.processor import MessageProcessor, Outcome

LOGGER = logging.getLogger(__name__)

Handler = Callable[[InboundMessage], Awaitable[Outcome]]
ConsumerFactory = Callable[[str, str], Any]


@dataclass(slots=True, frozen=True)
class StreamRegistration:
    event_type: EventType
    topic: str
    handler: Handler


def build_registrations(
    config: AppConfig, processor: MessageProcessor, router: DeadLetterRouter
) -> tuple[StreamRegistration, ...]:
    """Map each configured topic to its handler.

    Every registered topic must have a dead-letter route, otherwise startup fails.
    """
    registrations = (
        StreamRegistration(EventType.UPSERT, config.upsert_topic, partial(processor.process, EventType.UPSERT)),
        StreamRegistration(EventType.DELETE, config.delete_topic, partial(processor.process, EventType.DELETE)),
    )
    for registration in registrations:
        router.destination_for(registration.topic)
    return registrations


def default_consumer_factory(config: AppConfig) -> ConsumerFactory:
    def _create(topic: str, client_id: str) -> AIOKafkaConsumer:
        return AIOKafkaConsumer(
            topic,
            bootstrap_servers=config.kafka_bootstrap_servers,
            group_id=config.consumer_group_id,
            client_id=client_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )

    return _create


class StreamWorker:
    """Drains one consumer, handling and committing messages in partition order."""

    def __init__(self, registration: StreamRegistration, consumer: Any, name: str) -> None:
        self.registration = registration
        self.consumer = consumer
        self.name = name
        self.processed = 0

    async def run(self) -> None:
        LOGGER.info("Worker %s consuming %s", self.name, self.registration.topic)
        async for record in self.consumer:
            await self.handle(record)

    async def handle(self, record: Any) -> Outcome:
        message = InboundMessage.from_record(record)
        try:
            outcome = await self.registration.handler(message)
        except ProcessingError as exc:
            if exc.kind is FailureKind.FATAL_CONFIG:
                LOGGER.critical(
                    "Worker %s cannot route %s[%s]@%s: %s; offset left uncommitted",
                    self.name,
                    message.topic,
                    message.partition,
                    message.offset,
                    exc,
                )
            raise
        try:
            await self.consumer.commit({TopicPartition(message.topic, message.partition): message.offset + 1})
        except (CommitFailedError, IllegalStateError) as exc:
            # Partition moved to another member; it will redeliver from the last committed offset.
            LOGGER.warning(
                "Worker %s could not commit %s[%s]@%s after a rebalance: %s",
                self.name,
                message.topic,
                message.partition,
                message.offset,
                exc,
            )
            return outcome
        self.processed += 1
        LOGGER.debug(
            "Committed %s[%s]@%s (%s)", message.topic, message.partition, message.offset, outcome.disposition.value
        )
        return outcome

    async def lag(self) -> List[Dict[str, Any]]:
        partitions = []
        for tp in sorted(self.consumer.assignment(), key=lambda item: (item.topic, item.partition)):
            end = self.consumer.highwater(tp)
            committed = await self.consumer.committed(tp)
            if end is None:
                lag = None
            else:
                lag = max(0, end - (committed or 0))
            partitions.append(
                {"topic": tp.topic, "partition": tp.partition, "committedOffset": committed, "logEndOffset": end, "lag": lag}
            )
        return partitions


class StreamRunner:
    """Starts the worker pool for every registration and runs it until stopped."""

    def __init__(
        self,
        registrations: Sequence[StreamRegistration],
        consumer_factory: ConsumerFactory,
        sink: KafkaDeadLetterSink | None = None,
        *,
        concurrency: int = 1,
        group_id: str = "docsync-indexer",
    ) -> None:
        self.registrations = tuple(registrations)
        self.consumer_factory = consumer_factory
        self.sink = sink
        self.concurrency = concurrency
        self.group_id = group_id
        self.workers: List[StreamWorker] = []

    async def start(self) -> None:
        if self.sink is not None:
            await self.sink.start()
        for registration in self.registrations:
            for index in range(self.concurrency):
                name = f"{self.group_id}-{registration.event_type.value}-{index}"
                consumer = self.consumer_factory(registration.topic, name)
                try:
                    await consumer.start()
                except Exception:
                    await consumer.stop()
                    raise
                self.workers.append(StreamWorker(registration, consumer, name))
        LOGGER.info(
            "Started %d workers for %s",
            len(self.workers),
            ", ".join(registration.topic for registration in self.registrations),
        )

    async def stop(self) -> None:
        for worker in self.workers:
            await worker.consumer.stop()
        self.workers.clear()
        if self.sink is not None:
            await self.sink.stop()
        LOGGER.info("Stream consumers stopped")

    async def run(self) -> None:
        """Run until a worker dies or the task is cancelled."""
        tasks: List[asyncio.Task] = []
        try:
            await self.start()
            tasks = [asyncio.create_task(worker.run(), name=worker.name) for worker in self.workers]
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.stop()

    async def lag(self) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = {}
        for worker in self.workers:
            partitions = await worker.lag()
            snapshot[worker.name] = {
                "topic": worker.registration.topic,
                "processed": worker.processed,
                "totalLag": sum(item["lag"] or 0 for item in partitions),
                "partitions": partitions,
            }
        return snapshot


def create_stream_runner(
    config: AppConfig,
    gateway: ElasticsearchGateway,
    extractor: ContentExtractor | None = None,
    consumer_factory: ConsumerFactory | None = None,
) -> StreamRunner:
    router = DeadLetterRouter.from_config(config)
    sink = KafkaDeadLetterSink(config.kafka_bootstrap_servers)
    processor = MessageProcessor(
        gateway,
        extractor or ContentExtractor(),
        router,
        sink,
        base_dir=config.target_base_dir,
        max_attempts=config.retry_max_attempts,
        backoff_seconds=config.retry_backoff_seconds,
    )
    return StreamRunner(
        build_registrations(config, processor, router),
        consumer_factory or default_consumer_factory(config),
        sink,
        concurrency=config.consumer_concurrency,
        group_id=config.consumer_group_id,
    )
