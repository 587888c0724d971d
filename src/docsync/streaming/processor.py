"""Per-message processing for the change event streams.

Each message moves through decode, resolve, extract and apply. Decode errors
go straight to the dead-letter topic; every later step shares one bounded
retry budget with a fixed pause between attempts. The caller commits the
source offset once :meth:`MessageProcessor.process` returns, whether the
event was applied or dead-lettered.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

import tenacity

from docsync.errors import FailureKind, ProcessingError
from docsync.index.gateway import ElasticsearchGateway
from docsync.ingestion.extractor import ContentExtractor
from docsync.models import IndexableDocument
from docsync.streaming.deadletter import DeadLetterRouter, DeadLetterSink, InboundMessage, build_dead_letter
from docsync.streaming.events import ChangeEvent, DeleteEvent, EventType, UpsertEvent, decode_event
from docsync.utils.files import resolve_target

LOGGER = logging.getLogger(__name__)

UNEXPECTED_KIND = "unexpected-error"


class Disposition(str, Enum):
    APPLIED = "applied"
    DEAD_LETTERED = "dead-lettered"


@dataclass(slots=True, frozen=True)
class Outcome:
    disposition: Disposition
    attempts: int
    reason: str | None = None


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, ProcessingError):
        return exc.retryable
    return isinstance(exc, Exception)


def _failure_kind(exc: BaseException) -> str:
    if isinstance(exc, ProcessingError):
        return exc.kind.value
    return UNEXPECTED_KIND


class MessageProcessor:
    """Applies upsert and delete events to the index through the gateway."""

    def __init__(
        self,
        gateway: ElasticsearchGateway,
        extractor: ContentExtractor,
        router: DeadLetterRouter,
        sink: DeadLetterSink,
        *,
        base_dir: Path | None,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.extractor = extractor
        self.router = router
        self.sink = sink
        self.base_dir = base_dir
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    async def process(self, event_type: EventType, message: InboundMessage) -> Outcome:
        LOGGER.info(
            "Received %s event from %s[%s]@%s", event_type.value, message.topic, message.partition, message.offset
        )
        try:
            event = decode_event(event_type, message.value)
        except ProcessingError as exc:
            LOGGER.error("Undecodable message at %s[%s]@%s: %s", message.topic, message.partition, message.offset, exc)
            await self._dead_letter(message, exc, attempts=1)
            return Outcome(Disposition.DEAD_LETTERED, attempts=1, reason=str(exc))

        attempts = 0
        retrying = tenacity.AsyncRetrying(
            stop=tenacity.stop_after_attempt(self.max_attempts),
            wait=tenacity.wait_fixed(self.backoff_seconds),
            retry=tenacity.retry_if_exception(_should_retry),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await self.apply(event)
        except ProcessingError as exc:
            if exc.kind is FailureKind.FATAL_CONFIG:
                raise
            await self._dead_letter(message, exc, attempts)
            return Outcome(Disposition.DEAD_LETTERED, attempts=attempts, reason=str(exc))
        except Exception as exc:
            LOGGER.exception("Unexpected error handling %s event %s", event_type.value, event.document_id)
            await self._dead_letter(message, exc, attempts)
            return Outcome(Disposition.DEAD_LETTERED, attempts=attempts, reason=str(exc))

        return Outcome(Disposition.APPLIED, attempts=attempts)

    async def apply(self, event: ChangeEvent) -> None:
        if isinstance(event, UpsertEvent):
            document = await self.build_document(event)
            await asyncio.to_thread(self.gateway.upsert_one, document)
            LOGGER.info("Document %s indexed", event.document_id)
        elif isinstance(event, DeleteEvent):
            await asyncio.to_thread(self.gateway.delete_one, event.document_id)
            LOGGER.info("Document %s deleted (or already absent)", event.document_id)
        else:  # pragma: no cover - closed union
            raise TypeError(f"Unsupported event {event!r}")

    def resolve(self, event: UpsertEvent) -> Path:
        """Locate the target file under the configured base directory."""
        if self.base_dir is None or not str(self.base_dir).strip():
            raise ProcessingError(FailureKind.RESOLUTION, "Target base directory is not configured")
        try:
            path = resolve_target(self.base_dir, event.target_relative_path, event.target_filename)
        except ValueError as exc:
            raise ProcessingError(FailureKind.RESOLUTION, str(exc)) from exc
        if not path.is_file() or not os.access(path, os.R_OK):
            raise ProcessingError(FailureKind.RESOLUTION, f"Target file missing or unreadable: {path}")
        LOGGER.debug("Resolved %s to %s", event.document_id, path)
        return path

    async def build_document(self, event: UpsertEvent) -> IndexableDocument:
        path = self.resolve(event)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise ProcessingError(FailureKind.RESOLUTION, f"Cannot read {path}: {exc}") from exc

        parsed = await asyncio.to_thread(self.extractor.parse, data, path.name)
        return IndexableDocument(
            id=event.document_id,
            content=parsed.content,
            filename=event.source_filename,
            source_path=event.source_path,
            last_modified=event.last_modified_epoch_seconds,
            size_bytes=event.size_bytes,
            title=parsed.title,
            author=parsed.author,
            event_timestamp=event.timestamp,
        )

    async def _dead_letter(self, message: InboundMessage, exc: BaseException, attempts: int) -> None:
        destination = self.router.destination_for(message.topic)
        record = build_dead_letter(message, destination, _failure_kind(exc), str(exc), attempts)
        await self.sink.publish(record)
        LOGGER.error(
            "Message %s[%s]@%s dead-lettered to %s after %d attempt(s): %s",
            message.topic,
            message.partition,
            message.offset,
            destination,
            attempts,
            exc,
        )

    @staticmethod
    def _log_retry(retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        LOGGER.warning("Attempt %d failed, retrying: %s", retry_state.attempt_number, exc)
