"""Shared fakes for the Kafka and Elasticsearch collaborators."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

import pytest

from docsync.batch.store import JobRepository
from docsync.streaming.deadletter import DeadLetterRecord, DeadLetterRouter

UPSERT_TOPIC = "dms-file-upsert-events"
DELETE_TOPIC = "dms-file-delete-events"


@dataclass
class FakeRecord:
    topic: str
    partition: int
    offset: int
    value: bytes | None
    key: bytes | None = None
    headers: Sequence[Tuple[str, bytes]] = ()
    timestamp: int | None = 1700000000000


class FakeConsumer:
    """Yields a fixed list of records and records every commit."""

    def __init__(self, records: Sequence[FakeRecord] = ()) -> None:
        self.records = list(records)
        self.commits: List[Dict[Any, int]] = []
        self.started = False
        self.stopped = False
        self.highwaters: Dict[Any, int] = {}

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for record in self.records:
            yield record

    async def commit(self, offsets: Dict[Any, int] | None = None) -> None:
        self.commits.append(dict(offsets or {}))

    def assignment(self):
        return set(self.highwaters)

    def highwater(self, tp):
        return self.highwaters.get(tp)

    async def committed(self, tp):
        committed = [offsets[tp] for offsets in self.commits if tp in offsets]
        return committed[-1] if committed else None


class RecordingSink:
    """Dead-letter sink that keeps published records in memory."""

    def __init__(self) -> None:
        self.records: List[DeadLetterRecord] = []
        self.started = False
        self.stopped = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def publish(self, record: DeadLetterRecord) -> None:
        self.records.append(record)


class RecordingSleep:
    """Async sleep replacement that remembers the requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def upsert_payload(**overrides: Any) -> bytes:
    payload: Dict[str, Any] = {
        "elasticsearchDocumentId": "doc-1",
        "targetRelativePath": "incoming",
        "targetFilename": "report.txt",
        "sourceRelativePath": "share/reports",
        "sourceFilename": "Report.txt",
        "targetFileLastModifiedEpochSeconds": 1700000000,
        "targetFileSizeBytes": 11,
        "eventTimestamp": "2024-01-02T03:04:05Z",
    }
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


def delete_payload(document_id: str = "doc-1", **overrides: Any) -> bytes:
    payload: Dict[str, Any] = {"elasticsearchDocumentId": document_id, "eventTimestamp": "2024-01-02T03:04:05Z"}
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def router() -> DeadLetterRouter:
    return DeadLetterRouter({UPSERT_TOPIC: f"{UPSERT_TOPIC}-dlq", DELETE_TOPIC: f"{DELETE_TOPIC}-dlq"})


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def store(tmp_path):
    repository = JobRepository(tmp_path / "state.db")
    yield repository
    repository.close()
