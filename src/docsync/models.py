"""Core docsync data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict


def format_instant(value: datetime) -> str:
    """Render a timestamp as ISO-8601 UTC with a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class IndexableDocument:
    """Canonical record written to the search index, keyed by ``id``."""

    id: str
    content: str
    filename: str
    source_path: str
    last_modified: int
    size_bytes: int
    title: str | None = None
    author: str | None = None
    event_timestamp: datetime | None = None

    def to_index_body(self) -> Dict[str, Any]:
        """Search-store representation; ``None`` fields are left out."""
        body: Dict[str, Any] = {
            "file_id": self.id,
            "content": self.content,
            "filename": self.filename,
            "source_path": self.source_path,
            "last_modified": self.last_modified,
            "title": self.title,
            "author": self.author,
            "file_size_bytes": self.size_bytes,
            "event_timestamp": format_instant(self.event_timestamp) if self.event_timestamp else None,
        }
        return {key: value for key, value in body.items() if value is not None}


@dataclass(slots=True, frozen=True)
class ParseResult:
    """Text and metadata pulled out of a file."""

    content: str = ""
    title: str | None = None
    author: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.content and self.title is None and self.author is None


class JobStatus(str, Enum):
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.STOPPED)

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.STARTING, JobStatus.RUNNING)


@dataclass(slots=True)
class StepCounters:
    read: int = 0
    write: int = 0
    skip: int = 0
    commit: int = 0
    rollback: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "readCount": self.read,
            "writeCount": self.write,
            "skipCount": self.skip,
            "commitCount": self.commit,
            "rollbackCount": self.rollback,
        }


@dataclass(slots=True)
class JobRun:
    """One execution of the backfill job."""

    run_id: int
    instance_key: str
    parameters: Dict[str, str]
    status: JobStatus = JobStatus.STARTING
    counters: StepCounters = field(default_factory=StepCounters)
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    last_updated: datetime | None = None
    exit_message: str | None = None
    owner: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def as_dict(self) -> Dict[str, Any]:
        def _fmt(value: datetime | None) -> str | None:
            return format_instant(value) if value else None

        return {
            "jobExecutionId": self.run_id,
            "instanceKey": self.instance_key,
            "jobParameters": dict(self.parameters),
            "status": self.status.value,
            "createTime": _fmt(self.created_at),
            "startTime": _fmt(self.started_at),
            "endTime": _fmt(self.ended_at),
            "lastUpdated": _fmt(self.last_updated),
            "exitMessage": self.exit_message,
            "owner": self.owner,
            **self.counters.as_dict(),
        }
