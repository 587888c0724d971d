"""Wire schema of file change events."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from docsync.errors import FailureKind, ProcessingError

LOGGER = logging.getLogger(__name__)


class EventType(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


def parse_event_timestamp(raw: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; unparsable values are logged and ignored."""
    if raw is None or not raw.strip():
        return None
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        LOGGER.warning("Ignoring unparsable eventTimestamp %r", raw)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _EventModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    document_id: str = Field(alias="elasticsearchDocumentId")
    event_timestamp: str | None = Field(default=None, alias="eventTimestamp")

    @field_validator("document_id")
    @classmethod
    def _require_document_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("elasticsearchDocumentId must not be blank")
        return value

    @property
    def timestamp(self) -> datetime | None:
        return parse_event_timestamp(self.event_timestamp)


class UpsertEvent(_EventModel):
    target_relative_path: str = Field(alias="targetRelativePath")
    target_filename: str = Field(alias="targetFilename")
    source_relative_path: str = Field(alias="sourceRelativePath")
    source_filename: str = Field(alias="sourceFilename")
    last_modified_epoch_seconds: int = Field(alias="targetFileLastModifiedEpochSeconds")
    size_bytes: int = Field(alias="targetFileSizeBytes")
    custom_metadata: Dict[str, Any] | None = Field(default=None, alias="customMetadata")

    @field_validator("target_filename", "source_filename")
    @classmethod
    def _require_filename(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("filename must not be blank")
        return value

    @property
    def source_path(self) -> str:
        if not self.source_relative_path:
            return self.source_filename
        return os.path.join(self.source_relative_path, self.source_filename)


class DeleteEvent(_EventModel):
    pass


ChangeEvent = Union[UpsertEvent, DeleteEvent]

_MODELS = {EventType.UPSERT: UpsertEvent, EventType.DELETE: DeleteEvent}


def decode_event(event_type: EventType, payload: bytes | str | None) -> ChangeEvent:
    """Decode a raw message body. Malformed payloads raise a decode error."""
    if payload is None:
        raise ProcessingError(FailureKind.DECODE, f"Empty {event_type.value} event payload")
    try:
        return _MODELS[event_type].model_validate_json(payload)
    except ValidationError as exc:
        raise ProcessingError(
            FailureKind.DECODE,
            f"Malformed {event_type.value} event: {exc.error_count()} validation error(s): {exc.errors()[0]['msg']}",
        ) from exc
