"""Conversion of scanned files into indexable documents."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable

from docsync.errors import ProcessingError
from docsync.ingestion.extractor import ContentExtractor
from docsync.models import IndexableDocument, utc_now
from docsync.utils.ids import canonical_path, derive_from_path

LOGGER = logging.getLogger(__name__)


class FileDocumentProcessor:
    """Builds an :class:`IndexableDocument` for a path, or ``None`` to skip it."""

    def __init__(self, extractor: ContentExtractor, clock: Callable[[], datetime] = utc_now) -> None:
        self.extractor = extractor
        self.clock = clock

    def process(self, path: Path) -> IndexableDocument | None:
        LOGGER.debug("Processing %s", path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            LOGGER.warning("Skipping %s: cannot read file: %s", path, exc)
            return None

        try:
            parsed = self.extractor.parse(data, path.name)
        except ProcessingError as exc:
            LOGGER.warning("Skipping %s: %s", path, exc)
            return None

        if parsed.is_empty:
            LOGGER.warning("Skipping %s: no content or metadata extracted", path)
            return None

        try:
            stat = path.stat()
        except OSError as exc:
            LOGGER.warning("Skipping %s: cannot read attributes: %s", path, exc)
            return None

        document = IndexableDocument(
            id=derive_from_path(path),
            content=parsed.content,
            filename=path.name,
            source_path=canonical_path(path),
            last_modified=int(stat.st_mtime),
            size_bytes=stat.st_size,
            title=parsed.title,
            author=parsed.author,
            event_timestamp=self.clock(),
        )
        LOGGER.info("Prepared %s as %s (title=%r)", path, document.id, document.title)
        return document
