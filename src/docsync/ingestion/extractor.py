"""Text and metadata extraction.

PDF files go through PyMuPDF (fitz), Word documents through python-docx and
everything else is decoded as plain text.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Iterator

import docx
import fitz  # PyMuPDF

from docsync.errors import FailureKind, ProcessingError
from docsync.models import ParseResult
from docsync.utils.text import clean_metadata_value, decode_text, normalize_whitespace

LOGGER = logging.getLogger(__name__)


def iter_pdf_pages(document: fitz.Document) -> Iterator[str]:
    """Yield normalized text page by page."""
    for index in range(len(document)):
        text = document[index].get_text() or ""
        normalized = normalize_whitespace(text.splitlines())
        if normalized:
            yield normalized


def parse_pdf(data: bytes) -> ParseResult:
    document = fitz.open(stream=data, filetype="pdf")
    try:
        metadata = document.metadata or {}
        content = "\n".join(iter_pdf_pages(document))
        return ParseResult(
            content=content,
            title=clean_metadata_value(metadata.get("title")),
            author=clean_metadata_value(metadata.get("author")),
        )
    finally:
        document.close()


def parse_docx(data: bytes) -> ParseResult:
    document = docx.Document(io.BytesIO(data))
    parts = [paragraph.text for paragraph in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            parts.extend(cell.text for cell in row.cells)
    properties = document.core_properties
    return ParseResult(
        content=normalize_whitespace(parts),
        title=clean_metadata_value(properties.title),
        author=clean_metadata_value(properties.author),
    )


def parse_text(data: bytes) -> ParseResult:
    return ParseResult(content=decode_text(data).strip())


class ContentExtractor:
    """Turns raw file bytes into a :class:`ParseResult`."""

    def parse(self, data: bytes, filename: str) -> ParseResult:
        """Extract content; any parser failure becomes an extraction error."""
        suffix = Path(filename).suffix.lower()
        try:
            if suffix == ".pdf":
                result = parse_pdf(data)
            elif suffix == ".docx":
                result = parse_docx(data)
            else:
                result = parse_text(data)
        except Exception as exc:
            LOGGER.error("Failed to parse %s: %s", filename, exc)
            raise ProcessingError(FailureKind.EXTRACTION, f"Cannot parse {filename}: {exc}") from exc

        LOGGER.debug(
            "Parsed %s: title=%r author=%r, %d chars", filename, result.title, result.author, len(result.content)
        )
        if result.is_empty:
            return ParseResult()
        return result
