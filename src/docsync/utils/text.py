"""Text helpers for extracted content."""

from __future__ import annotations

from typing import Iterable


def normalize_whitespace(lines: Iterable[str]) -> str:
    """Collapse whitespace and join lines."""
    return "\n".join(line.strip() for line in lines if line.strip())


def decode_text(data: bytes) -> str:
    """Decode plain-text bytes, preferring UTF-8 (with or without BOM).

    Falls back to latin-1, which maps every byte, so legacy encodings still
    produce searchable text.
    """
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def clean_metadata_value(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
