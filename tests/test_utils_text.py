"""Tests for text utilities."""

from __future__ import annotations

from docsync.utils.text import clean_metadata_value, decode_text, normalize_whitespace


class TestNormalizeWhitespace:
    """Test line normalization."""

    def test_strips_and_drops_blank_lines(self) -> None:
        assert normalize_whitespace(["  hello ", "", "   ", "world  "]) == "hello\nworld"

    def test_empty_input(self) -> None:
        assert normalize_whitespace([]) == ""


class TestDecodeText:
    """Test plain-text decoding."""

    def test_utf8(self) -> None:
        assert decode_text("caffè".encode("utf-8")) == "caffè"

    def test_utf8_bom_is_removed(self) -> None:
        assert decode_text(b"\xef\xbb\xbfhello") == "hello"

    def test_latin1_fallback(self) -> None:
        assert decode_text("caffè".encode("latin-1")) == "caffè"


class TestCleanMetadataValue:
    """Test metadata cleanup."""

    def test_none(self) -> None:
        assert clean_metadata_value(None) is None

    def test_blank_becomes_none(self) -> None:
        assert clean_metadata_value("   ") is None

    def test_strips(self) -> None:
        assert clean_metadata_value("  Quarterly Report ") == "Quarterly Report"
