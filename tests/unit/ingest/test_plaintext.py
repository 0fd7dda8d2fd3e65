"""Tests for PlainTextExtractor."""

from __future__ import annotations

import pytest

from kbase.errors import EmptyContent
from kbase.ingest.plaintext import PlainTextExtractor


def test_plaintext_normalizes():
    out = PlainTextExtractor().extract(b"Line one  \r\nLine two\n\n\n\nEnd\x00")
    assert out.text == "Line one\nLine two\n\nEnd"
    assert out.format == "text"
    assert len(out.spans) == 1


def test_plaintext_invalid_utf8_is_replaced():
    out = PlainTextExtractor().extract(b"price \xff 10")
    assert out.text == "price \ufffd 10"


def test_plaintext_empty_raises():
    with pytest.raises(EmptyContent):
        PlainTextExtractor().extract(b"")


def test_plaintext_whitespace_only_raises():
    with pytest.raises(EmptyContent):
        PlainTextExtractor().extract(b"  \n\t\n ")


def test_plaintext_same_bytes_same_hash():
    a = PlainTextExtractor().extract(b"Same content")
    b = PlainTextExtractor().extract(b"Same content\n")
    assert a.content_hash == b.content_hash
