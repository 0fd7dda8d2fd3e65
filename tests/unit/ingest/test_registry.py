"""Tests for type detection and extractor dispatch."""

from __future__ import annotations

import pytest

from kbase.errors import UnsupportedFormat
from kbase.ingest.html import HtmlExtractor
from kbase.ingest.markdown import MarkdownExtractor
from kbase.ingest.pdf import PdfExtractor
from kbase.ingest.plaintext import PlainTextExtractor
from kbase.ingest.registry import detect_type, extract, get_extractor


@pytest.mark.parametrize(
    "declared, expected",
    [
        ("application/pdf", "pdf"),
        ("text/markdown", "markdown"),
        ("text/html; charset=utf-8", "html"),
        ("text/plain", "text"),
        ("Handbook.PDF", "pdf"),
        ("notes.md", "markdown"),
        ("index.htm", "html"),
        ("readme.txt", "text"),
        ("md", "markdown"),
    ],
)
def test_detect_type(declared, expected):
    assert detect_type(declared) == expected


@pytest.mark.parametrize("declared", ["image/png", "archive.zip", "", "docx"])
def test_detect_type_unsupported(declared):
    with pytest.raises(UnsupportedFormat):
        detect_type(declared)


def test_get_extractor_types():
    assert isinstance(get_extractor("a.pdf"), PdfExtractor)
    assert isinstance(get_extractor("a.md"), MarkdownExtractor)
    assert isinstance(get_extractor("a.html"), HtmlExtractor)
    assert isinstance(get_extractor("a.txt"), PlainTextExtractor)


def test_extract_dispatches_by_type():
    out = extract(b"# Title\n\nBody", "text/markdown")
    assert out.format == "markdown"
    assert out.text == "Title\n\nBody"


def test_unsupported_error_names_type():
    with pytest.raises(UnsupportedFormat) as exc_info:
        extract(b"x", "application/zip")
    assert exc_info.value.declared_type == "application/zip"
