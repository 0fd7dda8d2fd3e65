"""Extractor registry: resolves a declared type to a format extractor."""

from __future__ import annotations

from kbase.errors import UnsupportedFormat
from kbase.ingest.base import Extractor, ExtractedText
from kbase.ingest.html import HtmlExtractor
from kbase.ingest.markdown import MarkdownExtractor
from kbase.ingest.pdf import PdfExtractor
from kbase.ingest.plaintext import PlainTextExtractor

_MIME_TYPES: dict[str, str] = {
    "application/pdf": "pdf",
    "application/x-pdf": "pdf",
    "text/markdown": "markdown",
    "text/x-markdown": "markdown",
    "text/html": "html",
    "application/xhtml+xml": "html",
    "text/plain": "text",
}

_EXTENSIONS: dict[str, str] = {
    "pdf": "pdf",
    "md": "markdown",
    "markdown": "markdown",
    "html": "html",
    "htm": "html",
    "txt": "text",
    "text": "text",
}

_EXTRACTORS: dict[str, Extractor] = {
    "pdf": PdfExtractor(),
    "markdown": MarkdownExtractor(),
    "html": HtmlExtractor(),
    "text": PlainTextExtractor(),
}


def detect_type(declared_type: str) -> str:
    """Map a MIME type, extension or file name to a format key.

    Returns one of ``pdf``, ``markdown``, ``html``, ``text``.

    Raises:
        UnsupportedFormat: the type is not recognised.
    """
    value = (declared_type or "").strip().lower()
    mime = value.split(";", 1)[0].strip()
    if mime in _MIME_TYPES:
        return _MIME_TYPES[mime]
    ext = value.rsplit(".", 1)[-1] if "." in value else value
    if ext in _EXTENSIONS:
        return _EXTENSIONS[ext]
    raise UnsupportedFormat(declared_type)


def get_extractor(declared_type: str) -> Extractor:
    return _EXTRACTORS[detect_type(declared_type)]


def extract(data: bytes, declared_type: str) -> ExtractedText:
    """Extract normalized, redacted text from *data*.

    Raises:
        UnsupportedFormat: unknown *declared_type*.
        ExtractionFailed: corrupt input.
        EmptyContent: nothing readable after normalization.
    """
    return get_extractor(declared_type).extract(data)
