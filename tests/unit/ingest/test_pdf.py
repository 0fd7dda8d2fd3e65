"""Tests for PdfExtractor: layout reconstruction, fields, error mapping."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from pypdf.errors import PdfReadError

from kbase.errors import EmptyContent, ExtractionFailed
from kbase.ingest.chunker import Chunker
from kbase.ingest.pdf import PdfExtractor, PdfLine, PdfToken, detect_fields, group_lines

IDENTITY = [1, 0, 0, 1, 0, 0]


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _page(runs: list[tuple[str, float, float]], size: float = 10.0, height: float = 792.0):
    """Fake pypdf page whose extract_text() feeds (text, x, y) runs to the visitor."""
    page = MagicMock()
    page.mediabox.height = height

    def extract_text(visitor_text=None):
        for text, x, y in runs:
            visitor_text(text, IDENTITY, [1, 0, 0, 1, x, y], {}, size)
        return ""

    page.extract_text.side_effect = extract_text
    return page


def _reader(pages, encrypted=False):
    reader = MagicMock()
    reader.pages = pages
    reader.is_encrypted = encrypted
    reader.decrypt.return_value = 0
    return reader


def _extract(pages, **kwargs):
    with patch("kbase.ingest.pdf.pypdf") as mock_pypdf:
        mock_pypdf.PdfReader.return_value = _reader(pages, **kwargs)
        return PdfExtractor().extract(b"%PDF-1.7 fake")


def _line(page_no: int, line_no: int) -> str:
    text = (f"page {page_no} line {line_no:02d} " + "alpha beta gamma delta " * 6)[:116]
    assert len(text) == 116 and not text.endswith(" ")
    return text


def _tok(text, x, y=100.0, page=1, size=10.0):
    return PdfToken(text=text, page=page, x=x, y=y, w=len(text) * size * 0.5, h=size, size=size)


# ------------------------------------------------------------------
# Extraction
# ------------------------------------------------------------------


def test_lines_in_reading_order_with_page_meta():
    out = _extract([_page([("Second line", 72, 686), ("First line", 72, 700)])])
    assert out.text == "First line\nSecond line"
    assert out.format == "pdf"
    assert [s.meta["page"] for s in out.spans] == [1, 1]
    first = out.spans[0]
    assert out.text[first.start:first.end] == "First line"
    assert first.meta["bbox"] == [72.0, 82.0, 50.0, 10.0]


def test_pages_separated_by_blank_line():
    out = _extract([_page([("Page one", 72, 700)]), _page([("Page two", 72, 700)])])
    assert out.text == "Page one\n\nPage two"
    assert [s.meta["page"] for s in out.spans] == [1, 2]


def test_columns_read_top_to_bottom():
    runs = [("Left A", 72, 700), ("Right A", 320, 690), ("Left B", 72, 680), ("Right B", 320, 670)]
    out = _extract([_page(runs)])
    assert out.text.split("\n") == ["Left A", "Left B", "Right A", "Right B"]


def test_three_page_document_chunks_into_four_windows():
    pages = [
        _page([(_line(p, n), 72, 700 - n * 14) for n in range(10)]) for p in range(1, 4)
    ]
    out = _extract(pages)
    assert len(out.text) == 3511

    chunks = Chunker(chunk_size=250, overlap=0.12).chunk(out.text, out.spans)
    assert [c.chunk_idx for c in chunks] == [0, 1, 2, 3]
    assert chunks[0].metadata["page_start"] == 1
    assert chunks[-1].metadata["page_end"] == 3
    for c in chunks:
        assert c.metadata["pages"] == sorted(c.metadata["pages"])
        assert {r["page"] for r in c.metadata["regions"]} == set(c.metadata["pages"])


def test_inline_label_value_detected_as_field():
    out = _extract([_page([("Invoice No: INV-2024-001", 72, 700)])])
    assert out.text == "Invoice No: INV-2024-001"
    assert out.spans[0].meta["fields"] == [{"label": "Invoice No", "value": "INV-2024-001"}]


def test_image_only_pdf_is_empty():
    with pytest.raises(EmptyContent):
        _extract([_page([]), _page([("   ", 72, 700)])])


def test_encrypted_pdf_fails():
    with pytest.raises(ExtractionFailed, match="encrypted"):
        _extract([_page([("x", 72, 700)])], encrypted=True)


def test_corrupt_pdf_fails():
    with patch("kbase.ingest.pdf.pypdf") as mock_pypdf:
        mock_pypdf.PdfReader.side_effect = PdfReadError("EOF marker not found")
        with pytest.raises(ExtractionFailed, match="PdfReadError"):
            PdfExtractor().extract(b"not a pdf")


def test_redaction_applied_to_pdf_text():
    out = _extract([_page([("password: hunter2", 72, 700)])])
    assert "hunter2" not in out.text


# ------------------------------------------------------------------
# Layout helpers
# ------------------------------------------------------------------


def test_group_lines_spacing_from_gaps():
    tokens = [_tok("Hel", 72), _tok("lo", 87), _tok("world", 110)]
    [line] = group_lines(tokens)
    assert line.text == "Hello world"


def test_group_lines_splits_side_by_side_labels():
    tokens = [_tok("Name:", 72), _tok("Jane", 102), _tok("Account:", 350), _tok("ACC-42", 395)]
    lines = group_lines(tokens)
    assert [ln.text for ln in lines] == ["Name: Jane", "Account: ACC-42"]


def test_bare_id_label_gets_colon():
    [line] = group_lines([_tok("ID", 72), _tok("A12", 90)])
    assert line.text == "ID: A12"


def test_detect_fields_joins_adjacent_value_tokens():
    toks = [_tok("Ref:", 72), _tok("AB", 97), _tok("12", 108)]
    line = PdfLine(text="Ref: AB 12", page=1, bbox=(72, 100, 46, 10), tokens=toks)
    assert detect_fields([line]) == {0: [{"label": "Ref", "value": "AB 12"}]}


def test_detect_fields_ignores_prose():
    toks = [_tok("The", 72), _tok("quick", 92), _tok("fox", 122)]
    line = PdfLine(text="The quick fox", page=1, bbox=(72, 100, 65, 10), tokens=toks)
    assert detect_fields([line]) == {}
