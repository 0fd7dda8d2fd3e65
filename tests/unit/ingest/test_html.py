"""Tests for HtmlExtractor."""

from __future__ import annotations

import pytest

from kbase.errors import EmptyContent
from kbase.ingest.html import HtmlExtractor

PAGE = b"""
<html><head><title>Ignored title</title><style>p { color: red }</style></head>
<body>
  <h1>Refunds</h1>
  <p>Refunds take 5&nbsp;business&nbsp;days.</p>
  <script>alert("tracking")</script>
  <h2>Contact</h2>
  <p>Email the <b>support</b> team.</p>
  <table><tr><td>Plan</td><td>Gold</td></tr></table>
</body></html>
"""


def test_html_drops_non_content():
    out = HtmlExtractor().extract(PAGE)
    assert "alert" not in out.text
    assert "color" not in out.text
    assert "Ignored title" not in out.text
    assert out.format == "html"


def test_html_decodes_entities_and_keeps_inline_text():
    out = HtmlExtractor().extract(PAGE)
    assert "Refunds take 5 business days." in out.text
    assert "Email the support team." in out.text


def test_html_table_cells_space_separated():
    out = HtmlExtractor().extract(PAGE)
    assert "Plan Gold" in out.text


def test_html_sections_follow_headings():
    out = HtmlExtractor().extract(PAGE)
    assert [s.meta.get("section") for s in out.spans] == ["Refunds", "Contact"]
    contact = out.spans[1]
    assert out.text[contact.start:contact.end].startswith("Contact")
    assert "Plan Gold" in out.text[contact.start:contact.end]


def test_html_without_headings_single_span():
    out = HtmlExtractor().extract(b"<div>Just <i>one</i> block</div>")
    assert out.text == "Just one block"
    assert out.spans[0].meta == {}


def test_html_empty_body_raises():
    with pytest.raises(EmptyContent):
        HtmlExtractor().extract(b"<html><head><title>x</title></head><body><script>1</script></body></html>")
