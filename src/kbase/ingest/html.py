"""HTML extractor: BeautifulSoup text extraction with heading sections."""

from __future__ import annotations

from bs4 import BeautifulSoup

from kbase.ingest.base import Extractor, ExtractedText, TextBuilder, decode, normalize_text

_DROP_TAGS = ["script", "style", "noscript", "template", "head"]
_HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]
_BLOCK_TAGS = [
    "address", "article", "aside", "blockquote", "br", "dd", "div", "dl", "dt",
    "figcaption", "figure", "footer", "form", "header", "hr", "li", "main", "nav",
    "ol", "p", "pre", "section", "table", "tr", "ul", *_HEADING_TAGS,
]
_CELL_TAGS = ["td", "th"]


class HtmlExtractor(Extractor):
    """Convert HTML to plain text.

    Strategy:
    - Drop non-content elements (script, style, noscript, template, head).
    - Block-level elements become line breaks; table cells become spaces.
    - Entities are decoded by the parser; whitespace is normalized.
    - Every heading opens a new section span (``meta["section"]``).
    """

    format = "html"

    def extract(self, data: bytes) -> ExtractedText:
        soup = BeautifulSoup(decode(data), "html.parser")
        for tag in soup.find_all(_DROP_TAGS):
            tag.decompose()

        headings = [normalize_text(h.get_text(" ")) for h in soup.find_all(_HEADING_TAGS)]
        headings = [h for h in headings if h and "\n" not in h]

        for tag in soup.find_all(_BLOCK_TAGS):
            tag.insert_before("\n")
            tag.insert_after("\n")
        for tag in soup.find_all(_CELL_TAGS):
            tag.insert_after(" ")

        text = normalize_text(soup.get_text())
        builder = TextBuilder()
        for title, body in _split_sections(text, headings):
            builder.add(body, {"section": title} if title else {}, sep="\n\n")
        return builder.build(self.format)


def _split_sections(text: str, headings: list[str]) -> list[tuple[str | None, str]]:
    """Split normalized *text* at heading lines, in document order."""
    sections: list[tuple[str | None, str]] = []
    title: str | None = None
    current: list[str] = []
    pending = list(headings)
    for line in text.split("\n"):
        if pending and line == pending[0]:
            pending.pop(0)
            if current:
                sections.append((title, "\n".join(current)))
            title, current = line, [line]
        else:
            current.append(line)
    if current:
        sections.append((title, "\n".join(current)))
    return sections
