"""Markdown extractor: syntax stripping with heading-aware sections."""

from __future__ import annotations

import re

from kbase.ingest.base import Extractor, ExtractedText, TextBuilder, decode

# ATX headings (# .. ######) at the start of a line.
_HEADING_RE = re.compile(r"^\s{0,3}(#{1,6})\s+(.*?)\s*#*\s*$")
_SETEXT_RE = re.compile(r"^\s{0,3}(=+|-+)\s*$")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_RULE_RE = re.compile(r"^\s{0,3}([-*_])(\s*\1){2,}\s*$")
_TABLE_SEP_RE = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)*\|?\s*$")
_QUOTE_RE = re.compile(r"^\s{0,3}(>\s?)+")
_LIST_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(?:\[[ xX]\]\s+)?")
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]*\)")
_REF_LINK_RE = re.compile(r"\[([^\]]+)\]\[[^\]]*\]")
_REF_DEF_RE = re.compile(r"^\s{0,3}\[[^\]]+\]:\s+\S+")
_AUTOLINK_RE = re.compile(r"<((?:https?|mailto):[^>]+)>")
_HTML_TAG_RE = re.compile(r"</?[A-Za-z][^>]*>")
_INLINE_CODE_RE = re.compile(r"`+([^`]*)`+")
_EMPHASIS_RE = re.compile(r"(\*\*|\*|~~)(?=\S)(.+?)(?<=\S)\1")
# Underscores inside a word are literal (snake_case identifiers).
_UNDERSCORE_EMPHASIS_RE = re.compile(r"(?<!\w)(__|_)(?=\S)(.+?)(?<=\S)\1(?!\w)")


class MarkdownExtractor(Extractor):
    """Strip Markdown syntax, keep prose, and open a section at each heading.

    Code blocks keep their content (fences dropped). Tables keep cell text
    separated by spaces. Raw HTML tags are removed.
    """

    format = "markdown"

    def extract(self, data: bytes) -> ExtractedText:
        builder = TextBuilder()
        for title, lines in _sections(decode(data)):
            builder.add("\n".join(lines), {"section": title} if title else {}, sep="\n\n")
        return builder.build(self.format)


def _sections(source: str) -> list[tuple[str | None, list[str]]]:
    sections: list[tuple[str | None, list[str]]] = []
    title: str | None = None
    current: list[str] = []
    in_fence = False

    def flush() -> None:
        if any(line.strip() for line in current):
            sections.append((title, list(current)))
        current.clear()

    raw_lines = source.replace("\r\n", "\n").split("\n")
    for i, raw in enumerate(raw_lines):
        if _FENCE_RE.match(raw):
            in_fence = not in_fence
            continue
        if in_fence:
            current.append(raw)
            continue

        heading = _HEADING_RE.match(raw)
        if heading:
            flush()
            title = strip_inline(heading.group(2))
            current.append(title)
            continue

        nxt = raw_lines[i + 1] if i + 1 < len(raw_lines) else ""
        if raw.strip() and _SETEXT_RE.match(nxt) and not _LIST_RE.match(raw):
            flush()
            title = strip_inline(raw)
            current.append(title)
            continue
        if _SETEXT_RE.match(raw) and current and current[-1] == title:
            continue

        if _RULE_RE.match(raw) or _TABLE_SEP_RE.match(raw) or _REF_DEF_RE.match(raw):
            current.append("")
            continue

        line = _QUOTE_RE.sub("", raw)
        line = _LIST_RE.sub("", line)
        if line.strip().startswith("|") or line.strip().endswith("|"):
            line = " ".join(cell.strip() for cell in line.strip().strip("|").split("|"))
        current.append(strip_inline(line))

    flush()
    return sections


def strip_inline(text: str) -> str:
    """Remove inline Markdown (images, links, code, emphasis, raw HTML)."""
    text = _IMAGE_RE.sub(r"\1", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _REF_LINK_RE.sub(r"\1", text)
    text = _AUTOLINK_RE.sub(r"\1", text)
    text = _INLINE_CODE_RE.sub(r"\1", text)
    text = _HTML_TAG_RE.sub("", text)
    prev = None
    while prev != text:
        prev = text
        text = _EMPHASIS_RE.sub(r"\2", text)
        text = _UNDERSCORE_EMPHASIS_RE.sub(r"\2", text)
    return text
