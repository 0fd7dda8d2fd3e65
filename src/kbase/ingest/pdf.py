"""PDF extractor: layout-aware text reconstruction via pypdf.

Strategy:
- Collect positioned text tokens page-by-page with pypdf's ``visitor_text``
  hook (x/y from the text and transformation matrices, font size scaled).
- Cluster tokens into lines by y-band, order each line by x and re-insert
  spacing from the x-gaps.
- Split a line where a new label starts after a large horizontal gap
  (two label/value pairs printed side by side).
- Order lines column by column, top to bottom inside a column.
- Detect generic key-value pairs (``Label:`` / ``No.`` / ``ID`` / ``Ref``
  followed by a value-looking token).

Each output line becomes a span carrying ``page`` and ``bbox``; pages are
separated by a blank line.
"""

from __future__ import annotations

import io
import re
from dataclasses import dataclass, field

import pypdf
from pypdf.errors import PyPdfError

from kbase.errors import EmptyContent, ExtractionFailed
from kbase.ingest.base import REDACTED, Extractor, ExtractedText, TextBuilder, redact

_MAX_FIELDS = 1000

_LABEL_END_RE = re.compile(r"[:#]$")
_LABEL_WORD_RE = re.compile(r"^(?:No\.?|ID|Ref)\.?$")
_VALUE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 \-/.]*$")
_INLINE_PAIR_RE = re.compile(r"^(.+?[:#])\s+(\S.*)$")


@dataclass
class PdfToken:
    text: str
    page: int
    x: float
    y: float  # top edge, measured downwards from the top of the page
    w: float
    h: float
    size: float


@dataclass
class PdfLine:
    text: str
    page: int
    bbox: tuple[float, float, float, float]
    tokens: list[PdfToken] = field(default_factory=list)


class PdfExtractor(Extractor):
    """Extract layout-ordered text from a PDF using pypdf."""

    format = "pdf"

    def extract(self, data: bytes) -> ExtractedText:
        try:
            reader = pypdf.PdfReader(io.BytesIO(data))
            if reader.is_encrypted and not reader.decrypt(""):
                raise ExtractionFailed("PDF is encrypted")
            tokens: list[PdfToken] = []
            for page_no, page in enumerate(reader.pages, start=1):
                tokens.extend(_page_tokens(page, page_no))
        except ExtractionFailed:
            raise
        except (PyPdfError, ValueError, KeyError, TypeError, OSError) as exc:
            raise ExtractionFailed(f"Could not parse PDF: {type(exc).__name__}") from exc

        lines = group_lines(tokens)
        fields_by_line = detect_fields(lines)

        builder = TextBuilder()
        current_page: int | None = None
        for idx, line in enumerate(lines):
            meta: dict = {"page": line.page, "bbox": [round(v, 2) for v in line.bbox]}
            if idx in fields_by_line:
                meta["fields"] = fields_by_line[idx]
            sep = "\n" if current_page in (None, line.page) else "\n\n"
            if builder.add(line.text, meta, sep=sep) is not None:
                current_page = line.page

        if builder.empty:
            raise EmptyContent("No extractable text in PDF (scanned or image-only?)")
        return builder.build(self.format)


# ---------------------------------------------------------------------------
# Token collection
# ---------------------------------------------------------------------------


def _page_tokens(page, page_no: int) -> list[PdfToken]:
    """Collect positioned tokens for one page via ``extract_text(visitor_text=...)``."""
    height = float(page.mediabox.height)
    tokens: list[PdfToken] = []

    def visitor(text, cm, tm, font_dict, font_size):
        text = (text or "").replace("\x00", "")
        if not text.strip():
            return
        x = tm[4] * cm[0] + tm[5] * cm[2] + cm[4]
        y = tm[4] * cm[1] + tm[5] * cm[3] + cm[5]
        scale = abs(tm[3] * cm[3]) or 1.0
        size = max(1.0, abs((font_size or 1.0) * scale))
        for piece_text, offset in _split_inline_pair(text.strip()):
            tokens.append(
                PdfToken(
                    text=piece_text,
                    page=page_no,
                    x=x + offset * size * 0.5,
                    y=height - y - size,
                    w=len(piece_text) * size * 0.5,
                    h=size,
                    size=size,
                )
            )

    page.extract_text(visitor_text=visitor)
    return tokens


def _split_inline_pair(text: str) -> list[tuple[str, int]]:
    """Split ``"Label: value"`` fragments into a label and a value token.

    Returns (text, char_offset) pairs; other fragments come back whole.
    """
    m = _INLINE_PAIR_RE.match(text)
    if m and _is_likely_value(m.group(2)):
        return [(m.group(1), 0), (m.group(2), m.start(2))]
    return [(text, 0)]


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------


def _looks_label(text: str) -> bool:
    s = text.strip()
    return bool(_LABEL_END_RE.search(s) or _LABEL_WORD_RE.match(s))


def _is_likely_value(text: str) -> bool:
    s = text.strip()
    if not s or not _VALUE_RE.match(s):
        return False
    return any(c.isdigit() for c in s) or any(c.isupper() for c in s)


def _gap(prev: PdfToken, cur: PdfToken) -> float:
    return cur.x - (prev.x + prev.w)


def _avg_size(tokens: list[PdfToken]) -> float:
    return sum(t.size for t in tokens) / max(1, len(tokens))


def _bbox(tokens: list[PdfToken]) -> tuple[float, float, float, float]:
    x0 = min(t.x for t in tokens)
    y0 = min(t.y for t in tokens)
    x1 = max(t.x + t.w for t in tokens)
    y1 = max(t.y + t.h for t in tokens)
    return (x0, y0, x1 - x0, y1 - y0)


def _join_tokens(tokens: list[PdfToken]) -> str:
    """Rebuild line text, inserting spaces where the x-gap is wide enough."""
    small_gap = max(2.0, _avg_size(tokens) * 0.25)
    pieces: list[str] = []
    for i, tok in enumerate(tokens):
        if i:
            prev = tokens[i - 1]
            if _gap(prev, tok) > small_gap or _LABEL_END_RE.search(prev.text):
                bare_label = _LABEL_WORD_RE.match(prev.text.strip())
                pieces.append(": " if bare_label and _is_likely_value(tok.text) else " ")
        pieces.append(tok.text)
    return " ".join("".join(pieces).split())


def _split_by_label_starts(tokens: list[PdfToken]) -> list[list[PdfToken]]:
    big_gap = max(20.0, _avg_size(tokens) * 3)
    groups: list[list[PdfToken]] = []
    current: list[PdfToken] = []
    for i, tok in enumerate(tokens):
        if current and i and _gap(tokens[i - 1], tok) > big_gap and _looks_label(tok.text):
            groups.append(current)
            current = []
        current.append(tok)
    if current:
        groups.append(current)
    return groups


def group_lines(tokens: list[PdfToken]) -> list[PdfLine]:
    """Cluster tokens into ordered lines (page, then column, then top-down)."""
    pages: dict[int, list[PdfToken]] = {}
    for tok in tokens:
        pages.setdefault(tok.page, []).append(tok)

    ordered: list[PdfLine] = []
    for page_no in sorted(pages):
        page_tokens = sorted(pages[page_no], key=lambda t: (t.y, t.x))
        band = max(2.0, _avg_size(page_tokens) * 0.6)

        rows: list[list[PdfToken]] = []
        for tok in page_tokens:
            if rows and abs(tok.y - rows[-1][0].y) <= band:
                rows[-1].append(tok)
            else:
                rows.append([tok])

        lines: list[PdfLine] = []
        for row in rows:
            row.sort(key=lambda t: t.x)
            for group in _split_by_label_starts(row):
                text = _join_tokens(group)
                if text:
                    lines.append(PdfLine(text=text, page=page_no, bbox=_bbox(group), tokens=group))

        ordered.extend(_order_columns(lines))
    return ordered


def _order_columns(lines: list[PdfLine]) -> list[PdfLine]:
    if not lines:
        return []
    by_x = sorted(lines, key=lambda ln: (ln.bbox[0], ln.bbox[1]))
    avg_width = sum(ln.bbox[2] for ln in by_x) / len(by_x)
    x_gap = max(10.0, avg_width * 0.5)
    columns: list[list[PdfLine]] = []
    for ln in by_x:
        for col in columns:
            if abs(col[0].bbox[0] - ln.bbox[0]) <= x_gap:
                col.append(ln)
                break
        else:
            columns.append([ln])
    result: list[PdfLine] = []
    for col in sorted(columns, key=lambda c: c[0].bbox[0]):
        result.extend(sorted(col, key=lambda ln: (ln.bbox[1], ln.bbox[0])))
    return result


def detect_fields(lines: list[PdfLine]) -> dict[int, list[dict[str, str]]]:
    """Find key-value pairs per line. Returns {line index: [{label, value}]}."""
    found: dict[int, list[dict[str, str]]] = {}
    total = 0
    for idx, line in enumerate(lines):
        toks = line.tokens
        for i in range(len(toks) - 1):
            label_tok, value_tok = toks[i], toks[i + 1]
            if not _looks_label(label_tok.text):
                continue
            if _gap(label_tok, value_tok) >= label_tok.size * 5 or not _is_likely_value(value_tok.text):
                continue
            values = [value_tok]
            for nxt in toks[i + 2 :]:
                if _gap(values[-1], nxt) <= values[-1].size * 0.8 and _is_likely_value(nxt.text):
                    values.append(nxt)
                else:
                    break
            label = _LABEL_END_RE.sub("", label_tok.text.strip()).strip()
            value = " ".join(" ".join(v.text for v in values).split())
            if redact(f"{label}: {value}") != f"{label}: {value}":
                value = REDACTED
            found.setdefault(idx, []).append({"label": redact(label), "value": value})
            total += 1
            if total >= _MAX_FIELDS:
                return found
    return found
