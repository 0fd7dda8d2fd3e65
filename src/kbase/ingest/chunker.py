"""Deterministic fixed-window chunker with span metadata inheritance."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from kbase.ingest.base import Span


@dataclass
class TextChunk:
    chunk_idx: int
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class Chunker:
    """Split normalized text into overlapping fixed-size windows.

    Sizes are in token-equivalents (4 characters ≈ 1 token), so
    ``chunk_size=250`` gives 1000-character windows and ``overlap=0.12``
    re-reads the last 120 characters of the previous window.

    Each chunk inherits metadata from the spans it covers: ``pages``,
    ``page_start``/``page_end``, per-page ``regions`` (bbox union),
    ``section`` and detected ``fields``. Output is a pure function of the
    input text, spans and parameters.
    """

    ALGORITHM = "fixed-window/1"

    def __init__(self, chunk_size: int = 250, overlap: float = 0.12) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0.0 <= overlap < 1.0:
            raise ValueError("overlap must be in [0.0, 1.0)")
        self.chunk_size = chunk_size
        self.overlap = overlap

    @property
    def version(self) -> str:
        """Identifies algorithm + parameters; a change forces re-chunking."""
        return f"{self.ALGORITHM}:{self.chunk_size}:{self.overlap}"

    @staticmethod
    def count_tokens(text: str) -> int:
        """Approximate token count: 4 characters ≈ 1 token."""
        return max(1, len(text) // 4)

    def chunk(self, text: str, spans: list[Span] | None = None) -> list[TextChunk]:
        """Split *text* into chunks with contiguous ``chunk_idx`` from 0.

        Text shorter than one window yields exactly one chunk; blank text
        yields none.
        """
        spans = spans or []
        return [
            TextChunk(chunk_idx=i, content=text[start:end], metadata=_inherit(spans, start, end))
            for i, (start, end) in enumerate(self._split_fixed_window(text))
        ]

    def _split_fixed_window(self, text: str) -> list[tuple[int, int]]:
        """Return ``(start, end)`` offsets of stripped, non-empty windows.

        Window size = ``chunk_size * 4`` characters.
        Overlap     = ``overlap`` fraction of the window size.
        """
        if not text.strip():
            return []

        char_size = self.chunk_size * 4
        overlap_chars = int(char_size * self.overlap)
        step = max(1, char_size - overlap_chars)

        windows: list[tuple[int, int]] = []
        pos = 0
        length = len(text)
        while pos < length:
            end = min(pos + char_size, length)
            start, stop = _strip_bounds(text, pos, end)
            if start < stop:
                windows.append((start, stop))
            if end >= length:
                break
            pos += step
        return windows


def _strip_bounds(text: str, start: int, end: int) -> tuple[int, int]:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


def _inherit(spans: list[Span], start: int, end: int) -> dict[str, Any]:
    covered = [s for s in spans if s.start < end and s.end > start]
    meta: dict[str, Any] = {"char_start": start, "char_end": end}
    if not covered:
        return meta

    pages = sorted({s.meta["page"] for s in covered if "page" in s.meta})
    if pages:
        meta["pages"] = pages
        meta["page_start"] = pages[0]
        meta["page_end"] = pages[-1]
        regions: dict[int, list[float]] = {}
        for s in covered:
            if "page" in s.meta and "bbox" in s.meta:
                regions[s.meta["page"]] = _union(regions.get(s.meta["page"]), s.meta["bbox"])
        if regions:
            meta["regions"] = [{"page": p, "bbox": regions[p]} for p in sorted(regions)]

    sections = [s.meta["section"] for s in covered if s.meta.get("section")]
    if sections:
        meta["section"] = sections[0]

    fields: list[dict[str, str]] = []
    for s in covered:
        for f in s.meta.get("fields", []):
            if f not in fields:
                fields.append(f)
    if fields:
        meta["fields"] = fields
    return meta


def _union(a: list[float] | None, b: list[float]) -> list[float]:
    if a is None:
        return list(b)
    x0 = min(a[0], b[0])
    y0 = min(a[1], b[1])
    x1 = max(a[0] + a[2], b[0] + b[2])
    y1 = max(a[1] + a[3], b[1] + b[3])
    return [round(x0, 2), round(y0, 2), round(x1 - x0, 2), round(y1 - y0, 2)]
