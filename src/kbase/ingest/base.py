"""Base extractor interface and shared text normalization for all formats.

Every extractor produces an ``ExtractedText``: normalized, redacted text plus
``Span`` offsets that carry per-piece metadata (page, bbox, section, fields)
for the chunker to inherit.
"""

from __future__ import annotations

import hashlib
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from kbase.errors import EmptyContent

# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

REDACTED = "[REDACTED]"

# The label may carry an identifier prefix (DB_PASSWORD, aws_secret_access_key).
_CREDENTIAL_RE = re.compile(
    r"(?<![A-Za-z0-9_-])((?:[A-Za-z0-9]+[_-])*"
    r"(?:api[_-]?key|access[_-]?key|secret[_-]?key|access[_-]?token|client[_-]?secret"
    r"|key|token|secret|password))(?![A-Za-z0-9])\s*[:=]\s*\S+",
    re.IGNORECASE,
)
_LONG_RUN_RE = re.compile(r"[A-Za-z0-9]{24,}")


def redact(text: str) -> str:
    """Replace credential-looking substrings with ``[REDACTED]``.

    ``label: value`` / ``label=value`` pairs keep their label; any contiguous
    alphanumeric run of 24+ characters is replaced whole.
    """
    text = _CREDENTIAL_RE.sub(lambda m: f"{m.group(1)}: {REDACTED}", text)
    return _LONG_RUN_RE.sub(REDACTED, text)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

_INLINE_WS_RE = re.compile(r"[^\S\n]+")


def normalize_text(text: str) -> str:
    """Canonical form shared by every extractor.

    ``\\r\\n`` and ``\\r`` become ``\\n``, NULs are dropped, whitespace runs
    inside a line collapse to one space, lines are stripped and at most one
    blank line survives in a row. Leading/trailing blank lines are removed.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
    out: list[str] = []
    blank = False
    for raw in text.split("\n"):
        line = _INLINE_WS_RE.sub(" ", raw).strip()
        if not line:
            if out and not blank:
                out.append("")
            blank = True
            continue
        blank = False
        out.append(line)
    while out and not out[-1]:
        out.pop()
    return "\n".join(out)


def content_hash(text: str) -> str:
    """SHA-256 hex digest of *text* (UTF-8)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def decode(data: bytes) -> str:
    """Decode bytes as UTF-8, replacing invalid sequences; strip a BOM."""
    text = data.decode("utf-8", errors="replace")
    return text[1:] if text.startswith("\ufeff") else text


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class Span:
    """A half-open ``[start, end)`` range of the final text with its metadata."""

    start: int
    end: int
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractedText:
    text: str
    content_hash: str
    spans: list[Span] = field(default_factory=list)
    format: str = "text"


class TextBuilder:
    """Assemble normalized, redacted pieces into one text with span offsets.

    Each piece is redacted and normalized on its own before its offsets are
    recorded, so spans always index into the final text. The assembled text
    is itself in normal form.
    """

    def __init__(self) -> None:
        self._parts: list[str] = []
        self._spans: list[Span] = []
        self._length = 0

    def add(self, piece: str, meta: dict[str, Any] | None = None, sep: str = "\n") -> Span | None:
        """Append *piece* after *sep* (``\\n`` or ``\\n\\n``). Blank pieces are skipped."""
        clean = normalize_text(redact(piece))
        if not clean:
            return None
        if self._parts:
            self._parts.append(sep)
            self._length += len(sep)
        start = self._length
        self._parts.append(clean)
        self._length += len(clean)
        span = Span(start=start, end=self._length, meta=dict(meta or {}))
        self._spans.append(span)
        return span

    @property
    def empty(self) -> bool:
        return not self._parts

    def build(self, fmt: str) -> ExtractedText:
        """Return the final ``ExtractedText``.

        Raises:
            EmptyContent: nothing but whitespace was added.
        """
        text = "".join(self._parts)
        if not text.strip():
            raise EmptyContent()
        return ExtractedText(
            text=text,
            content_hash=content_hash(text),
            spans=list(self._spans),
            format=fmt,
        )


# ---------------------------------------------------------------------------
# Extractor interface
# ---------------------------------------------------------------------------


class Extractor(ABC):
    """Abstract base for all format extractors.

    Subclasses set ``format`` and implement ``extract()``. Implementations
    must raise ``ExtractionFailed`` for corrupt input and ``EmptyContent``
    when nothing readable remains after normalization.
    """

    format: str = ""

    @abstractmethod
    def extract(self, data: bytes) -> ExtractedText:
        """Convert raw upload bytes into normalized, redacted text."""
