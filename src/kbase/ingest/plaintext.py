"""Plain text extractor: UTF-8 decode with invalid bytes replaced."""

from __future__ import annotations

from kbase.ingest.base import Extractor, ExtractedText, TextBuilder, decode


class PlainTextExtractor(Extractor):
    """Decode bytes as UTF-8 and normalize. NULs are dropped by normalization."""

    format = "text"

    def extract(self, data: bytes) -> ExtractedText:
        builder = TextBuilder()
        builder.add(decode(data))
        return builder.build(self.format)
