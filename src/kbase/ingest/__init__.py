"""kbase ingest pipeline: extractors, chunker, embedder and orchestrator."""

from kbase.ingest.base import Extractor, ExtractedText, Span, TextBuilder
from kbase.ingest.chunker import Chunker, TextChunk
from kbase.ingest.embedder import Embedder
from kbase.ingest.html import HtmlExtractor
from kbase.ingest.markdown import MarkdownExtractor
from kbase.ingest.orchestrator import IngestOrchestrator, IngestResult, IngestTicket
from kbase.ingest.pdf import PdfExtractor
from kbase.ingest.plaintext import PlainTextExtractor
from kbase.ingest.registry import detect_type, extract

__all__ = [
    "Chunker",
    "Embedder",
    "ExtractedText",
    "Extractor",
    "HtmlExtractor",
    "IngestOrchestrator",
    "IngestResult",
    "IngestTicket",
    "MarkdownExtractor",
    "PdfExtractor",
    "PlainTextExtractor",
    "Span",
    "TextBuilder",
    "TextChunk",
    "detect_type",
    "extract",
]
