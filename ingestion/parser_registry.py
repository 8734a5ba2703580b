from __future__ import annotations

from typing import Dict, List, Optional, Protocol

from common.errors import DocumentParsingError, UnsupportedFormatError
from common.logger import get_logger
from ingestion.document_models import ParsedDocument
from ingestion.format_detection import detect_format, normalize_mime_type
from ingestion.pdf_parser import PdfParser
from ingestion.web_parser import WebContentParser

log = get_logger(__name__)


class DocumentParser(Protocol):
    def supported_mime_types(self) -> List[str]: ...

    def parse(self, data: bytes, mime_type: str) -> ParsedDocument: ...


class ParserRegistry:
    """
    Maps a normalized MIME type to the parser that handles it. The registry
    holds no format-specific logic of its own.
    """

    def __init__(self, parsers: Optional[List[DocumentParser]] = None):
        self._parsers: Dict[str, DocumentParser] = {}
        for p in parsers or []:
            self.register(p)

    def register(self, parser: DocumentParser) -> None:
        for mime in parser.supported_mime_types():
            self._parsers[normalize_mime_type(mime)] = parser

    def get_parser(self, mime_type: str) -> DocumentParser:
        parser = self._parsers.get(normalize_mime_type(mime_type))
        if parser is None:
            raise UnsupportedFormatError(mime_type)
        return parser

    def get_supported_mime_types(self) -> List[str]:
        return sorted(self._parsers)

    def is_supported(self, mime_type: Optional[str]) -> bool:
        return normalize_mime_type(mime_type) in self._parsers

    def resolve_mime_type(self, data: bytes, declared: Optional[str]) -> str:
        """Use the declared type unless it is missing or generic, then sniff."""
        mime = normalize_mime_type(declared)
        if mime and mime != "application/octet-stream":
            return mime
        detected = detect_format(data)
        if detected is None:
            raise UnsupportedFormatError(declared or "unknown")
        return detected

    def parse(self, data: bytes, mime_type: str) -> ParsedDocument:
        mime = normalize_mime_type(mime_type)
        parser = self.get_parser(mime)
        try:
            doc = parser.parse(data, mime)
        except DocumentParsingError:
            raise
        except Exception as e:
            log.error("Parser for %s failed: %s", mime, e)
            raise DocumentParsingError(mime, e) from e

        if data.strip() and not doc.content.strip():
            log.warning(
                "Parsing %s produced no text from %d input bytes", mime, len(data)
            )
            doc.metadata["degraded"] = True
        return doc


def default_registry() -> ParserRegistry:
    return ParserRegistry([WebContentParser(), PdfParser()])
