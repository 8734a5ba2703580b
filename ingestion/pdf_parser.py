from __future__ import annotations

import re
from io import BytesIO
from typing import List, Optional, Tuple

from pypdf import PdfReader

from common.config import yaml_config
from common.logger import get_logger
from ingestion.cleaners import word_count
from ingestion.document_models import (
    DocumentStructure,
    Header,
    PageContent,
    ParsedDocument,
    Section,
)

log = get_logger(__name__)

PAGE_SEPARATOR = "\n\n"

_NUMBERED = re.compile(r"^(\d+(?:\.\d+)*)\.?\s+[A-Z]")
_ROMAN = re.compile(r"^(?=[IVXLCDM]+\.)[IVXLCDM]+\.\s+\S")
_LETTERED = re.compile(r"^[A-Z]\.\s+\S")
_SPECIAL = re.compile(r"[^\w\s.,;:!?'\"()\-]")


def detect_header(line: str) -> Optional[Tuple[int, str]]:
    """Return (level, text) when a line of extracted PDF text looks like a heading."""
    line = line.strip()
    if not line or len(line) >= 100:
        return None

    m = _NUMBERED.match(line)
    if m:
        return m.group(1).count(".") + 1, line
    if _ROMAN.match(line):
        return 1, line
    if _LETTERED.match(line):
        return 2, line

    words = line.split()
    if (
        line == line.upper()
        and re.search(r"[A-Z]", line)
        and (len(words) >= 2 or len(line) > 10)
    ):
        if len(line) < 30:
            return 1, line
        if len(line) < 60:
            return 2, line
        return 3, line
    return None


def is_low_quality(content: str, page_count: int, min_chars_per_page: int = 100) -> bool:
    words = content.split()
    if not words:
        return True
    if len(content) < page_count * min_chars_per_page:
        return True
    if sum(len(w) for w in words) / len(words) > 15:
        return True
    special = len(_SPECIAL.findall(content))
    return special / max(len(content), 1) > 0.15


class PdfParser:
    def __init__(self, max_pages: Optional[int] = None, min_chars_per_page: Optional[int] = None):
        self.max_pages = max_pages or yaml_config.parsing.max_pdf_pages
        self.min_chars_per_page = (
            min_chars_per_page or yaml_config.parsing.min_chars_per_page
        )

    def supported_mime_types(self) -> List[str]:
        return ["application/pdf"]

    def _page_texts(self, data: bytes) -> List[str]:
        reader = PdfReader(BytesIO(data))
        pages = reader.pages
        limit = self.max_pages or len(pages)
        return [(p.extract_text() or "").strip() for p in pages[:limit]]

    def parse(self, data: bytes, mime_type: str = "application/pdf") -> ParsedDocument:
        texts = self._page_texts(data)

        pages: List[PageContent] = []
        offset = 0
        for n, text in enumerate(texts, start=1):
            pages.append(PageContent(page_number=n, content=text, offset=offset))
            offset += len(text) + len(PAGE_SEPARATOR)
        content = PAGE_SEPARATOR.join(texts)

        headers: List[Header] = []
        sections: List[Section] = []
        for i, line in enumerate(content.split("\n")):
            found = detect_header(line)
            if found:
                level, text = found
                headers.append(Header(level=level, text=text, line=i))
                sections.append(Section(title=text, level=level, start_line=i))

        title = headers[0].text if headers else "Untitled"
        metadata = {
            "title": title,
            "word_count": word_count(content),
            "char_count": len(content),
            "page_count": len(pages),
            "mime_type": "application/pdf",
        }
        if is_low_quality(content, len(pages), self.min_chars_per_page):
            log.warning(
                "Low-quality PDF extraction (%d chars over %d pages); the file may be scanned",
                len(content),
                len(pages),
            )
            metadata["low_quality"] = True

        return ParsedDocument(
            content=content,
            metadata=metadata,
            pages=pages,
            structure=DocumentStructure(sections=sections, headers=headers),
        )
