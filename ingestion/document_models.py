from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def estimate_tokens(text: str) -> int:
    """Rough token estimate (about 4 characters per token)."""
    return math.ceil(len(text) / 4)


@dataclass(frozen=True)
class PageContent:
    page_number: int  # 1-based
    content: str
    offset: int = 0  # character offset of this page inside ParsedDocument.content


@dataclass(frozen=True)
class Header:
    level: int  # 1..6
    text: str
    line: int  # position key, monotonically increasing per document


@dataclass(frozen=True)
class Section:
    title: str
    level: int
    start_line: int


@dataclass(frozen=True)
class ListBlock:
    ordered: bool
    items: List[str]
    line: int


@dataclass(frozen=True)
class TableBlock:
    rows: List[List[str]]
    line: int


@dataclass(frozen=True)
class DocumentStructure:
    sections: List[Section] = field(default_factory=list)
    headers: List[Header] = field(default_factory=list)
    lists: List[ListBlock] = field(default_factory=list)
    tables: List[TableBlock] = field(default_factory=list)


@dataclass(frozen=True)
class ParsedDocument:
    content: str
    metadata: Dict[str, Any]  # { "title", "word_count", "mime_type", "page_count", ... }
    pages: List[PageContent]
    structure: DocumentStructure = field(default_factory=DocumentStructure)

    @property
    def title(self) -> str:
        return self.metadata.get("title", "Untitled")


@dataclass
class DocumentChunk:
    source_id: str
    content: str
    chunk_index: int
    start_offset: int = 0
    end_offset: int = 0
    section_header: Optional[str] = None
    page_number: Optional[int] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def token_count(self) -> int:
        return estimate_tokens(self.content)


@dataclass
class EmbeddedChunk:
    chunk: DocumentChunk
    embedding: List[float]
    model: str

    @property
    def id(self) -> str:
        return self.chunk.id


@dataclass(frozen=True)
class ChunkingOptions:
    min_chunk_size: int = 200
    max_chunk_size: int = 1000
    overlap_size: int = 100


@dataclass(frozen=True)
class ChunkingStatistics:
    total_chunks: int
    total_tokens: int
    average_chunk_size: float
    min_chunk_size: int
    max_chunk_size: int
    chunks_with_headers: int
