from __future__ import annotations

import bisect
import re
from typing import List, Optional, Sequence, Tuple

from nltk.tokenize.punkt import PunktParameters, PunktSentenceTokenizer

from common.config import yaml_config
from common.errors import ChunkingConfigError
from common.logger import get_logger
from ingestion.document_models import (
    ChunkingOptions,
    ChunkingStatistics,
    DocumentChunk,
    ParsedDocument,
)

log = get_logger(__name__)

ABBREVIATIONS = {
    "mr", "mrs", "ms", "dr", "prof", "jr", "sr", "inc", "ltd", "corp", "vs", "etc", "e.g", "i.e",
}


def _sentence_tokenizer() -> PunktSentenceTokenizer:
    params = PunktParameters()
    params.abbrev_types = set(ABBREVIATIONS)
    return PunktSentenceTokenizer(params)


def default_options() -> ChunkingOptions:
    cfg = yaml_config.chunking
    return ChunkingOptions(
        min_chunk_size=cfg.min_chunk_size,
        max_chunk_size=cfg.max_chunk_size,
        overlap_size=cfg.overlap_size,
    )


def validate_options(options: ChunkingOptions) -> None:
    if options.max_chunk_size <= 0:
        raise ChunkingConfigError("max_chunk_size must be positive")
    if not 0 < options.min_chunk_size <= options.max_chunk_size:
        raise ChunkingConfigError(
            "min_chunk_size must be in (0, max_chunk_size]",
            {"min": options.min_chunk_size, "max": options.max_chunk_size},
        )
    if not 0 <= options.overlap_size < options.min_chunk_size:
        raise ChunkingConfigError(
            "overlap_size must be in [0, min_chunk_size)",
            {"overlap": options.overlap_size, "min": options.min_chunk_size},
        )


class SemanticChunker:
    """
    Character-bounded chunker with a fixed overlap.

    Each chunk is a contiguous slice of the parsed content. Consecutive chunks
    share exactly `overlap_size` characters, so dropping the first
    `overlap_size` characters of every chunk after the first and concatenating
    reproduces the content.

    Break points are tried in order of preference inside the window
    [start + floor, start + max_chunk_size]:
      1) paragraph break
      2) sentence boundary
      3) line break
      4) whitespace
    and a hard cut at max_chunk_size when none is found.
    """

    def __init__(self, options: Optional[ChunkingOptions] = None):
        self.options = options or default_options()
        validate_options(self.options)
        self._sentences = _sentence_tokenizer()

    def _break_candidates(self, content: str) -> List[List[int]]:
        paragraphs = [m.end() for m in re.finditer(r"\n[ \t]*\n\s*", content)]
        sentences = [s for s, _ in self._sentences.span_tokenize(content)][1:]
        lines = [m.end() for m in re.finditer(r"\n", content)]
        spaces = [m.end() for m in re.finditer(r"[ \t]+", content)]
        return [paragraphs, sentences, lines, spaces]

    @staticmethod
    def _last_in_range(points: Sequence[int], lo: int, hi: int) -> Optional[int]:
        i = bisect.bisect_right(points, hi)
        if i and points[i - 1] >= lo:
            return points[i - 1]
        return None

    def _find_end(self, start: int, n: int, candidates: List[List[int]]) -> int:
        opts = self.options
        hard_end = start + opts.max_chunk_size
        if hard_end >= n:
            return n
        # structural breaks must land in the back half of the window
        structural_floor = start + max(opts.min_chunk_size, opts.max_chunk_size // 2)
        floors = [structural_floor, structural_floor, structural_floor, start + opts.min_chunk_size]
        for points, floor in zip(candidates, floors):
            end = self._last_in_range(points, floor, hard_end)
            if end is not None:
                return end
        return hard_end

    def split(self, content: str) -> List[Tuple[int, int]]:
        """Return (start, end) offsets for each chunk of `content`."""
        if not content.strip():
            return []
        n = len(content)
        candidates = self._break_candidates(content)
        spans: List[Tuple[int, int]] = []
        start = 0
        while True:
            end = self._find_end(start, n, candidates)
            spans.append((start, end))
            if end >= n:
                break
            start = end - self.options.overlap_size
        return spans

    def chunk(self, document: ParsedDocument, source_id: str) -> List[DocumentChunk]:
        content = document.content
        header_offsets = _header_offsets(document)
        page_offsets = [(p.offset, p.page_number) for p in document.pages]

        chunks: List[DocumentChunk] = []
        for index, (start, end) in enumerate(self.split(content)):
            chunks.append(
                DocumentChunk(
                    source_id=source_id,
                    content=content[start:end],
                    chunk_index=index,
                    start_offset=start,
                    end_offset=end,
                    section_header=_section_for(header_offsets, start, end),
                    page_number=_page_for(page_offsets, start),
                )
            )
        log.info(
            "Chunked source %s into %d chunks (%d chars)", source_id, len(chunks), len(content)
        )
        return chunks


def _header_offsets(document: ParsedDocument) -> List[Tuple[int, str]]:
    offsets: List[Tuple[int, str]] = []
    cursor = 0
    for h in document.structure.headers:
        pos = document.content.find(h.text, cursor)
        if pos < 0:
            continue
        offsets.append((pos, h.text))
        cursor = pos + len(h.text)
    return offsets


def _section_for(headers: List[Tuple[int, str]], start: int, end: int) -> Optional[str]:
    current = None
    for pos, text in headers:
        if pos <= start:
            current = text
        elif current is None and pos < end:
            return text
        else:
            break
    return current


def _page_for(pages: List[Tuple[int, int]], start: int) -> Optional[int]:
    if not pages:
        return None
    page = pages[0][1]
    for offset, number in pages:
        if offset <= start:
            page = number
        else:
            break
    return page


def chunk_document(
    document: ParsedDocument,
    source_id: str,
    options: Optional[ChunkingOptions] = None,
) -> List[DocumentChunk]:
    return SemanticChunker(options).chunk(document, source_id)


def compute_statistics(chunks: Sequence[DocumentChunk]) -> ChunkingStatistics:
    if not chunks:
        return ChunkingStatistics(0, 0, 0.0, 0, 0, 0)
    sizes = [len(c.content) for c in chunks]
    return ChunkingStatistics(
        total_chunks=len(chunks),
        total_tokens=sum(c.token_count for c in chunks),
        average_chunk_size=sum(sizes) / len(sizes),
        min_chunk_size=min(sizes),
        max_chunk_size=max(sizes),
        chunks_with_headers=sum(1 for c in chunks if c.section_header),
    )
