from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Protocol, Sequence

from common.errors import require_district
from common.logger import get_logger
from ingestion.document_models import EmbeddedChunk
from vectorstore.embedding_pipeline import cosine_similarity
from vectorstore.lexical import bm25_scores, highlights

log = get_logger(__name__)


@dataclass(frozen=True)
class IndexScope:
    """Tenant plus the set of sources a query may touch. Applied before scoring."""

    district_id: str
    source_ids: Optional[FrozenSet[str]] = None

    def allows(self, source_id: str) -> bool:
        return self.source_ids is None or source_id in self.source_ids


@dataclass
class IndexedChunk:
    chunk_id: str
    district_id: str
    source_id: str
    content: str
    chunk_index: int
    embedding: List[float]
    section_header: Optional[str] = None
    page_number: Optional[int] = None


@dataclass
class IndexHit:
    chunk_id: str
    source_id: str
    content: str
    chunk_index: int
    score: float
    section_header: Optional[str] = None
    page_number: Optional[int] = None
    highlights: List[str] = field(default_factory=list)


class ChunkIndex(Protocol):
    async def upsert(self, district_id: str, chunks: Sequence[EmbeddedChunk]) -> int: ...

    async def delete_by_source(self, district_id: str, source_id: str) -> int: ...

    async def vector_query(
        self, scope: IndexScope, vector: List[float], limit: int
    ) -> List[IndexHit]: ...

    async def keyword_query(
        self, scope: IndexScope, terms: List[str], limit: int
    ) -> List[IndexHit]: ...

    async def get_chunk(self, district_id: str, chunk_id: str) -> Optional[IndexedChunk]: ...


def _rank(hits: List[IndexHit], limit: int) -> List[IndexHit]:
    hits.sort(key=lambda h: (-h.score, h.chunk_index, h.chunk_id))
    return hits[:limit]


def to_hit(rec: IndexedChunk, score: float) -> IndexHit:
    return IndexHit(
        chunk_id=rec.chunk_id,
        source_id=rec.source_id,
        content=rec.content,
        chunk_index=rec.chunk_index,
        score=score,
        section_header=rec.section_header,
        page_number=rec.page_number,
    )


class InMemoryChunkIndex:
    """
    Tenant-partitioned chunk store. Each district has its own partition, so a
    query can only ever score chunks of its own district.
    """

    def __init__(self):
        self._partitions: Dict[str, Dict[str, IndexedChunk]] = {}

    def _partition(self, district_id: str) -> Dict[str, IndexedChunk]:
        return self._partitions.setdefault(require_district(district_id), {})

    async def upsert(self, district_id: str, chunks: Sequence[EmbeddedChunk]) -> int:
        part = self._partition(district_id)
        for ec in chunks:
            c = ec.chunk
            part[c.id] = IndexedChunk(
                chunk_id=c.id,
                district_id=district_id,
                source_id=c.source_id,
                content=c.content,
                chunk_index=c.chunk_index,
                embedding=list(ec.embedding),
                section_header=c.section_header,
                page_number=c.page_number,
            )
        log.debug("Upserted %d chunks for district %s", len(chunks), district_id)
        return len(chunks)

    async def delete_by_source(self, district_id: str, source_id: str) -> int:
        part = self._partition(district_id)
        doomed = [cid for cid, rec in part.items() if rec.source_id == source_id]
        for cid in doomed:
            del part[cid]
        return len(doomed)

    def _scoped(self, scope: IndexScope) -> List[IndexedChunk]:
        return [r for r in self._partition(scope.district_id).values() if scope.allows(r.source_id)]

    async def vector_query(
        self, scope: IndexScope, vector: List[float], limit: int
    ) -> List[IndexHit]:
        hits: List[IndexHit] = []
        for rec in self._scoped(scope):
            sim = cosine_similarity(vector, rec.embedding)
            if sim > 0:
                hits.append(to_hit(rec, sim))
        return _rank(hits, limit)

    async def keyword_query(
        self, scope: IndexScope, terms: List[str], limit: int
    ) -> List[IndexHit]:
        records = self._scoped(scope)
        scores = bm25_scores(terms, [r.content for r in records])
        hits: List[IndexHit] = []
        for rec, score in zip(records, scores):
            if score > 0:
                hit = to_hit(rec, score)
                hit.highlights = highlights(rec.content, terms)
                hits.append(hit)
        return _rank(hits, limit)

    async def get_chunk(self, district_id: str, chunk_id: str) -> Optional[IndexedChunk]:
        return self._partition(district_id).get(chunk_id)

    def count(self, district_id: str) -> int:
        return len(self._partition(district_id))
