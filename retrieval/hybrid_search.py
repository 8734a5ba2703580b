from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from common.config import SearchConfig, yaml_config
from common.errors import (
    SearchError,
    SearchTimeoutError,
    ValidationError,
    require_district,
)
from common.logger import get_logger
from lifecycle.source_models import KnowledgeSource, SourceType, utcnow
from lifecycle.source_repository import SourceRepository
from retrieval.filters import SearchFilters, build_source_query
from retrieval.fusion import FusedCandidate, fuse, sort_key
from retrieval.reranker import Reranker
from vectorstore.chunk_index import ChunkIndex, IndexHit, IndexScope
from vectorstore.embedding_pipeline import EmbeddingPipeline
from vectorstore.lexical import query_terms

log = get_logger(__name__)


@dataclass(frozen=True)
class HybridSearchOptions:
    query: str
    district_id: str
    filters: SearchFilters = field(default_factory=SearchFilters)
    limit: Optional[int] = None
    offset: int = 0
    vector_weight: Optional[float] = None  # 0 = keyword only, 1 = vector only
    min_score: Optional[float] = None
    use_reranking: bool = False


@dataclass(frozen=True)
class ResultMetadata:
    source_title: str
    source_type: SourceType
    chunk_index: int
    section_header: Optional[str] = None
    page_number: Optional[int] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class SearchResult:
    chunk_id: str
    source_id: str
    content: str
    fused_score: float
    metadata: ResultMetadata
    vector_score: Optional[float] = None
    keyword_score: Optional[float] = None
    rerank_score: Optional[float] = None
    highlights: List[str] = field(default_factory=list)


@dataclass
class SearchTiming:
    vector_search_ms: float = 0.0
    keyword_search_ms: float = 0.0
    reranking_ms: float = 0.0
    total_ms: float = 0.0
    degraded: bool = False
    failed_paths: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SearchResponse:
    results: List[SearchResult]
    total: int
    query: str
    timing: SearchTiming


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def _whole_number(name: str, value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise ValidationError(f"{name} must be a whole number", {name: repr(value)}) from e


class HybridSearchEngine:
    """
    Hybrid retrieval over the chunk index:
      1) resolve the query scope (district + published, unexpired sources matching filters)
      2) run the vector and keyword paths concurrently inside that scope
      3) normalize each path, fuse with the vector weight, drop anything under min_score
      4) optionally rerank the head of the list, then apply offset/limit
    A failing path degrades the response to the other path; both failing is an error.
    """

    def __init__(
        self,
        repository: SourceRepository,
        index: ChunkIndex,
        embeddings: EmbeddingPipeline,
        *,
        reranker: Optional[Reranker] = None,
        config: Optional[SearchConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.index = index
        self.embeddings = embeddings
        self.reranker = reranker
        self.config = config or yaml_config.search
        self.clock = clock

    def validate(self, options: HybridSearchOptions) -> HybridSearchOptions:
        """Clamp untrusted numeric inputs and fill defaults."""
        require_district(options.district_id)
        query = (options.query or "").strip()
        if not query:
            raise ValidationError("Search query must not be empty")

        cfg = self.config
        limit = cfg.limit if options.limit is None else options.limit
        weight = cfg.vector_weight if options.vector_weight is None else options.vector_weight
        min_score = cfg.min_score if options.min_score is None else options.min_score
        if any(isinstance(x, float) and math.isnan(x) for x in (weight, min_score)):
            raise ValidationError("Numeric search options must not be NaN")

        return replace(
            options,
            query=query,
            limit=max(1, min(_whole_number("limit", limit), cfg.max_limit)),
            offset=max(0, _whole_number("offset", options.offset)),
            vector_weight=min(1.0, max(0.0, float(weight))),
            min_score=min(1.0, max(0.0, float(min_score))),
        )

    async def search(
        self, options: HybridSearchOptions, timeout: Optional[float] = None
    ) -> SearchResponse:
        if timeout is None:
            return await self._search(options)
        try:
            return await asyncio.wait_for(self._search(options), timeout)
        except asyncio.TimeoutError as e:
            log.error("Search timed out after %.2fs for district %s", timeout, options.district_id)
            raise SearchTimeoutError(
                f"Search timed out after {timeout}s", {"district_id": options.district_id}
            ) from e

    async def _scope(
        self, district_id: str, filters: SearchFilters
    ) -> Tuple[IndexScope, Dict[str, KnowledgeSource]]:
        sources = await self.repository.find(
            district_id, build_source_query(filters, self.clock())
        )
        by_id = {s.id: s for s in sources}
        return IndexScope(district_id, frozenset(by_id)), by_id

    async def _vector_path(self, opts: HybridSearchOptions, scope: IndexScope, n: int) -> List[IndexHit]:
        vector = await self.embeddings.generate_query_embedding(opts.query)
        return await self.index.vector_query(scope, vector, n)

    async def _keyword_path(self, opts: HybridSearchOptions, scope: IndexScope, n: int) -> List[IndexHit]:
        terms = query_terms(opts.query)
        if not terms:
            return []
        return await self.index.keyword_query(scope, terms, n)

    async def _timed(self, coro: Awaitable[List[IndexHit]]) -> Tuple[List[IndexHit], float]:
        started = time.perf_counter()
        hits = await coro
        return hits, _elapsed_ms(started)

    async def _search(self, options: HybridSearchOptions) -> SearchResponse:
        started = time.perf_counter()
        opts = self.validate(options)
        timing = SearchTiming()

        scope, sources = await self._scope(opts.district_id, opts.filters)
        if not sources:
            timing.total_ms = _elapsed_ms(started)
            return SearchResponse(results=[], total=0, query=opts.query, timing=timing)

        window = opts.offset + opts.limit
        fetch_n = window * self.config.candidate_multiplier
        if opts.use_reranking:
            fetch_n = max(fetch_n, window * self.config.rerank_factor)

        paths: Dict[str, Awaitable] = {}
        if opts.vector_weight > 0:
            paths["vector"] = self._timed(self._vector_path(opts, scope, fetch_n))
        if opts.vector_weight < 1:
            paths["keyword"] = self._timed(self._keyword_path(opts, scope, fetch_n))

        outcomes = await asyncio.gather(*paths.values(), return_exceptions=True)
        hits: Dict[str, List[IndexHit]] = {"vector": [], "keyword": []}
        for name, outcome in zip(paths, outcomes):
            if isinstance(outcome, BaseException):
                log.warning("Search %s path failed, degrading: %s", name, outcome)
                timing.failed_paths.append(name)
                continue
            hits[name], elapsed = outcome
            setattr(timing, f"{name}_search_ms", elapsed)

        if timing.failed_paths and len(timing.failed_paths) == len(paths):
            raise SearchError(
                "All retrieval paths failed",
                {"district_id": opts.district_id, "failed_paths": timing.failed_paths},
            )
        timing.degraded = bool(timing.failed_paths)

        fused = fuse(hits["vector"], hits["keyword"], opts.vector_weight)
        eligible = [c for c in fused if c.fused_score >= opts.min_score]

        if opts.use_reranking and self.reranker is not None and eligible:
            rerank_started = time.perf_counter()
            head_size = window * self.config.rerank_factor
            head = await self._rerank(opts.query, eligible[:head_size])
            eligible = head + eligible[head_size:]
            timing.reranking_ms = _elapsed_ms(rerank_started)
            # the blend can drop a candidate under the threshold
            eligible = [c for c in eligible if c.fused_score >= opts.min_score]

        page = eligible[opts.offset : opts.offset + opts.limit]
        results = [self._to_result(c, sources[c.hit.source_id]) for c in page]
        timing.total_ms = _elapsed_ms(started)
        log.info(
            "Search district=%s query=%r returned %d/%d results in %.0f ms%s",
            opts.district_id,
            opts.query,
            len(results),
            len(eligible),
            timing.total_ms,
            " (degraded)" if timing.degraded else "",
        )
        return SearchResponse(results=results, total=len(eligible), query=opts.query, timing=timing)

    async def _rerank(self, query: str, head: List[FusedCandidate]) -> List[FusedCandidate]:
        """
        Blend each candidate's fused score with its rerank relevance (mean of
        the two). Only candidates that already passed min_score get here; the
        caller filters again on the blended score.
        """
        try:
            scores = await self.reranker.rerank(query, [c.hit.content for c in head])
        except Exception as e:
            log.warning("Reranking failed, keeping fused order: %s", e)
            return head
        for c, s in zip(head, scores):
            c.rerank_score = s
            c.fused_score = (c.fused_score + s) / 2
        return sorted(head, key=sort_key)

    def _to_result(self, c: FusedCandidate, source: KnowledgeSource) -> SearchResult:
        hit = c.hit
        return SearchResult(
            chunk_id=hit.chunk_id,
            source_id=hit.source_id,
            content=hit.content,
            fused_score=c.fused_score,
            vector_score=c.vector_score,
            keyword_score=c.keyword_score,
            rerank_score=c.rerank_score,
            highlights=c.highlights,
            metadata=ResultMetadata(
                source_title=source.title,
                source_type=source.source_type,
                chunk_index=hit.chunk_index,
                section_header=hit.section_header,
                page_number=hit.page_number,
                category=source.category,
            ),
        )

    async def find_similar_chunks(
        self, chunk_id: str, district_id: str, limit: int = 5
    ) -> List[SearchResult]:
        """Nearest neighbours of a chunk within the same district, excluding the chunk itself."""
        require_district(district_id)
        limit = max(1, min(limit, self.config.max_limit))
        seed = await self.index.get_chunk(district_id, chunk_id)
        if seed is None:
            return []
        scope, sources = await self._scope(district_id, SearchFilters())
        if not sources:
            return []
        hits = await self.index.vector_query(scope, seed.embedding, limit + 1)
        out: List[SearchResult] = []
        for h in hits:
            if h.chunk_id == chunk_id:
                continue
            score = min(1.0, max(0.0, h.score))
            candidate = FusedCandidate(hit=h, fused_score=score, vector_score=score)
            out.append(self._to_result(candidate, sources[h.source_id]))
        return out[:limit]

