from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from tenacity import (
    AsyncRetrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from common.cache import TTLCache
from common.config import EmbeddingConfig, yaml_config
from common.errors import EmbeddingDimensionError, EmbeddingGenerationError
from common.logger import get_logger
from ingestion.document_models import DocumentChunk, EmbeddedChunk, estimate_tokens
from ingestion.hash_utils import sha256_text
from vectorstore.embedding_providers import EmbeddingProvider

log = get_logger(__name__)


@dataclass(frozen=True)
class EmbeddingStatistics:
    total_chunks: int
    total_tokens: int
    cached_chunks: int
    generated_chunks: int
    total_duration_ms: float
    average_latency_ms: float
    model: str


@dataclass(frozen=True)
class EmbeddingResult:
    chunks: List[EmbeddedChunk]
    statistics: EmbeddingStatistics


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Vector dimensions must match ({len(a)} != {len(b)})")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class EmbeddingPipeline:
    """
    Batches chunk texts through an embedding provider.

    - identical texts are embedded once and served from a TTL cache afterwards
    - each batch is retried with exponential backoff seeded at retry_delay_ms
    - a batch that exhausts its retries fails the whole call, so callers never
      receive a partially embedded source
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        config: Optional[EmbeddingConfig] = None,
        cache: Optional[TTLCache[List[float]]] = None,
    ):
        self.provider = provider
        self.config = config or yaml_config.embeddings
        self.cache = cache if cache is not None else TTLCache(self.config.cache_ttl_seconds)
        if provider.get_dimensions() != self.config.dimensions:
            raise EmbeddingDimensionError(
                self.config.dimensions, provider.get_dimensions(), provider.get_model()
            )
        self._semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_batches))

    @property
    def model(self) -> str:
        return self.provider.get_model()

    def _cache_key(self, text: str) -> str:
        return f"{self.model}:{sha256_text(text)}"

    def _validate(self, vectors: List[List[float]], expected_count: int) -> None:
        if len(vectors) != expected_count:
            raise ValueError(
                f"Provider returned {len(vectors)} embeddings for {expected_count} texts"
            )
        for v in vectors:
            if len(v) != self.config.dimensions:
                raise EmbeddingDimensionError(self.config.dimensions, len(v), self.model)

    async def embed_batch(self, texts: List[str], batch_index: int = 0) -> List[List[float]]:
        """Embed one batch with retries. Raises EmbeddingGenerationError when retries run out."""
        attempts = self.config.max_retries + 1
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.config.retry_delay_ms / 1000, max=30),
            retry=retry_if_not_exception_type(EmbeddingDimensionError),
            before_sleep=lambda rs: log.warning(
                "Embedding batch %d attempt %d failed: %s",
                batch_index,
                rs.attempt_number,
                rs.outcome.exception() if rs.outcome else None,
            ),
            reraise=True,
        )
        try:
            async with self._semaphore:
                async for attempt in retrying:
                    with attempt:
                        vectors = await self.provider.generate_embeddings(texts)
                        self._validate(vectors, len(texts))
        except EmbeddingDimensionError:
            raise
        except Exception as e:
            log.error("Embedding batch %d failed after %d attempts: %s", batch_index, attempts, e)
            raise EmbeddingGenerationError(attempts, batch_index, e) from e
        for text, vector in zip(texts, vectors):
            self.cache.set(self._cache_key(text), vector)
        return vectors

    async def embed(self, chunks: Sequence[DocumentChunk]) -> EmbeddingResult:
        started = time.perf_counter()
        vectors: Dict[str, List[float]] = {}
        pending: List[str] = []

        for c in chunks:
            key = self._cache_key(c.content)
            if key in vectors:
                continue
            hit = self.cache.get(key)
            if hit is not None:
                vectors[key] = hit
            else:
                vectors[key] = []
                pending.append(c.content)

        size = max(1, self.config.batch_size)
        batches = [pending[i : i + size] for i in range(0, len(pending), size)]
        outcomes = await asyncio.gather(
            *(self.embed_batch(b, i) for i, b in enumerate(batches)),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        for batch, batch_vectors in zip(batches, outcomes):
            for text, v in zip(batch, batch_vectors):
                vectors[self._cache_key(text)] = v

        embedded = [
            EmbeddedChunk(chunk=c, embedding=vectors[self._cache_key(c.content)], model=self.model)
            for c in chunks
        ]
        duration_ms = (time.perf_counter() - started) * 1000
        generated = len(pending)
        stats = EmbeddingStatistics(
            total_chunks=len(chunks),
            total_tokens=sum(estimate_tokens(c.content) for c in chunks),
            cached_chunks=len(chunks) - generated,
            generated_chunks=generated,
            total_duration_ms=duration_ms,
            average_latency_ms=duration_ms / generated if generated else 0.0,
            model=self.model,
        )
        log.info(
            "Embedded %d chunks (%d generated, %d cached) in %.0f ms",
            stats.total_chunks,
            generated,
            stats.cached_chunks,
            duration_ms,
        )
        return EmbeddingResult(chunks=embedded, statistics=stats)

    async def generate_query_embedding(self, text: str) -> List[float]:
        key = self._cache_key(text)
        hit = self.cache.get(key)
        if hit is not None:
            return hit
        return (await self.embed_batch([text]))[0]

    def clear_cache(self) -> None:
        self.cache.clear()

    def get_cache_stats(self) -> Dict[str, object]:
        return {**self.cache.stats(), "model": self.model}
