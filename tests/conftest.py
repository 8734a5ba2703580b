from __future__ import annotations

import hashlib
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Sequence, Union

import pytest
from pydantic import BaseModel

from common.config import EmbeddingConfig, SearchConfig
from ingestion.ingest_pipeline import KnowledgeService
from lifecycle.source_models import KnowledgeSource
from lifecycle.source_repository import InMemorySourceRepository
from lifecycle.workflow import SourceWorkflow
from retrieval.hybrid_search import HybridSearchEngine
from vectorstore.chunk_index import InMemoryChunkIndex
from vectorstore.embedding_pipeline import EmbeddingPipeline

DIMS = 256
DISTRICT = "district-a"
OTHER_DISTRICT = "district-b"


def word_vector(text: str, dims: int = DIMS) -> List[float]:
    """Bag-of-words hashed into `dims` buckets; overlapping words mean positive cosine."""
    v = [0.0] * dims
    for w in re.findall(r"\w+", text.lower()):
        v[int.from_bytes(hashlib.md5(w.encode("utf-8")).digest()[:4], "big") % dims] += 1.0
    return v


class FakeEmbeddingProvider:
    def __init__(
        self,
        dims: int = DIMS,
        fail_times: int = 0,
        vector_fn: Optional[Callable[[str], List[float]]] = None,
    ):
        self.dims = dims
        self.fail_times = fail_times
        self.vector_fn = vector_fn or (lambda t: word_vector(t, dims))
        self.calls: List[List[str]] = []

    async def generate_embeddings(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("provider unavailable")
        return [self.vector_fn(t) for t in texts]

    def get_model(self) -> str:
        return "fake-embedder"

    def get_dimensions(self) -> int:
        return self.dims


class FakeStructuredLLM:
    """Returns queued responses in order; exceptions in the queue are raised."""

    def __init__(self, *responses: Union[dict, BaseModel, Exception]):
        self.responses = list(responses)
        self.prompts: List[str] = []

    async def complete(self, prompt: str, schema):
        self.prompts.append(prompt)
        if not self.responses:
            raise RuntimeError("no scripted response left")
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        if isinstance(r, BaseModel):
            return r
        return schema.model_validate(r)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + timedelta(**kwargs)


def embedding_config(**overrides: Any) -> EmbeddingConfig:
    values = dict(
        model="fake-embedder",
        dimensions=DIMS,
        batch_size=4,
        max_retries=2,
        retry_delay_ms=1,
        max_concurrent_batches=2,
        cache_ttl_seconds=None,
    )
    values.update(overrides)
    return EmbeddingConfig(**values)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def embeddings(provider) -> EmbeddingPipeline:
    return EmbeddingPipeline(provider, embedding_config())


@pytest.fixture
def repository() -> InMemorySourceRepository:
    return InMemorySourceRepository()


@pytest.fixture
def index() -> InMemoryChunkIndex:
    return InMemoryChunkIndex()


@pytest.fixture
def workflow(repository, clock) -> SourceWorkflow:
    return SourceWorkflow(repository, unpublish_policy="draft", clock=clock)


@pytest.fixture
def service(repository, index, embeddings, workflow, clock) -> KnowledgeService:
    return KnowledgeService(repository, index, embeddings, workflow=workflow, clock=clock)


@pytest.fixture
def search_engine(repository, index, embeddings, clock) -> HybridSearchEngine:
    return HybridSearchEngine(repository, index, embeddings, config=SearchConfig(), clock=clock)


async def publish_text(
    service: KnowledgeService,
    text: str,
    district_id: str = DISTRICT,
    **kwargs: Any,
) -> KnowledgeSource:
    kwargs.setdefault("auto_publish", True)
    source, status = await service.ingest_document(
        district_id, text.encode("utf-8"), "text/plain", **kwargs
    )
    assert status.error is None, status.error
    return source


def titles(results: Sequence[Any]) -> List[str]:
    return [r.metadata.source_title for r in results]
